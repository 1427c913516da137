from io import BytesIO
from urllib.parse import parse_qs, urlparse

from tests.conftest import create_profile, login


def _signup_data(**overrides):
    data = {
        "action": "create",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "country": "United States",
        "email": "ada@example.com",
        "code": "123456",
        "phone": "5551234567",
        "dob": "1990-01-01",
        "address_line1": "1 Main St",
        "city": "Springfield",
        "state_region": "IL",
        "postal_code": "62701",
        "tax_id_last4": "1234",
    }
    data.update(overrides)
    return data


def test_signup_sends_code(client, backend):
    resp = client.post("/auth", data={"action": "send_code", "email": "Ada@Example.com"})
    assert resp.status_code == 200
    assert b"Verification code sent." in resp.data
    assert backend.calls[0] == (
        "sign_in_with_otp",
        {"email": "ada@example.com", "options": {"should_create_user": True}},
    )


def test_signup_requires_code_first(client, backend):
    resp = client.post("/auth", data=_signup_data())
    assert resp.status_code == 200
    assert b"Send verification code first." in resp.data


def test_signup_creates_profile_and_balance(app_module, client, backend):
    client.post("/auth", data={"action": "send_code", "email": "ada@example.com"})
    data = _signup_data(id_document=(BytesIO(b"fake-image"), "passport.PNG"))
    resp = client.post("/auth", data=data, content_type="multipart/form-data")

    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/dashboard")

    user = backend.users["ada@example.com"]
    profile = app_module.db.session.get(app_module.Profile, user.id)
    assert profile.first_name == "Ada"
    assert profile.kyc_status == app_module.KYCStatus.pending
    assert profile.tax_id_last4 == "1234"
    assert profile.id_document_path.startswith(f"{user.id}/id-")
    assert profile.id_document_path.endswith(".png")
    assert backend.uploads[profile.id_document_path] == b"fake-image"

    balance = app_module.db.session.get(app_module.Balance, user.id)
    assert balance.amount == 0

    # Signed in straight away
    assert client.get("/dashboard").status_code == 200


def test_signup_wrong_code(app_module, client, backend):
    client.post("/auth", data={"action": "send_code", "email": "ada@example.com"})
    data = _signup_data(code="000000", id_document=(BytesIO(b"img"), "id.jpg"))
    resp = client.post("/auth", data=data, content_type="multipart/form-data")

    assert resp.status_code == 200
    assert b"Token has expired or is invalid" in resp.data
    assert app_module.Profile.query.count() == 0


def test_signup_requires_id_image(app_module, client, backend):
    client.post("/auth", data={"action": "send_code", "email": "ada@example.com"})
    resp = client.post("/auth", data=_signup_data())
    assert b"Upload a valid ID image." in resp.data
    assert app_module.Profile.query.count() == 0


def test_signup_upload_failure_keeps_no_profile(app_module, client, backend):
    backend.fail_uploads = True
    client.post("/auth", data={"action": "send_code", "email": "ada@example.com"})
    data = _signup_data(id_document=(BytesIO(b"img"), "id.png"))
    resp = client.post("/auth", data=data, content_type="multipart/form-data")

    assert resp.status_code == 200
    assert b"Bucket not found" in resp.data
    assert app_module.Profile.query.count() == 0


def test_protected_page_redirects_to_login_with_next(client):
    resp = client.get("/withdraw")
    assert resp.status_code == 302
    location = urlparse(resp.headers["Location"])
    assert location.path == "/login"
    assert parse_qs(location.query)["next"] == ["/withdraw"]


def test_password_login_honours_next(client, backend):
    backend.add_user("ada@example.com", password="s3cret-pass")
    resp = client.post(
        "/login",
        data={"action": "password", "email": "ada@example.com", "password": "s3cret-pass", "next": "/withdraw"},
    )
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/withdraw")


def test_password_login_ignores_offsite_next(client, backend):
    backend.add_user("ada@example.com", password="s3cret-pass")
    resp = client.post(
        "/login",
        data={"action": "password", "email": "ada@example.com", "password": "s3cret-pass",
              "next": "//evil.test/"},
    )
    assert resp.headers["Location"].endswith("/dashboard")


def test_password_login_bad_credentials(client, backend):
    backend.add_user("ada@example.com", password="s3cret-pass")
    resp = client.post(
        "/login", data={"action": "password", "email": "ada@example.com", "password": "nope"}
    )
    assert resp.status_code == 200
    assert b"Invalid login credentials" in resp.data


def test_code_login_is_for_existing_users(client, backend):
    resp = client.post("/login", data={"action": "send_code", "email": "new@example.com"})
    assert b"Signups not allowed for otp" in resp.data
    assert "new@example.com" not in backend.users


def test_code_login(client, backend):
    backend.add_user("ada@example.com")
    resp = client.post("/login", data={"action": "send_code", "email": "ada@example.com"})
    assert b"Verification code sent to your email." in resp.data

    resp = client.post("/login", data={"action": "verify", "email": "ada@example.com", "code": "123456"})
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/dashboard")


def test_verify_before_sending_code(client, backend):
    resp = client.post("/login", data={"action": "verify", "email": "ada@example.com", "code": "123456"})
    assert b"Send the code first." in resp.data


def test_landing_redirects_signed_in_user(app_module, client, backend):
    user = backend.add_user("ada@example.com")
    create_profile(app_module, user)
    login(client, backend, user)

    resp = client.get("/")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/dashboard")


def test_expired_access_token_is_refreshed(app_module, client, backend):
    user = backend.add_user("ada@example.com")
    create_profile(app_module, user)
    issued = login(client, backend, user)
    del backend.access[issued.access_token]

    assert client.get("/dashboard").status_code == 200
    with client.session_transaction() as sess:
        assert sess["auth_tokens"]["access_token"] != issued.access_token
        assert sess["auth_tokens"]["access_token"] in backend.access


def test_unusable_tokens_are_dropped(client, backend):
    with client.session_transaction() as sess:
        sess["auth_tokens"] = {"access_token": "bogus", "refresh_token": "bogus"}

    resp = client.get("/dashboard")
    assert resp.status_code == 302
    assert urlparse(resp.headers["Location"]).path == "/login"
    with client.session_transaction() as sess:
        assert "auth_tokens" not in sess


def test_logout(app_module, client, backend):
    user = backend.add_user("ada@example.com")
    create_profile(app_module, user)
    login(client, backend, user)

    resp = client.post("/logout")
    assert resp.status_code == 302
    assert ("sign_out", user.id) in backend.calls
    with client.session_transaction() as sess:
        assert "auth_tokens" not in sess
    assert client.get("/dashboard").status_code == 302


def test_forgot_password_sends_link(client, backend):
    resp = client.post("/forgot-password", data={"email": "ada@example.com"})
    assert resp.status_code == 302
    assert urlparse(resp.headers["Location"]).path == "/login"
    assert (
        "reset_password_for_email",
        "ada@example.com",
        {"redirect_to": "http://localhost/reset-password"},
    ) in backend.calls


def test_reset_password_flow(client, backend):
    user = backend.add_user("ada@example.com", password="old-password")
    backend.recovery["hash-1"] = user

    resp = client.get("/reset-password?token_hash=hash-1&type=recovery")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/reset-password")

    resp = client.get("/reset-password")
    assert b"Update password" in resp.data

    resp = client.post("/reset-password", data={"password": "new-password-1", "confirm": "new-password-1"})
    assert resp.status_code == 302
    assert urlparse(resp.headers["Location"]).path == "/login"
    assert backend.passwords["ada@example.com"] == "new-password-1"
    assert ("sign_out", user.id) in backend.calls


def test_reset_password_mismatch(client, backend):
    user = backend.add_user("ada@example.com", password="old-password")
    backend.recovery["hash-1"] = user
    client.get("/reset-password?token_hash=hash-1&type=recovery")

    resp = client.post("/reset-password", data={"password": "new-password-1", "confirm": "other-password"})
    assert resp.status_code == 200
    assert b"Passwords do not match." in resp.data
    assert backend.passwords["ada@example.com"] == "old-password"


def test_reset_password_without_valid_link(client, backend):
    resp = client.get("/reset-password?token_hash=unknown&type=recovery")
    assert resp.status_code == 302

    resp = client.get("/reset-password")
    assert b"This link may be expired or invalid." in resp.data

    resp = client.post("/reset-password", data={"password": "new-password-1", "confirm": "new-password-1"})
    assert urlparse(resp.headers["Location"]).path == "/forgot-password"
