import os
import importlib
import itertools
import pytest
from datetime import date
from decimal import Decimal
from types import SimpleNamespace


@pytest.fixture(scope="session")
def app_module(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    os.environ["APP_ENV"] = "dev"
    os.environ["SECRET_KEY"] = "test-secret"
    os.environ["SUPABASE_URL"] = "https://project.supabase.test"
    os.environ["SUPABASE_ANON_KEY"] = "anon-key"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "service-key"

    import app as app_module  # noqa: WPS433
    importlib.reload(app_module)
    app_module.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
    return app_module


@pytest.fixture(autouse=True)
def db_setup(app_module):
    db = app_module.db
    with app_module.app.app_context():
        db.drop_all()
        db.create_all()
        yield
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app_module):
    # db_setup keeps one app context open for the whole test, so Flask reuses
    # it (and its `g`) for every request. Drop Flask-Login's per-request user
    # cache so each request resolves the identity afresh, as in production.
    from flask import g, request_started

    def _fresh_login(sender, **extra):
        g.pop("_login_user", None)

    request_started.connect(_fresh_login, app_module.app)
    yield app_module.app.test_client()
    request_started.disconnect(_fresh_login, app_module.app)


# ------------------------------------------------------
# In-memory stand-in for the identity + storage service
# ------------------------------------------------------
class AuthFailure(Exception):
    pass


class FakeBackend:
    """Shared state behind every client the app creates during a test."""

    def __init__(self):
        self.users = {}          # email -> user
        self.passwords = {}      # email -> password
        self.access = {}         # access token -> user
        self.refresh = {}        # refresh token -> user
        self.recovery = {}       # token_hash -> user
        self.code = "123456"
        self.calls = []
        self.uploads = {}
        self.fail_uploads = False
        self._seq = itertools.count(1)

    def add_user(self, email, password=None, user_id=None):
        n = next(self._seq)
        user = SimpleNamespace(id=user_id or f"00000000-0000-0000-0000-{n:012d}", email=email)
        self.users[email] = user
        if password:
            self.passwords[email] = password
        return user

    def issue(self, user):
        n = next(self._seq)
        access, refresh = f"at-{n}", f"rt-{n}"
        self.access[access] = user
        self.refresh[refresh] = user
        return SimpleNamespace(access_token=access, refresh_token=refresh, user=user)


class FakeAuth:
    def __init__(self, backend):
        self.backend = backend

    def get_user(self, jwt=None):
        user = self.backend.access.get(jwt)
        if user is None:
            raise AuthFailure("invalid JWT")
        return SimpleNamespace(user=user)

    def refresh_session(self, refresh_token=None):
        user = self.backend.refresh.pop(refresh_token, None)
        if user is None:
            raise AuthFailure("Invalid Refresh Token")
        session = self.backend.issue(user)
        return SimpleNamespace(user=user, session=session)

    def sign_in_with_otp(self, credentials):
        self.backend.calls.append(("sign_in_with_otp", credentials))
        email = credentials["email"]
        if email not in self.backend.users:
            if not credentials.get("options", {}).get("should_create_user", True):
                raise AuthFailure("Signups not allowed for otp")
            self.backend.add_user(email)

    def verify_otp(self, params):
        self.backend.calls.append(("verify_otp", params))
        if params.get("type") == "recovery":
            user = self.backend.recovery.get(params.get("token_hash"))
            if user is None:
                raise AuthFailure("Email link is invalid or has expired")
        else:
            user = self.backend.users.get(params.get("email"))
            if user is None or params.get("token") != self.backend.code:
                raise AuthFailure("Token has expired or is invalid")
        session = self.backend.issue(user)
        return SimpleNamespace(user=user, session=session)

    def sign_in_with_password(self, credentials):
        email = credentials["email"]
        if self.backend.passwords.get(email) != credentials["password"]:
            raise AuthFailure("Invalid login credentials")
        user = self.backend.users[email]
        session = self.backend.issue(user)
        return SimpleNamespace(user=user, session=session)

    def reset_password_for_email(self, email, options=None):
        self.backend.calls.append(("reset_password_for_email", email, options))

    def set_session(self, access_token, refresh_token):
        self._user = self.backend.access.get(access_token)
        if self._user is None:
            raise AuthFailure("Auth session missing!")

    def update_user(self, attributes):
        self.backend.passwords[self._user.email] = attributes["password"]

    def sign_out(self):
        self.backend.calls.append(("sign_out", self._user.id))


class FakeBucket:
    def __init__(self, backend, name):
        self.backend = backend
        self.name = name

    def upload(self, path, data, file_options=None):
        if self.backend.fail_uploads:
            raise AuthFailure("Bucket not found")
        self.backend.uploads[path] = data
        return SimpleNamespace(path=path)

    def create_signed_url(self, path, expires_in):
        return {"signedURL": f"https://files.test/{self.name}/{path}?ttl={expires_in}"}


class FakeStorage:
    def __init__(self, backend):
        self.backend = backend

    def from_(self, bucket):
        return FakeBucket(self.backend, bucket)


class FakeClient:
    def __init__(self, backend):
        self.auth = FakeAuth(backend)
        self.storage = FakeStorage(backend)


@pytest.fixture
def backend(monkeypatch):
    import auth_service

    fake = FakeBackend()
    monkeypatch.setattr(auth_service, "create_client", lambda url, key, options=None: FakeClient(fake))
    return fake


# ------------------------------------------------------
# Helpers
# ------------------------------------------------------
def create_profile(app_module, user, balance="0", kyc=None, **fields):
    db = app_module.db
    values = dict(
        first_name="Ada",
        last_name="Lovelace",
        email=user.email,
        country="United States",
        phone="5551234567",
        dob=date(1990, 1, 1),
        address_line1="1 Main St",
        city="Springfield",
        state_region="IL",
        postal_code="62701",
        tax_id_last4="1234",
        kyc_status=kyc or app_module.KYCStatus.unverified,
    )
    values.update(fields)
    profile = app_module.Profile(id=user.id, **values)
    db.session.add(profile)
    db.session.add(app_module.Balance(user_id=user.id, amount=Decimal(str(balance))))
    db.session.commit()
    return profile


def make_admin(app_module, user):
    from models import Admin

    app_module.db.session.add(Admin(user_id=user.id))
    app_module.db.session.commit()


def login(client, backend, user):
    session = backend.issue(user)
    with client.session_transaction() as sess:
        sess["auth_tokens"] = {
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
        }
    return session


def create_plan(app_module, name="Starter", roi="10", days=60, min_amount="0", max_amount=None):
    plan = app_module.Plan(
        name=name,
        roi_percent=Decimal(str(roi)),
        duration_days=days,
        min_amount=Decimal(str(min_amount)),
        max_amount=None if max_amount is None else Decimal(str(max_amount)),
    )
    app_module.db.session.add(plan)
    app_module.db.session.commit()
    return plan
