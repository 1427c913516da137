"""
Thin adapter over the Supabase identity service.

Every call builds a fresh client that neither persists nor auto-refreshes
its session, so no auth state is shared between requests. The token pair
for the signed-in user lives in the Flask session cookie (see app.py).

Failures of the external service are re-raised as UpstreamError with a
message safe to flash to the user.
"""
from typing import NamedTuple, Optional

from flask import current_app
from flask_login import UserMixin
from supabase import ClientOptions, create_client

from errors import UpstreamError


class Identity(UserMixin):
    """The signed-in user as reported by the identity service."""

    def __init__(self, id: str, email: Optional[str] = None):
        self.id = str(id)
        self.email = email or ""

    def __repr__(self):
        return f"<Identity {self.id}>"


class AuthSession(NamedTuple):
    identity: Identity
    access_token: str
    refresh_token: str

    def tokens(self) -> dict:
        return {"access_token": self.access_token, "refresh_token": self.refresh_token}


def get_client(service_role: bool = False):
    url = current_app.config.get("SUPABASE_URL")
    key = current_app.config.get(
        "SUPABASE_SERVICE_ROLE_KEY" if service_role else "SUPABASE_ANON_KEY"
    )
    if not url or not key:
        raise UpstreamError("Sign-in is not configured on this server.")
    return create_client(
        url,
        key,
        options=ClientOptions(auto_refresh_token=False, persist_session=False),
    )


def error_message(exc: Exception, fallback: str) -> str:
    msg = getattr(exc, "message", None) or str(exc)
    return msg.strip() or fallback


def _identity_from(user) -> Optional[Identity]:
    if user is None:
        return None
    return Identity(user.id, getattr(user, "email", None))


def _session_from(resp, what: str) -> AuthSession:
    session = getattr(resp, "session", None)
    user = getattr(resp, "user", None) or getattr(session, "user", None)
    if session is None or user is None:
        raise UpstreamError(f"Could not create session ({what}).")
    return AuthSession(
        identity=_identity_from(user),
        access_token=session.access_token,
        refresh_token=session.refresh_token,
    )


# ------------------------------------------------------
# Session resolver
# ------------------------------------------------------
def resolve_session(access_token: Optional[str], refresh_token: Optional[str]):
    """
    Resolve the cookie token pair to an identity.

    Returns (identity, refreshed_tokens). refreshed_tokens is a dict when
    the access token had to be refreshed and the cookie must be re-written,
    otherwise None. Any failure resolves to (None, None).
    """
    if not access_token and not refresh_token:
        return None, None

    try:
        client = get_client()
    except UpstreamError:
        return None, None

    if access_token:
        try:
            resp = client.auth.get_user(access_token)
            identity = _identity_from(getattr(resp, "user", None) if resp else None)
            if identity is not None:
                return identity, None
        except Exception as e:
            current_app.logger.info("access token rejected: %s", e)

    if not refresh_token:
        return None, None

    try:
        resp = client.auth.refresh_session(refresh_token)
        session = _session_from(resp, "refresh")
    except Exception as e:
        current_app.logger.info("session refresh failed: %s", e)
        return None, None

    return session.identity, session.tokens()


# ------------------------------------------------------
# Sign-in flows
# ------------------------------------------------------
def send_one_time_code(email: str, create_user: bool) -> None:
    try:
        get_client().auth.sign_in_with_otp(
            {"email": email, "options": {"should_create_user": create_user}}
        )
    except UpstreamError:
        raise
    except Exception as e:
        current_app.logger.warning("send code failed for %s: %s", email, e)
        raise UpstreamError(error_message(e, "Could not send code")) from e


def verify_one_time_code(email: str, code: str) -> AuthSession:
    try:
        resp = get_client().auth.verify_otp(
            {"email": email, "token": code, "type": "email"}
        )
    except UpstreamError:
        raise
    except Exception as e:
        current_app.logger.warning("code verification failed for %s: %s", email, e)
        raise UpstreamError(error_message(e, "Invalid code")) from e
    return _session_from(resp, "verification")


def verify_recovery(token_hash: str) -> AuthSession:
    try:
        resp = get_client().auth.verify_otp({"token_hash": token_hash, "type": "recovery"})
    except UpstreamError:
        raise
    except Exception as e:
        current_app.logger.warning("recovery link rejected: %s", e)
        raise UpstreamError(error_message(e, "This link is invalid or expired.")) from e
    return _session_from(resp, "recovery")


def sign_in_with_password(email: str, password: str) -> AuthSession:
    try:
        resp = get_client().auth.sign_in_with_password(
            {"email": email, "password": password}
        )
    except UpstreamError:
        raise
    except Exception as e:
        current_app.logger.warning("password sign-in failed for %s: %s", email, e)
        raise UpstreamError(error_message(e, "Sign in failed")) from e
    return _session_from(resp, "password")


def reset_password(email: str, redirect_to: str) -> None:
    try:
        get_client().auth.reset_password_for_email(email, {"redirect_to": redirect_to})
    except UpstreamError:
        raise
    except Exception as e:
        current_app.logger.warning("reset email failed for %s: %s", email, e)
        raise UpstreamError(error_message(e, "Could not send reset email")) from e


def update_password(tokens: dict, new_password: str) -> None:
    try:
        client = get_client()
        client.auth.set_session(tokens["access_token"], tokens["refresh_token"])
        client.auth.update_user({"password": new_password})
    except UpstreamError:
        raise
    except Exception as e:
        current_app.logger.warning("password update failed: %s", e)
        raise UpstreamError(error_message(e, "Could not update password")) from e


def sign_out(tokens: Optional[dict]) -> None:
    if not tokens:
        return
    try:
        client = get_client()
        client.auth.set_session(tokens["access_token"], tokens["refresh_token"])
        client.auth.sign_out()
    except UpstreamError:
        raise
    except Exception as e:
        current_app.logger.warning("sign out failed: %s", e)
        raise UpstreamError(error_message(e, "Sign out failed")) from e
