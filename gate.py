"""
Request gating: which paths need a signed-in user, and which need an admin.

decide() is a pure function of (path, identity, admin check) so it can be
tested without a request; app.py applies it in a before_request hook.
"""
from typing import Callable, NamedTuple, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import Admin, db

PROTECTED_PREFIXES = ("/dashboard", "/invest", "/withdraw", "/profile", "/admin")
ADMIN_PREFIX = "/admin"
LANDING_PATH = "/"

# Never gated, whoever is asking
EXCLUDED_PREFIXES = ("/static/", "/favicon.ico", "/health")
EXCLUDED_SUFFIXES = (
    ".css", ".js", ".map",
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".webp",
    ".woff", ".woff2",
)

ALLOW = "allow"
LOGIN = "login"
DASHBOARD = "dashboard"


class GateDecision(NamedTuple):
    action: str
    next_path: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.action == ALLOW


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def is_excluded(path: str) -> bool:
    if path.startswith(EXCLUDED_PREFIXES):
        return True
    return path.lower().endswith(EXCLUDED_SUFFIXES)


def is_protected(path: str) -> bool:
    return any(_matches(path, p) for p in PROTECTED_PREFIXES)


def is_admin(user_id: Optional[str]) -> bool:
    """Allow-list lookup. Any lookup error counts as not admin."""
    if not user_id:
        return False
    try:
        return (
            db.session.query(Admin.user_id).filter_by(user_id=str(user_id)).first()
            is not None
        )
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.warning("admin check failed for %s: %s", user_id, e)
        return False


def decide(path: str, identity, admin_check: Callable[[str], bool] = is_admin) -> GateDecision:
    if is_excluded(path):
        return GateDecision(ALLOW)

    # Signed-in users skip the landing page
    if path == LANDING_PATH:
        return GateDecision(DASHBOARD) if identity is not None else GateDecision(ALLOW)

    if not is_protected(path):
        return GateDecision(ALLOW)

    if identity is None:
        return GateDecision(LOGIN, next_path=path)

    if _matches(path, ADMIN_PREFIX):
        try:
            ok = admin_check(identity.id)
        except Exception as e:
            current_app.logger.warning("admin check errored for %s: %s", identity.id, e)
            ok = False
        if not ok:
            return GateDecision(DASHBOARD)

    return GateDecision(ALLOW)
