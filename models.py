import enum
import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.sql import func

# Single SQLAlchemy instance, bound to the app in app.py.
# The tables live in the backend's Postgres; this app only reads and writes rows.
db = SQLAlchemy()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class KYCStatus(str, enum.Enum):
    unverified = "unverified"
    pending = "pending"
    # Only ever set outside this app (admin review on the backend).
    verified = "verified"


class InvestmentStatus(str, enum.Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


SUPPORTED_COUNTRIES = ("United States", "Canada")


class Profile(db.Model):
    __tablename__ = "profiles"

    # Same id as the identity service user
    id = db.Column(db.String(36), primary_key=True)

    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, index=True)

    country = db.Column(db.String(40), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    dob = db.Column(db.Date, nullable=True)

    # Address / KYC
    address_line1 = db.Column(db.String(255), nullable=True)
    address_line2 = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(120), nullable=True)
    state_region = db.Column(db.String(120), nullable=True)
    postal_code = db.Column(db.String(20), nullable=True)

    # Last 4 digits only, never the full number
    tax_id_last4 = db.Column(db.String(4), nullable=True)
    ssn_last4 = db.Column(db.String(4), nullable=True)
    itin_last4 = db.Column(db.String(4), nullable=True)

    # Path inside the private KYC bucket
    id_document_path = db.Column(db.String(512), nullable=True)
    kyc_status = db.Column(
        db.Enum(KYCStatus), nullable=False, default=KYCStatus.unverified
    )

    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or "User"


class Balance(db.Model):
    __tablename__ = "balances"

    user_id = db.Column(db.String(36), primary_key=True)
    amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)


class Plan(db.Model):
    __tablename__ = "plans"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(120), nullable=False)
    roi_percent = db.Column(db.Numeric(7, 2), nullable=False, default=0)
    duration_days = db.Column(db.Integer, nullable=False, default=60)
    min_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    max_amount = db.Column(db.Numeric(14, 2), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)


class UserPlan(db.Model):
    __tablename__ = "user_plans"
    __table_args__ = (
        # At most one active assignment per user.
        db.Index(
            "uq_user_plans_one_active",
            "user_id",
            unique=True,
            postgresql_where=db.text("is_active"),
            sqlite_where=db.text("is_active = 1"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    plan_id = db.Column(db.String(36), db.ForeignKey("plans.id"), nullable=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    plan = db.relationship("Plan", lazy="joined")


class Investment(db.Model):
    __tablename__ = "investments"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(
        db.Enum(InvestmentStatus), nullable=False, default=InvestmentStatus.active
    )
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, index=True)


class Admin(db.Model):
    """Admin allow-list. Membership grants the admin pages and actions."""

    __tablename__ = "admins"

    user_id = db.Column(db.String(36), primary_key=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
