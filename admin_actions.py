"""
Admin command dispatcher.

One entry point, four named actions, each a direct write to one table.
The caller must be on the admin allow-list for every action. Each call
runs in a single transaction: it commits once at the end or rolls back.
"""
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

import gate
from errors import AppError, Forbidden, NotFound, UpstreamError, ValidationError
from models import Balance, Investment, InvestmentStatus, Plan, UserPlan, db, utcnow

DEFAULT_PLAN_DAYS = 60
MAX_PLAN_DAYS = 36500

ACTIONS = {}


def action(name):
    def decorator(f):
        ACTIONS[name] = f
        return f
    return decorator


# ------------------------------------------------------
# Payload helpers
# ------------------------------------------------------
def _columns(model) -> set:
    return {c.key for c in model.__table__.columns}


def _reject_unknown(payload: dict, model) -> None:
    unknown = sorted(set(payload) - _columns(model))
    if unknown:
        raise ValidationError(
            f"Unknown field(s) for {model.__tablename__}: {', '.join(unknown)}"
        )


def _required_str(payload: dict, key: str) -> str:
    value = payload.get(key)
    value = value.strip() if isinstance(value, str) else value
    if value is None or value == "":
        raise ValidationError(f"{key} is required")
    return str(value)


def _decimal(payload: dict, key: str, required: bool = False):
    value = payload.get(key)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number")
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError, OverflowError):
        raise ValidationError(f"{key} must be a number")
    if not number.is_finite():
        raise ValidationError(f"{key} must be a number")
    return number


def _int(payload: dict, key: str):
    value = payload.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a whole number")
    try:
        number = int(Decimal(str(value)))
    except (InvalidOperation, ValueError, OverflowError):
        raise ValidationError(f"{key} must be a whole number")
    if number < 0:
        raise ValidationError(f"{key} must not be negative")
    return number


def _duration(payload: dict):
    days = _int(payload, "duration_days")
    if days is not None and not 1 <= days <= MAX_PLAN_DAYS:
        raise ValidationError(f"duration_days must be between 1 and {MAX_PLAN_DAYS}")
    return days


def _deactivate_active(user_id: str) -> None:
    UserPlan.query.filter_by(user_id=user_id, is_active=True).update(
        {"is_active": False}, synchronize_session="fetch"
    )


# ------------------------------------------------------
# Actions
# ------------------------------------------------------
@action("create_plan")
def create_plan(payload: dict, now) -> dict:
    _reject_unknown(payload, Plan)
    values = dict(payload)
    values["name"] = _required_str(payload, "name")
    for key in ("roi_percent", "min_amount", "max_amount"):
        if key in values:
            values[key] = _decimal(payload, key)
    if "duration_days" in values:
        values["duration_days"] = _duration(payload)
    # Let column defaults apply instead of inserting explicit NULLs
    values = {k: v for k, v in values.items() if v is not None or k == "max_amount"}

    plan = Plan(**values)
    db.session.add(plan)
    db.session.flush()
    return {"id": plan.id}


@action("set_balance")
def set_balance(payload: dict, now) -> dict:
    user_id = _required_str(payload, "user_id")
    amount = _decimal(payload, "amount", required=True)

    balance = db.session.get(Balance, user_id)
    if balance is None:
        balance = Balance(user_id=user_id)
        db.session.add(balance)
    balance.amount = amount
    balance.updated_at = now
    db.session.flush()
    return {"user_id": user_id, "amount": str(amount)}


@action("assign_plan")
def assign_plan(payload: dict, now) -> dict:
    user_id = _required_str(payload, "user_id")
    plan_id = _required_str(payload, "plan_id")

    plan = db.session.get(Plan, plan_id)
    if plan is None:
        raise NotFound("Plan not found")

    days = _duration(payload)
    if days is None:
        days = plan.duration_days or DEFAULT_PLAN_DAYS

    # Deactivate and insert in the same transaction; the partial unique
    # index on (user_id) WHERE is_active rejects a concurrent second insert.
    _deactivate_active(user_id)
    assignment = UserPlan(
        user_id=user_id,
        plan_id=plan.id,
        started_at=now,
        ends_at=now + timedelta(days=days),
        is_active=True,
    )
    db.session.add(assignment)
    db.session.flush()
    return {"id": assignment.id, "ends_at": assignment.ends_at.isoformat()}


@action("create_investment")
def create_investment(payload: dict, now) -> dict:
    _reject_unknown(payload, Investment)
    values = dict(payload)
    values["user_id"] = _required_str(payload, "user_id")
    values["title"] = _required_str(payload, "title")
    values["amount"] = _decimal(payload, "amount") or Decimal("0")

    status = payload.get("status") or InvestmentStatus.active.value
    try:
        values["status"] = InvestmentStatus(str(getattr(status, "value", status)).lower())
    except ValueError:
        raise ValidationError("status must be one of active, completed, cancelled")

    investment = Investment(**values)
    db.session.add(investment)
    db.session.flush()
    return {"id": investment.id}


# ------------------------------------------------------
# Dispatcher
# ------------------------------------------------------
def handle(action_name: str, payload, caller_id, now=None, admin_check=None) -> dict:
    check = admin_check or gate.is_admin
    if not check(caller_id):
        current_app.logger.warning("admin action %r refused for %s", action_name, caller_id)
        raise Forbidden()

    fn = ACTIONS.get(action_name)
    if fn is None:
        raise ValidationError("Unknown action")
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")

    try:
        result = fn(payload, now or utcnow())
        db.session.commit()
    except AppError:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.warning("admin action %s failed: %s", action_name, e)
        raise UpstreamError("Could not save the change. Please try again.") from e

    current_app.logger.info("admin action %s by %s", action_name, caller_id)
    return {"ok": True, **result}
