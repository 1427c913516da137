from typing import Iterable, Optional

from formatting import format_money, to_decimal


def _field(plan, name):
    if isinstance(plan, dict):
        return plan.get(name)
    return getattr(plan, name, None)


def _rank_key(plan):
    return (
        to_decimal(_field(plan, "roi_percent")),
        to_decimal(_field(plan, "duration_days")),
        to_decimal(_field(plan, "min_amount")),
    )


def pick_featured(plans: Iterable) -> Optional[str]:
    """
    Id of the plan to highlight: highest ROI, then longest duration,
    then highest minimum amount. None for an empty list.

    Plans with identical ranking fields are broken by the smallest id, so
    the answer never depends on the input order.
    """
    best = None
    for plan in plans:
        if best is None:
            best = plan
            continue
        key, best_key = _rank_key(plan), _rank_key(best)
        if key > best_key or (
            key == best_key and str(_field(plan, "id")) < str(_field(best, "id"))
        ):
            best = plan
    return _field(best, "id") if best is not None else None


def range_text(min_amount, max_amount) -> str:
    if not max_amount:
        return f"From {format_money(min_amount)}"
    if to_decimal(min_amount) == to_decimal(max_amount):
        return format_money(min_amount)
    return f"{format_money(min_amount)} — {format_money(max_amount)}"


def plan_tier(plan) -> str:
    name = (_field(plan, "name") or "").lower()
    if "premium" in name or "pro" in name:
        return "premium"
    if "plus" in name:
        return "plus"
    return "standard"
