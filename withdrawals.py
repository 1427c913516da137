import re
from decimal import Decimal, InvalidOperation
from typing import NamedTuple, Optional

from formatting import format_money, to_decimal

MIN_WITHDRAWAL = Decimal("5000")
FEE_AMOUNT = Decimal("750")

# Bank details that must be filled before a request can go out
REQUIRED_FIELDS = ("amount", "bank_name", "account_name", "routing", "account")


class Eligibility(NamedTuple):
    eligible: bool
    reason: Optional[str]
    amount: Decimal


def parse_amount(text) -> Decimal:
    """
    Accepts "5,000", "$5000", "5000.00" and the like.
    Anything that is not a number after dropping other characters is 0.
    """
    cleaned = re.sub(r"[^0-9.]", "", str(text or ""))
    if not cleaned:
        return Decimal("0")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")


def check_eligibility(amount_input, balance, fields: dict, minimum=MIN_WITHDRAWAL) -> Eligibility:
    amount = parse_amount(amount_input)
    balance = to_decimal(balance)
    values = dict(fields or {})
    values.setdefault("amount", amount_input)

    if any(not str(values.get(name) or "").strip() for name in REQUIRED_FIELDS):
        return Eligibility(False, "Fill all required fields.", amount)

    if amount < minimum:
        return Eligibility(False, f"Minimum withdrawal is {format_money(minimum)}.", amount)

    if amount <= 0 or amount > balance:
        return Eligibility(
            False,
            f"Amount exceeds your balance ({format_money(balance)}).",
            amount,
        )

    return Eligibility(True, None, amount)
