from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

MONEY_QUANT = Decimal("0.01")


def to_decimal(value, default: Decimal = Decimal("0")) -> Decimal:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def format_money(amount) -> str:
    """USD with thousands separators, e.g. 5000 -> $5,000.00 and -12.5 -> -$12.50."""
    value = to_decimal(amount).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


def initials(first=None, last=None) -> str:
    a = (first or "")[:1].upper()
    b = (last or "")[:1].upper()
    return f"{a}{b}" or "U"


def normalize_related(value):
    """
    Collapse a related row to a single object.

    A joined relation can come back as None, as the row itself, or as a
    list of rows (one-to-many shape). Returns None, the row, or the first
    element of the list (None if the list is empty).
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def status_badge(status) -> str:
    s = str(getattr(status, "value", status) or "").lower()
    if s == "completed":
        return "secondary"
    if s == "cancelled":
        return "destructive"
    return "outline"
