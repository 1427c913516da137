"""
Manual handoff to WhatsApp.

Purchases and withdrawals are not settled by this app: the user is sent
to a wa.me link with a pre-filled message and the team takes it from
there. Nothing here confirms anything.
"""
import re
from urllib.parse import quote

from formatting import format_money, to_decimal
from plans import range_text


def whatsapp_link(number: str, message: str) -> str:
    # wa.me wants the international number without "+" or spaces
    digits = re.sub(r"\D", "", number or "")
    return f"https://wa.me/{digits}?text={quote(message, safe='')}"


def _join(lines) -> str:
    return "\n".join(line for line in lines if line is not None)


def purchase_message(plan, display_name: str, email: str = "", country: str = "") -> str:
    min_amount = to_decimal(plan.min_amount)
    max_amount = None if plan.max_amount is None else to_decimal(plan.max_amount)
    return _join([
        f'Hi, I want to purchase the "{plan.name}" plan.',
        "",
        "Plan details:",
        f"• ROI: {plan.roi_percent}%",
        f"• Duration: {plan.duration_days} days",
        f"• Amount range: {range_text(min_amount, max_amount)}",
        "",
        "My details:",
        f"• Name: {display_name}",
        f"• Email: {email}" if email else None,
        f"• Country: {country}" if country else None,
        "",
        "Please send me the next steps.",
    ])


def withdrawal_message(
    req: dict,
    amount,
    balance,
    minimum,
    fee,
    display_name: str,
    email: str = "",
    country: str = "",
    kyc: str = "unverified",
) -> str:
    """req holds the raw withdrawal form fields (see forms.WithdrawalForm)."""
    swift = (req.get("swift") or "").strip()
    address = (req.get("beneficiary_address") or "").strip()
    note = (req.get("note") or "").strip()
    return _join([
        "Hi, I want to proceed with a withdrawal request.",
        "",
        "Withdrawal details:",
        f"• Amount: {format_money(amount)} ({req.get('amount', '')})",
        f"• Bank name: {req.get('bank_name', '')}",
        f"• Account type: {req.get('account_type', '')}",
        f"• Account name: {req.get('account_name', '')}",
        f"• Routing number: {req.get('routing', '')}",
        f"• Account number: {req.get('account', '')}",
        f"• SWIFT/BIC: {swift}" if swift else None,
        f"• Beneficiary address: {address}" if address else None,
        f"• Note: {note}" if note else None,
        "",
        "Balance check:",
        f"• Current balance: {format_money(balance)}",
        f"• Minimum withdrawal: {format_money(minimum)}",
        "",
        "Fee notice:",
        f"• One-time withdrawal processing fee: {format_money(fee)}",
        "",
        "User details:",
        f"• Name: {display_name}",
        f"• Email: {email}" if email else None,
        f"• Country: {country or '—'}",
        f"• KYC: {kyc}",
        "",
        "Reason: Payment of withdrawal fee and confirmation to proceed with payout processing.",
    ])
