"""Rendering of downloadable payment receipts."""
from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .models import PaymentReceipt, PaymentRecord
from .pricing import calculate_subscription_expiration, get_tier_features

_TEMPLATE_PATH = Path(__file__).resolve().parent / "templates"
_PLACEHOLDER_PATTERN = re.compile(r"{{\s*(\w+)\s*}}")

RECEIPT_TEMPLATE = "receipt.html.j2"
RECEIPT_CONTENT_TYPE = "text/html; charset=utf-8"

CURRENCY_SYMBOLS: Dict[str, str] = {"NGN": "₦"}


def _load_template(template: str) -> str:
    path = _TEMPLATE_PATH / template
    return path.read_text(encoding="utf-8")


def _render_template(template: str, context: Dict[str, Any]) -> str:
    source = _load_template(template)

    def _replace(match: re.Match[str]) -> str:
        value = context.get(match.group(1), "")
        return "" if value is None else html.escape(str(value))

    return _PLACEHOLDER_PATTERN.sub(_replace, source)


def format_amount(amount: int, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    return f"{symbol}{amount:,}" if symbol else f"{currency.upper()} {amount:,}"


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%B %d, %Y %H:%M UTC")


def receipt_filename(reference: str) -> str:
    return f"receipt-{reference}.html"


def render_receipt(
    payment: PaymentRecord,
    *,
    generated_at: datetime,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> PaymentReceipt:
    """Render the receipt document for ``payment``.

    The coverage period starts at ``paid_at`` (or creation time for records
    settled without one) and spans the payment's billing cycle.
    """

    paid_at = payment.paid_at or payment.created_at
    context = {
        "reference": payment.reference,
        "amount": format_amount(payment.amount, payment.currency),
        "currency": payment.currency,
        "status": payment.status.value.upper(),
        "plan": f"{payment.subscription_tier.value.title()} - {payment.billing_cycle.value.title()}",
        "features": ", ".join(get_tier_features(payment.subscription_tier)),
        "paid_at": _format_timestamp(paid_at),
        "valid_until": _format_timestamp(calculate_subscription_expiration(payment.billing_cycle, paid_at)),
        "transaction_id": payment.gateway_transaction_id or "N/A",
        "customer_name": (customer_name or "Customer").strip().title(),
        "customer_email": customer_email or "N/A",
        "generated_at": _format_timestamp(generated_at),
    }
    return PaymentReceipt(
        reference=payment.reference,
        filename=receipt_filename(payment.reference),
        content_type=RECEIPT_CONTENT_TYPE,
        content=_render_template(RECEIPT_TEMPLATE, context),
    )


__all__ = [
    "RECEIPT_CONTENT_TYPE",
    "format_amount",
    "receipt_filename",
    "render_receipt",
]
