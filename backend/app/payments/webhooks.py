"""Authentication and parsing of inbound gateway webhooks."""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Dict, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError

LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1", "::ffff:127.0.0.1"})

SIGNATURE_HEADER = "x-paystack-signature"

CHARGE_SUCCESS = "charge.success"
CHARGE_FAILED = "charge.failed"
RECONCILABLE_EVENTS = frozenset({CHARGE_SUCCESS, CHARGE_FAILED})


class WebhookEvent(BaseModel):
    """Normalized gateway callback."""

    event: str
    reference: Optional[str] = None
    status: Optional[str] = None
    data: Dict[str, object] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def is_reconcilable(self) -> bool:
        return self.event in RECONCILABLE_EVENTS


def resolve_client_ip(
    headers: Mapping[str, str],
    peer_host: Optional[str],
    trusted_proxies: Iterable[str] = (),
) -> Optional[str]:
    """Return the originating client address.

    Forwarding headers are only honoured when the socket peer is one of
    ``trusted_proxies``; any other caller is identified by its peer address.
    """

    if not peer_host or peer_host not in set(trusted_proxies):
        return peer_host or None

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer_host or None


def is_allowlisted(ip: Optional[str], allowlist: Iterable[str], *, allow_loopback: bool = False) -> bool:
    """Return ``True`` when ``ip`` may deliver webhooks."""

    if not ip:
        return False
    if allow_loopback and ip in LOOPBACK_ADDRESSES:
        return True
    return ip in set(allowlist)


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check the HMAC-SHA512 signature the gateway attaches to each callback."""

    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def parse_webhook_payload(raw_body: bytes) -> WebhookEvent:
    """Parse a raw callback body, raising :class:`ValidationError` when malformed."""

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Webhook payload is not valid JSON") from exc

    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")

    event = payload.get("event")
    data = payload.get("data")
    if not isinstance(event, str) or not event:
        raise ValidationError("Webhook payload is missing the event name", errors=["event is required"])
    if not isinstance(data, dict):
        raise ValidationError("Webhook payload is missing data", errors=["data is required"])

    reference = data.get("reference")
    has_reference = isinstance(reference, str) and bool(reference.strip())
    if event in RECONCILABLE_EVENTS and not has_reference:
        raise ValidationError("Webhook payload is missing the payment reference", errors=["data.reference is required"])

    status = data.get("status")
    return WebhookEvent(
        event=event,
        reference=reference.strip() if has_reference else None,
        status=str(status) if status is not None else None,
        data=data,
    )


__all__ = [
    "CHARGE_FAILED",
    "CHARGE_SUCCESS",
    "LOOPBACK_ADDRESSES",
    "SIGNATURE_HEADER",
    "WebhookEvent",
    "compute_signature",
    "is_allowlisted",
    "parse_webhook_payload",
    "resolve_client_ip",
    "verify_signature",
]
