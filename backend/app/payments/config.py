"""Payment configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple
import os

DEFAULT_PAYSTACK_WEBHOOK_IPS: Tuple[str, ...] = (
    "52.31.139.75",
    "52.49.173.169",
    "52.214.14.220",
)


@dataclass(frozen=True)
class PaymentConfig:
    """Configuration for the payment gateway and reconciliation jobs."""

    gateway_name: str
    secret_key: str
    base_url: str
    callback_url: Optional[str]
    reference_prefix: str
    gateway_timeout_seconds: float
    webhook_allowlist: Tuple[str, ...]
    webhook_allow_loopback: bool
    webhook_verify_signature: bool
    trusted_proxies: Tuple[str, ...]
    pending_timeout_minutes: int
    cleanup_enabled: bool
    cleanup_interval_seconds: float


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_ip_list(value: Optional[str], *, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None or not value.strip():
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def load_payment_config(env: Optional[Mapping[str, str]] = None) -> PaymentConfig:
    """Load :class:`PaymentConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    secret_key = env_mapping.get("PAYSTACK_SECRET_KEY", "")
    default_gateway = "paystack" if secret_key else "sandbox"
    gateway_name = (env_mapping.get("PAYMENT_GATEWAY") or default_gateway).strip().lower() or default_gateway

    base_url = env_mapping.get("PAYSTACK_BASE_URL", "https://api.paystack.co")
    callback_url = env_mapping.get("PAYMENT_CALLBACK_URL") or None
    if callback_url is None and env_mapping.get("FRONTEND_URL"):
        callback_url = f"{env_mapping['FRONTEND_URL'].rstrip('/')}/dashboard/payments?success=true"

    reference_prefix = (env_mapping.get("PAYMENT_REFERENCE_PREFIX") or "MailQuill").strip()
    gateway_timeout = max(1.0, _to_float(env_mapping.get("PAYMENT_GATEWAY_TIMEOUT"), default=10.0))

    is_development = (env_mapping.get("APP_ENV") or "").strip().lower() == "development"
    allowlist = _to_ip_list(env_mapping.get("PAYSTACK_WEBHOOK_IPS"), default=DEFAULT_PAYSTACK_WEBHOOK_IPS)
    allow_loopback = _to_bool(env_mapping.get("PAYMENT_WEBHOOK_ALLOW_LOOPBACK"), default=is_development)
    verify_signature = _to_bool(env_mapping.get("PAYMENT_WEBHOOK_VERIFY_SIGNATURE"), default=bool(secret_key))
    trusted_proxies = _to_ip_list(env_mapping.get("PAYMENT_TRUSTED_PROXIES"), default=())

    pending_timeout = max(1, _to_int(env_mapping.get("PAYMENT_PENDING_TIMEOUT_MINUTES"), default=30))
    cleanup_enabled = _to_bool(env_mapping.get("PAYMENT_CLEANUP_ENABLED"), default=True)
    cleanup_interval = max(1.0, _to_float(env_mapping.get("PAYMENT_CLEANUP_INTERVAL_SECONDS"), default=1800.0))

    return PaymentConfig(
        gateway_name=gateway_name,
        secret_key=secret_key,
        base_url=base_url.rstrip("/"),
        callback_url=callback_url,
        reference_prefix=reference_prefix,
        gateway_timeout_seconds=gateway_timeout,
        webhook_allowlist=allowlist,
        webhook_allow_loopback=allow_loopback,
        webhook_verify_signature=verify_signature,
        trusted_proxies=trusted_proxies,
        pending_timeout_minutes=pending_timeout,
        cleanup_enabled=cleanup_enabled,
        cleanup_interval_seconds=cleanup_interval,
    )


__all__ = ["DEFAULT_PAYSTACK_WEBHOOK_IPS", "PaymentConfig", "load_payment_config"]
