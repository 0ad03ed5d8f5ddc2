"""Application wiring for the payment service."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..payments import PaymentAuditEvent, PaymentEventLogger, PaymentService
from ..payments.config import PaymentConfig, load_payment_config
from ..payments.gateway import create_payment_gateway
from ..payments.repository import PostgresEntitlementStore, PostgresPaymentRepository


logger = logging.getLogger("payments")


class LoggingPaymentEventLogger(PaymentEventLogger):
    """Event logger forwarding payment audit events to logging."""

    def log(self, event: PaymentAuditEvent) -> None:
        logger.info(
            "Payment event %s user=%s reference=%s metadata=%s",
            event.event_type.value,
            event.user_id,
            event.reference,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_payment_config() -> PaymentConfig:
    return load_payment_config()


@lru_cache(maxsize=1)
def get_payment_service() -> PaymentService:
    config = get_payment_config()
    gateway = create_payment_gateway(config)
    if gateway.name == "sandbox":
        logger.warning("PAYSTACK_SECRET_KEY not configured; using the local sandbox gateway")
    service = PaymentService(
        repository=PostgresPaymentRepository(),
        gateway=gateway,
        entitlements=PostgresEntitlementStore(),
        event_logger=LoggingPaymentEventLogger(),
        reference_prefix=config.reference_prefix,
        pending_timeout_minutes=config.pending_timeout_minutes,
    )
    return service


__all__ = ["LoggingPaymentEventLogger", "get_payment_config", "get_payment_service"]
