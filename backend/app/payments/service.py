"""Core service coordinating subscription payments with the gateway."""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Sequence
from uuid import uuid4

from .errors import NotFoundError, ValidationError
from .gateway import PaymentGateway, map_gateway_status
from .models import (
    BillingCycle,
    EntitlementSnapshot,
    InitializedPayment,
    PaymentAuditEvent,
    PaymentAuditEventType,
    PaymentHistoryPage,
    PaymentReceipt,
    PaymentRecord,
    PaymentStats,
    PaymentStatus,
    PendingPaymentStats,
    SubscriptionSummary,
    SubscriptionTier,
    UpgradeEligibility,
    VerificationResult,
)
from .pricing import (
    HIGHEST_TIER,
    MINOR_UNIT_FACTOR,
    calculate_subscription_expiration,
    get_price,
    get_tier_features,
)
from .receipts import render_receipt
from .webhooks import CHARGE_SUCCESS, WebhookEvent

logger = logging.getLogger(__name__)

HISTORY_MAX_LIMIT = 50
HISTORY_DEFAULT_LIMIT = 10
HISTORY_SORT_FIELDS = frozenset({"created_at", "amount", "paid_at", "status"})

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


class PaymentRepository(Protocol):
    """Persistence operations required by the payment service.

    Status transitions are conditional on the record still being ``pending``
    and return ``None`` when another caller already moved it.
    """

    def create_payment(self, payment: PaymentRecord) -> PaymentRecord:
        ...

    def get_payment(self, reference: str) -> Optional[PaymentRecord]:
        ...

    def attach_gateway_session(
        self,
        reference: str,
        *,
        access_code: str,
        authorization_url: str,
    ) -> Optional[PaymentRecord]:
        ...

    def complete_payment(
        self,
        reference: str,
        *,
        paid_at: datetime,
        gateway_transaction_id: Optional[str],
        gateway_response: Optional[str],
        entitlement: EntitlementSnapshot,
    ) -> Optional[PaymentRecord]:
        """Mark a pending payment completed and grant ``entitlement`` atomically."""

    def transition_status(
        self,
        reference: str,
        *,
        status: PaymentStatus,
        failure_reason: Optional[str] = None,
        gateway_response: Optional[str] = None,
    ) -> Optional[PaymentRecord]:
        ...

    def expire_pending_payments(self, cutoff: datetime, *, failure_reason: str) -> Sequence[PaymentRecord]:
        ...

    def list_payments(
        self,
        user_id: str,
        *,
        page: int,
        limit: int,
        status: Optional[PaymentStatus] = None,
        subscription_tier: Optional[SubscriptionTier] = None,
        billing_cycle: Optional[BillingCycle] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> PaymentHistoryPage:
        ...

    def payment_stats(self) -> PaymentStats:
        ...

    def pending_payment_stats(self, cutoff: datetime) -> PendingPaymentStats:
        ...


class EntitlementStore(Protocol):
    """Access to the subscription entitlement held on each user."""

    def get_entitlement(self, user_id: str) -> Optional[EntitlementSnapshot]:
        ...

    def set_entitlement(self, entitlement: EntitlementSnapshot) -> EntitlementSnapshot:
        ...


class PaymentEventLogger(Protocol):
    """Captures structured payment activity events."""

    def log(self, event: PaymentAuditEvent) -> None:
        ...


def generate_reference(prefix: str, now: datetime) -> str:
    """Return a fresh payment reference such as ``MailQuill_1717000000000_X4K9QZ``."""

    timestamp = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"{prefix}_{timestamp}_{suffix}"


@dataclass
class PaymentService:
    """Initializes payments and reconciles them against the gateway."""

    repository: PaymentRepository
    gateway: PaymentGateway
    entitlements: EntitlementStore
    event_logger: PaymentEventLogger
    reference_prefix: str = "MailQuill"
    pending_timeout_minutes: int = 30
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    def initialize_payment(
        self,
        *,
        user_id: str,
        subscription_tier: SubscriptionTier,
        billing_cycle: BillingCycle,
        email: str,
    ) -> InitializedPayment:
        price = get_price(subscription_tier, billing_cycle)
        now = self._now()
        reference = generate_reference(self.reference_prefix, now)

        pending = self.repository.create_payment(
            PaymentRecord(
                id=f"pay_{uuid4().hex}",
                reference=reference,
                user_id=user_id,
                subscription_tier=subscription_tier,
                billing_cycle=billing_cycle,
                amount=price.amount,
                currency=price.currency,
                status=PaymentStatus.PENDING,
                metadata={"email": email},
                created_at=now,
                updated_at=now,
            )
        )

        try:
            session = self.gateway.initialize(
                amount=price.amount_minor,
                currency=price.currency,
                email=email,
                reference=reference,
                metadata={
                    "user_id": user_id,
                    "subscription_tier": subscription_tier.value,
                    "billing_cycle": billing_cycle.value,
                },
            )
        except Exception:
            self.repository.transition_status(
                reference,
                status=PaymentStatus.FAILED,
                failure_reason="Payment gateway initialization failed",
            )
            self.event_logger.log(
                PaymentAuditEvent(
                    event_type=PaymentAuditEventType.PAYMENT_FAILED,
                    user_id=user_id,
                    reference=reference,
                    metadata={"stage": "initialize"},
                )
            )
            raise

        stored = self.repository.attach_gateway_session(
            reference,
            access_code=session.access_code,
            authorization_url=session.authorization_url,
        )
        payment = stored or pending
        self.event_logger.log(
            PaymentAuditEvent(
                event_type=PaymentAuditEventType.PAYMENT_INITIALIZED,
                user_id=user_id,
                reference=reference,
                metadata={
                    "amount": str(price.amount),
                    "currency": price.currency,
                    "subscription_tier": subscription_tier.value,
                    "billing_cycle": billing_cycle.value,
                },
            )
        )
        return InitializedPayment(
            authorization_url=session.authorization_url,
            reference=reference,
            payment=payment,
        )

    def reconcile(self, reference: str) -> PaymentRecord:
        """Converge the local record for ``reference`` with the gateway.

        Terminal records are returned untouched. Gateway failures propagate
        and leave the record ``pending`` so the call can be retried.
        """

        payment = self.repository.get_payment(reference)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.is_terminal:
            return payment

        verification = self.gateway.verify(reference)
        outcome = map_gateway_status(verification.status)
        if outcome == PaymentStatus.PENDING:
            logger.info(
                "Payment still pending at gateway",
                extra={"payment_reference": reference, "gateway_status": verification.status},
            )
            return payment

        if outcome == PaymentStatus.COMPLETED:
            mismatch = self._settlement_mismatch(payment, verification.amount, verification.currency)
            if mismatch is None:
                return self._complete(payment, verification.transaction_id, verification.gateway_response)
            logger.warning(
                "Gateway settlement does not match payment",
                extra={"payment_reference": reference, "mismatch": mismatch},
            )
            return self._fail(payment, mismatch, verification.gateway_response)

        return self._fail(
            payment,
            verification.gateway_response or "Payment was not successful",
            verification.gateway_response,
        )

    def verify_payment(self, *, user_id: str, reference: str) -> VerificationResult:
        payment = self.repository.get_payment(reference)
        if payment is None or payment.user_id != user_id:
            raise NotFoundError("Payment not found")

        reconciled = self.reconcile(reference)
        entitlement = None
        if reconciled.status == PaymentStatus.COMPLETED:
            entitlement = self.entitlements.get_entitlement(user_id)
        return VerificationResult(payment=reconciled, entitlement=entitlement)

    def generate_receipt(
        self,
        *,
        user_id: str,
        reference: str,
        customer_name: Optional[str] = None,
    ) -> PaymentReceipt:
        payment = self.repository.get_payment(reference)
        if payment is None or payment.user_id != user_id:
            raise NotFoundError("Payment not found")
        if payment.status != PaymentStatus.COMPLETED:
            raise ValidationError("Receipts are only available for completed payments")

        receipt = render_receipt(
            payment,
            generated_at=self._now(),
            customer_name=customer_name,
            customer_email=payment.metadata.get("email"),
        )
        logger.info(
            "Generated payment receipt",
            extra={"payment_reference": reference, "user_id": user_id},
        )
        return receipt

    def handle_webhook(self, event: WebhookEvent) -> Optional[PaymentRecord]:
        if not event.is_reconcilable or not event.reference:
            logger.info("Unhandled webhook event", extra={"webhook_event": event.event})
            return None

        if event.event == CHARGE_SUCCESS and (event.status or "").lower() != "success":
            logger.warning(
                "Webhook reports charge.success with unexpected status",
                extra={"payment_reference": event.reference, "gateway_status": event.status},
            )

        payment = self.reconcile(event.reference)
        logger.info(
            "Webhook reconciled payment",
            extra={
                "webhook_event": event.event,
                "payment_reference": payment.reference,
                "payment_status": payment.status.value,
            },
        )
        return payment

    def list_payments(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = HISTORY_DEFAULT_LIMIT,
        status: Optional[PaymentStatus] = None,
        subscription_tier: Optional[SubscriptionTier] = None,
        billing_cycle: Optional[BillingCycle] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> PaymentHistoryPage:
        page = max(1, page)
        limit = min(HISTORY_MAX_LIMIT, max(1, limit))
        if sort_by not in HISTORY_SORT_FIELDS:
            sort_by = "created_at"
        search_term = (search or "").strip() or None
        return self.repository.list_payments(
            user_id,
            page=page,
            limit=limit,
            status=status,
            subscription_tier=subscription_tier,
            billing_cycle=billing_cycle,
            search=search_term,
            sort_by=sort_by,
            descending=sort_order != "asc",
        )

    def get_payment_stats(self) -> PaymentStats:
        return self.repository.payment_stats()

    def get_pending_payment_stats(self, now: Optional[datetime] = None) -> PendingPaymentStats:
        cutoff = (now or self._now()) - timedelta(minutes=self.pending_timeout_minutes)
        return self.repository.pending_payment_stats(cutoff)

    def cleanup_expired_payments(self, now: Optional[datetime] = None) -> int:
        """Fail payments left pending past the timeout. Returns how many expired."""

        cutoff = (now or self._now()) - timedelta(minutes=self.pending_timeout_minutes)
        expired = self.repository.expire_pending_payments(
            cutoff,
            failure_reason=(
                f"Payment timeout - not completed within {self.pending_timeout_minutes} minutes"
            ),
        )
        for payment in expired:
            self.event_logger.log(
                PaymentAuditEvent(
                    event_type=PaymentAuditEventType.PAYMENT_EXPIRED,
                    user_id=payment.user_id,
                    reference=payment.reference,
                )
            )
        if expired:
            logger.info(
                "Expired pending payments",
                extra={"expired_count": len(expired), "cutoff": cutoff.isoformat()},
            )
        return len(expired)

    def cancel_pending_payment(self, reference: str) -> PaymentRecord:
        payment = self.repository.get_payment(reference)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.status != PaymentStatus.PENDING:
            raise ValidationError(f"Payment is not pending (current status: {payment.status.value})")

        cancelled = self.repository.transition_status(
            reference,
            status=PaymentStatus.CANCELLED,
            failure_reason="Manually cancelled by admin",
        )
        if cancelled is None:
            current = self.repository.get_payment(reference) or payment
            raise ValidationError(f"Payment is not pending (current status: {current.status.value})")
        logger.info(
            "Payment cancelled by admin",
            extra={"payment_reference": reference, "user_id": cancelled.user_id},
        )
        return cancelled

    def get_current_subscription(self, user_id: str) -> SubscriptionSummary:
        entitlement = self._require_entitlement(user_id)
        now = self._now()
        if entitlement.is_active(now):
            tier = entitlement.subscription_tier
            return SubscriptionSummary(
                user_id=user_id,
                tier=tier,
                billing_cycle=entitlement.billing_cycle,
                expires_at=entitlement.subscription_expires_at,
                is_active=True,
                features=get_tier_features(tier),
            )
        return SubscriptionSummary(
            user_id=user_id,
            tier=SubscriptionTier.FREE,
            expires_at=entitlement.subscription_expires_at,
            is_active=False,
            features=get_tier_features(SubscriptionTier.FREE),
        )

    def cancel_subscription(self, user_id: str) -> EntitlementSnapshot:
        entitlement = self._require_entitlement(user_id)
        if entitlement.subscription_tier == SubscriptionTier.FREE:
            raise ValidationError("No active subscription to cancel")

        updated = self.entitlements.set_entitlement(
            EntitlementSnapshot(
                user_id=user_id,
                subscription_tier=SubscriptionTier.FREE,
                billing_cycle=None,
                subscription_expires_at=self._now(),
            )
        )
        self.event_logger.log(
            PaymentAuditEvent(
                event_type=PaymentAuditEventType.SUBSCRIPTION_CANCELLED,
                user_id=user_id,
                metadata={"previous_tier": entitlement.subscription_tier.value},
            )
        )
        return updated

    def can_upgrade(self, user_id: str) -> UpgradeEligibility:
        current_tier = self.get_current_subscription(user_id).tier
        return UpgradeEligibility(
            can_upgrade=current_tier != HIGHEST_TIER,
            current_tier=current_tier,
            highest_tier=HIGHEST_TIER,
        )

    def _complete(
        self,
        payment: PaymentRecord,
        transaction_id: Optional[str],
        gateway_response: Optional[str],
    ) -> PaymentRecord:
        now = self._now()
        entitlement = EntitlementSnapshot(
            user_id=payment.user_id,
            subscription_tier=payment.subscription_tier,
            billing_cycle=payment.billing_cycle,
            subscription_expires_at=calculate_subscription_expiration(payment.billing_cycle, now),
        )
        completed = self.repository.complete_payment(
            payment.reference,
            paid_at=now,
            gateway_transaction_id=transaction_id,
            gateway_response=gateway_response,
            entitlement=entitlement,
        )
        if completed is None:
            return self._reload(payment)

        self.event_logger.log(
            PaymentAuditEvent(
                event_type=PaymentAuditEventType.PAYMENT_COMPLETED,
                user_id=completed.user_id,
                reference=completed.reference,
                metadata={"amount": str(completed.amount), "currency": completed.currency},
            )
        )
        self.event_logger.log(
            PaymentAuditEvent(
                event_type=PaymentAuditEventType.SUBSCRIPTION_ACTIVATED,
                user_id=completed.user_id,
                reference=completed.reference,
                metadata={
                    "subscription_tier": entitlement.subscription_tier.value,
                    "billing_cycle": payment.billing_cycle.value,
                    "expires_at": entitlement.subscription_expires_at.isoformat(),
                },
            )
        )
        return completed

    def _fail(
        self,
        payment: PaymentRecord,
        reason: str,
        gateway_response: Optional[str],
    ) -> PaymentRecord:
        failed = self.repository.transition_status(
            payment.reference,
            status=PaymentStatus.FAILED,
            failure_reason=reason,
            gateway_response=gateway_response,
        )
        if failed is None:
            return self._reload(payment)

        self.event_logger.log(
            PaymentAuditEvent(
                event_type=PaymentAuditEventType.PAYMENT_FAILED,
                user_id=failed.user_id,
                reference=failed.reference,
                metadata={"reason": reason},
            )
        )
        return failed

    def _reload(self, payment: PaymentRecord) -> PaymentRecord:
        # Another reconciliation settled the record first.
        current = self.repository.get_payment(payment.reference)
        logger.info(
            "Payment already settled by a concurrent reconciliation",
            extra={
                "payment_reference": payment.reference,
                "payment_status": current.status.value if current else None,
            },
        )
        return current or payment

    def _require_entitlement(self, user_id: str) -> EntitlementSnapshot:
        entitlement = self.entitlements.get_entitlement(user_id)
        if entitlement is None:
            raise NotFoundError("User not found")
        return entitlement

    @staticmethod
    def _settlement_mismatch(
        payment: PaymentRecord,
        amount: Optional[int],
        currency: Optional[str],
    ) -> Optional[str]:
        expected_minor = payment.amount * MINOR_UNIT_FACTOR
        if amount is not None and amount < expected_minor:
            return f"Amount mismatch: expected {expected_minor}, gateway reported {amount}"
        if currency and currency.upper() != payment.currency:
            return f"Currency mismatch: expected {payment.currency}, gateway reported {currency.upper()}"
        return None


__all__ = [
    "EntitlementStore",
    "PaymentEventLogger",
    "PaymentRepository",
    "PaymentService",
    "generate_reference",
]
