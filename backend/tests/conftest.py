"""Shared in-memory collaborators for payment tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import pytest

from backend.app.payments import (
    BillingCycle,
    EntitlementSnapshot,
    GatewayError,
    GatewayInitialization,
    GatewayVerification,
    PaymentAuditEvent,
    PaymentHistoryPage,
    PaymentRecord,
    PaymentService,
    PaymentStats,
    PaymentStatus,
    PendingPaymentStats,
    SubscriptionTier,
)
from backend.app.payments.service import EntitlementStore, PaymentEventLogger, PaymentRepository


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryEntitlementStore(EntitlementStore):
    def __init__(self) -> None:
        self.entitlements: Dict[str, EntitlementSnapshot] = {}
        self.writes: List[EntitlementSnapshot] = []

    def add_user(self, user_id: str, **fields) -> EntitlementSnapshot:
        snapshot = EntitlementSnapshot(user_id=user_id, **fields)
        self.entitlements[user_id] = snapshot
        return snapshot

    def get_entitlement(self, user_id: str) -> Optional[EntitlementSnapshot]:
        return self.entitlements.get(user_id)

    def set_entitlement(self, entitlement: EntitlementSnapshot) -> EntitlementSnapshot:
        if entitlement.user_id not in self.entitlements:
            raise RuntimeError("Failed to update entitlement")
        self.entitlements[entitlement.user_id] = entitlement
        self.writes.append(entitlement)
        return entitlement


class InMemoryPaymentRepository(PaymentRepository):
    """Mirrors the conditional updates of the PostgreSQL repository under one lock."""

    def __init__(self, entitlements: InMemoryEntitlementStore) -> None:
        self.payments: Dict[str, PaymentRecord] = {}
        self.entitlements = entitlements
        self.completions = 0
        self._lock = Lock()

    def create_payment(self, payment: PaymentRecord) -> PaymentRecord:
        with self._lock:
            if payment.reference in self.payments:
                raise RuntimeError("duplicate reference")
            self.payments[payment.reference] = payment
            return payment

    def get_payment(self, reference: str) -> Optional[PaymentRecord]:
        with self._lock:
            return self.payments.get(reference)

    def attach_gateway_session(
        self,
        reference: str,
        *,
        access_code: str,
        authorization_url: str,
    ) -> Optional[PaymentRecord]:
        with self._lock:
            payment = self.payments.get(reference)
            if payment is None:
                return None
            updated = payment.model_copy(
                update={"gateway_access_code": access_code, "authorization_url": authorization_url}
            )
            self.payments[reference] = updated
            return updated

    def complete_payment(
        self,
        reference: str,
        *,
        paid_at: datetime,
        gateway_transaction_id: Optional[str],
        gateway_response: Optional[str],
        entitlement: EntitlementSnapshot,
    ) -> Optional[PaymentRecord]:
        with self._lock:
            payment = self.payments.get(reference)
            if payment is None or payment.status != PaymentStatus.PENDING:
                return None
            updated = payment.model_copy(
                update={
                    "status": PaymentStatus.COMPLETED,
                    "paid_at": paid_at,
                    "gateway_transaction_id": gateway_transaction_id,
                    "gateway_response": gateway_response,
                    "updated_at": paid_at,
                }
            )
            self.payments[reference] = updated
            self.entitlements.set_entitlement(entitlement)
            self.completions += 1
            return updated

    def transition_status(
        self,
        reference: str,
        *,
        status: PaymentStatus,
        failure_reason: Optional[str] = None,
        gateway_response: Optional[str] = None,
    ) -> Optional[PaymentRecord]:
        with self._lock:
            payment = self.payments.get(reference)
            if payment is None or payment.status != PaymentStatus.PENDING:
                return None
            updated = payment.model_copy(
                update={
                    "status": status,
                    "failure_reason": failure_reason or payment.failure_reason,
                    "gateway_response": gateway_response or payment.gateway_response,
                }
            )
            self.payments[reference] = updated
            return updated

    def expire_pending_payments(self, cutoff: datetime, *, failure_reason: str) -> Sequence[PaymentRecord]:
        expired: List[PaymentRecord] = []
        with self._lock:
            for reference, payment in list(self.payments.items()):
                if payment.status == PaymentStatus.PENDING and payment.created_at < cutoff:
                    updated = payment.model_copy(
                        update={"status": PaymentStatus.FAILED, "failure_reason": failure_reason}
                    )
                    self.payments[reference] = updated
                    expired.append(updated)
        return expired

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
        with self._lock:
            matching = [payment for payment in self.payments.values() if payment.user_id == user_id]
        if status is not None:
            matching = [payment for payment in matching if payment.status == status]
        if subscription_tier is not None:
            matching = [payment for payment in matching if payment.subscription_tier == subscription_tier]
        if billing_cycle is not None:
            matching = [payment for payment in matching if payment.billing_cycle == billing_cycle]
        if search:
            needle = search.lower()
            matching = [
                payment
                for payment in matching
                if needle in payment.reference.lower()
                or needle in (payment.gateway_response or "").lower()
                or needle in (payment.failure_reason or "").lower()
            ]
        matching.sort(key=lambda payment: getattr(payment, sort_by) or payment.created_at, reverse=descending)
        start = (page - 1) * limit
        return PaymentHistoryPage(
            items=tuple(matching[start:start + limit]),
            page=page,
            limit=limit,
            total_items=len(matching),
        )

    def payment_stats(self) -> PaymentStats:
        with self._lock:
            payments = list(self.payments.values())
        completed = [payment for payment in payments if payment.status == PaymentStatus.COMPLETED]
        return PaymentStats(
            total_payments=len(payments),
            total_amount=sum(payment.amount for payment in completed),
            successful_payments=len(completed),
            failed_payments=sum(1 for payment in payments if payment.status == PaymentStatus.FAILED),
            pending_payments=sum(1 for payment in payments if payment.status == PaymentStatus.PENDING),
        )

    def pending_payment_stats(self, cutoff: datetime) -> PendingPaymentStats:
        with self._lock:
            pending = [payment for payment in self.payments.values() if payment.status == PaymentStatus.PENDING]
        expired = sum(1 for payment in pending if payment.created_at < cutoff)
        return PendingPaymentStats(
            total_pending=len(pending),
            expired_pending=expired,
            recent_pending=len(pending) - expired,
        )


class FakeGateway:
    name = "fake"

    def __init__(self) -> None:
        self.initialized: List[Dict[str, object]] = []
        self.verify_calls: List[str] = []
        self.statuses: Dict[str, str] = {}
        self.amount_overrides: Dict[str, int] = {}
        self.currency_overrides: Dict[str, str] = {}
        self.fail_initialize = False
        self.fail_verify = False
        self.before_verify: Optional[Callable[[str], None]] = None
        self._amounts: Dict[str, int] = {}
        self._currencies: Dict[str, str] = {}

    def initialize(
        self,
        *,
        amount: int,
        currency: str,
        email: str,
        reference: str,
        metadata: Mapping[str, str],
    ) -> GatewayInitialization:
        if self.fail_initialize:
            raise GatewayError("Payment gateway is unavailable")
        self.initialized.append(
            {
                "amount": amount,
                "currency": currency,
                "email": email,
                "reference": reference,
                "metadata": dict(metadata),
            }
        )
        self._amounts[reference] = amount
        self._currencies[reference] = currency
        return GatewayInitialization(
            authorization_url=f"https://checkout.test/{reference}",
            access_code=f"access_{len(self.initialized)}",
            reference=reference,
        )

    def verify(self, reference: str) -> GatewayVerification:
        self.verify_calls.append(reference)
        if self.before_verify is not None:
            self.before_verify(reference)
        if self.fail_verify:
            raise GatewayError("Payment gateway is unavailable")
        return GatewayVerification(
            status=self.statuses.get(reference, "success"),
            reference=reference,
            transaction_id=f"trx_{reference}",
            amount=self.amount_overrides.get(reference, self._amounts.get(reference)),
            currency=self.currency_overrides.get(reference, self._currencies.get(reference)),
            gateway_response="Approved",
        )


class RecordingEventLogger(PaymentEventLogger):
    def __init__(self) -> None:
        self.events: List[PaymentAuditEvent] = []

    def log(self, event: PaymentAuditEvent) -> None:
        self.events.append(event)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def entitlements() -> InMemoryEntitlementStore:
    store = InMemoryEntitlementStore()
    store.add_user("user-1")
    store.add_user("user-2")
    return store


@pytest.fixture
def repository(entitlements: InMemoryEntitlementStore) -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository(entitlements)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def events() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def payment_service(
    repository: InMemoryPaymentRepository,
    gateway: FakeGateway,
    entitlements: InMemoryEntitlementStore,
    events: RecordingEventLogger,
    clock: FrozenClock,
) -> PaymentService:
    return PaymentService(
        repository=repository,
        gateway=gateway,
        entitlements=entitlements,
        event_logger=events,
        clock=clock,
    )
