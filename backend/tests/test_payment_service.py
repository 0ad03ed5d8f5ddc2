"""Unit tests for payment initialization and reconciliation."""
from __future__ import annotations

import re
from datetime import timedelta
from threading import Barrier, Thread
from typing import List

import pytest

from backend.app.payments import (
    BillingCycle,
    GatewayError,
    NotFoundError,
    PaymentAuditEventType,
    PaymentRecord,
    PaymentStatus,
    SubscriptionTier,
    ValidationError,
)
from backend.app.payments.pricing import get_tier_features
from backend.app.payments.service import generate_reference
from backend.app.payments.webhooks import WebhookEvent


def _initialize(service, *, user_id="user-1", tier=SubscriptionTier.PRO, cycle=BillingCycle.MONTHLY):
    return service.initialize_payment(
        user_id=user_id,
        subscription_tier=tier,
        billing_cycle=cycle,
        email="e@x.com",
    )


def _event_types(events) -> List[PaymentAuditEventType]:
    return [event.event_type for event in events.events]


def test_generate_reference_uses_prefix_timestamp_and_suffix(clock):
    reference = generate_reference("MailQuill", clock.now)

    millis = int(clock.now.timestamp() * 1000)
    assert re.fullmatch(rf"MailQuill_{millis}_[A-Z0-9]{{6}}", reference)


def test_initialize_payment_creates_pending_record_and_gateway_session(payment_service, repository, gateway, events):
    initialized = _initialize(payment_service)

    stored = repository.payments[initialized.reference]
    assert stored.status == PaymentStatus.PENDING
    assert stored.amount == 2999
    assert stored.currency == "NGN"
    assert stored.gateway_access_code == "access_1"
    assert stored.authorization_url == initialized.authorization_url
    assert stored.gateway_transaction_id is None
    assert stored.paid_at is None

    assert gateway.initialized == [
        {
            "amount": 299900,
            "currency": "NGN",
            "email": "e@x.com",
            "reference": initialized.reference,
            "metadata": {"user_id": "user-1", "subscription_tier": "pro", "billing_cycle": "monthly"},
        }
    ]
    assert _event_types(events) == [PaymentAuditEventType.PAYMENT_INITIALIZED]


def test_initialize_payment_issues_unique_references(payment_service):
    references = {_initialize(payment_service).reference for _ in range(5)}

    assert len(references) == 5


def test_initialize_payment_rejects_free_tier(payment_service, gateway):
    with pytest.raises(ValidationError):
        _initialize(payment_service, tier=SubscriptionTier.FREE)

    assert gateway.initialized == []


def test_initialize_payment_marks_record_failed_when_gateway_fails(payment_service, repository, gateway):
    gateway.fail_initialize = True

    with pytest.raises(GatewayError):
        _initialize(payment_service)

    (payment,) = repository.payments.values()
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Payment gateway initialization failed"


def test_reconcile_success_completes_payment_and_grants_monthly_entitlement(
    payment_service, repository, entitlements, events, clock
):
    reference = _initialize(payment_service).reference

    payment = payment_service.reconcile(reference)

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.paid_at == clock.now
    assert payment.gateway_transaction_id == f"trx_{reference}"
    entitlement = entitlements.entitlements["user-1"]
    assert entitlement.subscription_tier == SubscriptionTier.PRO
    assert entitlement.billing_cycle == BillingCycle.MONTHLY
    assert entitlement.subscription_expires_at == clock.now + timedelta(days=30)
    assert _event_types(events)[-2:] == [
        PaymentAuditEventType.PAYMENT_COMPLETED,
        PaymentAuditEventType.SUBSCRIPTION_ACTIVATED,
    ]


def test_reconcile_yearly_payment_grants_365_days(payment_service, entitlements, clock):
    reference = _initialize(payment_service, tier=SubscriptionTier.ENTERPRISE, cycle=BillingCycle.YEARLY).reference

    payment_service.reconcile(reference)

    entitlement = entitlements.entitlements["user-1"]
    assert entitlement.subscription_tier == SubscriptionTier.ENTERPRISE
    assert entitlement.subscription_expires_at == clock.now + timedelta(days=365)


def test_reconcile_terminal_payment_is_a_no_op(payment_service, repository, gateway, entitlements, clock):
    reference = _initialize(payment_service).reference
    first = payment_service.reconcile(reference)
    verify_calls = len(gateway.verify_calls)

    clock.advance(minutes=5)
    second = payment_service.reconcile(reference)

    assert second == first
    assert second.paid_at == first.paid_at
    assert len(gateway.verify_calls) == verify_calls
    assert len(entitlements.writes) == 1


def test_reconcile_failed_gateway_status_leaves_entitlement_untouched(payment_service, gateway, entitlements, events):
    reference = _initialize(payment_service).reference
    gateway.statuses[reference] = "failed"

    payment = payment_service.reconcile(reference)

    assert payment.status == PaymentStatus.FAILED
    assert payment.paid_at is None
    assert entitlements.writes == []
    assert entitlements.entitlements["user-1"].subscription_tier == SubscriptionTier.FREE
    assert _event_types(events)[-1] == PaymentAuditEventType.PAYMENT_FAILED


@pytest.mark.parametrize("gateway_status", ["ongoing", "abandoned", "processing", ""])
def test_reconcile_unsettled_gateway_status_keeps_payment_pending(payment_service, gateway, entitlements, gateway_status):
    reference = _initialize(payment_service).reference
    gateway.statuses[reference] = gateway_status

    payment = payment_service.reconcile(reference)

    assert payment.status == PaymentStatus.PENDING
    assert entitlements.writes == []


def test_reconcile_amount_mismatch_marks_payment_failed(payment_service, gateway, entitlements):
    reference = _initialize(payment_service).reference
    gateway.amount_overrides[reference] = 100

    payment = payment_service.reconcile(reference)

    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason.startswith("Amount mismatch")
    assert entitlements.writes == []


def test_reconcile_currency_mismatch_marks_payment_failed(payment_service, gateway, entitlements):
    reference = _initialize(payment_service).reference
    gateway.currency_overrides[reference] = "usd"

    payment = payment_service.reconcile(reference)

    assert payment.status == PaymentStatus.FAILED
    assert "Currency mismatch" in payment.failure_reason
    assert entitlements.writes == []


def test_reconcile_gateway_error_leaves_payment_pending(payment_service, repository, gateway):
    reference = _initialize(payment_service).reference
    gateway.fail_verify = True

    with pytest.raises(GatewayError):
        payment_service.reconcile(reference)

    assert repository.payments[reference].status == PaymentStatus.PENDING


def test_reconcile_unknown_reference_raises_not_found(payment_service):
    with pytest.raises(NotFoundError):
        payment_service.reconcile("MailQuill_0_UNKNWN")


def test_concurrent_reconciliation_applies_entitlement_once(payment_service, repository, gateway, entitlements, events):
    reference = _initialize(payment_service).reference
    barrier = Barrier(2, timeout=5)
    gateway.before_verify = lambda _reference: barrier.wait()

    results: List[PaymentRecord] = []
    errors: List[BaseException] = []

    def worker() -> None:
        try:
            results.append(payment_service.reconcile(reference))
        except BaseException as exc:  # pragma: no cover - surfaced by assertion below
            errors.append(exc)

    threads = [Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(gateway.verify_calls) == 2
    assert [payment.status for payment in results] == [PaymentStatus.COMPLETED, PaymentStatus.COMPLETED]
    assert results[0].paid_at == results[1].paid_at
    assert repository.completions == 1
    assert len(entitlements.writes) == 1
    assert _event_types(events).count(PaymentAuditEventType.SUBSCRIPTION_ACTIVATED) == 1


def test_verify_payment_returns_entitlement_for_completed_payment(payment_service):
    reference = _initialize(payment_service).reference

    result = payment_service.verify_payment(user_id="user-1", reference=reference)

    assert result.payment.status == PaymentStatus.COMPLETED
    assert result.entitlement is not None
    assert result.entitlement.subscription_tier == SubscriptionTier.PRO


def test_verify_payment_hides_payments_of_other_users(payment_service, gateway):
    reference = _initialize(payment_service).reference

    with pytest.raises(NotFoundError):
        payment_service.verify_payment(user_id="user-2", reference=reference)

    assert gateway.verify_calls == []


def test_duplicate_webhook_delivery_updates_once(payment_service, repository, gateway, entitlements, clock):
    reference = _initialize(payment_service).reference
    event = WebhookEvent(event="charge.success", reference=reference, status="success")

    first = payment_service.handle_webhook(event)
    clock.advance(seconds=30)
    second = payment_service.handle_webhook(event)

    assert first.paid_at == second.paid_at
    assert len(gateway.verify_calls) == 1
    assert len(entitlements.writes) == 1


def test_handle_webhook_ignores_unrelated_events(payment_service, gateway):
    event = WebhookEvent(event="transfer.success", reference="TRF_1", status="success")

    assert payment_service.handle_webhook(event) is None
    assert gateway.verify_calls == []


def test_end_to_end_initialize_webhook_then_verify(payment_service, repository, entitlements, clock):
    initialized = _initialize(payment_service)
    reference = initialized.reference
    assert initialized.authorization_url == f"https://checkout.test/{reference}"
    assert repository.payments[reference].status == PaymentStatus.PENDING

    clock.advance(minutes=2)
    payment_service.handle_webhook(WebhookEvent(event="charge.success", reference=reference, status="success"))
    completed = repository.payments[reference]
    assert completed.status == PaymentStatus.COMPLETED
    assert entitlements.entitlements["user-1"].subscription_expires_at == clock.now + timedelta(days=30)

    clock.advance(minutes=1)
    result = payment_service.verify_payment(user_id="user-1", reference=reference)

    assert result.payment == completed
    assert repository.payments[reference] == completed
    assert len(entitlements.writes) == 1


def test_list_payments_clamps_paging_and_filters(payment_service, gateway, clock):
    references = []
    for _ in range(3):
        references.append(_initialize(payment_service).reference)
        clock.advance(seconds=1)
    gateway.statuses[references[0]] = "failed"
    payment_service.reconcile(references[0])

    page = payment_service.list_payments("user-1", page=0, limit=500, sort_by="bogus")
    assert page.page == 1
    assert page.limit == 50
    assert [payment.reference for payment in page.items] == list(reversed(references))

    failed = payment_service.list_payments("user-1", status=PaymentStatus.FAILED)
    assert [payment.reference for payment in failed.items] == [references[0]]

    searched = payment_service.list_payments("user-1", search=f"  {references[1][-6:].lower()}  ")
    assert [payment.reference for payment in searched.items] == [references[1]]

    paged = payment_service.list_payments("user-1", page=2, limit=2, sort_order="asc")
    assert [payment.reference for payment in paged.items] == [references[2]]
    assert paged.total_pages == 2
    assert paged.has_prev_page
    assert not paged.has_next_page


def test_payment_stats_count_statuses_and_revenue(payment_service, gateway):
    completed = _initialize(payment_service).reference
    failed = _initialize(payment_service, tier=SubscriptionTier.ENTERPRISE).reference
    _initialize(payment_service)
    gateway.statuses[failed] = "failed"
    payment_service.reconcile(completed)
    payment_service.reconcile(failed)

    stats = payment_service.get_payment_stats()

    assert stats.total_payments == 3
    assert stats.successful_payments == 1
    assert stats.failed_payments == 1
    assert stats.pending_payments == 1
    assert stats.total_amount == 2999


def test_cleanup_expires_only_stale_pending_payments(payment_service, repository, events, clock):
    stale = _initialize(payment_service).reference
    clock.advance(minutes=20)
    recent = _initialize(payment_service).reference
    clock.advance(minutes=15)

    pending_stats = payment_service.get_pending_payment_stats()
    assert (pending_stats.total_pending, pending_stats.expired_pending, pending_stats.recent_pending) == (2, 1, 1)

    assert payment_service.cleanup_expired_payments() == 1

    assert repository.payments[stale].status == PaymentStatus.FAILED
    assert repository.payments[stale].failure_reason.startswith("Payment timeout")
    assert repository.payments[recent].status == PaymentStatus.PENDING
    assert _event_types(events)[-1] == PaymentAuditEventType.PAYMENT_EXPIRED


def test_cleanup_never_overwrites_completed_payment(payment_service, repository, clock):
    reference = _initialize(payment_service).reference
    payment_service.reconcile(reference)
    clock.advance(hours=2)

    assert payment_service.cleanup_expired_payments() == 0
    assert repository.payments[reference].status == PaymentStatus.COMPLETED


def test_cancel_pending_payment(payment_service, repository):
    reference = _initialize(payment_service).reference

    cancelled = payment_service.cancel_pending_payment(reference)

    assert cancelled.status == PaymentStatus.CANCELLED
    assert cancelled.failure_reason == "Manually cancelled by admin"
    with pytest.raises(ValidationError):
        payment_service.cancel_pending_payment(reference)
    with pytest.raises(NotFoundError):
        payment_service.cancel_pending_payment("MailQuill_0_MISSNG")


def test_current_subscription_reports_free_until_purchase_and_after_expiry(payment_service, clock):
    summary = payment_service.get_current_subscription("user-1")
    assert summary.tier == SubscriptionTier.FREE
    assert not summary.is_active
    assert tuple(summary.features) == get_tier_features(SubscriptionTier.FREE)

    payment_service.reconcile(_initialize(payment_service).reference)
    active = payment_service.get_current_subscription("user-1")
    assert active.tier == SubscriptionTier.PRO
    assert active.is_active
    assert active.billing_cycle == BillingCycle.MONTHLY

    clock.advance(days=31)
    lapsed = payment_service.get_current_subscription("user-1")
    assert lapsed.tier == SubscriptionTier.FREE
    assert not lapsed.is_active


def test_cancel_subscription_resets_to_free(payment_service, entitlements, events):
    with pytest.raises(ValidationError):
        payment_service.cancel_subscription("user-1")

    payment_service.reconcile(_initialize(payment_service).reference)
    cancelled = payment_service.cancel_subscription("user-1")

    assert cancelled.subscription_tier == SubscriptionTier.FREE
    assert entitlements.entitlements["user-1"].subscription_tier == SubscriptionTier.FREE
    assert _event_types(events)[-1] == PaymentAuditEventType.SUBSCRIPTION_CANCELLED


def test_can_upgrade_is_false_only_on_highest_tier(payment_service):
    assert payment_service.can_upgrade("user-1").can_upgrade

    payment_service.reconcile(
        _initialize(payment_service, tier=SubscriptionTier.ENTERPRISE, cycle=BillingCycle.YEARLY).reference
    )
    eligibility = payment_service.can_upgrade("user-1")

    assert not eligibility.can_upgrade
    assert eligibility.current_tier == SubscriptionTier.ENTERPRISE
    assert eligibility.highest_tier == SubscriptionTier.ENTERPRISE


def test_subscription_queries_for_unknown_user_raise_not_found(payment_service):
    with pytest.raises(NotFoundError):
        payment_service.get_current_subscription("ghost")


def test_generate_receipt_for_completed_payment(payment_service, clock):
    reference = _initialize(payment_service, cycle=BillingCycle.YEARLY).reference
    payment_service.verify_payment(user_id="user-1", reference=reference)

    receipt = payment_service.generate_receipt(user_id="user-1", reference=reference, customer_name="reader")

    assert receipt.reference == reference
    assert receipt.filename == f"receipt-{reference}.html"
    assert receipt.content_type.startswith("text/html")
    assert f"Receipt # {reference}" in receipt.content
    assert "₦29,990" in receipt.content
    assert "Pro - Yearly" in receipt.content
    assert "June 01, 2024 12:00 UTC" in receipt.content
    assert "June 01, 2025 12:00 UTC" in receipt.content
    assert f"trx_{reference}" in receipt.content
    assert "Reader" in receipt.content
    assert "e@x.com" in receipt.content


def test_generate_receipt_hides_unknown_and_foreign_references(payment_service):
    foreign = _initialize(payment_service, user_id="user-2").reference
    payment_service.verify_payment(user_id="user-2", reference=foreign)

    with pytest.raises(NotFoundError):
        payment_service.generate_receipt(user_id="user-1", reference=foreign)
    with pytest.raises(NotFoundError):
        payment_service.generate_receipt(user_id="user-1", reference="MailQuill_0_UNKNWN")


def test_generate_receipt_requires_completed_payment(payment_service, gateway):
    reference = _initialize(payment_service).reference
    gateway.statuses[reference] = "failed"

    with pytest.raises(ValidationError):
        payment_service.generate_receipt(user_id="user-1", reference=reference)

    payment_service.verify_payment(user_id="user-1", reference=reference)
    with pytest.raises(ValidationError):
        payment_service.generate_receipt(user_id="user-1", reference=reference)
