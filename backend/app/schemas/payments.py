"""API schemas for payment endpoints."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..payments import (
    BillingCycle,
    EntitlementSnapshot,
    PaymentHistoryPage,
    PaymentRecord,
    PaymentStats,
    PaymentStatus,
    PendingPaymentStats,
    SubscriptionSummary,
    SubscriptionTier,
    UpgradeEligibility,
)
from ..payments.pricing import PlanPrice


class ApiResponse(BaseModel):
    """Uniform envelope returned by every payment endpoint."""

    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True)


class InitializePaymentRequest(BaseModel):
    # Raw strings so the payment validators can report field-level errors.
    subscription_tier: Optional[str] = Field(alias="subscriptionTier", default=None)
    billing_cycle: Optional[str] = Field(alias="billingCycle", default=None)
    email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class VerifyPaymentRequest(BaseModel):
    reference: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class PaymentOut(BaseModel):
    id: str
    reference: str
    user_id: str = Field(alias="userId")
    subscription_tier: SubscriptionTier = Field(alias="subscriptionTier")
    billing_cycle: BillingCycle = Field(alias="billingCycle")
    amount: int
    currency: str
    status: PaymentStatus
    gateway_transaction_id: Optional[str] = Field(alias="gatewayTransactionId", default=None)
    authorization_url: Optional[str] = Field(alias="authorizationUrl", default=None)
    gateway_response: Optional[str] = Field(alias="gatewayResponse", default=None)
    failure_reason: Optional[str] = Field(alias="failureReason", default=None)
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    paid_at: Optional[datetime] = Field(alias="paidAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "PaymentOut":
        return cls(
            id=record.id,
            reference=record.reference,
            user_id=record.user_id,
            subscription_tier=record.subscription_tier,
            billing_cycle=record.billing_cycle,
            amount=record.amount,
            currency=record.currency,
            status=record.status,
            gateway_transaction_id=record.gateway_transaction_id,
            authorization_url=record.authorization_url,
            gateway_response=record.gateway_response,
            failure_reason=record.failure_reason,
            created_at=record.created_at,
            updated_at=record.updated_at,
            paid_at=record.paid_at,
        )


class InitializePaymentResponse(BaseModel):
    authorization_url: str = Field(alias="authorizationUrl")
    reference: str

    model_config = ConfigDict(populate_by_name=True)


class EntitlementOut(BaseModel):
    subscription_tier: SubscriptionTier = Field(alias="subscriptionTier")
    billing_cycle: Optional[BillingCycle] = Field(alias="billingCycle", default=None)
    subscription_expires_at: Optional[datetime] = Field(alias="subscriptionExpiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_snapshot(cls, snapshot: EntitlementSnapshot) -> "EntitlementOut":
        return cls(
            subscription_tier=snapshot.subscription_tier,
            billing_cycle=snapshot.billing_cycle,
            subscription_expires_at=snapshot.subscription_expires_at,
        )


class VerifyPaymentResponse(BaseModel):
    payment: PaymentOut
    entitlement: Optional[EntitlementOut] = None

    model_config = ConfigDict(populate_by_name=True)


class PlanPriceOut(BaseModel):
    amount: int
    currency: str
    billing_cycle: BillingCycle = Field(alias="billingCycle")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_price(cls, price: PlanPrice) -> "PlanPriceOut":
        return cls(amount=price.amount, currency=price.currency, billing_cycle=price.billing_cycle)


class TierPricingOut(BaseModel):
    tier: SubscriptionTier
    monthly: PlanPriceOut
    yearly: PlanPriceOut
    features: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class PaginationOut(BaseModel):
    current_page: int = Field(alias="currentPage")
    total_pages: int = Field(alias="totalPages")
    total_items: int = Field(alias="totalItems")
    items_per_page: int = Field(alias="itemsPerPage")
    has_next_page: bool = Field(alias="hasNextPage")
    has_prev_page: bool = Field(alias="hasPrevPage")

    model_config = ConfigDict(populate_by_name=True)


class PaymentHistoryResponse(BaseModel):
    payments: List[PaymentOut]
    pagination: PaginationOut

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_page(cls, page: PaymentHistoryPage) -> "PaymentHistoryResponse":
        return cls(
            payments=[PaymentOut.from_record(item) for item in page.items],
            pagination=PaginationOut(
                current_page=page.page,
                total_pages=page.total_pages,
                total_items=page.total_items,
                items_per_page=page.limit,
                has_next_page=page.has_next_page,
                has_prev_page=page.has_prev_page,
            ),
        )


class PaymentStatsOut(BaseModel):
    total_payments: int = Field(alias="totalPayments")
    total_amount: int = Field(alias="totalAmount")
    successful_payments: int = Field(alias="successfulPayments")
    failed_payments: int = Field(alias="failedPayments")
    pending_payments: int = Field(alias="pendingPayments")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_stats(cls, stats: PaymentStats) -> "PaymentStatsOut":
        return cls(**stats.model_dump())


class PendingPaymentStatsOut(BaseModel):
    total_pending: int = Field(alias="totalPending")
    expired_pending: int = Field(alias="expiredPending")
    recent_pending: int = Field(alias="recentPending")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_stats(cls, stats: PendingPaymentStats) -> "PendingPaymentStatsOut":
        return cls(**stats.model_dump())


class SubscriptionOut(BaseModel):
    tier: SubscriptionTier
    billing_cycle: Optional[BillingCycle] = Field(alias="billingCycle", default=None)
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)
    is_active: bool = Field(alias="isActive")
    features: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: SubscriptionSummary) -> "SubscriptionOut":
        return cls(
            tier=summary.tier,
            billing_cycle=summary.billing_cycle,
            expires_at=summary.expires_at,
            is_active=summary.is_active,
            features=list(summary.features),
        )


class UpgradeEligibilityOut(BaseModel):
    can_upgrade: bool = Field(alias="canUpgrade")
    current_tier: SubscriptionTier = Field(alias="currentTier")
    highest_tier: SubscriptionTier = Field(alias="highestTier")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_eligibility(cls, eligibility: UpgradeEligibility) -> "UpgradeEligibilityOut":
        return cls(**eligibility.model_dump())


class CleanupResultOut(BaseModel):
    expired_count: int = Field(alias="expiredCount")

    model_config = ConfigDict(populate_by_name=True)


class CleanupMetricsOut(BaseModel):
    runs: int = 0
    payments_expired: int = Field(alias="paymentsExpired", default=0)
    failures: int = 0
    last_run_at: Optional[datetime] = Field(alias="lastRunAt", default=None)
    last_success_at: Optional[datetime] = Field(alias="lastSuccessAt", default=None)
    last_error: Optional[str] = Field(alias="lastError", default=None)
    running: bool = False

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_metrics(cls, metrics: Dict[str, Any], *, running: bool) -> "CleanupMetricsOut":
        return cls(
            runs=metrics.get("runs", 0),
            payments_expired=metrics.get("payments_expired", 0),
            failures=metrics.get("failures", 0),
            last_run_at=metrics.get("last_run_at"),
            last_success_at=metrics.get("last_success_at"),
            last_error=metrics.get("last_error"),
            running=running,
        )
