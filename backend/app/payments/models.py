"""Domain models for subscription payments."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionTier(str, Enum):
    """Subscription tiers a user can hold."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingCycle(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentStatus(str, Enum):
    """Lifecycle status of a payment record."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


TERMINAL_STATUSES = frozenset(
    {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.REFUNDED,
    }
)

PURCHASABLE_TIERS = (SubscriptionTier.PRO, SubscriptionTier.ENTERPRISE)


class PaymentRecord(BaseModel):
    """A single payment attempt correlated with the gateway by ``reference``."""

    id: str
    reference: str = Field(description="Opaque token shared with the gateway and webhooks")
    user_id: str
    subscription_tier: SubscriptionTier
    billing_cycle: BillingCycle
    amount: int = Field(ge=0, description="Price in major currency units")
    currency: str = Field(min_length=3, max_length=3)
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_transaction_id: Optional[str] = None
    gateway_access_code: Optional[str] = None
    authorization_url: Optional[str] = None
    gateway_response: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` once the payment can no longer change state."""
        return self.status in TERMINAL_STATUSES


class EntitlementSnapshot(BaseModel):
    """Subscription entitlement held by a user."""

    user_id: str
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    billing_cycle: Optional[BillingCycle] = None
    subscription_expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_active(self, now: datetime) -> bool:
        if self.subscription_tier == SubscriptionTier.FREE:
            return False
        return self.subscription_expires_at is not None and self.subscription_expires_at > now


class GatewayInitialization(BaseModel):
    """Response of the gateway's transaction initialization call."""

    authorization_url: str
    access_code: str
    reference: str

    model_config = ConfigDict(frozen=True)


class GatewayVerification(BaseModel):
    """Authoritative transaction state reported by the gateway."""

    status: str
    reference: str
    transaction_id: Optional[str] = None
    amount: Optional[int] = Field(default=None, description="Amount in minor units")
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    gateway_response: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class InitializedPayment(BaseModel):
    """Result of a successful payment initialization."""

    authorization_url: str
    reference: str
    payment: PaymentRecord

    model_config = ConfigDict(frozen=True)


class VerificationResult(BaseModel):
    """Reconciled payment together with the owner's resulting entitlement."""

    payment: PaymentRecord
    entitlement: Optional[EntitlementSnapshot] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionSummary(BaseModel):
    """Entitlement as presented to its owner."""

    user_id: str
    tier: SubscriptionTier
    billing_cycle: Optional[BillingCycle] = None
    expires_at: Optional[datetime] = None
    is_active: bool = False
    features: Sequence[str] = Field(default_factory=tuple)

    model_config = ConfigDict(frozen=True)


class UpgradeEligibility(BaseModel):
    can_upgrade: bool
    current_tier: SubscriptionTier
    highest_tier: SubscriptionTier

    model_config = ConfigDict(frozen=True)


class PaymentStats(BaseModel):
    """Aggregate payment statistics for administrators."""

    total_payments: int = 0
    total_amount: int = 0
    successful_payments: int = 0
    failed_payments: int = 0
    pending_payments: int = 0

    model_config = ConfigDict(frozen=True)


class PendingPaymentStats(BaseModel):
    """Pending payments split at the abandonment timeout."""

    total_pending: int = 0
    expired_pending: int = 0
    recent_pending: int = 0

    model_config = ConfigDict(frozen=True)


class PaymentHistoryPage(BaseModel):
    """A page of payment records."""

    items: Sequence[PaymentRecord] = Field(default_factory=tuple)
    page: int = Field(ge=1)
    limit: int = Field(ge=1)
    total_items: int = Field(ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def total_pages(self) -> int:
        return (self.total_items + self.limit - 1) // self.limit

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev_page(self) -> bool:
        return self.page > 1


class PaymentAuditEventType(str, Enum):
    """Activity events emitted by the payment flow."""

    PAYMENT_INITIALIZED = "payment_initialized"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_EXPIRED = "payment_expired"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


class PaymentAuditEvent(BaseModel):
    """Structured activity event for auditing and analytics."""

    event_type: PaymentAuditEventType
    user_id: Optional[str] = None
    reference: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentReceipt(BaseModel):
    """Rendered receipt document for a completed payment."""

    reference: str
    filename: str
    content_type: str
    content: str

    model_config = ConfigDict(frozen=True)
