"""Payments domain package handling subscription purchases and reconciliation."""

from .errors import (
    GatewayError,
    InternalError,
    NotFoundError,
    PaymentError,
    UnauthorizedError,
    ValidationError,
)
from .models import (
    BillingCycle,
    EntitlementSnapshot,
    GatewayInitialization,
    GatewayVerification,
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
from .service import (
    EntitlementStore,
    PaymentEventLogger,
    PaymentRepository,
    PaymentService,
    generate_reference,
)

__all__ = [
    "BillingCycle",
    "EntitlementSnapshot",
    "EntitlementStore",
    "GatewayError",
    "GatewayInitialization",
    "GatewayVerification",
    "InitializedPayment",
    "InternalError",
    "NotFoundError",
    "PaymentAuditEvent",
    "PaymentAuditEventType",
    "PaymentError",
    "PaymentEventLogger",
    "PaymentHistoryPage",
    "PaymentReceipt",
    "PaymentRecord",
    "PaymentRepository",
    "PaymentService",
    "PaymentStats",
    "PaymentStatus",
    "PendingPaymentStats",
    "SubscriptionSummary",
    "SubscriptionTier",
    "UnauthorizedError",
    "UpgradeEligibility",
    "ValidationError",
    "VerificationResult",
    "generate_reference",
]
