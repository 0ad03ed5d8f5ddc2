"""Static pricing catalog for paid subscription tiers."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Tuple

from .errors import ValidationError
from .models import PURCHASABLE_TIERS, BillingCycle, SubscriptionTier

DEFAULT_CURRENCY = "NGN"

# Minor units per major unit (kobo per naira).
MINOR_UNIT_FACTOR = 100

HIGHEST_TIER = SubscriptionTier.ENTERPRISE

BILLING_CYCLE_DAYS: Dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.YEARLY: 365,
}


@dataclass(frozen=True)
class PlanPrice:
    """Price of a tier for one billing cycle, in major currency units."""

    tier: SubscriptionTier
    billing_cycle: BillingCycle
    amount: int
    currency: str = DEFAULT_CURRENCY

    @property
    def amount_minor(self) -> int:
        return self.amount * MINOR_UNIT_FACTOR


PRICING_TABLE: Dict[Tuple[SubscriptionTier, BillingCycle], PlanPrice] = {
    (SubscriptionTier.PRO, BillingCycle.MONTHLY): PlanPrice(
        tier=SubscriptionTier.PRO, billing_cycle=BillingCycle.MONTHLY, amount=2999
    ),
    (SubscriptionTier.PRO, BillingCycle.YEARLY): PlanPrice(
        tier=SubscriptionTier.PRO, billing_cycle=BillingCycle.YEARLY, amount=29990
    ),
    (SubscriptionTier.ENTERPRISE, BillingCycle.MONTHLY): PlanPrice(
        tier=SubscriptionTier.ENTERPRISE, billing_cycle=BillingCycle.MONTHLY, amount=9999
    ),
    (SubscriptionTier.ENTERPRISE, BillingCycle.YEARLY): PlanPrice(
        tier=SubscriptionTier.ENTERPRISE, billing_cycle=BillingCycle.YEARLY, amount=99990
    ),
}

TIER_FEATURES: Dict[SubscriptionTier, Tuple[str, ...]] = {
    SubscriptionTier.FREE: (
        "Up to 5 email campaigns per month",
        "Basic email templates",
        "Standard support",
        "Up to 1,000 contacts",
    ),
    SubscriptionTier.PRO: (
        "Unlimited email campaigns",
        "Premium email templates",
        "Advanced analytics",
        "Priority support",
        "Up to 10,000 contacts",
        "A/B testing",
        "Email automation",
    ),
    SubscriptionTier.ENTERPRISE: (
        "Everything in Pro",
        "Unlimited contacts",
        "Custom integrations",
        "Dedicated account manager",
        "White-label options",
        "Advanced reporting",
        "API access",
    ),
}


def get_price(tier: SubscriptionTier, billing_cycle: BillingCycle) -> PlanPrice:
    """Return the price for a purchasable tier and cycle."""

    try:
        return PRICING_TABLE[(tier, billing_cycle)]
    except KeyError as exc:
        raise ValidationError(
            f"No price for subscription tier {tier.value!r} billed {billing_cycle.value!r}",
            errors=[f"subscriptionTier must be one of: {', '.join(t.value for t in PURCHASABLE_TIERS)}"],
        ) from exc


def get_pricing_table() -> Dict[SubscriptionTier, Dict[BillingCycle, PlanPrice]]:
    """Return the catalog grouped by tier."""

    table: Dict[SubscriptionTier, Dict[BillingCycle, PlanPrice]] = {}
    for (tier, cycle), price in PRICING_TABLE.items():
        table.setdefault(tier, {})[cycle] = price
    return table


def get_tier_features(tier: SubscriptionTier) -> Tuple[str, ...]:
    return TIER_FEATURES.get(tier, TIER_FEATURES[SubscriptionTier.FREE])


def calculate_subscription_expiration(billing_cycle: BillingCycle, now: datetime) -> datetime:
    """Return when an entitlement bought at ``now`` lapses."""

    return now + timedelta(days=BILLING_CYCLE_DAYS[billing_cycle])


__all__ = [
    "BILLING_CYCLE_DAYS",
    "DEFAULT_CURRENCY",
    "HIGHEST_TIER",
    "MINOR_UNIT_FACTOR",
    "PRICING_TABLE",
    "PlanPrice",
    "calculate_subscription_expiration",
    "get_price",
    "get_pricing_table",
    "get_tier_features",
]
