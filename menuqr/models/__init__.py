"""
Database models for plans, subscriptions, and usage counters.

Tenant-scoped models inherit from TenantScopedMixin.
Plans are global.
"""

from menuqr.models.base import TimestampMixin, TenantScopedMixin
from menuqr.models.plan import Plan
from menuqr.models.subscription import (
    Subscription,
    SubscriptionStatus,
    BillingCycle,
    PendingChangeType,
    GracePeriodReason,
    PlanChangeHistory,
)
from menuqr.models.usage import UsageCounter

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "BillingCycle",
    "PendingChangeType",
    "GracePeriodReason",
    "PlanChangeHistory",
    "UsageCounter",
]
