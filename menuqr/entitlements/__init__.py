"""
Entitlements enforcement system for plan-based feature access control.

This package provides:
- features: Feature catalog, tiers, resource kinds and default limits
- models: ResolvedEntitlement, the immutable per-tenant snapshot
- resolver: resolve(subscription, plan) -> ResolvedEntitlement
- state: Subscription state machine and pending-change helpers
- cache: Two-tier (in-process + Redis) cache with pub/sub invalidation
- service: EntitlementService, the resolve-then-cache entry point
- gates: EntitlementGate, the allow/deny decisions used by the API layer
- audit: Structured audit log of every deny

Resolution order: subscription -> due pending change -> plan -> deny

Only the dependency-free modules are re-exported here; models.plan imports
the feature catalog, so the service layer must be imported explicitly.
"""

from menuqr.entitlements.errors import (
    DenyCode,
    EntitlementError,
    FeatureNotAvailableError,
    FeaturesNotAvailableError,
    NoSubscriptionError,
    NoTenantContextError,
    ResolutionFailureError,
    SubscriptionInactiveError,
    UnknownFeatureError,
    UsageLimitExceededError,
)
from menuqr.entitlements.features import (
    Feature,
    ResourceKind,
    Tier,
    UNLIMITED,
)
from menuqr.entitlements.models import ResolvedEntitlement, EntitlementCacheEntry

__all__ = [
    "DenyCode",
    "EntitlementError",
    "FeatureNotAvailableError",
    "FeaturesNotAvailableError",
    "NoSubscriptionError",
    "NoTenantContextError",
    "ResolutionFailureError",
    "SubscriptionInactiveError",
    "UnknownFeatureError",
    "UsageLimitExceededError",
    "Feature",
    "ResourceKind",
    "Tier",
    "UNLIMITED",
    "ResolvedEntitlement",
    "EntitlementCacheEntry",
]
