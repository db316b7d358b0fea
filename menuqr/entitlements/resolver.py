"""
Entitlement resolver - Subscription + Plan -> ResolvedEntitlement.

Pure: no I/O, no clock reads beyond the injected `now`. Applying a due
pending change is a persisted write, so it happens in EntitlementService
before resolve() is called; resolve() itself never mutates its inputs.

CRITICAL: Fail-closed. An invalid subscription resolves to ZERO features
regardless of what its plan enables.
"""

from datetime import datetime
from typing import Optional

from menuqr.entitlements.models import ResolvedEntitlement
from menuqr.entitlements import state
from menuqr.models.base import as_utc, utc_now


def resolve(subscription, plan, now: Optional[datetime] = None) -> ResolvedEntitlement:
    """
    Resolve the effective entitlement for a subscription bound to a plan.

    Args:
        subscription: Subscription row (or any object with the same fields)
        plan: The plan currently bound to the subscription
        now: Evaluation time (defaults to current UTC time)

    Returns:
        ResolvedEntitlement; `features` is empty when the subscription is invalid
    """
    now = now or utc_now()
    valid = state.is_valid(subscription, now)

    features = frozenset(plan.enabled_feature_list()) if valid else frozenset()

    return ResolvedEntitlement(
        tenant_id=subscription.tenant_id,
        plan_id=plan.id,
        plan_slug=plan.slug,
        plan_name=plan.name,
        tier=plan.tier,
        status=subscription.status,
        is_valid=valid,
        features=features,
        limits=dict(plan.limits or {}),
        in_trial=state.is_in_trial(subscription, now),
        in_grace_period=state.is_in_grace_period(subscription, now),
        trial_ends_at=as_utc(subscription.trial_ends_at),
        current_period_end=as_utc(subscription.current_period_end),
        resolved_at=now,
    )
