"""
Subscription state machine.

Provides:
- ALLOWED_TRANSITIONS / can_transition / assert_transition
- is_valid(): the single "does this tenant have any paid access" gate
- pending change helpers: pending_change_due(), apply_pending_change()
- needs_usage_reset(): stale period counter detection

States:
    trial -> active -> {past_due, cancelled, expired}
    past_due -> {active, cancelled}
    any non-terminal -> cancelled
Terminal: cancelled, expired.

Everything here is pure: callers pass `now` so tests can pin time.
Persisting the result (and invalidating the cache) is the caller's job.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple

from menuqr.entitlements.errors import EntitlementError
from menuqr.entitlements.features import ResourceKind, UNLIMITED
from menuqr.models.base import as_utc, utc_now
from menuqr.models.subscription import (
    PendingChangeType,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)


TERMINAL_STATES: FrozenSet[str] = frozenset({
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.EXPIRED.value,
})

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    SubscriptionStatus.TRIAL.value: frozenset({
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.CANCELLED.value,
        SubscriptionStatus.EXPIRED.value,
    }),
    SubscriptionStatus.ACTIVE.value: frozenset({
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.CANCELLED.value,
        SubscriptionStatus.EXPIRED.value,
    }),
    SubscriptionStatus.PAST_DUE.value: frozenset({
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.CANCELLED.value,
    }),
    SubscriptionStatus.CANCELLED.value: frozenset(),
    SubscriptionStatus.EXPIRED.value: frozenset(),
}


class InvalidTransitionError(EntitlementError):
    """Raised when a status change is not allowed by the state machine."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Cannot move subscription from '{from_status}' to '{to_status}'")


def _status_value(status) -> str:
    return status.value if isinstance(status, SubscriptionStatus) else str(status)


def can_transition(from_status, to_status) -> bool:
    allowed = ALLOWED_TRANSITIONS.get(_status_value(from_status), frozenset())
    return _status_value(to_status) in allowed


def assert_transition(from_status, to_status) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(_status_value(from_status), _status_value(to_status))


def is_terminal(status) -> bool:
    return _status_value(status) in TERMINAL_STATES


def is_in_trial(subscription, now: Optional[datetime] = None) -> bool:
    """Trial status with a trial end date still in the future."""
    now = now or utc_now()
    if subscription.status != SubscriptionStatus.TRIAL.value:
        return False
    trial_ends_at = as_utc(subscription.trial_ends_at)
    return trial_ends_at is not None and now < trial_ends_at


def is_in_grace_period(subscription, now: Optional[datetime] = None) -> bool:
    """Grace period flagged active and not yet elapsed. Terminal states never qualify."""
    now = now or utc_now()
    if is_terminal(subscription.status):
        return False
    if not subscription.grace_period_active:
        return False
    ends_at = as_utc(subscription.grace_period_ends_at)
    return ends_at is not None and now < ends_at


def is_valid(subscription, now: Optional[datetime] = None) -> bool:
    """
    Whether the subscription grants any access at `now`.

    active, OR trial before trial_ends_at, OR inside an active grace period.
    Computed fresh from persisted fields on every cache rebuild.
    """
    now = now or utc_now()
    if subscription.status == SubscriptionStatus.ACTIVE.value:
        return True
    if is_in_trial(subscription, now):
        return True
    return is_in_grace_period(subscription, now)


def trial_days_remaining(subscription, now: Optional[datetime] = None) -> int:
    now = now or utc_now()
    if not is_in_trial(subscription, now):
        return 0
    return max(0, (as_utc(subscription.trial_ends_at) - now).days)


def pending_change_due(subscription, now: Optional[datetime] = None) -> bool:
    """A pending change exists and its effective date has passed."""
    now = now or utc_now()
    if subscription.pending_change_type is None:
        return False
    effective = as_utc(subscription.pending_effective_date)
    return effective is None or now >= effective


def needs_usage_reset(subscription) -> bool:
    """
    Period counters are stale when they were last reset before the
    current period started (or never).
    """
    reset_at = as_utc(subscription.usage_reset_at)
    period_start = as_utc(subscription.current_period_start)
    if period_start is None:
        return False
    return reset_at is None or reset_at < period_start


@dataclass
class PlanChangeOutcome:
    """What applying a pending change did."""
    change_type: str
    from_plan_id: Optional[str]
    to_plan_id: Optional[str]
    effective_date: datetime
    archived_dishes: int = 0
    archived_campaigns: int = 0


def over_limit(used: int, limit: int) -> int:
    """How many items exceed `limit`. Unlimited never overflows."""
    if limit == UNLIMITED:
        return 0
    return max(0, used - max(limit, 0))


PENDING_CHANGE_CLEARED = {
    "pending_change_type": None,
    "pending_plan_id": None,
    "pending_effective_date": None,
    "pending_requested_at": None,
    "pending_reason": None,
}


def pending_change_values(
    subscription,
    new_plan=None,
    usage: Optional[Dict[str, int]] = None,
    now: Optional[datetime] = None,
) -> Optional[Tuple[Dict[str, object], PlanChangeOutcome]]:
    """
    Column values that apply the subscription's due pending change.

    Nothing is mutated. The repository writes these values with an UPDATE
    guarded on the pending change still being set, so a periodic job and a
    lazy read racing on the same row apply it at most once.

    Args:
        subscription: Subscription row
        new_plan: Target plan, used to count over-limit items on downgrade
        usage: Current usage counters keyed by resource
        now: Evaluation time

    Returns:
        (values, outcome), or None when no change is pending or due
    """
    now = now or utc_now()
    if not pending_change_due(subscription, now):
        return None

    change_type = subscription.pending_change_type
    values: Dict[str, object] = dict(PENDING_CHANGE_CLEARED)
    outcome = PlanChangeOutcome(
        change_type=change_type,
        from_plan_id=subscription.plan_id,
        to_plan_id=subscription.pending_plan_id,
        effective_date=now,
    )

    if change_type == PendingChangeType.CANCELLATION.value:
        outcome.to_plan_id = subscription.plan_id
        if not is_terminal(subscription.status):
            values["status"] = SubscriptionStatus.CANCELLED.value
            values["cancelled_at"] = now
            values["cancel_reason"] = subscription.pending_reason or subscription.cancel_reason
    elif subscription.pending_plan_id:
        if change_type == PendingChangeType.DOWNGRADE.value and new_plan is not None:
            counts = usage or {}
            outcome.archived_dishes = over_limit(
                counts.get(ResourceKind.DISHES.value, 0),
                new_plan.get_limit(ResourceKind.DISHES),
            )
            outcome.archived_campaigns = over_limit(
                counts.get(ResourceKind.CAMPAIGNS.value, 0),
                new_plan.get_limit(ResourceKind.CAMPAIGNS),
            )
        values["previous_plan_id"] = subscription.plan_id
        values["plan_id"] = subscription.pending_plan_id

    return values, outcome


def apply_pending_change(
    subscription,
    new_plan=None,
    usage: Optional[Dict[str, int]] = None,
    now: Optional[datetime] = None,
) -> Optional[PlanChangeOutcome]:
    """
    Apply a due pending change to an in-memory subscription.

    Idempotent: a second call finds no pending change and returns None.
    """
    computed = pending_change_values(subscription, new_plan, usage, now)
    if computed is None:
        return None
    values, outcome = computed
    for column, value in values.items():
        setattr(subscription, column, value)
    return outcome
