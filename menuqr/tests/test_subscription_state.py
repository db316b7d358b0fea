"""
Tests for the subscription state machine.

Tests cover:
- Allowed and rejected status transitions
- Validity (active, trial window, grace period)
- Pending change application and idempotency
- Stale usage counter detection
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from menuqr.entitlements import state
from menuqr.entitlements.state import InvalidTransitionError
from menuqr.models.plan import Plan
from menuqr.models.subscription import PendingChangeType, Subscription, SubscriptionStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _subscription(**overrides):
    """Mock subscription with every field the state machine reads."""
    sub = Mock(spec=Subscription)
    sub.tenant_id = "tenant_123"
    sub.plan_id = "plan_pro"
    sub.status = SubscriptionStatus.ACTIVE.value
    sub.trial_ends_at = None
    sub.grace_period_active = False
    sub.grace_period_ends_at = None
    sub.pending_change_type = None
    sub.pending_plan_id = None
    sub.pending_effective_date = None
    sub.pending_reason = None
    sub.cancel_reason = None
    sub.current_period_start = NOW - timedelta(days=10)
    sub.usage_reset_at = NOW - timedelta(days=10)
    for key, value in overrides.items():
        setattr(sub, key, value)
    return sub


class TestTransitions:
    """Tests for the transition table."""

    @pytest.mark.parametrize("from_status,to_status", [
        ("trial", "active"),
        ("trial", "expired"),
        ("active", "past_due"),
        ("active", "cancelled"),
        ("past_due", "active"),
        ("past_due", "cancelled"),
    ])
    def test_allowed_transitions(self, from_status, to_status):
        assert state.can_transition(from_status, to_status) is True
        state.assert_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        ("cancelled", "active"),
        ("expired", "active"),
        ("expired", "trial"),
        ("past_due", "trial"),
        ("active", "trial"),
    ])
    def test_rejected_transitions(self, from_status, to_status):
        assert state.can_transition(from_status, to_status) is False
        with pytest.raises(InvalidTransitionError) as exc_info:
            state.assert_transition(from_status, to_status)

        assert exc_info.value.from_status == from_status
        assert exc_info.value.to_status == to_status

    def test_every_non_terminal_state_can_cancel(self):
        for status in SubscriptionStatus:
            if state.is_terminal(status):
                continue
            assert state.can_transition(status, SubscriptionStatus.CANCELLED)

    def test_terminal_states(self):
        assert state.is_terminal("cancelled") is True
        assert state.is_terminal(SubscriptionStatus.EXPIRED) is True
        assert state.is_terminal("past_due") is False


class TestValidity:
    """Tests for is_valid and its components."""

    def test_active_is_valid(self):
        assert state.is_valid(_subscription(), NOW) is True

    def test_trial_before_end_is_valid(self):
        sub = _subscription(status="trial", trial_ends_at=NOW + timedelta(days=3))

        assert state.is_valid(sub, NOW) is True
        assert state.is_in_trial(sub, NOW) is True
        assert state.trial_days_remaining(sub, NOW) == 3

    def test_trial_after_end_is_invalid(self):
        """A trial whose end passed is invalid even before the expiry job runs."""
        sub = _subscription(status="trial", trial_ends_at=NOW - timedelta(seconds=1))

        assert state.is_valid(sub, NOW) is False
        assert state.trial_days_remaining(sub, NOW) == 0

    def test_trial_exactly_at_end_is_invalid(self):
        sub = _subscription(status="trial", trial_ends_at=NOW)

        assert state.is_valid(sub, NOW) is False

    def test_naive_trial_end_treated_as_utc(self):
        """SQLite returns naive datetimes."""
        naive_end = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        sub = _subscription(status="trial", trial_ends_at=naive_end)

        assert state.is_valid(sub, NOW) is True

    def test_past_due_without_grace_is_invalid(self):
        assert state.is_valid(_subscription(status="past_due"), NOW) is False

    def test_past_due_in_grace_is_valid(self):
        sub = _subscription(
            status="past_due",
            grace_period_active=True,
            grace_period_ends_at=NOW + timedelta(days=2),
        )

        assert state.is_valid(sub, NOW) is True
        assert state.is_in_grace_period(sub, NOW) is True

    def test_elapsed_grace_is_invalid(self):
        sub = _subscription(
            status="past_due",
            grace_period_active=True,
            grace_period_ends_at=NOW - timedelta(minutes=1),
        )

        assert state.is_valid(sub, NOW) is False

    def test_terminal_states_never_in_grace(self):
        sub = _subscription(
            status="cancelled",
            grace_period_active=True,
            grace_period_ends_at=NOW + timedelta(days=2),
        )

        assert state.is_in_grace_period(sub, NOW) is False
        assert state.is_valid(sub, NOW) is False

    def test_expired_is_invalid(self):
        assert state.is_valid(_subscription(status="expired"), NOW) is False


class TestPendingChanges:
    """Tests for pending change application."""

    def test_no_pending_change(self):
        sub = _subscription()

        assert state.pending_change_due(sub, NOW) is False
        assert state.apply_pending_change(sub, now=NOW) is None

    def test_pending_change_not_yet_due(self):
        sub = _subscription(
            pending_change_type="downgrade",
            pending_plan_id="plan_free",
            pending_effective_date=NOW + timedelta(days=1),
        )

        assert state.pending_change_due(sub, NOW) is False
        assert state.apply_pending_change(sub, now=NOW) is None
        assert sub.plan_id == "plan_pro"

    def test_due_downgrade_switches_plan_and_counts_overflow(self):
        sub = _subscription(
            pending_change_type=PendingChangeType.DOWNGRADE.value,
            pending_plan_id="plan_free",
            pending_effective_date=NOW - timedelta(minutes=1),
        )
        free_plan = Plan(id="plan_free", limits={"dishes": 15, "campaigns": 0})

        outcome = state.apply_pending_change(
            sub, new_plan=free_plan, usage={"dishes": 40, "campaigns": 3}, now=NOW,
        )

        assert outcome.change_type == "downgrade"
        assert outcome.from_plan_id == "plan_pro"
        assert outcome.to_plan_id == "plan_free"
        assert outcome.archived_dishes == 25
        assert outcome.archived_campaigns == 3
        assert sub.plan_id == "plan_free"
        assert sub.previous_plan_id == "plan_pro"
        assert sub.pending_change_type is None

    def test_applying_twice_is_a_noop(self):
        """Idempotent: the second application finds no pending change."""
        sub = _subscription(
            pending_change_type="downgrade",
            pending_plan_id="plan_free",
            pending_effective_date=NOW,
        )

        first = state.apply_pending_change(sub, now=NOW)
        second = state.apply_pending_change(sub, now=NOW)

        assert first is not None
        assert second is None
        assert sub.plan_id == "plan_free"

    def test_due_cancellation_cancels(self):
        sub = _subscription(
            pending_change_type=PendingChangeType.CANCELLATION.value,
            pending_effective_date=NOW,
            pending_reason="Too expensive",
        )

        outcome = state.apply_pending_change(sub, now=NOW)

        assert outcome.change_type == "cancellation"
        assert sub.status == "cancelled"
        assert sub.cancelled_at == NOW
        assert sub.cancel_reason == "Too expensive"
        assert sub.plan_id == "plan_pro"

    def test_pending_change_values_do_not_mutate(self):
        sub = _subscription(
            pending_change_type="downgrade",
            pending_plan_id="plan_free",
            pending_effective_date=NOW,
        )

        values, outcome = state.pending_change_values(sub, now=NOW)

        assert values["plan_id"] == "plan_free"
        assert values["pending_change_type"] is None
        assert sub.plan_id == "plan_pro"
        assert sub.pending_change_type == "downgrade"


class TestUsageHelpers:
    """Tests for usage reset detection and overflow counting."""

    def test_needs_usage_reset_when_reset_before_period_start(self):
        sub = _subscription(
            current_period_start=NOW,
            usage_reset_at=NOW - timedelta(days=30),
        )

        assert state.needs_usage_reset(sub) is True

    def test_no_reset_needed_within_period(self):
        assert state.needs_usage_reset(_subscription()) is False

    def test_never_reset_needs_reset(self):
        assert state.needs_usage_reset(_subscription(usage_reset_at=None)) is True

    def test_over_limit(self):
        assert state.over_limit(20, 15) == 5
        assert state.over_limit(10, 15) == 0
        assert state.over_limit(1000, -1) == 0
