"""
Tests for SubscriptionService.

Tests cover:
- Creation with and without trial
- Upgrades and downgrades (immediate, scheduled, previews)
- Cancellation and reactivation
- Payment failure, grace periods and recovery
- Trial expiry and period renewal
- Cache invalidation after every mutation
"""

import pytest
from datetime import timedelta
from unittest.mock import patch

from menuqr.entitlements.features import Feature, ResourceKind
from menuqr.entitlements.service import EntitlementService
from menuqr.entitlements.state import InvalidTransitionError
from menuqr.models.base import as_utc
from menuqr.models.subscription import GracePeriodReason, Subscription, SubscriptionStatus
from menuqr.repositories.subscription_repository import SubscriptionRepository
from menuqr.services.subscription_service import (
    InvalidPlanChangeError,
    PlanUnavailableError,
    SubscriptionNotFoundError,
    SubscriptionService,
    SubscriptionServiceError,
    period_end_for,
)
from menuqr.services.usage_ledger import UsageLedger


@pytest.fixture
def service(db_session, entitlement_cache, frozen_clock, plans):
    return SubscriptionService(db_session, cache=entitlement_cache, clock=frozen_clock)


@pytest.fixture
def entitlements(db_session, entitlement_cache, frozen_clock):
    return EntitlementService(db_session, cache=entitlement_cache, clock=frozen_clock)


class TestCreateSubscription:
    """Tests for subscription creation."""

    def test_create_with_trial(self, service, frozen_clock):
        subscription = service.create_subscription("tenant_1", "professional")

        assert subscription.status == SubscriptionStatus.TRIAL.value
        assert as_utc(subscription.trial_ends_at) == frozen_clock() + timedelta(days=14)
        assert as_utc(subscription.current_period_end) == period_end_for(frozen_clock(), "monthly")

    def test_create_without_trial(self, service):
        subscription = service.create_subscription("tenant_1", "starter", start_trial=False)

        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.trial_ends_at is None

    def test_free_plan_has_no_trial(self, service):
        subscription = service.create_subscription("tenant_1", "free")

        assert subscription.status == SubscriptionStatus.ACTIVE.value

    def test_yearly_cycle(self, service, frozen_clock):
        subscription = service.create_subscription(
            "tenant_1", "business", billing_cycle="yearly", start_trial=False
        )

        assert as_utc(subscription.current_period_end).year == frozen_clock().year + 1

    def test_one_subscription_per_tenant(self, service):
        service.create_subscription("tenant_1", "starter")

        with pytest.raises(SubscriptionServiceError):
            service.create_subscription("tenant_1", "business")

    def test_unknown_plan(self, service):
        with pytest.raises(PlanUnavailableError):
            service.create_subscription("tenant_1", "platinum")

    def test_inactive_plan(self, service, plans, db_session):
        plans["starter"].is_active = False
        db_session.commit()

        with pytest.raises(PlanUnavailableError):
            service.create_subscription("tenant_1", "starter")

    def test_plan_by_id(self, service, plans):
        subscription = service.create_subscription("tenant_1", plans["business"].id)

        assert subscription.plan_id == plans["business"].id


class TestSubscriptionInfo:
    """Tests for get_subscription_info."""

    def test_info_for_trial(self, service):
        service.create_subscription("tenant_1", "professional")

        info = service.get_subscription_info("tenant_1")

        assert info.plan_slug == "professional"
        assert info.status == "trial"
        assert info.is_valid is True
        assert info.trial_days_remaining == 14
        assert info.pending_change is None

    def test_info_not_found(self, service):
        with pytest.raises(SubscriptionNotFoundError):
            service.get_subscription_info("tenant_missing")

    def test_info_shows_pending_change(self, service, plans):
        service.create_subscription("tenant_1", "business", start_trial=False)
        service.schedule_downgrade("tenant_1", "starter", reason="budget")

        info = service.get_subscription_info("tenant_1")

        assert info.pending_change["type"] == "downgrade"
        assert info.pending_change["plan_id"] == plans["starter"].id
        assert info.pending_change["reason"] == "budget"


class TestChangePlan:
    """Tests for immediate plan changes."""

    def test_upgrade_takes_effect_immediately(self, service, entitlements):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        assert not entitlements.get_entitlement("tenant_1").has_feature(Feature.RESERVATIONS)

        service.change_plan("tenant_1", "professional")

        entitlement = entitlements.get_entitlement("tenant_1")
        assert entitlement.plan_slug == "professional"
        assert entitlement.has_feature(Feature.RESERVATIONS)

    def test_change_records_history(self, service, db_session, plans):
        service.create_subscription("tenant_1", "starter", start_trial=False)

        subscription = service.change_plan("tenant_1", "business")

        assert subscription.previous_plan_id == plans["starter"].id
        changes = SubscriptionRepository(db_session).get_plan_changes("tenant_1")
        assert len(changes) == 1
        assert changes[0].change_type == "upgrade"
        assert changes[0].to_plan_id == plans["business"].id

    def test_downgrade_counts_archived_items(self, service, db_session):
        service.create_subscription("tenant_1", "professional", start_trial=False)
        UsageLedger(db_session).increment("tenant_1", ResourceKind.DISHES, 60)

        service.change_plan("tenant_1", "starter")

        change = SubscriptionRepository(db_session).get_plan_changes("tenant_1")[0]
        assert change.change_type == "downgrade"
        assert change.archived_dishes == 10

    def test_immediate_restarts_period(self, service, frozen_clock):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        frozen_clock.advance(days=10)

        subscription = service.change_plan("tenant_1", "business", immediate=True, reset_usage=True)

        assert as_utc(subscription.current_period_start) == frozen_clock()
        assert as_utc(subscription.usage_reset_at) == frozen_clock()

    def test_same_plan_rejected(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)

        with pytest.raises(InvalidPlanChangeError):
            service.change_plan("tenant_1", "starter")

    def test_terminal_subscription_rejected(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        service.cancel_subscription("tenant_1")

        with pytest.raises(InvalidPlanChangeError):
            service.change_plan("tenant_1", "business")

    def test_change_invalidates_cache(self, service, entitlement_cache, entitlements):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        entitlements.get_entitlement("tenant_1")

        with patch.object(entitlement_cache, "invalidate", wraps=entitlement_cache.invalidate) as invalidate:
            service.change_plan("tenant_1", "business")

        invalidate.assert_called_once_with("tenant_1", reason="plan_upgrade")
        assert entitlement_cache.get("tenant_1") is None


class TestPreviews:
    """Tests for upgrade and downgrade previews."""

    def test_preview_upgrade(self, service, plans):
        service.create_subscription("tenant_1", "starter", start_trial=False)

        preview = service.preview_upgrade("tenant_1", "professional")

        gained = {f["feature"] for f in preview.new_features}
        assert "reservations" in gained
        assert "orders" not in gained
        assert preview.new_limits["dishes"] == 150
        assert preview.price_difference["monthly"] == 7900 - 2900

    def test_preview_upgrade_without_subscription(self, service):
        preview = service.preview_upgrade("tenant_new", "starter")

        assert preview.price_difference["monthly"] == 2900

    def test_preview_downgrade(self, service, db_session):
        service.create_subscription("tenant_1", "enterprise", start_trial=False)
        UsageLedger(db_session).increment("tenant_1", ResourceKind.DISHES, 200)

        preview = service.preview_downgrade("tenant_1", "professional")

        lost = {f["feature"] for f in preview.lost_features}
        assert {"loyalty_program", "delivery_module"} <= lost
        assert preview.over_limits == [{"resource": "dishes", "current": 200, "new_limit": 150}]
        assert any("loyalty points" in w for w in preview.warnings)
        assert any("deliveries" in w for w in preview.warnings)
        assert any("Excess items will be archived" in w for w in preview.warnings)


class TestScheduleDowngrade:
    """Tests for scheduled and immediate downgrades."""

    def test_scheduled_for_period_end(self, service, entitlements, plans):
        subscription = service.create_subscription("tenant_1", "business", start_trial=False)
        period_end = as_utc(subscription.current_period_end)

        result = service.schedule_downgrade("tenant_1", "starter")

        assert result.scheduled is True
        assert result.effective_date == period_end
        assert result.to_plan_id == plans["starter"].id
        # Still on business until the period ends
        assert entitlements.get_entitlement("tenant_1").plan_slug == "business"

    def test_immediate_downgrade(self, service, entitlements):
        service.create_subscription("tenant_1", "business", start_trial=False)

        result = service.schedule_downgrade("tenant_1", "starter", immediate=True)

        assert result.scheduled is False
        assert entitlements.get_entitlement("tenant_1").plan_slug == "starter"

    def test_not_a_downgrade(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)

        with pytest.raises(InvalidPlanChangeError):
            service.schedule_downgrade("tenant_1", "business")

    def test_cancel_scheduled_change(self, service, frozen_clock, entitlements):
        service.create_subscription("tenant_1", "business", start_trial=False)
        service.schedule_downgrade("tenant_1", "starter")

        assert service.cancel_scheduled_change("tenant_1") is True
        assert service.cancel_scheduled_change("tenant_1") is False

        frozen_clock.advance(days=40)
        assert entitlements.get_entitlement("tenant_1").plan_slug == "business"

    def test_apply_due_pending_change(self, service, frozen_clock, plans):
        service.create_subscription("tenant_1", "business", start_trial=False)
        service.schedule_downgrade("tenant_1", "starter")

        assert service.apply_due_pending_change("tenant_1") is None

        frozen_clock.advance(days=31)
        outcome = service.apply_due_pending_change("tenant_1")

        assert outcome.to_plan_id == plans["starter"].id
        assert service.get_subscription("tenant_1").plan_id == plans["starter"].id
        assert service.apply_due_pending_change("tenant_1") is None


class TestCancellation:
    """Tests for cancellation and reactivation."""

    def test_cancel_immediately(self, service, entitlements):
        service.create_subscription("tenant_1", "starter", start_trial=False)

        subscription = service.cancel_subscription("tenant_1", reason="closing")

        assert subscription.status == "cancelled"
        assert subscription.cancel_reason == "closing"
        assert entitlements.get_entitlement("tenant_1").is_valid is False

    def test_cancel_twice_is_invalid_transition(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        service.cancel_subscription("tenant_1")

        with pytest.raises(InvalidTransitionError):
            service.cancel_subscription("tenant_1")

    def test_cancel_at_period_end(self, service, frozen_clock, entitlements):
        service.create_subscription("tenant_1", "starter", start_trial=False)

        subscription = service.cancel_subscription("tenant_1", at_period_end=True)

        assert subscription.status == "active"
        assert subscription.pending_change_type == "cancellation"
        assert entitlements.get_entitlement("tenant_1").is_valid is True

        frozen_clock.advance(days=32)
        service.apply_due_pending_change("tenant_1")
        assert service.get_subscription("tenant_1").status == "cancelled"

    def test_reactivate_withdraws_scheduled_cancellation(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        service.cancel_subscription("tenant_1", at_period_end=True)

        subscription = service.reactivate_subscription("tenant_1")

        assert subscription.status == "active"
        assert subscription.pending_change_type is None

    def test_reactivate_cancelled_starts_new_term(self, service, frozen_clock, entitlements):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        service.cancel_subscription("tenant_1")
        frozen_clock.advance(days=5)

        subscription = service.reactivate_subscription("tenant_1")

        assert subscription.status == "active"
        assert subscription.cancelled_at is None
        assert as_utc(subscription.current_period_start) == frozen_clock()
        assert as_utc(subscription.current_period_end) == frozen_clock() + timedelta(days=30)
        assert entitlements.get_entitlement("tenant_1").is_valid is True

    def test_reactivate_active_rejected(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)

        with pytest.raises(InvalidPlanChangeError):
            service.reactivate_subscription("tenant_1")


class TestPaymentState:
    """Tests for past_due, grace periods and recovery."""

    def test_past_due_with_grace_keeps_access(self, service, entitlements, frozen_clock):
        service.create_subscription("tenant_1", "professional", start_trial=False)

        subscription = service.mark_past_due("tenant_1")

        assert subscription.status == "past_due"
        assert subscription.grace_period_reason == GracePeriodReason.PAYMENT_FAILED.value
        assert as_utc(subscription.grace_period_ends_at) == frozen_clock() + timedelta(days=7)
        entitlement = entitlements.get_entitlement("tenant_1")
        assert entitlement.is_valid is True
        assert entitlement.in_grace_period is True

    def test_past_due_without_grace_loses_access(self, service, entitlements):
        service.create_subscription("tenant_1", "professional", start_trial=False)

        service.mark_past_due("tenant_1", start_grace=False)

        assert entitlements.get_entitlement("tenant_1").is_valid is False

    def test_grace_period_days_from_env(self, service, frozen_clock, monkeypatch):
        monkeypatch.setenv("GRACE_PERIOD_DAYS", "3")
        service.create_subscription("tenant_1", "starter", start_trial=False)

        subscription = service.mark_past_due("tenant_1")

        assert as_utc(subscription.grace_period_ends_at) == frozen_clock() + timedelta(days=3)

    def test_activate_recovers(self, service, entitlements):
        service.create_subscription("tenant_1", "professional", start_trial=False)
        service.mark_past_due("tenant_1")

        subscription = service.activate("tenant_1")

        assert subscription.status == "active"
        assert subscription.grace_period_active is False

    def test_end_payment_grace_moves_to_free(self, service, db_session, plans, entitlements):
        service.create_subscription("tenant_1", "professional", start_trial=False)
        service.mark_past_due("tenant_1")

        subscription = service.end_grace_period("tenant_1")

        assert subscription.status == "active"
        assert subscription.plan_id == plans["free"].id
        assert subscription.grace_period_active is False
        changes = SubscriptionRepository(db_session).get_plan_changes("tenant_1")
        assert changes[-1].change_type == "downgrade"
        assert not entitlements.get_entitlement("tenant_1").has_feature(Feature.RESERVATIONS)

    def test_end_trial_grace_expires(self, service):
        service.create_subscription("tenant_1", "professional")
        service.start_grace_period("tenant_1", GracePeriodReason.TRIAL_ENDED, days=3)

        subscription = service.end_grace_period("tenant_1")

        assert subscription.status == "expired"

    def test_end_downgrade_grace_only_clears_flag(self, service, plans):
        service.create_subscription("tenant_1", "business", start_trial=False)
        service.start_grace_period("tenant_1", "downgrade", days=3)

        subscription = service.end_grace_period("tenant_1")

        assert subscription.status == "active"
        assert subscription.plan_id == plans["business"].id
        assert subscription.grace_period_active is False

    def test_grace_period_state_columns(self, service):
        """Grace state is the flag, its window and its reason."""
        service.create_subscription("tenant_1", "starter", start_trial=False)
        subscription = service.mark_past_due("tenant_1")

        grace_columns = {c.name for c in Subscription.__table__.columns if c.name.startswith("grace_")}

        assert grace_columns == {
            "grace_period_active",
            "grace_period_started_at",
            "grace_period_ends_at",
            "grace_period_reason",
        }
        assert subscription.grace_period_started_at is not None

    def test_end_grace_without_grace_is_noop(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)

        assert service.end_grace_period("tenant_1") is None

    def test_grace_on_terminal_rejected(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        service.cancel_subscription("tenant_1")

        with pytest.raises(InvalidPlanChangeError):
            service.start_grace_period("tenant_1", GracePeriodReason.PAYMENT_FAILED)


class TestTrialAndPeriod:
    """Tests for trial expiry and period renewal."""

    def test_expire_trial_moves_to_free(self, service, plans, entitlements):
        service.create_subscription("tenant_1", "professional")

        subscription = service.expire_trial("tenant_1")

        assert subscription.status == "expired"
        assert subscription.plan_id == plans["free"].id
        assert subscription.previous_plan_id == plans["professional"].id
        assert entitlements.get_entitlement("tenant_1").is_valid is False

    def test_expire_active_is_allowed(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)

        assert service.expire_trial("tenant_1").status == "expired"

    def test_expire_cancelled_rejected(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        service.cancel_subscription("tenant_1")

        with pytest.raises(InvalidTransitionError):
            service.expire_trial("tenant_1")

    def test_renew_period(self, service, frozen_clock):
        subscription = service.create_subscription("tenant_1", "starter", start_trial=False)
        old_end = as_utc(subscription.current_period_end)

        subscription = service.renew_period("tenant_1")

        assert as_utc(subscription.current_period_start) == old_end
        assert as_utc(subscription.current_period_end) == period_end_for(old_end, "monthly")

    def test_renew_terminal_rejected(self, service):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        service.cancel_subscription("tenant_1")

        with pytest.raises(InvalidPlanChangeError):
            service.renew_period("tenant_1")

    def test_reset_usage(self, service, db_session, frozen_clock):
        service.create_subscription("tenant_1", "starter", start_trial=False)
        ledger = UsageLedger(db_session)
        ledger.increment("tenant_1", ResourceKind.ORDERS, 25)

        service.reset_usage("tenant_1")

        assert ledger.get_used("tenant_1", ResourceKind.ORDERS) == 0

    def test_unknown_tenant(self, service):
        with pytest.raises(SubscriptionNotFoundError):
            service.renew_period("tenant_missing")
