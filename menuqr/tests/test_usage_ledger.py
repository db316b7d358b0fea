"""
Tests for the usage ledger.

Tests cover:
- Atomic increments and floored decrements
- Limit evaluation (unlimited, zero, at limit)
- Monthly rollover leaves live-inventory counters alone
- Tenant isolation
"""

import pytest

from menuqr.entitlements.features import ResourceKind, UNLIMITED
from menuqr.models.base import as_utc
from menuqr.services.usage_ledger import UsageLedger, evaluate_usage


@pytest.fixture
def ledger(db_session):
    return UsageLedger(db_session)


class TestEvaluateUsage:
    """Tests for limit evaluation."""

    def test_below_limit(self):
        result = evaluate_usage("dishes", 10, 15)

        assert result.allowed is True
        assert result.remaining == 5
        assert result.percent_used == 67

    def test_at_limit_denies(self):
        result = evaluate_usage("dishes", 15, 15)

        assert result.allowed is False
        assert result.remaining == 0
        assert result.percent_used == 100

    def test_unlimited_always_allows(self):
        result = evaluate_usage("orders", 1_000_000, UNLIMITED)

        assert result.allowed is True
        assert result.limit == -1
        assert result.remaining == -1
        assert result.percent_used == 0

    def test_zero_limit_denies(self):
        result = evaluate_usage("sms_credits", 0, 0)

        assert result.allowed is False
        assert result.percent_used == 100

    def test_to_dict(self):
        assert evaluate_usage("tables", 1, 5).to_dict() == {
            "resource": "tables",
            "allowed": True,
            "used": 1,
            "limit": 5,
            "remaining": 4,
            "percent_used": 20,
        }


class TestUsageLedger:
    """Tests for persisted counters."""

    def test_unused_resource_reads_zero(self, ledger):
        assert ledger.get_used("tenant_123", ResourceKind.DISHES) == 0
        assert ledger.get_all("tenant_123") == {}

    def test_increment_creates_and_adds(self, ledger):
        assert ledger.increment("tenant_123", ResourceKind.DISHES) == 1
        assert ledger.increment("tenant_123", "dishes", 4) == 5
        assert ledger.get_used("tenant_123", ResourceKind.DISHES) == 5

    def test_increment_rejects_non_positive_delta(self, ledger):
        with pytest.raises(ValueError):
            ledger.increment("tenant_123", ResourceKind.DISHES, 0)

    def test_unknown_resource_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.increment("tenant_123", "spaceships")

    def test_decrement_floors_at_zero(self, ledger):
        ledger.increment("tenant_123", ResourceKind.TABLES, 2)

        assert ledger.decrement("tenant_123", ResourceKind.TABLES) == 1
        assert ledger.decrement("tenant_123", ResourceKind.TABLES, 5) == 0

    def test_decrement_without_row_is_zero(self, ledger):
        assert ledger.decrement("tenant_123", ResourceKind.TABLES) == 0

    def test_set_usage(self, ledger):
        assert ledger.set_usage("tenant_123", ResourceKind.USERS, 3) == 3
        assert ledger.get_used("tenant_123", ResourceKind.USERS) == 3

        with pytest.raises(ValueError):
            ledger.set_usage("tenant_123", ResourceKind.USERS, -1)

    def test_tenants_are_isolated(self, ledger):
        ledger.increment("tenant_a", ResourceKind.DISHES, 7)
        ledger.increment("tenant_b", ResourceKind.DISHES, 2)

        assert ledger.get_used("tenant_a", ResourceKind.DISHES) == 7
        assert ledger.get_all("tenant_b") == {"dishes": 2}

    def test_check_against_limit(self, ledger):
        ledger.increment("tenant_123", ResourceKind.DISHES, 15)

        result = ledger.check("tenant_123", ResourceKind.DISHES, 15)

        assert result.allowed is False
        assert result.used == 15

    def test_reset_period_counters_only_monthly(self, ledger, make_subscription, frozen_clock, db_session):
        subscription = make_subscription("starter")
        tenant_id = subscription.tenant_id
        ledger.increment(tenant_id, ResourceKind.ORDERS, 30)
        ledger.increment(tenant_id, ResourceKind.SMS_CREDITS, 10)
        ledger.increment(tenant_id, ResourceKind.CAMPAIGNS, 1)
        ledger.increment(tenant_id, ResourceKind.DISHES, 12)

        reset_at = frozen_clock.advance(days=31)
        ledger.reset_period_counters(tenant_id, now=reset_at, subscription=subscription)

        assert ledger.get_all(tenant_id) == {
            "orders": 0,
            "sms_credits": 0,
            "campaigns": 0,
            "dishes": 12,
        }
        assert as_utc(subscription.usage_reset_at) == reset_at

    def test_usage_summary_covers_every_resource(self, ledger, plans):
        ledger.increment("tenant_123", ResourceKind.DISHES, 15)

        summary = ledger.get_usage_summary("tenant_123", plans["free"])

        assert set(summary) == {r.value for r in ResourceKind}
        assert summary["dishes"].allowed is False
        assert summary["orders"].used == 0
