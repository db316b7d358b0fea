"""
Subscription service for plan lifecycle operations.

Orchestrates:
- Subscription creation (with optional trial)
- Upgrades, downgrades (immediate or at period end) and previews
- Cancellation and reactivation
- Payment-failure handling: past_due, grace periods, recovery
- Period renewal and monthly usage reset

CRITICAL: Every mutating method commits and then invalidates the tenant's
cached entitlement before returning. A gate must never see a stale plan
after the call that changed it has returned.
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from menuqr.entitlements import state
from menuqr.entitlements.cache import EntitlementCacheBackend, get_entitlement_cache
from menuqr.entitlements.features import (
    Feature,
    RESOURCE_DISPLAY_NAMES,
    ResourceKind,
    Tier,
    UNLIMITED,
    feature_display_name,
    tier_index,
)
from menuqr.models.base import as_utc, utc_now
from menuqr.models.plan import Plan
from menuqr.models.subscription import (
    BillingCycle,
    GracePeriodReason,
    PendingChangeType,
    Subscription,
    SubscriptionStatus,
)
from menuqr.repositories.plans_repo import PlansRepository
from menuqr.repositories.subscription_repository import (
    SubscriptionAlreadyExistsError,
    SubscriptionRepository,
)
from menuqr.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 7

# Reactivating a cancelled or expired subscription starts a fresh term
REACTIVATION_PERIOD_DAYS = 30

# Resources checked when previewing a downgrade
DOWNGRADE_CHECKED_RESOURCES = (
    ResourceKind.DISHES,
    ResourceKind.ORDERS,
    ResourceKind.SMS_CREDITS,
    ResourceKind.CAMPAIGNS,
)


def get_grace_period_days() -> int:
    return int(os.getenv("GRACE_PERIOD_DAYS", DEFAULT_GRACE_PERIOD_DAYS))


def period_end_for(start: datetime, billing_cycle: str) -> datetime:
    if billing_cycle == BillingCycle.YEARLY.value:
        return start + relativedelta(years=1)
    return start + relativedelta(months=1)


@dataclass
class SubscriptionInfo:
    """Current subscription information for a tenant."""
    subscription_id: str
    tenant_id: str
    plan_id: str
    plan_slug: str
    plan_name: str
    tier: str
    status: str
    billing_cycle: str
    is_valid: bool
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    trial_ends_at: Optional[datetime] = None
    trial_days_remaining: int = 0
    in_grace_period: bool = False
    grace_period_ends_at: Optional[datetime] = None
    grace_period_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    pending_change: Optional[Dict[str, object]] = None


@dataclass
class UpgradePreview:
    """Features and limits gained by moving to a higher plan."""
    new_features: List[Dict[str, str]] = field(default_factory=list)
    new_limits: Dict[str, int] = field(default_factory=dict)
    price_difference: Dict[str, int] = field(default_factory=dict)


@dataclass
class DowngradePreview:
    """What a tenant would lose by moving to a lower plan."""
    lost_features: List[Dict[str, str]] = field(default_factory=list)
    over_limits: List[Dict[str, object]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class DowngradeResult:
    """Result of scheduling or executing a downgrade."""
    scheduled: bool
    effective_date: datetime
    to_plan_id: str
    archived_dishes: int = 0
    archived_campaigns: int = 0
    message: str = ""


class SubscriptionServiceError(Exception):
    """Base exception for subscription service errors."""
    pass


class SubscriptionNotFoundError(SubscriptionServiceError):
    """Tenant has no subscription."""
    pass


class PlanUnavailableError(SubscriptionServiceError):
    """Requested plan does not exist or is not active."""
    pass


class InvalidPlanChangeError(SubscriptionServiceError):
    """Requested change is not allowed for the current subscription."""
    pass


class SubscriptionService:
    """
    Lifecycle operations on a tenant's single subscription.

    Status changes are validated against the state machine in
    menuqr.entitlements.state; InvalidTransitionError propagates unchanged.
    """

    def __init__(
        self,
        db_session: Session,
        cache: Optional[EntitlementCacheBackend] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize subscription service.

        Args:
            db_session: Database session
            cache: Entitlement cache to invalidate (defaults to the process singleton)
            clock: Time source, injectable for tests
        """
        self.db = db_session
        self.cache = cache if cache is not None else get_entitlement_cache()
        self.clock = clock
        self.subscriptions = SubscriptionRepository(db_session)
        self.plans = PlansRepository(db_session)
        self.usage = UsageLedger(db_session)

    # Helpers

    def _get_subscription(self, tenant_id: str) -> Subscription:
        subscription = self.subscriptions.get_for_tenant(tenant_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"No subscription for tenant {tenant_id}")
        return subscription

    def _get_plan(self, plan_ref: str, require_active: bool = True) -> Plan:
        """Look up a plan by id or slug."""
        plan = self.plans.get_by_id(plan_ref) or self.plans.get_by_slug(plan_ref)
        if plan is None:
            raise PlanUnavailableError(f"Plan not found: {plan_ref}")
        if require_active and not plan.is_active:
            raise PlanUnavailableError(f"Plan is not available: {plan.slug}")
        return plan

    def _get_free_plan(self) -> Plan:
        plan = self.plans.get_by_slug(Tier.FREE.value) or self.plans.get_default_for_tier(Tier.FREE.value)
        if plan is None:
            raise PlanUnavailableError("No free plan configured")
        return plan

    def _commit(self, subscription: Subscription, reason: str) -> Subscription:
        """Persist, then drop the tenant's cached entitlement."""
        self.db.commit()
        self.db.refresh(subscription)
        self.cache.invalidate(subscription.tenant_id, reason=reason)
        return subscription

    def _set_status(self, subscription: Subscription, new_status: SubscriptionStatus) -> None:
        state.assert_transition(subscription.status, new_status)
        subscription.status = new_status.value

    def _clear_grace_period(self, subscription: Subscription) -> None:
        subscription.grace_period_active = False

    def _archive_counts(self, tenant_id: str, new_plan: Plan) -> Dict[str, int]:
        counts = self.usage.get_all(tenant_id)
        return {
            "dishes": state.over_limit(
                counts.get(ResourceKind.DISHES.value, 0), new_plan.get_limit(ResourceKind.DISHES)
            ),
            "campaigns": state.over_limit(
                counts.get(ResourceKind.CAMPAIGNS.value, 0), new_plan.get_limit(ResourceKind.CAMPAIGNS)
            ),
        }

    def _switch_plan(
        self,
        subscription: Subscription,
        new_plan: Plan,
        change_type: PendingChangeType,
        archived: Optional[Dict[str, int]] = None,
    ) -> None:
        now = self.clock()
        archived = archived or {}
        outcome = state.PlanChangeOutcome(
            change_type=change_type.value,
            from_plan_id=subscription.plan_id,
            to_plan_id=new_plan.id,
            effective_date=now,
            archived_dishes=archived.get("dishes", 0),
            archived_campaigns=archived.get("campaigns", 0),
        )
        subscription.previous_plan_id = subscription.plan_id
        subscription.plan_id = new_plan.id
        subscription.clear_pending_change()
        self.subscriptions.record_plan_change(subscription, outcome)

    @staticmethod
    def _is_downgrade(current: Plan, new: Plan) -> bool:
        current_rank = tier_index(current.tier)
        new_rank = tier_index(new.tier)
        if new_rank != current_rank:
            return new_rank < current_rank
        return (new.price_monthly_cents or 0) < (current.price_monthly_cents or 0)

    # Queries

    def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        return self.subscriptions.get_for_tenant(tenant_id)

    def get_subscription_info(self, tenant_id: str) -> SubscriptionInfo:
        """
        Get a tenant's subscription with derived state.

        Raises:
            SubscriptionNotFoundError: If the tenant has no subscription
        """
        subscription = self._get_subscription(tenant_id)
        plan = subscription.plan
        now = self.clock()

        pending = None
        if subscription.has_pending_change:
            pending = {
                "type": subscription.pending_change_type,
                "plan_id": subscription.pending_plan_id,
                "effective_date": as_utc(subscription.pending_effective_date),
                "reason": subscription.pending_reason,
            }

        in_grace = state.is_in_grace_period(subscription, now)
        return SubscriptionInfo(
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            plan_id=plan.id,
            plan_slug=plan.slug,
            plan_name=plan.name,
            tier=plan.tier,
            status=subscription.status,
            billing_cycle=subscription.billing_cycle,
            is_valid=state.is_valid(subscription, now),
            current_period_start=as_utc(subscription.current_period_start),
            current_period_end=as_utc(subscription.current_period_end),
            trial_ends_at=as_utc(subscription.trial_ends_at),
            trial_days_remaining=state.trial_days_remaining(subscription, now),
            in_grace_period=in_grace,
            grace_period_ends_at=as_utc(subscription.grace_period_ends_at) if in_grace else None,
            grace_period_reason=subscription.grace_period_reason if in_grace else None,
            cancelled_at=as_utc(subscription.cancelled_at),
            pending_change=pending,
        )

    # Creation

    def create_subscription(
        self,
        tenant_id: str,
        plan_ref: str,
        billing_cycle: str = BillingCycle.MONTHLY.value,
        start_trial: bool = True,
    ) -> Subscription:
        """
        Create the tenant's subscription.

        Starts in trial when requested and the plan offers trial days,
        otherwise active.

        Raises:
            PlanUnavailableError: If the plan is missing or inactive
            SubscriptionServiceError: If the tenant already has a subscription
        """
        plan = self._get_plan(plan_ref)
        cycle = BillingCycle(billing_cycle).value
        now = self.clock()

        status = SubscriptionStatus.ACTIVE
        trial_ends_at = None
        if start_trial and plan.has_trial:
            status = SubscriptionStatus.TRIAL
            trial_ends_at = now + timedelta(days=plan.trial_days)

        subscription = Subscription(
            tenant_id=tenant_id,
            plan_id=plan.id,
            status=status.value,
            billing_cycle=cycle,
            current_period_start=now,
            current_period_end=period_end_for(now, cycle),
            trial_ends_at=trial_ends_at,
            usage_reset_at=now,
            grace_period_active=False,
        )
        try:
            self.subscriptions.create(subscription)
        except SubscriptionAlreadyExistsError as e:
            raise SubscriptionServiceError(str(e))

        logger.info("Subscription started", extra={
            "tenant_id": tenant_id,
            "plan_slug": plan.slug,
            "status": status.value,
            "billing_cycle": cycle,
        })
        return self._commit(subscription, reason="subscription_created")

    # Plan changes

    def change_plan(
        self,
        tenant_id: str,
        plan_ref: str,
        immediate: bool = False,
        reset_usage: bool = False,
    ) -> Subscription:
        """
        Move the tenant to another plan right away.

        Args:
            tenant_id: Tenant identifier
            plan_ref: Target plan id or slug
            immediate: Start a new billing period now
            reset_usage: Zero the monthly counters

        Raises:
            SubscriptionNotFoundError, PlanUnavailableError
            InvalidPlanChangeError: If the subscription is terminal or already on the plan
        """
        subscription = self._get_subscription(tenant_id)
        new_plan = self._get_plan(plan_ref)

        if state.is_terminal(subscription.status):
            raise InvalidPlanChangeError(
                f"Cannot change plan of a {subscription.status} subscription; reactivate it first"
            )
        if new_plan.id == subscription.plan_id:
            raise InvalidPlanChangeError(f"Tenant is already on plan {new_plan.slug}")

        current_plan = subscription.plan
        if self._is_downgrade(current_plan, new_plan):
            change_type = PendingChangeType.DOWNGRADE
            archived = self._archive_counts(tenant_id, new_plan)
        else:
            change_type = PendingChangeType.UPGRADE
            archived = None

        self._switch_plan(subscription, new_plan, change_type, archived)

        now = self.clock()
        if immediate:
            subscription.current_period_start = now
            subscription.current_period_end = period_end_for(now, subscription.billing_cycle)
        self.db.flush()

        if reset_usage:
            self.usage.reset_period_counters(tenant_id, now=now, subscription=subscription)

        logger.info("Subscription plan changed", extra={
            "tenant_id": tenant_id,
            "from_plan_id": current_plan.id,
            "to_plan_id": new_plan.id,
            "change_type": change_type.value,
            "immediate": immediate,
            "reset_usage": reset_usage,
        })
        return self._commit(subscription, reason=f"plan_{change_type.value}")

    def preview_upgrade(self, tenant_id: str, plan_ref: str) -> UpgradePreview:
        """Features gained, target limits and price difference in cents."""
        new_plan = self._get_plan(plan_ref)
        subscription = self.subscriptions.get_for_tenant(tenant_id)
        current_plan = subscription.plan if subscription else None

        if current_plan is not None:
            current_features = set(current_plan.enabled_feature_list())
        else:
            current_features = set()
        gained = [f for f in new_plan.enabled_feature_list() if f not in current_features]

        return UpgradePreview(
            new_features=[
                {"feature": f, "display_name": feature_display_name(f)} for f in sorted(gained)
            ],
            new_limits=dict(new_plan.limits or {}),
            price_difference={
                "monthly": (new_plan.price_monthly_cents or 0)
                - ((current_plan.price_monthly_cents or 0) if current_plan else 0),
                "yearly": (new_plan.price_yearly_cents or 0)
                - ((current_plan.price_yearly_cents or 0) if current_plan else 0),
            },
        )

    def preview_downgrade(self, tenant_id: str, plan_ref: str) -> DowngradePreview:
        """Features lost and resources over the target plan's limits."""
        subscription = self._get_subscription(tenant_id)
        new_plan = self._get_plan(plan_ref)
        current_plan = subscription.plan

        new_features = set(new_plan.enabled_feature_list())
        lost = sorted(f for f in current_plan.enabled_feature_list() if f not in new_features)

        counts = self.usage.get_all(tenant_id)
        over_limits = []
        warnings = []
        for resource in DOWNGRADE_CHECKED_RESOURCES:
            current = counts.get(resource.value, 0)
            new_limit = new_plan.get_limit(resource)
            if new_limit != UNLIMITED and current > new_limit:
                over_limits.append({
                    "resource": resource.value,
                    "current": current,
                    "new_limit": new_limit,
                })
                warnings.append(
                    f"You have {current} {RESOURCE_DISPLAY_NAMES[resource].lower()} but the new plan "
                    f"allows only {new_limit}. Excess items will be archived."
                )

        if Feature.LOYALTY_PROGRAM.value in lost:
            warnings.append("Customer loyalty points will be preserved but the program will be paused.")
        if Feature.DELIVERY_MODULE.value in lost:
            warnings.append("Active deliveries will complete but new delivery orders will be disabled.")

        return DowngradePreview(
            lost_features=[{"feature": f, "display_name": feature_display_name(f)} for f in lost],
            over_limits=over_limits,
            warnings=warnings,
        )

    def schedule_downgrade(
        self,
        tenant_id: str,
        plan_ref: str,
        reason: Optional[str] = None,
        immediate: bool = False,
    ) -> DowngradeResult:
        """
        Downgrade at the end of the current period, or right away.

        A scheduled downgrade is stored as the subscription's pending change
        and applied at most once, by whichever of the periodic job or the
        next cache-miss resolve gets there first.

        Raises:
            SubscriptionNotFoundError, PlanUnavailableError
            InvalidPlanChangeError: If the target is not a lower plan or the subscription is terminal
        """
        subscription = self._get_subscription(tenant_id)
        new_plan = self._get_plan(plan_ref)
        current_plan = subscription.plan

        if state.is_terminal(subscription.status):
            raise InvalidPlanChangeError(f"Cannot downgrade a {subscription.status} subscription")
        if not self._is_downgrade(current_plan, new_plan):
            raise InvalidPlanChangeError(
                f"Plan {new_plan.slug} is not a downgrade from {current_plan.slug}"
            )

        now = self.clock()
        archived = self._archive_counts(tenant_id, new_plan)

        if immediate:
            self._switch_plan(subscription, new_plan, PendingChangeType.DOWNGRADE, archived)
            logger.info("Downgrade executed immediately", extra={
                "tenant_id": tenant_id,
                "from_plan_id": current_plan.id,
                "to_plan_id": new_plan.id,
                "archived_dishes": archived["dishes"],
                "archived_campaigns": archived["campaigns"],
            })
            self._commit(subscription, reason="plan_downgrade")
            return DowngradeResult(
                scheduled=False,
                effective_date=now,
                to_plan_id=new_plan.id,
                archived_dishes=archived["dishes"],
                archived_campaigns=archived["campaigns"],
                message="Downgrade executed immediately",
            )

        effective_date = as_utc(subscription.current_period_end)
        subscription.pending_change_type = PendingChangeType.DOWNGRADE.value
        subscription.pending_plan_id = new_plan.id
        subscription.pending_effective_date = effective_date
        subscription.pending_requested_at = now
        subscription.pending_reason = reason

        logger.info("Downgrade scheduled", extra={
            "tenant_id": tenant_id,
            "to_plan_id": new_plan.id,
            "effective_date": effective_date.isoformat(),
        })
        self._commit(subscription, reason="downgrade_scheduled")
        return DowngradeResult(
            scheduled=True,
            effective_date=effective_date,
            to_plan_id=new_plan.id,
            archived_dishes=archived["dishes"],
            archived_campaigns=archived["campaigns"],
            message=f"Downgrade scheduled for {effective_date.date().isoformat()}",
        )

    def cancel_scheduled_change(self, tenant_id: str) -> bool:
        """Drop the pending change, if any. Returns whether one was cleared."""
        subscription = self._get_subscription(tenant_id)
        if not subscription.has_pending_change:
            return False

        change_type = subscription.pending_change_type
        subscription.clear_pending_change()
        logger.info("Scheduled change cancelled", extra={
            "tenant_id": tenant_id,
            "change_type": change_type,
        })
        self._commit(subscription, reason="pending_change_cancelled")
        return True

    def apply_due_pending_change(self, tenant_id: str) -> Optional[state.PlanChangeOutcome]:
        """Apply the tenant's pending change if its effective date has passed."""
        subscription = self._get_subscription(tenant_id)
        outcome = self.subscriptions.apply_pending_change_if_due(
            subscription,
            usage=self.usage.get_all(tenant_id),
            now=self.clock(),
        )
        if outcome is not None:
            self._commit(subscription, reason=f"pending_{outcome.change_type}_applied")
        return outcome

    # Cancellation

    def cancel_subscription(
        self,
        tenant_id: str,
        reason: Optional[str] = None,
        at_period_end: bool = False,
    ) -> Subscription:
        """
        Cancel now, or schedule cancellation for the end of the period.

        Raises:
            SubscriptionNotFoundError
            InvalidTransitionError: If the subscription is already terminal
        """
        subscription = self._get_subscription(tenant_id)
        now = self.clock()

        if at_period_end:
            state.assert_transition(subscription.status, SubscriptionStatus.CANCELLED)
            subscription.pending_change_type = PendingChangeType.CANCELLATION.value
            subscription.pending_plan_id = None
            subscription.pending_effective_date = as_utc(subscription.current_period_end)
            subscription.pending_requested_at = now
            subscription.pending_reason = reason
            logger.info("Cancellation scheduled", extra={
                "tenant_id": tenant_id,
                "effective_date": subscription.pending_effective_date.isoformat(),
            })
            return self._commit(subscription, reason="cancellation_scheduled")

        self._set_status(subscription, SubscriptionStatus.CANCELLED)
        subscription.cancelled_at = now
        subscription.cancel_reason = reason
        subscription.clear_pending_change()
        self._clear_grace_period(subscription)

        logger.info("Subscription cancelled", extra={
            "tenant_id": tenant_id,
            "reason": reason,
        })
        return self._commit(subscription, reason="subscription_cancelled")

    def reactivate_subscription(self, tenant_id: str) -> Subscription:
        """
        Undo a cancellation.

        A scheduled cancellation is simply dropped. A cancelled or expired
        subscription starts a new term on its current plan.

        Raises:
            SubscriptionNotFoundError
            InvalidPlanChangeError: If there is nothing to reactivate
        """
        subscription = self._get_subscription(tenant_id)

        if subscription.pending_change_type == PendingChangeType.CANCELLATION.value:
            subscription.clear_pending_change()
            logger.info("Scheduled cancellation withdrawn", extra={"tenant_id": tenant_id})
            return self._commit(subscription, reason="cancellation_withdrawn")

        if not state.is_terminal(subscription.status):
            raise InvalidPlanChangeError(
                f"Subscription is {subscription.status}; nothing to reactivate"
            )

        # Restarting a terminal subscription is a new term, outside the transition table
        now = self.clock()
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.current_period_start = now
        subscription.current_period_end = now + timedelta(days=REACTIVATION_PERIOD_DAYS)
        subscription.cancelled_at = None
        subscription.cancel_reason = None
        subscription.trial_ends_at = None
        subscription.clear_pending_change()
        self._clear_grace_period(subscription)

        logger.info("Subscription reactivated", extra={"tenant_id": tenant_id})
        return self._commit(subscription, reason="subscription_reactivated")

    # Payment state

    def mark_past_due(self, tenant_id: str, start_grace: bool = True) -> Subscription:
        """
        Record a failed payment.

        With start_grace the tenant keeps access for GRACE_PERIOD_DAYS.
        """
        subscription = self._get_subscription(tenant_id)
        self._set_status(subscription, SubscriptionStatus.PAST_DUE)
        if start_grace:
            self._start_grace(subscription, GracePeriodReason.PAYMENT_FAILED)

        logger.warning("Subscription past due", extra={
            "tenant_id": tenant_id,
            "grace_period": start_grace,
        })
        return self._commit(subscription, reason="payment_failed")

    def activate(self, tenant_id: str) -> Subscription:
        """Move a trial or past_due subscription to active (payment succeeded)."""
        subscription = self._get_subscription(tenant_id)
        self._set_status(subscription, SubscriptionStatus.ACTIVE)
        self._clear_grace_period(subscription)

        logger.info("Subscription activated", extra={"tenant_id": tenant_id})
        return self._commit(subscription, reason="subscription_activated")

    def _start_grace(self, subscription: Subscription, reason: GracePeriodReason, days: Optional[int] = None) -> None:
        now = self.clock()
        subscription.grace_period_active = True
        subscription.grace_period_started_at = now
        subscription.grace_period_ends_at = now + timedelta(days=days if days is not None else get_grace_period_days())
        subscription.grace_period_reason = reason.value

    def start_grace_period(
        self,
        tenant_id: str,
        reason: GracePeriodReason,
        days: Optional[int] = None,
    ) -> Subscription:
        """
        Keep access for a limited time while the tenant sorts out billing.

        Raises:
            InvalidPlanChangeError: If the subscription is terminal
        """
        subscription = self._get_subscription(tenant_id)
        reason = GracePeriodReason(reason)
        if state.is_terminal(subscription.status):
            raise InvalidPlanChangeError(
                f"Cannot start a grace period on a {subscription.status} subscription"
            )

        self._start_grace(subscription, reason, days)
        logger.info("Grace period started", extra={
            "tenant_id": tenant_id,
            "reason": reason.value,
            "ends_at": subscription.grace_period_ends_at.isoformat(),
        })
        return self._commit(subscription, reason="grace_period_started")

    def end_grace_period(self, tenant_id: str) -> Optional[Subscription]:
        """
        End the grace period and apply its consequence.

        payment_failed: move to the free plan, status active
        trial_ended: expire the subscription
        downgrade: nothing beyond ending the grace period

        Returns:
            The subscription, or None if no grace period was active
        """
        subscription = self._get_subscription(tenant_id)
        if not subscription.grace_period_active:
            return None

        grace_reason = subscription.grace_period_reason
        self._clear_grace_period(subscription)

        if grace_reason == GracePeriodReason.PAYMENT_FAILED.value:
            free_plan = self._get_free_plan()
            if subscription.plan_id != free_plan.id:
                self._switch_plan(
                    subscription,
                    free_plan,
                    PendingChangeType.DOWNGRADE,
                    self._archive_counts(tenant_id, free_plan),
                )
            if subscription.status != SubscriptionStatus.ACTIVE.value:
                self._set_status(subscription, SubscriptionStatus.ACTIVE)
        elif grace_reason == GracePeriodReason.TRIAL_ENDED.value:
            if state.can_transition(subscription.status, SubscriptionStatus.EXPIRED):
                subscription.status = SubscriptionStatus.EXPIRED.value
            else:
                logger.warning("Trial grace period ended on a non-trial subscription", extra={
                    "tenant_id": tenant_id,
                    "status": subscription.status,
                })

        logger.info("Grace period ended", extra={
            "tenant_id": tenant_id,
            "reason": grace_reason,
            "status": subscription.status,
        })
        return self._commit(subscription, reason="grace_period_ended")

    def expire_trial(self, tenant_id: str) -> Subscription:
        """
        Expire a trial that ran out without conversion.

        The subscription moves to the free plan with status expired.
        """
        subscription = self._get_subscription(tenant_id)
        self._set_status(subscription, SubscriptionStatus.EXPIRED)
        free_plan = self.plans.get_by_slug(Tier.FREE.value) or self.plans.get_default_for_tier(Tier.FREE.value)
        if free_plan is not None and subscription.plan_id != free_plan.id:
            subscription.previous_plan_id = subscription.plan_id
            subscription.plan_id = free_plan.id
        subscription.clear_pending_change()
        self._clear_grace_period(subscription)

        logger.info("Trial expired", extra={"tenant_id": tenant_id})
        return self._commit(subscription, reason="trial_expired")

    # Billing period

    def renew_period(self, tenant_id: str) -> Subscription:
        """
        Start the next billing period after a successful renewal.

        Monthly counters reset lazily on the next entitlement resolve,
        since usage_reset_at is now older than the new period start.
        """
        subscription = self._get_subscription(tenant_id)
        if state.is_terminal(subscription.status):
            raise InvalidPlanChangeError(f"Cannot renew a {subscription.status} subscription")

        start = as_utc(subscription.current_period_end)
        subscription.current_period_start = start
        subscription.current_period_end = period_end_for(start, subscription.billing_cycle)

        logger.info("Billing period renewed", extra={
            "tenant_id": tenant_id,
            "period_end": subscription.current_period_end.isoformat(),
        })
        return self._commit(subscription, reason="period_renewed")

    def reset_usage(self, tenant_id: str) -> Subscription:
        """Zero the tenant's monthly counters now."""
        subscription = self._get_subscription(tenant_id)
        self.usage.reset_period_counters(tenant_id, now=self.clock(), subscription=subscription)
        return self._commit(subscription, reason="usage_reset")
