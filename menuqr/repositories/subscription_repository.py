"""
Subscription repository for data access operations.

Encapsulates all database operations for subscriptions with:
- Tenant isolation enforcement (one subscription per tenant)
- Guarded pending-change application (at most once under races)
- Batch lookups for the periodic jobs
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from menuqr.entitlements import state
from menuqr.entitlements.state import PlanChangeOutcome
from menuqr.models.base import utc_now
from menuqr.models.plan import Plan
from menuqr.models.subscription import (
    PendingChangeType,
    PlanChangeHistory,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)


class SubscriptionRepositoryError(Exception):
    """Base exception for subscription repository errors."""
    pass


class SubscriptionAlreadyExistsError(SubscriptionRepositoryError):
    """Tenant already has a subscription."""
    pass


class SubscriptionRepository:
    """
    Repository for subscription data access.

    All tenant-facing lookups are keyed by tenant_id.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get_for_tenant(self, tenant_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.tenant_id == tenant_id
        ).first()

    def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.id == subscription_id
        ).first()

    def create(self, subscription: Subscription) -> Subscription:
        """
        Persist a new subscription.

        Raises:
            SubscriptionAlreadyExistsError: If the tenant already has one
        """
        if self.get_for_tenant(subscription.tenant_id):
            raise SubscriptionAlreadyExistsError(
                f"Tenant {subscription.tenant_id} already has a subscription"
            )
        try:
            self.db.add(subscription)
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            logger.error("Failed to create subscription - integrity error", extra={
                "tenant_id": subscription.tenant_id,
                "error": str(e),
            })
            raise SubscriptionAlreadyExistsError(f"Subscription creation failed: {e}")

        logger.info("Subscription created", extra={
            "tenant_id": subscription.tenant_id,
            "plan_id": subscription.plan_id,
            "status": subscription.status,
        })
        return subscription

    def apply_pending_change_if_due(
        self,
        subscription: Subscription,
        usage: Optional[Dict[str, int]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[PlanChangeOutcome]:
        """
        Apply the subscription's due pending change exactly once.

        The UPDATE only matches while the same pending change is still set,
        so concurrent callers (periodic job, lazy read on another worker)
        race safely: one wins, the rest see rowcount 0 and do nothing.

        Args:
            subscription: Subscription row
            usage: Current usage counters, for downgrade archive counts
            now: Evaluation time

        Returns:
            PlanChangeOutcome if this call applied the change, None otherwise
        """
        now = now or utc_now()
        if not state.pending_change_due(subscription, now):
            return None

        new_plan = None
        if subscription.pending_plan_id:
            new_plan = self.db.query(Plan).filter(Plan.id == subscription.pending_plan_id).first()

        computed = state.pending_change_values(subscription, new_plan, usage, now)
        if computed is None:
            return None
        values, outcome = computed

        guard = [
            Subscription.id == subscription.id,
            Subscription.pending_change_type == subscription.pending_change_type,
        ]
        if subscription.pending_plan_id is None:
            guard.append(Subscription.pending_plan_id.is_(None))
        else:
            guard.append(Subscription.pending_plan_id == subscription.pending_plan_id)

        result = self.db.execute(
            update(Subscription)
            .where(*guard)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            self.db.refresh(subscription)
            logger.info("Pending change already applied elsewhere", extra={
                "tenant_id": subscription.tenant_id,
            })
            return None

        if outcome.change_type != PendingChangeType.CANCELLATION.value:
            self.record_plan_change(subscription, outcome)

        self.db.flush()
        self.db.refresh(subscription)

        logger.info("Pending plan change applied", extra={
            "tenant_id": subscription.tenant_id,
            "change_type": outcome.change_type,
            "from_plan_id": outcome.from_plan_id,
            "to_plan_id": outcome.to_plan_id,
            "archived_dishes": outcome.archived_dishes,
            "archived_campaigns": outcome.archived_campaigns,
        })
        return outcome

    def record_plan_change(self, subscription: Subscription, outcome: PlanChangeOutcome) -> PlanChangeHistory:
        entry = PlanChangeHistory(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            from_plan_id=outcome.from_plan_id,
            to_plan_id=outcome.to_plan_id,
            change_type=outcome.change_type,
            effective_date=outcome.effective_date,
            archived_dishes=outcome.archived_dishes,
            archived_campaigns=outcome.archived_campaigns,
        )
        self.db.add(entry)
        return entry

    def get_plan_changes(self, tenant_id: str) -> List[PlanChangeHistory]:
        return (
            self.db.query(PlanChangeHistory)
            .filter(PlanChangeHistory.tenant_id == tenant_id)
            .order_by(PlanChangeHistory.effective_date.asc())
            .all()
        )

    def get_expired_trials(self, now: Optional[datetime] = None) -> List[Subscription]:
        """Trials whose end date has passed. Used by the trial expiry job."""
        now = now or utc_now()
        return self.db.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.TRIAL.value,
            Subscription.trial_ends_at <= now,
        ).all()

    def get_due_pending_changes(self, now: Optional[datetime] = None) -> List[Subscription]:
        now = now or utc_now()
        return self.db.query(Subscription).filter(
            Subscription.pending_change_type.isnot(None),
            Subscription.pending_effective_date <= now,
        ).all()

    def get_expired_grace_periods(self, now: Optional[datetime] = None) -> List[Subscription]:
        now = now or utc_now()
        return self.db.query(Subscription).filter(
            Subscription.grace_period_active == True,  # noqa: E712
            Subscription.grace_period_ends_at <= now,
        ).all()
