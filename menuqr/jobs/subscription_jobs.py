"""
Subscription maintenance jobs.

Runs periodically (every few minutes) to move subscriptions along time-based
transitions:
- expire_trials: trials past trial_ends_at -> expired, on the free plan
- apply_due_pending_changes: scheduled downgrades/cancellations whose date passed
- end_expired_grace_periods: apply the consequence of an elapsed grace period

Pending changes are also applied lazily when an entitlement is resolved;
the guarded UPDATE in SubscriptionRepository makes the job and the lazy
path safe to race.

Usage:
    python -m menuqr.jobs.subscription_jobs
"""

import sys
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from menuqr.entitlements.cache import EntitlementCacheBackend
from menuqr.entitlements.errors import EntitlementError
from menuqr.models.base import utc_now
from menuqr.repositories.subscription_repository import SubscriptionRepository
from menuqr.services.subscription_service import SubscriptionService, SubscriptionServiceError

logger = logging.getLogger(__name__)

JOB_ERRORS = (SubscriptionServiceError, EntitlementError, SQLAlchemyError)


class SubscriptionJobStats:
    """Track job run statistics."""

    def __init__(self):
        self.trials_expired = 0
        self.pending_changes_applied = 0
        self.grace_periods_ended = 0
        self.errors = 0
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "trials_expired": self.trials_expired,
            "pending_changes_applied": self.pending_changes_applied,
            "grace_periods_ended": self.grace_periods_ended,
            "errors": self.errors,
            "duration_seconds": duration
        }


def _service(session: Session, cache, clock) -> SubscriptionService:
    return SubscriptionService(session, cache=cache, clock=clock)


def expire_trials(
    session: Session,
    cache: Optional[EntitlementCacheBackend] = None,
    clock: Callable[[], datetime] = utc_now,
    stats: Optional[SubscriptionJobStats] = None,
) -> int:
    """Expire trials that ended without conversion. Returns how many."""
    stats = stats or SubscriptionJobStats()
    service = _service(session, cache, clock)
    expired = SubscriptionRepository(session).get_expired_trials(clock())

    count = 0
    for subscription in expired:
        try:
            service.expire_trial(subscription.tenant_id)
            count += 1
        except JOB_ERRORS as e:
            session.rollback()
            stats.errors += 1
            logger.error("Failed to expire trial", extra={
                "tenant_id": subscription.tenant_id,
                "error": str(e)
            })

    stats.trials_expired += count
    if count:
        logger.info("Processed expired trials", extra={"count": count})
    return count


def apply_due_pending_changes(
    session: Session,
    cache: Optional[EntitlementCacheBackend] = None,
    clock: Callable[[], datetime] = utc_now,
    stats: Optional[SubscriptionJobStats] = None,
) -> int:
    """Apply pending changes whose effective date has passed. Returns how many this run applied."""
    stats = stats or SubscriptionJobStats()
    service = _service(session, cache, clock)
    due = SubscriptionRepository(session).get_due_pending_changes(clock())

    count = 0
    for subscription in due:
        try:
            if service.apply_due_pending_change(subscription.tenant_id) is not None:
                count += 1
        except JOB_ERRORS as e:
            session.rollback()
            stats.errors += 1
            logger.error("Failed to apply pending change", extra={
                "tenant_id": subscription.tenant_id,
                "error": str(e)
            })

    stats.pending_changes_applied += count
    if count:
        logger.info("Processed pending plan changes", extra={"count": count})
    return count


def end_expired_grace_periods(
    session: Session,
    cache: Optional[EntitlementCacheBackend] = None,
    clock: Callable[[], datetime] = utc_now,
    stats: Optional[SubscriptionJobStats] = None,
) -> int:
    """End grace periods whose end date has passed. Returns how many."""
    stats = stats or SubscriptionJobStats()
    service = _service(session, cache, clock)
    expired = SubscriptionRepository(session).get_expired_grace_periods(clock())

    count = 0
    for subscription in expired:
        try:
            if service.end_grace_period(subscription.tenant_id) is not None:
                count += 1
        except JOB_ERRORS as e:
            session.rollback()
            stats.errors += 1
            logger.error("Failed to end grace period", extra={
                "tenant_id": subscription.tenant_id,
                "error": str(e)
            })

    stats.grace_periods_ended += count
    if count:
        logger.info("Processed expired grace periods", extra={"count": count})
    return count


def run_subscription_jobs(
    session: Session,
    cache: Optional[EntitlementCacheBackend] = None,
    clock: Callable[[], datetime] = utc_now,
) -> dict:
    """
    Run every subscription maintenance job once.

    Returns:
        Statistics dictionary with job results
    """
    logger.info("Starting subscription jobs")
    stats = SubscriptionJobStats()

    apply_due_pending_changes(session, cache, clock, stats)
    end_expired_grace_periods(session, cache, clock, stats)
    expire_trials(session, cache, clock, stats)

    result = stats.to_dict()
    logger.info("Subscription jobs completed", extra=result)
    return result


def main():
    """Entry point for running the jobs from command line."""
    from menuqr.database.session import get_db_session_sync

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        for session in get_db_session_sync():
            result = run_subscription_jobs(session)
        print(f"Subscription jobs completed: {result}")
        sys.exit(0)
    except (RuntimeError, SQLAlchemyError) as e:
        print(f"Subscription jobs failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
