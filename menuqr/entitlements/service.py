"""
Entitlement Service - resolve-then-cache entry point for gate checks.

Provides:
- get_entitlement(tenant_id)  -> ResolvedEntitlement (cache hit or rebuild)
- invalidate(tenant_id, reason)

Miss path (one store round trip):
    1. Load the tenant's Subscription          (none -> NoSubscriptionError)
    2. Apply a due pending change, guarded     (at most once; invalidates)
    3. Reset stale period counters             (usage_reset_at < period start)
    4. Load the bound Plan and resolve()
    5. cache.put()

Architecture:
- Fail-CLOSED: any store error becomes ResolutionFailureError and is logged
  for alerting. A gate never allows on error.
- No stampede lock: concurrent misses may resolve redundantly; the cache
  swaps whole entries so the last put wins cleanly.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from menuqr.entitlements import state
from menuqr.entitlements.cache import EntitlementCacheBackend, get_entitlement_cache
from menuqr.entitlements.errors import NoSubscriptionError, ResolutionFailureError
from menuqr.entitlements.models import ResolvedEntitlement
from menuqr.entitlements.resolver import resolve
from menuqr.models.base import utc_now
from menuqr.models.plan import Plan
from menuqr.repositories.subscription_repository import SubscriptionRepository
from menuqr.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class EntitlementService:
    """
    Resolves tenant entitlements through the cache.

    Usage:
        service = EntitlementService(db_session)
        entitlement = service.get_entitlement(tenant_id)
        if entitlement.has_feature(Feature.KDS):
            ...
    """

    def __init__(
        self,
        db_session: Session,
        cache: Optional[EntitlementCacheBackend] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            db_session: Database session used on cache miss
            cache: Cache backend (defaults to the process singleton)
            clock: Time source, injectable for tests
        """
        self.db = db_session
        self.cache = cache if cache is not None else get_entitlement_cache()
        self.clock = clock
        self.subscriptions = SubscriptionRepository(db_session)
        self.usage = UsageLedger(db_session)

    def get_entitlement(self, tenant_id: str) -> ResolvedEntitlement:
        """
        Get the tenant's entitlement, rebuilding it on cache miss.

        Raises:
            NoSubscriptionError: Tenant has no subscription row
            ResolutionFailureError: Persistent store failed or timed out
        """
        entry = self.cache.get(tenant_id)
        if entry is not None:
            return entry.entitlement

        entitlement = self._rebuild(tenant_id)
        self.cache.put(tenant_id, entitlement)
        return entitlement

    def _rebuild(self, tenant_id: str) -> ResolvedEntitlement:
        now = self.clock()
        applied = None
        try:
            subscription = self.subscriptions.get_for_tenant(tenant_id)
            if subscription is None:
                raise NoSubscriptionError(tenant_id)

            if state.pending_change_due(subscription, now):
                applied = self.subscriptions.apply_pending_change_if_due(
                    subscription,
                    usage=self.usage.get_all(tenant_id),
                    now=now,
                )

            if state.needs_usage_reset(subscription):
                self.usage.reset_period_counters(tenant_id, now=now, subscription=subscription)

            plan = self.db.query(Plan).filter(Plan.id == subscription.plan_id).first()
            if plan is None:
                self.db.rollback()
                logger.critical(
                    "Subscription bound to a missing plan - failing closed",
                    extra={
                        "tenant_id": tenant_id,
                        "plan_id": subscription.plan_id,
                        "alert_type": "entitlement_resolution_failed",
                    },
                )
                raise ResolutionFailureError(
                    tenant_id,
                    f"Subscription references missing plan {subscription.plan_id}",
                )

            entitlement = resolve(subscription, plan, now)
            self.db.commit()

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.critical(
                "Entitlement resolution failed - failing closed",
                extra={
                    "tenant_id": tenant_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "alert_type": "entitlement_resolution_failed",
                },
            )
            raise ResolutionFailureError(tenant_id, str(e), cause=e)

        # Other processes still hold the pre-change snapshot
        if applied is not None:
            self.cache.invalidate(tenant_id, reason=f"pending_{applied.change_type}_applied")
        return entitlement

    def get_fresh_entitlement(self, tenant_id: str) -> ResolvedEntitlement:
        """Bypass the cache, rebuild, and repopulate."""
        self.cache.invalidate(tenant_id, reason="forced_refresh")
        return self.get_entitlement(tenant_id)

    def invalidate(self, tenant_id: str, reason: Optional[str] = None) -> bool:
        return self.cache.invalidate(tenant_id, reason)
