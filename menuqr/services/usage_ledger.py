"""
Usage Ledger - per-tenant resource counters.

Handles:
- Atomic increments from unrelated business operations
- Decrements floored at zero (deleting a dish frees a slot)
- Period rollover for monthly resources
- Usage summaries against a plan's limits

CRITICAL: Counters are changed with a single SQL UPDATE (used = used + n).
Never read a counter, add in Python, and write it back.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Optional, Union

from sqlalchemy import case, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from menuqr.entitlements.features import MONTHLY_RESOURCES, ResourceKind, UNLIMITED
from menuqr.models.base import generate_uuid, utc_now
from menuqr.models.subscription import Subscription
from menuqr.models.usage import UsageCounter

logger = logging.getLogger(__name__)

ResourceLike = Union[ResourceKind, str]


def _resource_key(resource: ResourceLike) -> str:
    if isinstance(resource, ResourceKind):
        return resource.value
    return ResourceKind(resource).value


@dataclass
class UsageCheckResult:
    """Usage of one resource compared to its limit."""
    resource: str
    allowed: bool
    used: int
    limit: int
    remaining: int
    percent_used: int

    def to_dict(self) -> dict:
        return asdict(self)


def evaluate_usage(resource: str, used: int, limit: int) -> UsageCheckResult:
    """
    Compare usage to a limit.

    -1 means unlimited: always allowed regardless of `used`.
    """
    if limit == UNLIMITED:
        return UsageCheckResult(
            resource=resource,
            allowed=True,
            used=used,
            limit=UNLIMITED,
            remaining=UNLIMITED,
            percent_used=0,
        )
    remaining = max(0, limit - used)
    percent = min(100, round(used / limit * 100)) if limit > 0 else 100
    return UsageCheckResult(
        resource=resource,
        allowed=used < limit,
        used=used,
        limit=limit,
        remaining=remaining,
        percent_used=percent,
    )


class UsageLedger:
    """
    Persistent usage counters.

    Increments go straight to the database so concurrent requests from the
    same tenant never lose updates. Reads are uncached.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def _ensure_row(self, tenant_id: str, resource: str) -> None:
        """Insert a zero counter if none exists, ignoring a concurrent insert."""
        values = {"id": generate_uuid(), "tenant_id": tenant_id, "resource": resource, "used": 0}
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(UsageCounter).values(**values).on_conflict_do_nothing(
                index_elements=["tenant_id", "resource"]
            )
        elif dialect == "sqlite":
            stmt = sqlite.insert(UsageCounter).values(**values).on_conflict_do_nothing(
                index_elements=["tenant_id", "resource"]
            )
        else:
            if self._get_counter(tenant_id, resource) is not None:
                return
            self.db.add(UsageCounter(**values))
            self.db.flush()
            return
        self.db.execute(stmt)

    def _get_counter(self, tenant_id: str, resource: str) -> Optional[UsageCounter]:
        return self.db.query(UsageCounter).filter(
            UsageCounter.tenant_id == tenant_id,
            UsageCounter.resource == resource,
        ).first()

    def _read_used(self, tenant_id: str, resource: str) -> int:
        row = self.db.query(UsageCounter.used).filter(
            UsageCounter.tenant_id == tenant_id,
            UsageCounter.resource == resource,
        ).first()
        return int(row[0]) if row else 0

    def increment(self, tenant_id: str, resource: ResourceLike, delta: int = 1) -> int:
        """
        Atomically add `delta` to a tenant's counter.

        Args:
            tenant_id: Tenant identifier
            resource: Resource kind
            delta: Amount to add (must be positive)

        Returns:
            Counter value after the increment
        """
        if delta <= 0:
            raise ValueError("increment delta must be positive")
        key = _resource_key(resource)

        stmt = (
            update(UsageCounter)
            .where(UsageCounter.tenant_id == tenant_id, UsageCounter.resource == key)
            .values(used=UsageCounter.used + delta)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount == 0:
            self._ensure_row(tenant_id, key)
            self.db.execute(stmt)

        used = self._read_used(tenant_id, key)
        logger.debug("Usage incremented", extra={
            "tenant_id": tenant_id,
            "resource": key,
            "delta": delta,
            "used": used,
        })
        return used

    def decrement(self, tenant_id: str, resource: ResourceLike, delta: int = 1) -> int:
        """Atomically subtract `delta`, never going below zero."""
        if delta <= 0:
            raise ValueError("decrement delta must be positive")
        key = _resource_key(resource)
        self.db.execute(
            update(UsageCounter)
            .where(UsageCounter.tenant_id == tenant_id, UsageCounter.resource == key)
            .values(used=case(
                (UsageCounter.used > delta, UsageCounter.used - delta),
                else_=0,
            ))
            .execution_options(synchronize_session=False)
        )
        return self._read_used(tenant_id, key)

    def set_usage(self, tenant_id: str, resource: ResourceLike, value: int) -> int:
        """Overwrite a counter, e.g. after a recount of live inventory."""
        if value < 0:
            raise ValueError("usage cannot be negative")
        key = _resource_key(resource)
        self._ensure_row(tenant_id, key)
        self.db.execute(
            update(UsageCounter)
            .where(UsageCounter.tenant_id == tenant_id, UsageCounter.resource == key)
            .values(used=value)
            .execution_options(synchronize_session=False)
        )
        return value

    def get_used(self, tenant_id: str, resource: ResourceLike) -> int:
        """Persisted counter value. 0 when the tenant never used the resource."""
        return self._read_used(tenant_id, _resource_key(resource))

    def get_all(self, tenant_id: str) -> Dict[str, int]:
        rows = self.db.query(UsageCounter.resource, UsageCounter.used).filter(
            UsageCounter.tenant_id == tenant_id
        ).all()
        return {resource: int(used) for resource, used in rows}

    def reset_period_counters(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
        subscription: Optional[Subscription] = None,
    ) -> None:
        """
        Zero the monthly counters and stamp the subscription's usage_reset_at.

        Live-inventory counters (dishes, tables, ...) are left untouched.
        """
        now = now or utc_now()
        self.db.execute(
            update(UsageCounter)
            .where(
                UsageCounter.tenant_id == tenant_id,
                UsageCounter.resource.in_([r.value for r in MONTHLY_RESOURCES]),
            )
            .values(used=0)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .values(usage_reset_at=now)
            .execution_options(synchronize_session=False)
        )
        if subscription is not None:
            self.db.refresh(subscription)

        logger.info("Monthly usage counters reset", extra={
            "tenant_id": tenant_id,
            "reset_at": now.isoformat(),
        })

    def check(self, tenant_id: str, resource: ResourceLike, limit: int) -> UsageCheckResult:
        key = _resource_key(resource)
        return evaluate_usage(key, self.get_used(tenant_id, key), limit)

    def get_usage_summary(self, tenant_id: str, plan) -> Dict[str, UsageCheckResult]:
        """Usage of every resource against the plan's limits."""
        counts = self.get_all(tenant_id)
        return {
            resource.value: evaluate_usage(
                resource.value,
                counts.get(resource.value, 0),
                plan.get_limit(resource),
            )
            for resource in ResourceKind
        }
