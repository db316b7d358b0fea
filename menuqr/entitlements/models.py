"""
Entitlement value objects.

Provides:
- ResolvedEntitlement: immutable {features, limits, validity} snapshot
- EntitlementCacheEntry: a snapshot plus its absolute expiry

Snapshots are never authoritative. The persisted Subscription + Plan is
always ground truth; these only live as long as the cache TTL.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union

from menuqr.entitlements.features import Feature, ResourceKind


def _key(value: Union[Feature, ResourceKind, str]) -> str:
    return value.value if isinstance(value, (Feature, ResourceKind)) else str(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class ResolvedEntitlement:
    """
    Complete resolved entitlement for a tenant at a point in time.

    Immutable - safe to cache and share across threads. An invalid
    subscription always resolves to an empty feature set.
    """
    tenant_id: str
    plan_id: str
    plan_slug: str
    plan_name: str
    tier: str
    status: str
    is_valid: bool
    features: FrozenSet[str] = field(default_factory=frozenset)
    limits: Dict[str, int] = field(default_factory=dict)
    in_trial: bool = False
    in_grace_period: bool = False
    trial_ends_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    resolved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def has_feature(self, feature: Union[Feature, str]) -> bool:
        return _key(feature) in self.features

    def has_all(self, features: Iterable[Union[Feature, str]]) -> bool:
        return all(self.has_feature(f) for f in features)

    def has_any(self, features: Iterable[Union[Feature, str]]) -> bool:
        return any(self.has_feature(f) for f in features)

    def missing(self, features: Iterable[Union[Feature, str]]) -> List[str]:
        """Requested features that are not enabled, in request order."""
        return [_key(f) for f in features if not self.has_feature(f)]

    def enabled_subset(self, features: Iterable[Union[Feature, str]]) -> List[str]:
        return [_key(f) for f in features if self.has_feature(f)]

    def get_limit(self, resource: Union[ResourceKind, str]) -> int:
        """Limit for a resource. Missing limits are 0 (fail-closed)."""
        value = self.limits.get(_key(resource))
        return 0 if value is None else int(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "plan_id": self.plan_id,
            "plan_slug": self.plan_slug,
            "plan_name": self.plan_name,
            "tier": self.tier,
            "status": self.status,
            "is_valid": self.is_valid,
            "features": sorted(self.features),
            "limits": dict(self.limits),
            "in_trial": self.in_trial,
            "in_grace_period": self.in_grace_period,
            "trial_ends_at": _iso(self.trial_ends_at),
            "current_period_end": _iso(self.current_period_end),
            "resolved_at": _iso(self.resolved_at),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolvedEntitlement":
        return cls(
            tenant_id=data["tenant_id"],
            plan_id=data["plan_id"],
            plan_slug=data["plan_slug"],
            plan_name=data["plan_name"],
            tier=data["tier"],
            status=data["status"],
            is_valid=data["is_valid"],
            features=frozenset(data.get("features", [])),
            limits={k: int(v) for k, v in data.get("limits", {}).items()},
            in_trial=data.get("in_trial", False),
            in_grace_period=data.get("in_grace_period", False),
            trial_ends_at=_parse_iso(data.get("trial_ends_at")),
            current_period_end=_parse_iso(data.get("current_period_end")),
            resolved_at=_parse_iso(data.get("resolved_at")) or datetime.now(timezone.utc),
        )

    @classmethod
    def from_json(cls, data: str) -> "ResolvedEntitlement":
        return cls.from_dict(json.loads(data))


@dataclass(frozen=True)
class EntitlementCacheEntry:
    """A cached snapshot. Replaced as a whole, never mutated."""
    tenant_id: str
    entitlement: ResolvedEntitlement
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_json(self) -> str:
        return json.dumps({
            "tenant_id": self.tenant_id,
            "entitlement": self.entitlement.to_dict(),
            "expires_at": self.expires_at.isoformat(),
        })

    @classmethod
    def from_json(cls, data: str) -> "EntitlementCacheEntry":
        raw = json.loads(data)
        return cls(
            tenant_id=raw["tenant_id"],
            entitlement=ResolvedEntitlement.from_dict(raw["entitlement"]),
            expires_at=datetime.fromisoformat(raw["expires_at"]),
        )
