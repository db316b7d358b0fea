"""
Plan model for subscription offerings.

Plans are GLOBAL (not tenant-scoped) - they define the product offerings.
Feature availability is an explicit Feature -> bool map stored on the plan.

CRITICAL: enabled_features is seeded from the plan's tier at creation and
then owned by the plan. It is NEVER re-derived from the tier implicitly,
because hand-tuned (grandfathered, promotional) plans would lose their
overrides.
"""

from typing import Dict, List, Optional, Union

from sqlalchemy import Column, String, Text, Integer, Boolean, Enum, JSON
from sqlalchemy.orm import relationship

from menuqr.db_base import Base
from menuqr.models.base import TimestampMixin, generate_uuid
from menuqr.entitlements.features import (
    Feature,
    ResourceKind,
    Tier,
    all_features_for_tier,
    default_limits_for_tier,
)


class Plan(Base, TimestampMixin):
    """
    A priced bundle of feature flags plus numeric usage limits.

    Never hard-deleted while a subscription references it; deactivate instead.
    """

    __tablename__ = "plans"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    slug = Column(
        String(50),
        nullable=False,
        unique=True,
        index=True,
        comment="URL-safe identifier (free, starter, professional, ...)"
    )
    name = Column(
        String(100),
        nullable=False,
        comment="Display name"
    )
    description = Column(
        Text,
        nullable=True,
        comment="Plan description for pricing page"
    )
    tier = Column(
        Enum(*[t.value for t in Tier], name="plan_tier"),
        nullable=False,
        default=Tier.FREE.value,
        comment="Tier used to seed features and limits"
    )

    enabled_features = Column(
        JSON,
        nullable=False,
        default=dict,
        comment="Feature id -> enabled flag. Absent = disabled."
    )
    limits = Column(
        JSON,
        nullable=False,
        default=dict,
        comment="Resource kind -> limit. -1 = unlimited."
    )

    # Pricing (in cents to avoid floating point issues)
    price_monthly_cents = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Monthly price in cents (2900 = 29.00)"
    )
    price_yearly_cents = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Yearly price in cents"
    )
    currency = Column(
        String(10),
        default="EUR",
        comment="Currency code"
    )

    trial_days = Column(
        Integer,
        default=14,
        comment="Number of trial days (0 = no trial)"
    )

    is_active = Column(
        Boolean,
        default=True,
        index=True,
        comment="Whether plan is available for new subscriptions"
    )
    is_public = Column(
        Boolean,
        default=True,
        comment="Show on public pricing page"
    )
    is_popular = Column(
        Boolean,
        default=False,
        comment="Highlight on pricing page"
    )
    sort_order = Column(
        Integer,
        default=0,
        comment="Display order on pricing page"
    )

    subscriptions = relationship(
        "Subscription",
        back_populates="plan",
        foreign_keys="Subscription.plan_id",
        lazy="dynamic"
    )

    def __repr__(self) -> str:
        return f"<Plan(slug={self.slug}, tier={self.tier})>"

    def has_feature(self, feature: Union[Feature, str]) -> bool:
        return has_feature(self, feature)

    def enabled_feature_list(self) -> List[str]:
        return enabled_feature_list(self)

    def get_limit(self, resource: Union[ResourceKind, str]) -> int:
        """Limit for a resource. Missing limits are 0 (fail-closed)."""
        key = resource.value if isinstance(resource, ResourceKind) else resource
        value = (self.limits or {}).get(key)
        if value is None:
            return 0
        return int(value)

    def price_for_cycle(self, billing_cycle: str) -> int:
        if billing_cycle == "yearly":
            return self.price_yearly_cents or 0
        return self.price_monthly_cents or 0

    @property
    def has_trial(self) -> bool:
        return (self.trial_days or 0) > 0


def _feature_key(feature: Union[Feature, str]) -> str:
    return feature.value if isinstance(feature, Feature) else str(feature)


def has_feature(plan, feature: Union[Feature, str]) -> bool:
    """
    True only when the plan maps the feature to exactly True.

    Absent keys and non-boolean values deny (fail-closed).
    """
    flags = plan.enabled_features or {}
    return flags.get(_feature_key(feature)) is True


def enabled_feature_list(plan) -> List[str]:
    """All feature ids the plan maps to True."""
    flags = plan.enabled_features or {}
    return [key for key, enabled in flags.items() if enabled is True]


def seed_enabled_features(
    tier: Union[Tier, str],
    overrides: Optional[Dict[str, bool]] = None,
) -> Dict[str, bool]:
    """
    Build an enabled_features map from tier defaults plus manual overrides.

    Every catalog feature gets an explicit entry so admin views show the
    full matrix; features above the tier start disabled.
    """
    granted = {feature.value for feature in all_features_for_tier(tier)}
    flags = {feature.value: feature.value in granted for feature in Feature}
    for key, enabled in (overrides or {}).items():
        flags[_feature_key(key)] = bool(enabled)
    return flags


def seed_limits(
    tier: Union[Tier, str],
    overrides: Optional[Dict[str, int]] = None,
) -> Dict[str, int]:
    limits = default_limits_for_tier(tier)
    for key, value in (overrides or {}).items():
        resource = key.value if isinstance(key, ResourceKind) else str(key)
        limits[resource] = int(value)
    return limits
