"""
Plans Repository for plan catalog management.

Plans are global (not tenant-scoped) - they define available subscription offerings.
Admin operations do not require tenant context.
"""

import logging
import re
from typing import Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from menuqr.entitlements.features import (
    DEFAULT_PLAN_PRICING,
    Tier,
    parse_feature,
    parse_tier,
)
from menuqr.models.plan import Plan, seed_enabled_features, seed_limits
from menuqr.models.subscription import Subscription

logger = logging.getLogger(__name__)

MAX_TRIAL_DAYS = 90

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


class PlanRepositoryError(Exception):
    """Base exception for plan repository errors."""
    pass


class PlanNotFoundError(PlanRepositoryError):
    """Plan not found."""
    pass


class PlanAlreadyExistsError(PlanRepositoryError):
    """Plan with same slug/id already exists."""
    pass


class PlanInUseError(PlanRepositoryError):
    """Plan is referenced by subscriptions and cannot be hard-deleted."""
    pass


class PlanValidationError(PlanRepositoryError):
    """Plan fields are invalid."""
    pass


def slugify(name: str) -> str:
    """Build a URL-safe slug from a display name."""
    return _SLUG_STRIP.sub("-", name.lower()).strip("-")


class PlansRepository:
    """
    Repository for Plan operations.

    Plans are global entities - not tenant-scoped.
    """

    def __init__(self, db_session: Session):
        """
        Initialize plans repository.

        Args:
            db_session: Database session
        """
        self.db = db_session

    def get_by_id(self, plan_id: str) -> Optional[Plan]:
        return self.db.query(Plan).filter(Plan.id == plan_id).first()

    def get_by_slug(self, slug: str) -> Optional[Plan]:
        return self.db.query(Plan).filter(Plan.slug == slug).first()

    def get_default_for_tier(self, tier: str) -> Optional[Plan]:
        """Active plan for a tier, lowest sort order first."""
        return (
            self.db.query(Plan)
            .filter(Plan.tier == tier, Plan.is_active == True)  # noqa: E712
            .order_by(Plan.sort_order.asc())
            .first()
        )

    def get_all(
        self,
        include_inactive: bool = False,
        public_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Plan]:
        """
        Get plans ordered for display.

        Args:
            include_inactive: Whether to include deactivated plans
            public_only: Restrict to plans shown on the pricing page
            limit: Maximum number of plans to return
            offset: Number of plans to skip

        Returns:
            List of Plan objects
        """
        query = self.db.query(Plan)

        if not include_inactive:
            query = query.filter(Plan.is_active == True)  # noqa: E712
        if public_only:
            query = query.filter(Plan.is_public == True)  # noqa: E712

        return (
            query.order_by(Plan.sort_order.asc(), Plan.price_monthly_cents.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count(self, include_inactive: bool = False) -> int:
        query = self.db.query(Plan)
        if not include_inactive:
            query = query.filter(Plan.is_active == True)  # noqa: E712
        return query.count()

    def create(
        self,
        name: str,
        tier: str,
        slug: Optional[str] = None,
        description: Optional[str] = None,
        feature_overrides: Optional[Dict[str, bool]] = None,
        limit_overrides: Optional[Dict[str, int]] = None,
        price_monthly_cents: Optional[int] = None,
        price_yearly_cents: Optional[int] = None,
        currency: Optional[str] = None,
        trial_days: int = 14,
        is_active: bool = True,
        is_public: bool = True,
        is_popular: bool = False,
        sort_order: int = 0,
        plan_id: Optional[str] = None,
    ) -> Plan:
        """
        Create a new plan seeded from its tier defaults.

        enabled_features and limits start from the tier defaults; overrides
        are applied on top and from then on belong to the plan.

        Raises:
            PlanValidationError: If tier or trial days are invalid
            PlanAlreadyExistsError: If a plan with the same slug exists
        """
        parsed_tier = parse_tier(tier)
        if parsed_tier is None:
            raise PlanValidationError(f"Unknown tier '{tier}'")
        if trial_days < 0 or trial_days > MAX_TRIAL_DAYS:
            raise PlanValidationError(f"trial_days must be between 0 and {MAX_TRIAL_DAYS}")

        slug = slug or slugify(name)
        if not slug:
            raise PlanValidationError("Plan slug cannot be empty")
        if self.get_by_slug(slug):
            raise PlanAlreadyExistsError(f"Plan with slug '{slug}' already exists")

        overrides = {parse_feature(k).value: bool(v) for k, v in (feature_overrides or {}).items()}
        pricing = DEFAULT_PLAN_PRICING[parsed_tier]

        plan = Plan(
            name=name,
            slug=slug,
            tier=parsed_tier.value,
            description=description,
            enabled_features=seed_enabled_features(parsed_tier, overrides),
            limits=seed_limits(parsed_tier, limit_overrides),
            price_monthly_cents=(
                price_monthly_cents if price_monthly_cents is not None else pricing["monthly"]
            ),
            price_yearly_cents=(
                price_yearly_cents if price_yearly_cents is not None else pricing["yearly"]
            ),
            currency=currency or pricing["currency"],
            trial_days=trial_days,
            is_active=is_active,
            is_public=is_public,
            is_popular=is_popular,
            sort_order=sort_order,
        )
        if plan_id:
            plan.id = plan_id

        try:
            self.db.add(plan)
            self.db.flush()

            logger.info("Plan created", extra={
                "plan_id": plan.id,
                "slug": slug,
                "tier": parsed_tier.value,
                "overrides": sorted(overrides),
            })

            return plan
        except IntegrityError as e:
            self.db.rollback()
            logger.error("Failed to create plan - integrity error", extra={
                "slug": slug,
                "error": str(e)
            })
            raise PlanAlreadyExistsError(f"Plan creation failed: {e}")

    def update(
        self,
        plan_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        limits: Optional[Dict[str, int]] = None,
        price_monthly_cents: Optional[int] = None,
        price_yearly_cents: Optional[int] = None,
        currency: Optional[str] = None,
        trial_days: Optional[int] = None,
        is_active: Optional[bool] = None,
        is_public: Optional[bool] = None,
        is_popular: Optional[bool] = None,
        sort_order: Optional[int] = None,
    ) -> Plan:
        """
        Update scalar plan fields. Never touches enabled_features.

        Raises:
            PlanNotFoundError: If plan doesn't exist
            PlanValidationError: If trial days are out of range
        """
        plan = self.get_by_id(plan_id)
        if not plan:
            raise PlanNotFoundError(f"Plan not found: {plan_id}")

        if trial_days is not None and (trial_days < 0 or trial_days > MAX_TRIAL_DAYS):
            raise PlanValidationError(f"trial_days must be between 0 and {MAX_TRIAL_DAYS}")

        if name is not None:
            plan.name = name
        if description is not None:
            plan.description = description
        if limits is not None:
            merged = dict(plan.limits or {})
            merged.update({str(k): int(v) for k, v in limits.items()})
            plan.limits = merged
        if price_monthly_cents is not None:
            plan.price_monthly_cents = price_monthly_cents
        if price_yearly_cents is not None:
            plan.price_yearly_cents = price_yearly_cents
        if currency is not None:
            plan.currency = currency
        if trial_days is not None:
            plan.trial_days = trial_days
        if is_active is not None:
            plan.is_active = is_active
        if is_public is not None:
            plan.is_public = is_public
        if is_popular is not None:
            plan.is_popular = is_popular
        if sort_order is not None:
            plan.sort_order = sort_order

        self.db.flush()
        logger.info("Plan updated", extra={"plan_id": plan_id})
        return plan

    def set_features(self, plan_id: str, flags: Dict[str, bool]) -> Plan:
        """
        Set explicit feature flags on a plan.

        Raises:
            PlanNotFoundError: If plan doesn't exist
            UnknownFeatureError: If a key is not a catalog feature
        """
        plan = self.get_by_id(plan_id)
        if not plan:
            raise PlanNotFoundError(f"Plan not found: {plan_id}")

        updated = dict(plan.enabled_features or {})
        for key, enabled in flags.items():
            updated[parse_feature(key).value] = bool(enabled)
        # Reassign so the JSON column is flagged dirty
        plan.enabled_features = updated
        self.db.flush()

        logger.info("Plan features updated", extra={
            "plan_id": plan_id,
            "features": sorted(flags),
        })
        return plan

    def reseed_features(self, plan_id: str) -> Plan:
        """
        Replace enabled_features with the plan tier's defaults.

        Erases manual overrides. Only reachable from an explicit admin action.
        """
        plan = self.get_by_id(plan_id)
        if not plan:
            raise PlanNotFoundError(f"Plan not found: {plan_id}")

        plan.enabled_features = seed_enabled_features(plan.tier)
        self.db.flush()

        logger.warning("Plan features re-derived from tier", extra={
            "plan_id": plan_id,
            "tier": plan.tier,
        })
        return plan

    def deactivate(self, plan_id: str) -> Plan:
        """Soft-delete: hide from new subscriptions, keep existing bindings."""
        return self.update(plan_id, is_active=False)

    def count_subscriptions(self, plan_id: str) -> int:
        """Subscriptions bound to, or scheduled to move to, the plan."""
        return self.db.query(Subscription).filter(
            (Subscription.plan_id == plan_id) | (Subscription.pending_plan_id == plan_id)
        ).count()

    def tenant_ids_bound_to(self, plan_id: str) -> List[str]:
        """Tenants whose cached entitlement depends on this plan."""
        rows = self.db.query(Subscription.tenant_id).filter(
            Subscription.plan_id == plan_id
        ).all()
        return [row[0] for row in rows]

    def delete(self, plan_id: str) -> bool:
        """
        Hard-delete a plan.

        Raises:
            PlanNotFoundError: If plan doesn't exist
            PlanInUseError: If any subscription references the plan
        """
        plan = self.get_by_id(plan_id)
        if not plan:
            raise PlanNotFoundError(f"Plan not found: {plan_id}")

        in_use = self.count_subscriptions(plan_id)
        if in_use:
            raise PlanInUseError(
                f"Plan '{plan.slug}' is referenced by {in_use} subscription(s); deactivate it instead"
            )

        self.db.delete(plan)
        self.db.flush()
        logger.info("Plan deleted", extra={"plan_id": plan_id, "slug": plan.slug})
        return True


def ensure_default_plans(db_session: Session, catalog: Optional[List[dict]] = None) -> List[Plan]:
    """
    Create one plan per tier when missing.

    Args:
        db_session: Database session
        catalog: Plan definitions (see menuqr.config.plan_catalog); defaults to tier defaults

    Returns:
        Plans that were created
    """
    repo = PlansRepository(db_session)
    if catalog is None:
        catalog = [
            {"name": tier.value.capitalize(), "slug": tier.value, "tier": tier.value, "sort_order": index}
            for index, tier in enumerate(Tier)
        ]

    created = []
    for definition in catalog:
        slug = definition.get("slug") or slugify(definition["name"])
        if repo.get_by_slug(slug):
            continue
        created.append(repo.create(
            name=definition["name"],
            tier=definition["tier"],
            slug=slug,
            description=definition.get("description"),
            feature_overrides=definition.get("features"),
            limit_overrides=definition.get("limits"),
            price_monthly_cents=definition.get("price_monthly_cents"),
            price_yearly_cents=definition.get("price_yearly_cents"),
            currency=definition.get("currency"),
            trial_days=definition.get("trial_days", 0 if definition["tier"] == Tier.FREE.value else 14),
            is_public=definition.get("is_public", True),
            is_popular=definition.get("is_popular", False),
            sort_order=definition.get("sort_order", 0),
        ))
    return created
