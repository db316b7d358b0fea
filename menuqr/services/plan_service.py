"""
Plan Service for admin plan management.

Handles:
- Creating and updating plans
- Managing plan feature flags (set, toggle, explicit re-seed from tier)
- Plan lifecycle operations (deactivate, delete)

Every change that can alter what a tenant is entitled to invalidates the
cached entitlement of each tenant bound to the plan before returning.

SECURITY: Admin operations require admin role verification.
"""

import logging
from typing import Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from menuqr.entitlements.cache import EntitlementCacheBackend, get_entitlement_cache
from menuqr.entitlements.errors import UnknownFeatureError
from menuqr.entitlements.features import ResourceKind
from menuqr.models.plan import Plan
from menuqr.repositories import plans_repo
from menuqr.repositories.plans_repo import (
    PlansRepository,
    PlanRepositoryError,
    PlanNotFoundError,
    PlanAlreadyExistsError,
    PlanInUseError,
)

logger = logging.getLogger(__name__)

MAX_PRICE_CENTS = 99999999


@dataclass
class PlanInfo:
    """Plan information with feature flags and limits."""
    id: str
    slug: str
    name: str
    tier: str
    description: Optional[str]
    price_monthly_cents: int
    price_yearly_cents: int
    currency: str
    trial_days: int
    is_active: bool
    is_public: bool
    is_popular: bool
    sort_order: int
    enabled_features: Dict[str, bool] = field(default_factory=dict)
    limits: Dict[str, int] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def plan_info(plan: Plan) -> PlanInfo:
    return PlanInfo(
        id=plan.id,
        slug=plan.slug,
        name=plan.name,
        tier=plan.tier,
        description=plan.description,
        price_monthly_cents=plan.price_monthly_cents or 0,
        price_yearly_cents=plan.price_yearly_cents or 0,
        currency=plan.currency,
        trial_days=plan.trial_days or 0,
        is_active=bool(plan.is_active),
        is_public=bool(plan.is_public),
        is_popular=bool(plan.is_popular),
        sort_order=plan.sort_order or 0,
        enabled_features=dict(plan.enabled_features or {}),
        limits=dict(plan.limits or {}),
        created_at=plan.created_at,
        updated_at=plan.updated_at,
    )


class PlanServiceError(Exception):
    """Base exception for plan service errors."""
    pass


class PlanNotFoundServiceError(PlanServiceError):
    """Plan not found."""
    pass


class PlanValidationError(PlanServiceError):
    """Plan validation failed."""
    pass


class PlanInUseServiceError(PlanServiceError):
    """Plan still has subscriptions bound to it."""
    pass


class PlanService:
    """
    Service for admin plan management operations.

    All methods require admin authorization (verified at route level).
    Plans are global entities - not tenant-scoped.
    """

    def __init__(self, db_session: Session, cache: Optional[EntitlementCacheBackend] = None):
        """
        Initialize plan service.

        Args:
            db_session: Database session
            cache: Entitlement cache to invalidate (defaults to the process singleton)
        """
        self.db = db_session
        self.repo = PlansRepository(db_session)
        self.cache = cache if cache is not None else get_entitlement_cache()

    def _invalidate_bound_tenants(self, plan_id: str, reason: str) -> int:
        """Drop cached entitlements of every tenant on the plan."""
        tenant_ids = self.repo.tenant_ids_bound_to(plan_id)
        for tenant_id in tenant_ids:
            self.cache.invalidate(tenant_id, reason=reason)

        if tenant_ids:
            logger.info("Invalidated entitlements for plan change", extra={
                "plan_id": plan_id,
                "tenant_count": len(tenant_ids),
                "reason": reason,
            })
        return len(tenant_ids)

    def get_plan(self, plan_id: str) -> PlanInfo:
        """
        Get a plan by id or slug.

        Raises:
            PlanNotFoundServiceError: If plan doesn't exist
        """
        plan = self.repo.get_by_id(plan_id) or self.repo.get_by_slug(plan_id)
        if not plan:
            raise PlanNotFoundServiceError(f"Plan not found: {plan_id}")
        return plan_info(plan)

    def list_plans(
        self,
        include_inactive: bool = False,
        public_only: bool = False,
        limit: int = 100,
        offset: int = 0
    ) -> tuple[List[PlanInfo], int]:
        """
        List plans with pagination.

        Returns:
            Tuple of (list of PlanInfo, total count)
        """
        plans = self.repo.get_all(
            include_inactive=include_inactive,
            public_only=public_only,
            limit=limit,
            offset=offset,
        )
        total = self.repo.count(include_inactive=include_inactive)
        return [plan_info(p) for p in plans], total

    def create_plan(
        self,
        name: str,
        tier: str,
        slug: Optional[str] = None,
        description: Optional[str] = None,
        features: Optional[Dict[str, bool]] = None,
        limits: Optional[Dict[str, int]] = None,
        price_monthly_cents: Optional[int] = None,
        price_yearly_cents: Optional[int] = None,
        currency: Optional[str] = None,
        trial_days: int = 14,
        is_active: bool = True,
        is_public: bool = True,
        is_popular: bool = False,
        sort_order: int = 0,
    ) -> PlanInfo:
        """
        Create a new plan seeded from its tier.

        Args:
            name: Display name
            tier: Tier whose defaults seed features and limits
            slug: URL-safe identifier (derived from name when omitted)
            features: Feature flag overrides on top of the tier defaults
            limits: Limit overrides on top of the tier defaults

        Raises:
            PlanValidationError: If validation fails
            PlanServiceError: If creation fails
        """
        self._validate_plan_data(
            name=name,
            price_monthly_cents=price_monthly_cents,
            price_yearly_cents=price_yearly_cents,
            limits=limits,
        )

        try:
            plan = self.repo.create(
                name=name,
                tier=tier,
                slug=slug,
                description=description,
                feature_overrides=features,
                limit_overrides=limits,
                price_monthly_cents=price_monthly_cents,
                price_yearly_cents=price_yearly_cents,
                currency=currency,
                trial_days=trial_days,
                is_active=is_active,
                is_public=is_public,
                is_popular=is_popular,
                sort_order=sort_order,
            )
            self.db.commit()

        except (PlanAlreadyExistsError, plans_repo.PlanValidationError, UnknownFeatureError) as e:
            self.db.rollback()
            raise PlanValidationError(getattr(e, "message", None) or str(e))
        except PlanRepositoryError as e:
            self.db.rollback()
            logger.error("Failed to create plan", extra={"error": str(e)})
            raise PlanServiceError(f"Failed to create plan: {e}")

        logger.info("Plan created via service", extra={
            "plan_id": plan.id,
            "slug": plan.slug,
            "tier": plan.tier,
        })
        return plan_info(plan)

    def update_plan(
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
    ) -> PlanInfo:
        """
        Update scalar fields and limits. Feature flags are never touched here.

        Raises:
            PlanNotFoundServiceError: If plan doesn't exist
            PlanValidationError: If validation fails
        """
        existing = self.repo.get_by_id(plan_id)
        if not existing:
            raise PlanNotFoundServiceError(f"Plan not found: {plan_id}")

        self._validate_plan_data(
            name=name if name is not None else existing.name,
            price_monthly_cents=price_monthly_cents,
            price_yearly_cents=price_yearly_cents,
            limits=limits,
        )

        try:
            plan = self.repo.update(
                plan_id=plan_id,
                name=name,
                description=description,
                limits=limits,
                price_monthly_cents=price_monthly_cents,
                price_yearly_cents=price_yearly_cents,
                currency=currency,
                trial_days=trial_days,
                is_active=is_active,
                is_public=is_public,
                is_popular=is_popular,
                sort_order=sort_order,
            )
            self.db.commit()

        except PlanNotFoundError:
            self.db.rollback()
            raise PlanNotFoundServiceError(f"Plan not found: {plan_id}")
        except plans_repo.PlanValidationError as e:
            self.db.rollback()
            raise PlanValidationError(str(e))
        except PlanRepositoryError as e:
            self.db.rollback()
            logger.error("Failed to update plan", extra={
                "plan_id": plan_id,
                "error": str(e)
            })
            raise PlanServiceError(f"Failed to update plan: {e}")

        self._invalidate_bound_tenants(plan_id, reason="plan_updated")

        logger.info("Plan updated via service", extra={
            "plan_id": plan_id,
            "updated_fields": sorted(
                k for k, v in {
                    "name": name,
                    "limits": limits,
                    "price_monthly_cents": price_monthly_cents,
                    "trial_days": trial_days,
                    "is_active": is_active,
                }.items() if v is not None
            )
        })
        return plan_info(plan)

    def set_features(self, plan_id: str, features: Dict[str, bool]) -> PlanInfo:
        """
        Set explicit feature flags on a plan.

        Raises:
            PlanNotFoundServiceError: If plan doesn't exist
            PlanValidationError: If a key is not a catalog feature
        """
        try:
            plan = self.repo.set_features(plan_id, features)
            self.db.commit()
        except PlanNotFoundError:
            self.db.rollback()
            raise PlanNotFoundServiceError(f"Plan not found: {plan_id}")
        except UnknownFeatureError as e:
            self.db.rollback()
            raise PlanValidationError(e.message)

        self._invalidate_bound_tenants(plan_id, reason="plan_features_changed")
        return plan_info(plan)

    def toggle_feature(self, plan_id: str, feature_key: str, is_enabled: bool) -> Dict[str, object]:
        """
        Toggle a specific feature on/off for a plan.

        Returns:
            {"feature_key", "is_enabled"}
        """
        info = self.set_features(plan_id, {feature_key: is_enabled})

        logger.info("Feature toggled", extra={
            "plan_id": plan_id,
            "feature_key": feature_key,
            "is_enabled": is_enabled
        })
        return {"feature_key": feature_key, "is_enabled": info.enabled_features.get(feature_key, False)}

    def reseed_features(self, plan_id: str) -> PlanInfo:
        """
        Re-derive a plan's feature flags from its tier.

        Erases manual overrides; only ever called from an explicit admin action.
        """
        try:
            plan = self.repo.reseed_features(plan_id)
            self.db.commit()
        except PlanNotFoundError:
            self.db.rollback()
            raise PlanNotFoundServiceError(f"Plan not found: {plan_id}")

        self._invalidate_bound_tenants(plan_id, reason="plan_features_reseeded")
        return plan_info(plan)

    def deactivate_plan(self, plan_id: str) -> PlanInfo:
        """Hide a plan from new subscriptions. Existing subscriptions keep it."""
        return self.update_plan(plan_id, is_active=False)

    def delete_plan(self, plan_id: str) -> bool:
        """
        Hard-delete a plan no subscription references.

        Raises:
            PlanNotFoundServiceError: If plan doesn't exist
            PlanInUseServiceError: If subscriptions are bound to it
        """
        try:
            self.repo.delete(plan_id)
            self.db.commit()
        except PlanNotFoundError:
            self.db.rollback()
            raise PlanNotFoundServiceError(f"Plan not found: {plan_id}")
        except PlanInUseError as e:
            raise PlanInUseServiceError(str(e))

        logger.info("Plan deleted via service", extra={"plan_id": plan_id})
        return True

    def _validate_plan_data(
        self,
        name: str,
        price_monthly_cents: Optional[int],
        price_yearly_cents: Optional[int],
        limits: Optional[Dict[str, int]] = None,
    ) -> None:
        """
        Validate plan data before create/update.

        Raises:
            PlanValidationError: If validation fails
        """
        errors = []

        if not name or len(name.strip()) == 0:
            errors.append("Plan name is required")
        elif len(name) > 100:
            errors.append("Plan name must be 100 characters or less")

        if price_monthly_cents is not None:
            if price_monthly_cents < 0:
                errors.append("Monthly price cannot be negative")
            if price_monthly_cents > MAX_PRICE_CENTS:
                errors.append("Monthly price exceeds maximum allowed")

        if price_yearly_cents is not None:
            if price_yearly_cents < 0:
                errors.append("Yearly price cannot be negative")
            if price_yearly_cents > MAX_PRICE_CENTS:
                errors.append("Yearly price exceeds maximum allowed")

        known_resources = {r.value for r in ResourceKind}
        for resource, value in (limits or {}).items():
            if str(resource) not in known_resources:
                errors.append(f"Unknown resource '{resource}'")
            elif int(value) < -1:
                errors.append(f"Limit for '{resource}' must be -1 (unlimited) or >= 0")

        if errors:
            raise PlanValidationError("; ".join(errors))
