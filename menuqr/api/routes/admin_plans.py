"""
Admin Plans API routes for plan management.

SECURITY: All routes require admin role verification.
These endpoints allow creating, editing, and managing pricing plans.
Every change that affects entitlements invalidates the cached entitlement
of each tenant bound to the plan before the response is sent.
"""

import logging
from typing import Dict, Optional, List

from fastapi import APIRouter, Request, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field, field_validator

from menuqr.database.session import get_db_session
from menuqr.entitlements.features import Tier
from menuqr.platform.tenant_context import get_tenant_context, TenantContext
from menuqr.services.plan_service import (
    PlanInfo,
    PlanService,
    PlanServiceError,
    PlanNotFoundServiceError,
    PlanValidationError,
    PlanInUseServiceError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/plans", tags=["admin-plans"])


# Request/Response models

class CreatePlanRequest(BaseModel):
    """Request to create a new plan."""
    name: str = Field(..., description="Display name (e.g., 'Professional')", min_length=1, max_length=100)
    tier: str = Field(..., description="Tier whose defaults seed features and limits")
    slug: Optional[str] = Field(None, description="URL-safe identifier", min_length=1, max_length=50)
    description: Optional[str] = Field(None, description="Plan description", max_length=2000)
    features: Optional[Dict[str, bool]] = Field(None, description="Feature flag overrides")
    limits: Optional[Dict[str, int]] = Field(None, description="Limit overrides (-1 = unlimited)")
    price_monthly_cents: Optional[int] = Field(None, description="Monthly price in cents", ge=0)
    price_yearly_cents: Optional[int] = Field(None, description="Yearly price in cents", ge=0)
    currency: Optional[str] = Field(None, max_length=10)
    trial_days: int = Field(14, ge=0, le=90)
    is_active: bool = Field(True, description="Whether plan is available for subscriptions")
    is_public: bool = True
    is_popular: bool = False
    sort_order: int = 0

    @field_validator("tier")
    @classmethod
    def validate_tier(cls, v: str) -> str:
        if v not in {t.value for t in Tier}:
            raise ValueError(f"Tier must be one of {[t.value for t in Tier]}")
        return v

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.replace("_", "").replace("-", "").isalnum():
            raise ValueError("Slug must contain only alphanumeric characters, underscores, or hyphens")
        return v.lower() if v else None


class UpdatePlanRequest(BaseModel):
    """Request to update a plan. Feature flags are changed via /features."""
    name: Optional[str] = Field(None, description="New display name", min_length=1, max_length=100)
    description: Optional[str] = Field(None, description="New description", max_length=2000)
    limits: Optional[Dict[str, int]] = Field(None, description="Limits to merge (-1 = unlimited)")
    price_monthly_cents: Optional[int] = Field(None, description="New monthly price in cents", ge=0)
    price_yearly_cents: Optional[int] = Field(None, description="New yearly price in cents", ge=0)
    currency: Optional[str] = Field(None, max_length=10)
    trial_days: Optional[int] = Field(None, ge=0, le=90)
    is_active: Optional[bool] = Field(None, description="New active status")
    is_public: Optional[bool] = None
    is_popular: Optional[bool] = None
    sort_order: Optional[int] = None


class SetFeaturesRequest(BaseModel):
    """Explicit feature flags to set on a plan."""
    features: Dict[str, bool] = Field(..., min_length=1)


class ToggleFeatureRequest(BaseModel):
    """Request to toggle a feature."""
    feature_key: str = Field(..., description="Feature identifier")
    is_enabled: bool = Field(..., description="New enabled status")


class FeatureResponse(BaseModel):
    """Feature flag on a plan."""
    feature_key: str
    is_enabled: bool


class PlanResponse(BaseModel):
    """Full plan information."""
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
    enabled_features: Dict[str, bool]
    limits: Dict[str, int]
    created_at: Optional[str]
    updated_at: Optional[str]


class PlansListResponse(BaseModel):
    """List of plans with pagination."""
    plans: List[PlanResponse]
    total: int
    limit: int
    offset: int


def _plan_response(plan: PlanInfo) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        slug=plan.slug,
        name=plan.name,
        tier=plan.tier,
        description=plan.description,
        price_monthly_cents=plan.price_monthly_cents,
        price_yearly_cents=plan.price_yearly_cents,
        currency=plan.currency,
        trial_days=plan.trial_days,
        is_active=plan.is_active,
        is_public=plan.is_public,
        is_popular=plan.is_popular,
        sort_order=plan.sort_order,
        enabled_features=plan.enabled_features,
        limits=plan.limits,
        created_at=plan.created_at.isoformat() if plan.created_at else None,
        updated_at=plan.updated_at.isoformat() if plan.updated_at else None
    )


def verify_admin_role(request: Request) -> TenantContext:
    """
    Verify that the user has admin role.

    SECURITY: Admin endpoints require explicit admin role.
    """
    tenant_ctx = get_tenant_context(request)

    if not tenant_ctx.is_admin:
        logger.warning("Unauthorized admin access attempt", extra={
            "tenant_id": tenant_ctx.tenant_id,
            "user_id": tenant_ctx.user_id,
            "roles": tenant_ctx.roles
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required"
        )

    return tenant_ctx


def get_plan_service(db_session=Depends(get_db_session)) -> PlanService:
    """Get plan service instance."""
    return PlanService(db_session)


def _not_found(plan_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Plan not found: {plan_id}"
    )


# Routes

@router.get("", response_model=PlansListResponse)
async def list_plans(
    request: Request,
    include_inactive: bool = Query(False, description="Include inactive plans"),
    limit: int = Query(100, ge=1, le=500, description="Maximum plans to return"),
    offset: int = Query(0, ge=0, description="Number of plans to skip"),
    tenant_ctx: TenantContext = Depends(verify_admin_role),
    plan_service: PlanService = Depends(get_plan_service)
):
    """
    List all plans with pagination.

    Requires admin role.
    """
    plans, total = plan_service.list_plans(
        include_inactive=include_inactive,
        limit=limit,
        offset=offset
    )

    return PlansListResponse(
        plans=[_plan_response(p) for p in plans],
        total=total,
        limit=limit,
        offset=offset
    )


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(
    request: Request,
    plan_id: str,
    tenant_ctx: TenantContext = Depends(verify_admin_role),
    plan_service: PlanService = Depends(get_plan_service)
):
    """Get a specific plan by id or slug. Requires admin role."""
    try:
        return _plan_response(plan_service.get_plan(plan_id))
    except PlanNotFoundServiceError:
        raise _not_found(plan_id)


@router.post("", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    request: Request,
    plan_request: CreatePlanRequest,
    tenant_ctx: TenantContext = Depends(verify_admin_role),
    plan_service: PlanService = Depends(get_plan_service)
):
    """
    Create a new plan.

    Requires admin role.
    Features and limits are seeded from the tier; request values override them.
    """
    logger.info("Admin creating plan", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "user_id": tenant_ctx.user_id,
        "plan_name": plan_request.name,
        "tier": plan_request.tier
    })

    try:
        plan = plan_service.create_plan(**plan_request.model_dump())
    except PlanValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except PlanServiceError as e:
        logger.error("Failed to create plan", extra={
            "tenant_id": tenant_ctx.tenant_id,
            "error": str(e)
        })
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create plan"
        )

    return _plan_response(plan)


@router.patch("/{plan_id}", response_model=PlanResponse)
async def update_plan(
    request: Request,
    plan_id: str,
    plan_request: UpdatePlanRequest,
    tenant_ctx: TenantContext = Depends(verify_admin_role),
    plan_service: PlanService = Depends(get_plan_service)
):
    """
    Update an existing plan.

    Requires admin role.
    Changes apply instantly to every subscribed tenant.
    """
    logger.info("Admin updating plan", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "user_id": tenant_ctx.user_id,
        "plan_id": plan_id
    })

    try:
        plan = plan_service.update_plan(plan_id=plan_id, **plan_request.model_dump())
    except PlanNotFoundServiceError:
        raise _not_found(plan_id)
    except PlanValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except PlanServiceError as e:
        logger.error("Failed to update plan", extra={
            "tenant_id": tenant_ctx.tenant_id,
            "plan_id": plan_id,
            "error": str(e)
        })
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update plan"
        )

    return _plan_response(plan)


@router.put("/{plan_id}/features", response_model=PlanResponse)
async def set_features(
    request: Request,
    plan_id: str,
    features_request: SetFeaturesRequest,
    tenant_ctx: TenantContext = Depends(verify_admin_role),
    plan_service: PlanService = Depends(get_plan_service)
):
    """Set explicit feature flags. Requires admin role."""
    logger.info("Admin setting plan features", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "user_id": tenant_ctx.user_id,
        "plan_id": plan_id,
        "features": sorted(features_request.features)
    })

    try:
        return _plan_response(plan_service.set_features(plan_id, features_request.features))
    except PlanNotFoundServiceError:
        raise _not_found(plan_id)
    except PlanValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.post("/{plan_id}/features/toggle", response_model=FeatureResponse)
async def toggle_feature(
    request: Request,
    plan_id: str,
    feature_request: ToggleFeatureRequest,
    tenant_ctx: TenantContext = Depends(verify_admin_role),
    plan_service: PlanService = Depends(get_plan_service)
):
    """
    Toggle a specific feature on/off for a plan.

    Requires admin role.
    Changes apply instantly.
    """
    logger.info("Admin toggling feature", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "user_id": tenant_ctx.user_id,
        "plan_id": plan_id,
        "feature_key": feature_request.feature_key,
        "is_enabled": feature_request.is_enabled
    })

    try:
        feature = plan_service.toggle_feature(
            plan_id=plan_id,
            feature_key=feature_request.feature_key,
            is_enabled=feature_request.is_enabled
        )
        return FeatureResponse(**feature)

    except PlanNotFoundServiceError:
        raise _not_found(plan_id)
    except PlanValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.post("/{plan_id}/features/reseed", response_model=PlanResponse)
async def reseed_features(
    request: Request,
    plan_id: str,
    tenant_ctx: TenantContext = Depends(verify_admin_role),
    plan_service: PlanService = Depends(get_plan_service)
):
    """
    Re-derive feature flags from the plan's tier.

    WARNING: Erases manual feature overrides on this plan.

    Requires admin role.
    """
    logger.warning("Admin re-seeding plan features", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "user_id": tenant_ctx.user_id,
        "plan_id": plan_id
    })

    try:
        return _plan_response(plan_service.reseed_features(plan_id))
    except PlanNotFoundServiceError:
        raise _not_found(plan_id)


@router.post("/{plan_id}/deactivate", response_model=PlanResponse)
async def deactivate_plan(
    request: Request,
    plan_id: str,
    tenant_ctx: TenantContext = Depends(verify_admin_role),
    plan_service: PlanService = Depends(get_plan_service)
):
    """Hide a plan from new subscriptions. Requires admin role."""
    try:
        return _plan_response(plan_service.deactivate_plan(plan_id))
    except PlanNotFoundServiceError:
        raise _not_found(plan_id)


@router.delete("/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan(
    request: Request,
    plan_id: str,
    tenant_ctx: TenantContext = Depends(verify_admin_role),
    plan_service: PlanService = Depends(get_plan_service)
):
    """
    Delete a plan.

    WARNING: Consider POST /deactivate instead.
    Plans referenced by any subscription cannot be deleted.

    Requires admin role.
    """
    logger.warning("Admin deleting plan", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "user_id": tenant_ctx.user_id,
        "plan_id": plan_id
    })

    try:
        plan_service.delete_plan(plan_id)
        return None

    except PlanNotFoundServiceError:
        raise _not_found(plan_id)
    except PlanInUseServiceError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
