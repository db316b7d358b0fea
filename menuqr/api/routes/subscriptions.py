"""
Subscription API routes for the tenant's own plan.

Plan listing is public; everything else requires tenant context from the
auth layer. Feature and usage reads go through the same entitlement
snapshot the gates use, so what this API reports is what the gates enforce.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Request, HTTPException, status, Depends
from pydantic import BaseModel, Field

from menuqr.api.dependencies.entitlements import get_entitlement_gate
from menuqr.database.session import get_db_session
from menuqr.entitlements.features import (
    ResourceKind,
    feature_display_name,
    minimum_tier_for,
    parse_feature,
)
from menuqr.entitlements.errors import UnknownFeatureError
from menuqr.entitlements.gates import EntitlementGate
from menuqr.entitlements.state import InvalidTransitionError
from menuqr.platform.tenant_context import get_tenant_context
from menuqr.services.plan_service import PlanInfo, PlanService, PlanNotFoundServiceError
from menuqr.services.subscription_service import (
    InvalidPlanChangeError,
    PlanUnavailableError,
    SubscriptionNotFoundError,
    SubscriptionService,
    SubscriptionServiceError,
)
from menuqr.services.usage_ledger import evaluate_usage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


# Request/Response models

class PublicPlanResponse(BaseModel):
    """Plan as shown on the pricing page."""
    slug: str
    name: str
    tier: str
    description: Optional[str]
    price_monthly_cents: int
    price_yearly_cents: int
    currency: str
    trial_days: int
    is_popular: bool
    features: List[str]
    limits: Dict[str, int]


class PlansListResponse(BaseModel):
    plans: List[PublicPlanResponse]


class PendingChangeResponse(BaseModel):
    type: str
    plan_id: Optional[str]
    effective_date: Optional[str]
    reason: Optional[str]


class SubscriptionResponse(BaseModel):
    """Current subscription information."""
    subscription_id: str
    plan_slug: str
    plan_name: str
    tier: str
    status: str
    billing_cycle: str
    is_valid: bool
    current_period_start: Optional[str]
    current_period_end: Optional[str]
    trial_ends_at: Optional[str]
    trial_days_remaining: int
    in_grace_period: bool
    grace_period_ends_at: Optional[str]
    cancelled_at: Optional[str]
    pending_change: Optional[PendingChangeResponse]


class FeaturesResponse(BaseModel):
    plan_slug: str
    tier: str
    is_valid: bool
    features: List[str]
    limits: Dict[str, int]


class CheckFeatureRequest(BaseModel):
    feature: str = Field(..., min_length=1)


class CheckFeatureResponse(BaseModel):
    feature: str
    enabled: bool
    feature_name: Optional[str] = None
    required_tier: Optional[str] = None


class CheckFeaturesRequest(BaseModel):
    features: List[str] = Field(..., min_length=1)


class CheckFeaturesResponse(BaseModel):
    enabled: List[str]
    features: Dict[str, bool]


class UsageResponse(BaseModel):
    resource: str
    allowed: bool
    used: int
    limit: int
    remaining: int
    percent_used: int


class UsageSummaryResponse(BaseModel):
    usage: Dict[str, UsageResponse]


class DowngradeRequest(BaseModel):
    plan: str = Field(..., description="Target plan slug", min_length=1)
    reason: Optional[str] = Field(None, max_length=2000)
    immediate: bool = False


class DowngradeResponse(BaseModel):
    scheduled: bool
    effective_date: str
    archived_dishes: int
    archived_campaigns: int
    message: str


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)
    at_period_end: bool = True


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _public_plan(plan: PlanInfo) -> PublicPlanResponse:
    return PublicPlanResponse(
        slug=plan.slug,
        name=plan.name,
        tier=plan.tier,
        description=plan.description,
        price_monthly_cents=plan.price_monthly_cents,
        price_yearly_cents=plan.price_yearly_cents,
        currency=plan.currency,
        trial_days=plan.trial_days,
        is_popular=plan.is_popular,
        features=sorted(k for k, v in plan.enabled_features.items() if v is True),
        limits=plan.limits,
    )


def get_plan_service(db_session=Depends(get_db_session)) -> PlanService:
    return PlanService(db_session)


def get_subscription_service(db_session=Depends(get_db_session)) -> SubscriptionService:
    return SubscriptionService(db_session)


def _service_error(tenant_id: str, error: Exception) -> HTTPException:
    """Map subscription service errors to HTTP errors."""
    if isinstance(error, (SubscriptionNotFoundError, PlanUnavailableError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error.message)
    if isinstance(error, InvalidPlanChangeError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))

    logger.error("Subscription service error", extra={
        "tenant_id": tenant_id,
        "error": str(error)
    })
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Subscription update failed"
    )


# Public routes

@router.get("/plans", response_model=PlansListResponse)
async def list_plans(plan_service: PlanService = Depends(get_plan_service)):
    """Active public plans, in display order."""
    plans, _ = plan_service.list_plans(public_only=True)
    return PlansListResponse(plans=[_public_plan(p) for p in plans])


@router.get("/plans/{slug}", response_model=PublicPlanResponse)
async def get_plan(slug: str, plan_service: PlanService = Depends(get_plan_service)):
    try:
        plan = plan_service.get_plan(slug)
    except PlanNotFoundServiceError:
        plan = None
    if plan is None or not plan.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Plan not found: {slug}"
        )
    return _public_plan(plan)


# Tenant routes

@router.get("/current", response_model=SubscriptionResponse)
async def get_current_subscription(
    request: Request,
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Get current subscription information.

    Returns status, plan, trial and grace period details and any pending change.
    """
    tenant_ctx = get_tenant_context(request)
    try:
        info = subscription_service.get_subscription_info(tenant_ctx.tenant_id)
    except SubscriptionNotFoundError as e:
        raise _service_error(tenant_ctx.tenant_id, e)

    pending = None
    if info.pending_change:
        pending = PendingChangeResponse(
            type=info.pending_change["type"],
            plan_id=info.pending_change["plan_id"],
            effective_date=_iso(info.pending_change["effective_date"]),
            reason=info.pending_change["reason"],
        )

    return SubscriptionResponse(
        subscription_id=info.subscription_id,
        plan_slug=info.plan_slug,
        plan_name=info.plan_name,
        tier=info.tier,
        status=info.status,
        billing_cycle=info.billing_cycle,
        is_valid=info.is_valid,
        current_period_start=_iso(info.current_period_start),
        current_period_end=_iso(info.current_period_end),
        trial_ends_at=_iso(info.trial_ends_at),
        trial_days_remaining=info.trial_days_remaining,
        in_grace_period=info.in_grace_period,
        grace_period_ends_at=_iso(info.grace_period_ends_at),
        cancelled_at=_iso(info.cancelled_at),
        pending_change=pending,
    )


@router.get("/features", response_model=FeaturesResponse)
async def get_features(
    request: Request,
    gate: EntitlementGate = Depends(get_entitlement_gate)
):
    """Enabled features and limits. An invalid subscription has no features."""
    tenant_ctx = get_tenant_context(request)
    entitlement = gate.service.get_entitlement(tenant_ctx.tenant_id)
    return FeaturesResponse(
        plan_slug=entitlement.plan_slug,
        tier=entitlement.tier,
        is_valid=entitlement.is_valid,
        features=sorted(entitlement.features),
        limits=dict(entitlement.limits),
    )


@router.post("/check-feature", response_model=CheckFeatureResponse)
async def check_feature(
    request: Request,
    check_request: CheckFeatureRequest,
    gate: EntitlementGate = Depends(get_entitlement_gate)
):
    """Soft check of one feature. Never denies."""
    tenant_ctx = get_tenant_context(request)
    _, enabled = gate.check_features(tenant_ctx.tenant_id, [check_request.feature])

    try:
        feature = parse_feature(check_request.feature)
    except UnknownFeatureError:
        return CheckFeatureResponse(feature=check_request.feature, enabled=False)

    return CheckFeatureResponse(
        feature=feature.value,
        enabled=feature.value in enabled,
        feature_name=feature_display_name(feature),
        required_tier=minimum_tier_for(feature).value,
    )


@router.post("/check-features", response_model=CheckFeaturesResponse)
async def check_features(
    request: Request,
    check_request: CheckFeaturesRequest,
    gate: EntitlementGate = Depends(get_entitlement_gate)
):
    """Soft check of several features. Never denies."""
    tenant_ctx = get_tenant_context(request)
    _, enabled = gate.check_features(tenant_ctx.tenant_id, check_request.features)
    return CheckFeaturesResponse(
        enabled=enabled,
        features={f: f in enabled for f in check_request.features},
    )


@router.get("/usage", response_model=UsageSummaryResponse)
async def get_usage(
    request: Request,
    gate: EntitlementGate = Depends(get_entitlement_gate)
):
    """Usage of every resource against the plan's limits."""
    tenant_ctx = get_tenant_context(request)
    entitlement = gate.service.get_entitlement(tenant_ctx.tenant_id)
    counts = gate.ledger.get_all(tenant_ctx.tenant_id)

    return UsageSummaryResponse(usage={
        resource.value: UsageResponse(**evaluate_usage(
            resource.value,
            counts.get(resource.value, 0),
            entitlement.get_limit(resource),
        ).to_dict())
        for resource in ResourceKind
    })


@router.get("/usage/{resource}", response_model=UsageResponse)
async def get_resource_usage(
    request: Request,
    resource: str,
    gate: EntitlementGate = Depends(get_entitlement_gate)
):
    tenant_ctx = get_tenant_context(request)
    try:
        kind = ResourceKind(resource)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown resource: {resource}"
        )

    entitlement = gate.service.get_entitlement(tenant_ctx.tenant_id)
    result = gate.ledger.check(tenant_ctx.tenant_id, kind, entitlement.get_limit(kind))
    return UsageResponse(**result.to_dict())


@router.get("/upgrade/preview")
async def preview_upgrade(
    request: Request,
    plan: str,
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Features gained and price difference for a target plan."""
    tenant_ctx = get_tenant_context(request)
    try:
        preview = subscription_service.preview_upgrade(tenant_ctx.tenant_id, plan)
    except SubscriptionServiceError as e:
        raise _service_error(tenant_ctx.tenant_id, e)
    return {
        "new_features": preview.new_features,
        "new_limits": preview.new_limits,
        "price_difference": preview.price_difference,
    }


@router.get("/downgrade/preview")
async def preview_downgrade(
    request: Request,
    plan: str,
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Features lost and resources over the target plan's limits."""
    tenant_ctx = get_tenant_context(request)
    try:
        preview = subscription_service.preview_downgrade(tenant_ctx.tenant_id, plan)
    except SubscriptionServiceError as e:
        raise _service_error(tenant_ctx.tenant_id, e)
    return {
        "lost_features": preview.lost_features,
        "over_limits": preview.over_limits,
        "warnings": preview.warnings,
    }


@router.post("/downgrade", response_model=DowngradeResponse)
async def downgrade(
    request: Request,
    downgrade_request: DowngradeRequest,
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Downgrade at the end of the current period (or now, with immediate)."""
    tenant_ctx = get_tenant_context(request)

    logger.info("Downgrade requested", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "user_id": tenant_ctx.user_id,
        "plan": downgrade_request.plan,
        "immediate": downgrade_request.immediate
    })

    try:
        result = subscription_service.schedule_downgrade(
            tenant_ctx.tenant_id,
            downgrade_request.plan,
            reason=downgrade_request.reason,
            immediate=downgrade_request.immediate,
        )
    except SubscriptionServiceError as e:
        raise _service_error(tenant_ctx.tenant_id, e)

    return DowngradeResponse(
        scheduled=result.scheduled,
        effective_date=result.effective_date.isoformat(),
        archived_dishes=result.archived_dishes,
        archived_campaigns=result.archived_campaigns,
        message=result.message,
    )


@router.delete("/pending-change")
async def cancel_pending_change(
    request: Request,
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Withdraw a scheduled downgrade or cancellation."""
    tenant_ctx = get_tenant_context(request)
    try:
        cleared = subscription_service.cancel_scheduled_change(tenant_ctx.tenant_id)
    except SubscriptionServiceError as e:
        raise _service_error(tenant_ctx.tenant_id, e)

    if not cleared:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No pending change"
        )
    return {"success": True}


@router.post("/cancel")
async def cancel_subscription(
    request: Request,
    cancel_request: CancelRequest,
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Cancel at the end of the period (default) or immediately."""
    tenant_ctx = get_tenant_context(request)

    logger.info("Cancellation requested", extra={
        "tenant_id": tenant_ctx.tenant_id,
        "user_id": tenant_ctx.user_id,
        "at_period_end": cancel_request.at_period_end
    })

    try:
        subscription = subscription_service.cancel_subscription(
            tenant_ctx.tenant_id,
            reason=cancel_request.reason,
            at_period_end=cancel_request.at_period_end,
        )
    except (SubscriptionServiceError, InvalidTransitionError) as e:
        raise _service_error(tenant_ctx.tenant_id, e)

    return {
        "success": True,
        "status": subscription.status,
        "pending_change": subscription.pending_change_type,
    }


@router.post("/reactivate")
async def reactivate_subscription(
    request: Request,
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Withdraw a scheduled cancellation, or restart a cancelled subscription."""
    tenant_ctx = get_tenant_context(request)
    try:
        subscription = subscription_service.reactivate_subscription(tenant_ctx.tenant_id)
    except SubscriptionServiceError as e:
        raise _service_error(tenant_ctx.tenant_id, e)

    return {"success": True, "status": subscription.status}
