"""
Entitlement gate dependencies.

Business routes declare their gates at registration time:

    @router.post(
        "/reservations",
        dependencies=[Depends(require_feature(Feature.RESERVATIONS))],
    )

    @router.post("/dishes")
    async def create_dish(usage=Depends(check_usage_limit(ResourceKind.DISHES))):
        ...

Every successful gate attaches the resolved entitlement to
request.state.entitlements so the handler can reuse it without a second
resolve. Denies raise EntitlementError subclasses; the handler installed by
register_entitlement_error_handlers() turns them into the JSON deny payload.
"""

import logging
from typing import Callable, List, Optional, Sequence, Union

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from menuqr.database.session import get_db_session
from menuqr.entitlements.errors import EntitlementError
from menuqr.entitlements.features import Feature, ResourceKind
from menuqr.entitlements.gates import EntitlementGate, GateContext
from menuqr.entitlements.models import ResolvedEntitlement
from menuqr.entitlements.service import EntitlementService
from menuqr.platform.tenant_context import get_optional_tenant_context
from menuqr.services.usage_ledger import UsageCheckResult, UsageLedger

logger = logging.getLogger(__name__)

FeatureLike = Union[Feature, str]


def get_entitlement_gate(
    request: Request,
    db_session: Session = Depends(get_db_session),
) -> EntitlementGate:
    """Build a gate bound to this request's session and audit context."""
    tenant_ctx = get_optional_tenant_context(request)
    return EntitlementGate(
        EntitlementService(db_session),
        UsageLedger(db_session),
        context=GateContext(
            endpoint=request.url.path,
            method=request.method,
            user_id=tenant_ctx.user_id if tenant_ctx else None,
        ),
    )


def _tenant_id(request: Request) -> Optional[str]:
    tenant_ctx = get_optional_tenant_context(request)
    return tenant_ctx.tenant_id if tenant_ctx else None


def _attach(request: Request, entitlement: Optional[ResolvedEntitlement]) -> None:
    request.state.entitlements = entitlement


def get_request_entitlements(request: Request) -> Optional[ResolvedEntitlement]:
    """Entitlement attached by an earlier gate in this request, if any."""
    return getattr(request.state, "entitlements", None)


def require_subscription() -> Callable:
    """Gate: tenant context, subscription row, valid status."""

    def dependency(
        request: Request,
        gate: EntitlementGate = Depends(get_entitlement_gate),
    ) -> ResolvedEntitlement:
        entitlement = gate.require_subscription(_tenant_id(request))
        _attach(request, entitlement)
        return entitlement

    return dependency


def require_feature(feature: FeatureLike) -> Callable:
    """Gate: valid subscription plus one enabled feature."""

    def dependency(
        request: Request,
        gate: EntitlementGate = Depends(get_entitlement_gate),
    ) -> ResolvedEntitlement:
        entitlement = gate.require_feature(_tenant_id(request), feature)
        _attach(request, entitlement)
        return entitlement

    return dependency


def require_any_feature(features: Sequence[FeatureLike]) -> Callable:
    """Gate: at least one of `features` enabled."""
    features = list(features)

    def dependency(
        request: Request,
        gate: EntitlementGate = Depends(get_entitlement_gate),
    ) -> ResolvedEntitlement:
        entitlement = gate.require_any_feature(_tenant_id(request), features)
        _attach(request, entitlement)
        return entitlement

    return dependency


def require_all_features(features: Sequence[FeatureLike]) -> Callable:
    """Gate: every one of `features` enabled."""
    features = list(features)

    def dependency(
        request: Request,
        gate: EntitlementGate = Depends(get_entitlement_gate),
    ) -> ResolvedEntitlement:
        entitlement = gate.require_all_features(_tenant_id(request), features)
        _attach(request, entitlement)
        return entitlement

    return dependency


def check_usage_limit(resource: Union[ResourceKind, str]) -> Callable:
    """
    Gate: the resource's persisted counter is below the plan limit.

    The resource is validated here, at route registration.
    """
    resource = ResourceKind(resource)

    def dependency(
        request: Request,
        gate: EntitlementGate = Depends(get_entitlement_gate),
    ) -> UsageCheckResult:
        entitlement, result = gate.check_usage_limit(_tenant_id(request), resource)
        _attach(request, entitlement)
        request.state.usage_check = result
        return result

    return dependency


def check_features(features: Sequence[FeatureLike]) -> Callable:
    """
    Soft gate: never denies.

    Sets request.state.enabled_features to the enabled subset of `features`.
    """
    features = list(features)

    def dependency(
        request: Request,
        gate: EntitlementGate = Depends(get_entitlement_gate),
    ) -> List[str]:
        entitlement, enabled = gate.check_features(_tenant_id(request), features)
        if entitlement is not None:
            _attach(request, entitlement)
        request.state.enabled_features = enabled
        return enabled

    return dependency


async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def register_entitlement_error_handlers(app: FastAPI) -> None:
    """Render every EntitlementError as its structured deny payload."""
    app.add_exception_handler(EntitlementError, entitlement_error_handler)
