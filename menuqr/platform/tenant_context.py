"""
Tenant context read from the authenticated request.

CRITICAL SECURITY REQUIREMENTS:
- tenant_id is ALWAYS taken from the auth layer (request.state.tenant_context),
  NEVER from request body/query/path
- The entitlement engine authorizes only; it never authenticates

The authentication middleware (outside this package) attaches a
TenantContext to request.state before any gated route runs.
"""

import logging
from typing import Optional

from fastapi import Request, HTTPException, status

logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({"admin", "super_admin"})


class TenantContext:
    """
    Immutable tenant context established by the auth layer.

    tenant_id is the restaurant (business account) the request acts for.
    """

    def __init__(
        self,
        tenant_id: str,
        user_id: str,
        roles: Optional[list[str]] = None,
    ):
        if not tenant_id:
            raise ValueError("tenant_id cannot be empty")
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.roles = list(roles or [])

    @property
    def is_admin(self) -> bool:
        return any(role in ADMIN_ROLES for role in self.roles)

    def __repr__(self) -> str:
        return f"TenantContext(tenant_id={self.tenant_id}, user_id={self.user_id})"


def get_optional_tenant_context(request: Request) -> Optional[TenantContext]:
    """Tenant context if the auth layer attached one, else None."""
    return getattr(request.state, "tenant_context", None)


def get_tenant_context(request: Request) -> TenantContext:
    """
    Extract tenant context from request state.

    Raises 403 if tenant context is missing.
    Use this in route handlers to access tenant_id.
    """
    tenant_ctx = get_optional_tenant_context(request)
    if tenant_ctx is None:
        logger.error("Route handler accessed without tenant context", extra={
            "path": request.url.path
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant context not available"
        )

    return tenant_ctx
