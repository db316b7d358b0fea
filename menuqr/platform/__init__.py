"""
Platform-level modules for multi-tenant enforcement.

- tenant_context: tenant identity attached to each request by the auth layer
"""

from menuqr.platform.tenant_context import (
    TenantContext,
    get_optional_tenant_context,
    get_tenant_context,
)

__all__ = [
    "TenantContext",
    "get_optional_tenant_context",
    "get_tenant_context",
]
