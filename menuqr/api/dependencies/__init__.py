"""
API Dependencies module.

Provides the entitlement gates business routes declare at registration time.
"""

from menuqr.api.dependencies.entitlements import (
    check_features,
    check_usage_limit,
    get_entitlement_gate,
    get_request_entitlements,
    register_entitlement_error_handlers,
    require_all_features,
    require_any_feature,
    require_feature,
    require_subscription,
)

__all__ = [
    "check_features",
    "check_usage_limit",
    "get_entitlement_gate",
    "get_request_entitlements",
    "register_entitlement_error_handlers",
    "require_all_features",
    "require_any_feature",
    "require_feature",
    "require_subscription",
]
