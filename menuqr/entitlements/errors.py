"""
Structured error classes for entitlement enforcement.

Every deny carries a machine-readable DenyCode plus enough context
(required tier, upgrade URL) for a client to render a specific
call-to-action instead of a generic "forbidden".
"""

import os
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from fastapi import status


class DenyCode(str, Enum):
    """Machine-readable deny reasons."""
    NO_TENANT_CONTEXT = "NO_TENANT_CONTEXT"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    FEATURE_NOT_AVAILABLE = "FEATURE_NOT_AVAILABLE"
    USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"
    ENTITLEMENT_RESOLUTION_FAILED = "ENTITLEMENT_RESOLUTION_FAILED"


def billing_settings_url() -> str:
    return os.getenv("BILLING_SETTINGS_URL", "/settings/billing")


def billing_upgrade_url(**params: str) -> str:
    """Upgrade page URL, optionally pointing at a feature or resource."""
    base = os.getenv("BILLING_UPGRADE_URL", "/settings/billing/upgrade")
    if not params:
        return base
    query = "&".join(f"{key}={value}" for key, value in params.items())
    return f"{base}?{query}"


class EntitlementError(Exception):
    """
    Base exception for entitlement errors.

    Subclasses set `code` and `http_status`; `to_dict()` renders the
    uniform deny payload.
    """

    code: DenyCode = DenyCode.FEATURE_NOT_AVAILABLE
    http_status: int = status.HTTP_403_FORBIDDEN

    def __init__(
        self,
        message: str,
        current_plan: Optional[str] = None,
        upgrade_url: Optional[str] = None,
    ):
        self.message = message
        self.current_plan = current_plan
        self.upgrade_url = upgrade_url
        super().__init__(message)

    def _extra_fields(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the deny payload returned to clients."""
        payload: Dict[str, Any] = {
            "success": False,
            "code": self.code.value,
            "message": self.message,
        }
        payload.update(self._extra_fields())
        if self.current_plan is not None:
            payload["currentPlan"] = self.current_plan
        if self.upgrade_url is not None:
            payload["upgradeUrl"] = self.upgrade_url
        return payload


class NoTenantContextError(EntitlementError):
    """The request is not authenticated into any tenant."""

    code = DenyCode.NO_TENANT_CONTEXT
    http_status = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Restaurant context required"):
        super().__init__(message)


class NoSubscriptionError(EntitlementError):
    """The tenant has no subscription row."""

    code = DenyCode.NO_SUBSCRIPTION

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(
            "No active subscription found",
            upgrade_url=billing_settings_url(),
        )


class SubscriptionInactiveError(EntitlementError):
    """The subscription exists but is not valid (expired trial, cancelled, ...)."""

    code = DenyCode.SUBSCRIPTION_INACTIVE

    def __init__(self, tenant_id: str, subscription_status: str, current_plan: Optional[str] = None):
        self.tenant_id = tenant_id
        self.subscription_status = subscription_status
        super().__init__(
            "Your subscription is not active",
            current_plan=current_plan,
            upgrade_url=billing_settings_url(),
        )

    def _extra_fields(self) -> Dict[str, Any]:
        return {"status": self.subscription_status}


class FeatureNotAvailableError(EntitlementError):
    """A single required feature is not enabled on the tenant's plan."""

    code = DenyCode.FEATURE_NOT_AVAILABLE

    def __init__(
        self,
        feature: str,
        feature_name: Optional[str] = None,
        required_tier: Optional[str] = None,
        current_plan: Optional[str] = None,
    ):
        self.feature = feature
        self.feature_name = feature_name or feature
        self.required_tier = required_tier
        if required_tier:
            message = f"{self.feature_name} requires the {required_tier} plan or higher"
        else:
            message = f"{self.feature_name} is not available on your plan"
        super().__init__(
            message,
            current_plan=current_plan,
            upgrade_url=billing_upgrade_url(feature=feature),
        )

    def _extra_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "feature": self.feature,
            "featureName": self.feature_name,
        }
        if self.required_tier:
            fields["requiredTier"] = self.required_tier
        return fields


class FeaturesNotAvailableError(EntitlementError):
    """
    An any-of or all-of feature gate failed.

    For all-of gates `missing_features` is the exact subset the tenant lacks.
    """

    code = DenyCode.FEATURE_NOT_AVAILABLE

    def __init__(
        self,
        required_features: Iterable[str],
        missing_features: Optional[Iterable[str]] = None,
        require_all: bool = False,
        required_tier: Optional[str] = None,
        current_plan: Optional[str] = None,
    ):
        self.required_features: List[str] = list(required_features)
        self.missing_features: List[str] = list(missing_features or [])
        self.require_all = require_all
        self.required_tier = required_tier
        if require_all:
            message = "Your plan is missing required features"
        else:
            message = "None of the required features are available on your plan"
        super().__init__(
            message,
            current_plan=current_plan,
            upgrade_url=billing_upgrade_url(),
        )

    def _extra_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if self.require_all:
            fields["missingFeatures"] = self.missing_features
        else:
            fields["requiredFeatures"] = self.required_features
        if self.required_tier:
            fields["requiredTier"] = self.required_tier
        return fields


class UsageLimitExceededError(EntitlementError):
    """A metered resource reached its plan limit."""

    code = DenyCode.USAGE_LIMIT_EXCEEDED

    def __init__(
        self,
        resource: str,
        used: int,
        limit: int,
        current_plan: Optional[str] = None,
    ):
        self.resource = resource
        self.used = used
        self.limit = limit
        super().__init__(
            f"You have reached your {resource} limit ({used}/{limit})",
            current_plan=current_plan,
            upgrade_url=billing_upgrade_url(resource=resource),
        )

    def _extra_fields(self) -> Dict[str, Any]:
        return {"resource": self.resource, "used": self.used, "limit": self.limit}


class UnknownFeatureError(EntitlementError):
    """
    A gate referenced a feature id that is not in the catalog.

    This is a configuration bug. Gates translate it into a
    FEATURE_NOT_AVAILABLE deny, never a grant.
    """

    code = DenyCode.FEATURE_NOT_AVAILABLE

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Unknown feature '{feature}'")

    def _extra_fields(self) -> Dict[str, Any]:
        return {"feature": self.feature}


class ResolutionFailureError(EntitlementError):
    """
    The persistent store failed or timed out while resolving entitlements.

    The gate fails CLOSED. The client only sees a generic message.
    """

    code = DenyCode.ENTITLEMENT_RESOLUTION_FAILED
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, tenant_id: str, detail: str, cause: Optional[Exception] = None):
        self.tenant_id = tenant_id
        self.detail = detail
        self.cause = cause
        super().__init__("Unable to verify your subscription. Please retry shortly.")
