"""
Entitlement gates - transport-independent allow/deny decisions.

Five gate shapes share one resolve-then-decide skeleton:
- require_subscription: tenant context, subscription row, validity
- require_feature: plus one feature
- require_any_feature / require_all_features: OR / AND over features
- check_usage_limit: persisted counter vs. plan limit (bypasses the cache,
  a failed counter read denies with ENTITLEMENT_RESOLUTION_FAILED)
- check_features: soft form, never denies

Every deny raises an EntitlementError subclass carrying the uniform deny
payload, and is written to the audit log. Unknown feature ids deny with
FEATURE_NOT_AVAILABLE and are logged as a configuration bug.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from menuqr.entitlements.audit import (
    AccessDenialEvent,
    EntitlementAuditLogger,
    get_audit_logger,
)
from menuqr.entitlements.errors import (
    EntitlementError,
    FeatureNotAvailableError,
    FeaturesNotAvailableError,
    NoTenantContextError,
    ResolutionFailureError,
    SubscriptionInactiveError,
    UnknownFeatureError,
    UsageLimitExceededError,
)
from menuqr.entitlements.features import (
    Feature,
    ResourceKind,
    Tier,
    feature_display_name,
    minimum_tier_for,
    parse_feature,
    tier_index,
)
from menuqr.entitlements.models import ResolvedEntitlement
from menuqr.entitlements.service import EntitlementService
from menuqr.services.usage_ledger import UsageCheckResult, UsageLedger, evaluate_usage

logger = logging.getLogger(__name__)

FeatureLike = Union[Feature, str]


@dataclass
class GateContext:
    """Request details recorded on every deny."""
    endpoint: Optional[str] = None
    method: Optional[str] = None
    user_id: Optional[str] = None


class EntitlementGate:
    """
    Gate checks for one tenant-facing call site.

    Usage:
        gate = EntitlementGate(EntitlementService(db), UsageLedger(db))
        entitlement = gate.require_feature(tenant_id, Feature.RESERVATIONS)
    """

    def __init__(
        self,
        service: EntitlementService,
        ledger: Optional[UsageLedger] = None,
        audit_logger: Optional[EntitlementAuditLogger] = None,
        context: Optional[GateContext] = None,
    ):
        self.service = service
        self.ledger = ledger if ledger is not None else UsageLedger(service.db)
        self.audit = audit_logger or get_audit_logger()
        self.context = context or GateContext()

    def _deny(self, error: EntitlementError, tenant_id: Optional[str]) -> EntitlementError:
        event = AccessDenialEvent.from_error(
            error,
            tenant_id,
            endpoint=self.context.endpoint,
            method=self.context.method,
            user_id=self.context.user_id,
        )
        self.audit.log_error(error, event)
        return error

    def _parse(self, tenant_id: Optional[str], feature: FeatureLike) -> Feature:
        try:
            return parse_feature(feature)
        except UnknownFeatureError as e:
            raise self._deny(e, tenant_id)

    def _parse_known(self, tenant_id: Optional[str], features: Sequence[FeatureLike]) -> List[Feature]:
        """Parse features, logging unknown ids as bugs and dropping them."""
        known = []
        for feature in features:
            try:
                known.append(parse_feature(feature))
            except UnknownFeatureError as e:
                self.audit.log_error(e, AccessDenialEvent.from_error(
                    e, tenant_id, endpoint=self.context.endpoint, method=self.context.method,
                ))
        return known

    def require_subscription(self, tenant_id: Optional[str]) -> ResolvedEntitlement:
        """
        Deny unless the tenant has a valid subscription.

        Raises:
            NoTenantContextError: No tenant on the request
            NoSubscriptionError: Tenant has no subscription row
            SubscriptionInactiveError: Subscription exists but is not valid
            ResolutionFailureError: Store failure on cache miss (fail closed)
        """
        if not tenant_id:
            raise self._deny(NoTenantContextError(), None)

        try:
            entitlement = self.service.get_entitlement(tenant_id)
        except EntitlementError as e:
            raise self._deny(e, tenant_id)

        if not entitlement.is_valid:
            raise self._deny(
                SubscriptionInactiveError(tenant_id, entitlement.status, entitlement.plan_slug),
                tenant_id,
            )
        return entitlement

    def require_feature(self, tenant_id: Optional[str], feature: FeatureLike) -> ResolvedEntitlement:
        """Deny with FEATURE_NOT_AVAILABLE (and the minimum tier) unless enabled."""
        entitlement = self.require_subscription(tenant_id)
        parsed = self._parse(tenant_id, feature)

        if not entitlement.has_feature(parsed):
            raise self._deny(
                FeatureNotAvailableError(
                    parsed.value,
                    feature_name=feature_display_name(parsed),
                    required_tier=minimum_tier_for(parsed).value,
                    current_plan=entitlement.plan_slug,
                ),
                tenant_id,
            )
        return entitlement

    def require_any_feature(
        self,
        tenant_id: Optional[str],
        features: Sequence[FeatureLike],
    ) -> ResolvedEntitlement:
        """Allow when at least one of `features` is enabled."""
        entitlement = self.require_subscription(tenant_id)
        known = self._parse_known(tenant_id, features)

        if not any(entitlement.has_feature(f) for f in known):
            lowest: Optional[Tier] = None
            for feature in known:
                tier = minimum_tier_for(feature)
                if lowest is None or tier_index(tier) < tier_index(lowest):
                    lowest = tier
            raise self._deny(
                FeaturesNotAvailableError(
                    required_features=[_key(f) for f in features],
                    require_all=False,
                    required_tier=lowest.value if lowest else None,
                    current_plan=entitlement.plan_slug,
                ),
                tenant_id,
            )
        return entitlement

    def require_all_features(
        self,
        tenant_id: Optional[str],
        features: Sequence[FeatureLike],
    ) -> ResolvedEntitlement:
        """Allow only when every feature is enabled; the deny lists the missing subset."""
        entitlement = self.require_subscription(tenant_id)
        known = self._parse_known(tenant_id, features)
        known_keys = {f.value for f in known}

        # Unknown ids can never be satisfied, so they are reported as missing
        missing = [
            _key(f) for f in features
            if _key(f) not in known_keys or not entitlement.has_feature(_key(f))
        ]
        if missing:
            highest: Optional[Tier] = None
            for feature in known:
                if feature.value not in missing:
                    continue
                tier = minimum_tier_for(feature)
                if highest is None or tier_index(tier) > tier_index(highest):
                    highest = tier
            raise self._deny(
                FeaturesNotAvailableError(
                    required_features=[_key(f) for f in features],
                    missing_features=missing,
                    require_all=True,
                    required_tier=highest.value if highest else None,
                    current_plan=entitlement.plan_slug,
                ),
                tenant_id,
            )
        return entitlement

    def check_usage_limit(
        self,
        tenant_id: Optional[str],
        resource: Union[ResourceKind, str],
    ) -> Tuple[ResolvedEntitlement, UsageCheckResult]:
        """
        Deny with USAGE_LIMIT_EXCEEDED when limit != -1 and used >= limit.

        The limit comes from the resolved plan; `used` is read from the
        persisted counter on every call, never from the cached snapshot.
        This is a soft limit: two concurrent requests may both pass.
        """
        entitlement = self.require_subscription(tenant_id)
        key = resource.value if isinstance(resource, ResourceKind) else ResourceKind(resource).value

        try:
            used = self.ledger.get_used(tenant_id, key)
        except SQLAlchemyError as e:
            self.service.db.rollback()
            logger.critical(
                "Usage counter read failed - failing closed",
                extra={
                    "tenant_id": tenant_id,
                    "resource": key,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "alert_type": "entitlement_resolution_failed",
                },
            )
            raise self._deny(ResolutionFailureError(tenant_id, str(e), cause=e), tenant_id)

        result = evaluate_usage(key, used, entitlement.get_limit(key))
        if not result.allowed:
            raise self._deny(
                UsageLimitExceededError(
                    key,
                    used=result.used,
                    limit=result.limit,
                    current_plan=entitlement.plan_slug,
                ),
                tenant_id,
            )
        return entitlement, result

    def check_features(
        self,
        tenant_id: Optional[str],
        features: Sequence[FeatureLike],
    ) -> Tuple[Optional[ResolvedEntitlement], List[str]]:
        """
        Soft check: never denies.

        Returns:
            (entitlement or None, subset of `features` that is enabled). Any
            failure to resolve yields an empty subset.
        """
        if not tenant_id:
            return None, []
        try:
            entitlement = self.service.get_entitlement(tenant_id)
        except EntitlementError as e:
            logger.info(
                "Soft feature check could not resolve entitlements",
                extra={"tenant_id": tenant_id, "code": e.code.value},
            )
            return None, []

        known = self._parse_known(tenant_id, features)
        return entitlement, entitlement.enabled_subset(known)


def _key(feature: FeatureLike) -> str:
    return feature.value if isinstance(feature, Feature) else str(feature)
