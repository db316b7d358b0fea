"""
Entitlement Audit Logger - record every access denial.

Provides:
- AccessDenialEvent: Structured event for a deny
- EntitlementAuditLogger: writes events to the `entitlements.audit` logger

Configuration bugs (unknown feature ids) are logged at ERROR with an
alert_type for routing. Store failures are alerted by EntitlementService.
Ordinary denies are INFO.
"""

import json
import logging
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from menuqr.entitlements.errors import (
    EntitlementError,
    UnknownFeatureError,
)

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")


@dataclass
class AccessDenialEvent:
    """Structured event for an access denial."""

    tenant_id: Optional[str]
    code: str
    feature: Optional[str] = None
    resource: Optional[str] = None
    plan_slug: Optional[str] = None
    subscription_status: Optional[str] = None
    user_id: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    message: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    extra_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_error(
        cls,
        error: EntitlementError,
        tenant_id: Optional[str],
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> "AccessDenialEvent":
        return cls(
            tenant_id=tenant_id,
            code=error.code.value,
            feature=getattr(error, "feature", None),
            resource=getattr(error, "resource", None),
            plan_slug=error.current_plan,
            subscription_status=getattr(error, "subscription_status", None),
            user_id=user_id,
            endpoint=endpoint,
            method=method,
            message=error.message,
        )


class EntitlementAuditLogger:
    """Emits denial events; keeps simple counters for diagnostics."""

    def __init__(self):
        self._lock = Lock()
        self._counts: Dict[str, int] = {}

    def log_denial(self, event: AccessDenialEvent) -> None:
        with self._lock:
            self._counts[event.code] = self._counts.get(event.code, 0) + 1

        audit_logger.info(
            "Entitlement access denied",
            extra={"audit_event": event.to_dict()},
        )

    def log_error(self, error: EntitlementError, event: AccessDenialEvent) -> None:
        """Log a deny, escalating configuration bugs."""
        if isinstance(error, UnknownFeatureError):
            logger.error(
                "Gate references an unknown feature id",
                extra={
                    "feature": error.feature,
                    "endpoint": event.endpoint,
                    "alert_type": "unknown_feature",
                },
            )
        self.log_denial(event)

    def denial_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


_audit_logger: Optional[EntitlementAuditLogger] = None
_audit_lock = Lock()


def get_audit_logger() -> EntitlementAuditLogger:
    """Get the singleton audit logger."""
    global _audit_logger
    if _audit_logger is None:
        with _audit_lock:
            if _audit_logger is None:
                _audit_logger = EntitlementAuditLogger()
    return _audit_logger


__all__ = [
    "AccessDenialEvent",
    "EntitlementAuditLogger",
    "get_audit_logger",
]
