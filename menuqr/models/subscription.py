"""
Subscription model binding a tenant to a plan.

CRITICAL: Exactly one subscription per tenant.
Status transitions are validated by menuqr.entitlements.state; every write
path MUST invalidate the tenant's entitlement cache before returning.
"""

from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Integer, DateTime, Enum, Boolean, Text,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from menuqr.db_base import Base
from menuqr.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class SubscriptionStatus(str, PyEnum):
    """Subscription status values."""
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"      # Payment failed, may be in grace period
    CANCELLED = "cancelled"    # Terminal
    EXPIRED = "expired"        # Terminal, e.g. trial ended without conversion


class BillingCycle(str, PyEnum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PendingChangeType(str, PyEnum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CANCELLATION = "cancellation"


class GracePeriodReason(str, PyEnum):
    PAYMENT_FAILED = "payment_failed"
    DOWNGRADE = "downgrade"
    TRIAL_ENDED = "trial_ended"


class Subscription(Base, TimestampMixin, TenantScopedMixin):
    """
    Per-tenant plan binding with billing-cycle state.

    Usage counters live in usage_counters (see menuqr.models.usage) so they
    can be incremented atomically without touching this row.
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    plan_id = Column(
        String(36),
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Current plan"
    )
    previous_plan_id = Column(
        String(36),
        ForeignKey("plans.id", ondelete="SET NULL"),
        nullable=True,
        comment="Plan before the most recent change"
    )

    status = Column(
        Enum(*[s.value for s in SubscriptionStatus], name="subscription_status"),
        default=SubscriptionStatus.TRIAL.value,
        nullable=False,
        index=True,
        comment="Current subscription status"
    )
    billing_cycle = Column(
        Enum(*[c.value for c in BillingCycle], name="billing_cycle"),
        default=BillingCycle.MONTHLY.value,
        nullable=False
    )

    # Current billing period
    current_period_start = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="Start of current billing period"
    )
    current_period_end = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="End of current billing period"
    )
    trial_ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Trial expiration date"
    )
    cancelled_at = Column(
        DateTime(timezone=True),
        nullable=True
    )
    cancel_reason = Column(
        Text,
        nullable=True
    )
    usage_reset_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When period counters were last reset. Older than current_period_start = stale."
    )

    # Deferred plan change (e.g. downgrade at period end)
    pending_change_type = Column(
        Enum(*[t.value for t in PendingChangeType], name="pending_change_type"),
        nullable=True,
        comment="NULL when no change is scheduled"
    )
    pending_plan_id = Column(
        String(36),
        ForeignKey("plans.id", ondelete="SET NULL"),
        nullable=True
    )
    pending_effective_date = Column(
        DateTime(timezone=True),
        nullable=True,
        index=True
    )
    pending_requested_at = Column(
        DateTime(timezone=True),
        nullable=True
    )
    pending_reason = Column(
        Text,
        nullable=True
    )

    # Grace period
    grace_period_active = Column(
        Boolean,
        nullable=False,
        default=False
    )
    grace_period_started_at = Column(
        DateTime(timezone=True),
        nullable=True
    )
    grace_period_ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        index=True
    )
    grace_period_reason = Column(
        Enum(*[r.value for r in GracePeriodReason], name="grace_period_reason"),
        nullable=True
    )

    plan = relationship(
        "Plan",
        back_populates="subscriptions",
        foreign_keys=[plan_id]
    )
    plan_changes = relationship(
        "PlanChangeHistory",
        back_populates="subscription",
        order_by="PlanChangeHistory.effective_date",
        lazy="selectin",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_subscriptions_tenant"),
        Index("ix_subscriptions_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, tenant_id={self.tenant_id}, status={self.status})>"

    @property
    def has_pending_change(self) -> bool:
        return self.pending_change_type is not None

    def clear_pending_change(self) -> None:
        self.pending_change_type = None
        self.pending_plan_id = None
        self.pending_effective_date = None
        self.pending_requested_at = None
        self.pending_reason = None


class PlanChangeHistory(Base, TenantScopedMixin):
    """
    Record of an applied plan change.

    For downgrades, archived_* counts how many items were over the new
    plan's limits at the moment the change took effect.
    """

    __tablename__ = "plan_change_history"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    subscription_id = Column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    from_plan_id = Column(String(36), nullable=True)
    to_plan_id = Column(String(36), nullable=False)
    change_type = Column(
        Enum(*[t.value for t in PendingChangeType], name="plan_change_type"),
        nullable=False
    )
    effective_date = Column(
        DateTime(timezone=True),
        nullable=False
    )
    archived_dishes = Column(Integer, nullable=False, default=0)
    archived_campaigns = Column(Integer, nullable=False, default=0)

    subscription = relationship("Subscription", back_populates="plan_changes")

    def __repr__(self) -> str:
        return (
            f"<PlanChangeHistory(subscription_id={self.subscription_id}, "
            f"{self.from_plan_id}->{self.to_plan_id})>"
        )
