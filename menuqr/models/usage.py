"""
Usage counters for metered plan resources.

One row per (tenant, resource). Business operations increment counters
with a single atomic UPDATE; the Enforcement Layer reads them directly
instead of trusting any cached snapshot.
"""

from sqlalchemy import Column, String, Integer, UniqueConstraint

from menuqr.db_base import Base
from menuqr.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class UsageCounter(Base, TimestampMixin, TenantScopedMixin):
    """Current usage of one resource for one tenant."""

    __tablename__ = "usage_counters"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    resource = Column(
        String(50),
        nullable=False,
        comment="ResourceKind value (dishes, orders, ...)"
    )
    used = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Current count. Never negative."
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "resource", name="uq_usage_counter_tenant_resource"),
    )

    def __repr__(self) -> str:
        return f"<UsageCounter(tenant_id={self.tenant_id}, resource={self.resource}, used={self.used})>"
