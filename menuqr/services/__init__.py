"""
Business logic services.
"""

from menuqr.services.plan_service import PlanService
from menuqr.services.subscription_service import SubscriptionService
from menuqr.services.usage_ledger import UsageLedger

__all__ = ["PlanService", "SubscriptionService", "UsageLedger"]
