"""Repository layer for plans and tenant subscriptions."""

from menuqr.repositories.plans_repo import (
    PlansRepository,
    PlanRepositoryError,
    PlanNotFoundError,
    PlanAlreadyExistsError,
    PlanInUseError,
)
from menuqr.repositories.subscription_repository import SubscriptionRepository

__all__ = [
    "PlansRepository",
    "PlanRepositoryError",
    "PlanNotFoundError",
    "PlanAlreadyExistsError",
    "PlanInUseError",
    "SubscriptionRepository",
]
