# API routes
from menuqr.api.routes import admin_plans
from menuqr.api.routes import subscriptions

__all__ = ["admin_plans", "subscriptions"]
