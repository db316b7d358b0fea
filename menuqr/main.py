"""
FastAPI application entry point for the MenuQR entitlement API.

Authentication is external: the auth layer in front of this app attaches
a TenantContext to request.state.tenant_context. This app only authorizes.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from menuqr.api.dependencies.entitlements import register_entitlement_error_handlers
from menuqr.api.routes import admin_plans
from menuqr.api.routes import subscriptions
from menuqr.config.plan_catalog import get_plan_catalog_loader
from menuqr.database.session import get_db_session_sync, get_engine
from menuqr.db_base import Base
from menuqr.entitlements.cache import InvalidationListener, get_entitlement_cache
from menuqr.repositories.plans_repo import ensure_default_plans

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _prepare_database() -> None:
    """Create missing tables and seed the plan catalog."""
    import menuqr.models  # noqa: F401  registers every table on Base.metadata

    Base.metadata.create_all(get_engine())
    for db in get_db_session_sync():
        created = ensure_default_plans(db, get_plan_catalog_loader().get_plans())
        db.commit()
        if created:
            logger.info("Seeded plan catalog", extra={"plans": [p.slug for p in created]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting MenuQR entitlement API")

    app.state.database_configured = bool(os.getenv("DATABASE_URL"))
    if not app.state.database_configured:
        logger.error(
            "DATABASE_URL is not set. All tenant endpoints will return 503."
        )
    else:
        try:
            _prepare_database()
        except (RuntimeError, SQLAlchemyError) as e:
            logger.exception("Database preparation failed", extra={"error": str(e)})

    # Cross-instance invalidation; without Redis each instance relies on TTL
    cache = get_entitlement_cache()
    listener = InvalidationListener(cache)
    app.state.invalidation_listener = listener
    if not listener.start():
        logger.warning(
            "Redis unavailable - entitlement invalidations will not propagate across instances",
            extra={"ttl_seconds": cache.ttl_seconds},
        )

    yield

    # Shutdown
    listener.stop()
    logger.info("Shutting down MenuQR entitlement API")


# Create FastAPI app
app = FastAPI(
    title="MenuQR Entitlement API",
    description="Subscription plans, entitlements and usage limits for MenuQR restaurants",
    version="1.0.0",
    lifespan=lifespan
)

register_entitlement_error_handlers(app)

# Include tenant subscription routes (requires tenant context, plan listing is public)
app.include_router(subscriptions.router)

# Include admin routes (requires admin role)
app.include_router(admin_plans.router)


@app.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok"}


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    tenant_id = "unknown"
    if hasattr(request.state, "tenant_context"):
        tenant_id = request.state.tenant_context.tenant_id

    logger.error(
        "Unhandled exception",
        extra={
            "tenant_id": tenant_id,
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "menuqr.main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
