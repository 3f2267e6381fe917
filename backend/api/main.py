"""
Coral Manager API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from core.errors import register_exception_handlers

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    from db.bootstrap import create_schema, ensure_admin
    from db.session import AsyncSessionLocal, engine
    from integrations.xero import get_xero_service

    logger.info("Coral Manager API starting up", version=settings.app_version)
    await create_schema(engine)
    async with AsyncSessionLocal() as db:
        await ensure_admin(db, settings.admin_email, settings.admin_password, settings.admin_name)
    try:
        await get_xero_service().initialize()
    except Exception as exc:
        logger.error("xero.initialize_failed", error=str(exc))
    yield
    logger.info("Coral Manager API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Coral stock, orders and client notifications",
    lifespan=lifespan,
)

register_exception_handlers(app)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import (  # noqa: E402
    auth,
    backups,
    bulletins,
    categories,
    clients,
    corals,
    images,
    integrations,
    notifications,
    orders,
)

app.include_router(auth.router)
app.include_router(categories.router)
app.include_router(corals.router)
app.include_router(clients.router)
app.include_router(orders.router)
app.include_router(bulletins.router)
app.include_router(notifications.router)
app.include_router(images.router)
app.include_router(integrations.router)
app.include_router(backups.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
