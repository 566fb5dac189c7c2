"""
Access Provisioning - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    targets,
    accounts,
    billing,
    payments,
    admin,
)
from services.errors import ProvisioningError
from services.runtime import get_lifecycle_engine, get_notifier
from services.sweeper import run_expiry_sweep_service

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


async def _periodic_expiry_sweep() -> None:
    interval_seconds = max(int(settings.EXPIRY_SWEEP_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await run_expiry_sweep_service(get_lifecycle_engine(), notifier=get_notifier())
            if result.get("revoked") or result.get("errors"):
                logger.info(
                    "⏱️ Expiry sweep: revoked=%s skipped=%s errors=%s",
                    result.get("revoked", 0),
                    result.get("skipped", 0),
                    len(result.get("errors", [])),
                )
        except Exception:
            logger.exception("⚠️ Expiry sweep tick failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("🚀 Starting Access Provisioning API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("🗄️ Database schema verified.")
        except OperationalError as e:
            logger.warning("⚠️ Database bootstrap skipped: %s", e)
    sweep_task = None
    if int(settings.EXPIRY_SWEEP_INTERVAL_SECONDS) > 0:
        sweep_task = asyncio.create_task(_periodic_expiry_sweep())
        logger.info("📅 Expiry sweep loop enabled (every %ss).", int(settings.EXPIRY_SWEEP_INTERVAL_SECONDS))
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    await engine.dispose()
    logger.info("👋 Shutting down API...")


app = FastAPI(
    title="Access Provisioning API",
    description="Provision time-boxed credentials funded by a prepaid balance",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ProvisioningError)
async def provisioning_error_handler(request: Request, exc: ProvisioningError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.exception_handler(OperationalError)
async def database_unavailable_handler(request: Request, exc: OperationalError):
    logger.exception("Database unavailable while serving %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content={"detail": {"code": "storage_unavailable", "message": "Storage is unavailable. Try again later."}},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(targets.router, prefix="/targets", tags=["Targets"])
app.include_router(accounts.router, prefix="/accounts", tags=["Accounts"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Access Provisioning API",
        "version": "0.1.0",
        "status": "running"
    }
