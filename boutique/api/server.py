"""
Boutique Orders Server
======================
FastAPI server for the order payment/fulfillment lifecycle:
- REST API for orders, checkout and notifications
- Stripe and PayPal webhooks
- Reconciliation loop for lost webhooks and short stock
- Health monitoring

pip install fastapi uvicorn pydantic structlog stripe httpx asyncpg pyjwt
"""

import asyncio
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from boutique import __version__
from boutique.api import orders, payments
from boutique.container import Services, build_services
from boutique.database import close_database, init_database
from boutique.errors import BoutiqueError
from boutique.tasks.reconciliation import config as reconcile_config
from boutique.tasks.reconciliation import reconciliation_loop

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "5000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # "memory" or "postgres"
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory")


config = ServerConfig()


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    storage_backend: str
    reconciliation_running: bool


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    logger.info("server_starting", version=__version__, env=config.ENV, backend=config.STORAGE_BACKEND)

    owns_services = app.state.services is None
    if owns_services:
        if config.STORAGE_BACKEND == "postgres":
            await init_database()
        app.state.services = build_services(config.STORAGE_BACKEND)

    reconcile_task: Optional[asyncio.Task] = None
    if app.state.run_background_tasks and reconcile_config.ENABLED:
        reconcile_task = asyncio.create_task(reconciliation_loop(app.state.services))
    app.state.reconcile_task = reconcile_task

    yield

    logger.info("server_shutting_down")
    if reconcile_task:
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass

    if owns_services:
        await app.state.services.close()
        if config.STORAGE_BACKEND == "postgres":
            await close_database()


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(services: Optional[Services] = None, run_background_tasks: bool = True) -> FastAPI:
    """Build the API. Tests pass prebuilt ``services`` and skip the background loop."""
    app = FastAPI(
        title="Boutique Orders",
        description="Order payment and fulfillment lifecycle for the Boutique storefront",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.run_background_tasks = run_background_tasks
    app.state.reconcile_task = None
    app.state.started_at = datetime.now(timezone.utc)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(BoutiqueError)
    async def boutique_error_handler(request: Request, exc: BoutiqueError):
        log_method = logger.warning if exc.status_code < 500 else logger.error
        log_method("request_failed",
                   path=request.url.path,
                   status=exc.status_code,
                   error_type=type(exc).__name__,
                   error=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.message, "path": request.url.path, "details": exc.details},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error["loc"][1:]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        logger.warning("request_invalid", path=request.url.path, errors=details)
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid request data", "path": request.url.path, "details": details},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("request_crashed", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"message": "Internal server error", "path": request.url.path, "details": None},
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        uptime = (datetime.now(timezone.utc) - app.state.started_at).total_seconds()
        task = app.state.reconcile_task
        return HealthResponse(
            status="healthy",
            version=__version__,
            uptime_seconds=uptime,
            storage_backend=config.STORAGE_BACKEND,
            reconciliation_running=task is not None and not task.done(),
        )

    @app.get("/ready")
    async def readiness_check():
        """Kubernetes readiness probe"""
        return {"ready": app.state.services is not None}

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    app.include_router(orders.router)
    app.include_router(payments.router)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

def main():
    uvicorn.run(
        "boutique.api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )


if __name__ == "__main__":
    main()
