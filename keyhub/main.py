"""Main FastAPI application"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
import time

from keyhub.core.config import settings
from keyhub.db.session import Database
from keyhub.routes import auth, health, keys, maintenance, subscriptions, verify
from keyhub.services.container import build_services, ensure_bootstrap_admin
from keyhub.services.maintenance import MaintenanceScheduler, RateLimitJanitor
from keyhub.utils.logger import logger
from keyhub.utils.exceptions import (
    KeyHubError,
    keyhub_exception_handler,
    validation_exception_handler,
    generic_exception_handler,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager - handles startup and shutdown events.

    Startup:
    - Create database tables
    - Build the service container
    - Seed the bootstrap admin key
    - Start background maintenance

    Shutdown:
    - Stop background tasks
    - Close database connections
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"Starting {settings.PROJECT_NAME} v{settings.VERSION}")
    logger.info("=" * 60)

    database = Database()
    await database.init()

    services = build_services(database)
    app.state.services = services
    await ensure_bootstrap_admin(services, settings.BOOTSTRAP_ADMIN_KEY)

    background = [RateLimitJanitor(services.rate_limiter, settings.RATE_LIMIT_CLEANUP_SECONDS)]
    if settings.MAINTENANCE_INTERVAL_SECONDS > 0:
        background.append(MaintenanceScheduler(services.maintenance, settings.MAINTENANCE_INTERVAL_SECONDS))
    else:
        logger.info("Periodic maintenance disabled; expecting POST /api/cron/maintenance")
    for task in background:
        await task.start()

    logger.info(f"API is ready at {settings.API_PREFIX}")
    logger.info("Documentation available at /docs")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    for task in background:
        await task.stop()
    await database.close()
    logger.info("Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.PROJECT_NAME,
    description=settings.DESCRIPTION,
    version=settings.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)


# Middleware
# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After",
        "X-Subscription-Status", "X-Days-Remaining", "X-Renewal-Date", "X-API-Key-Type",
    ],
)


# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add processing time to response headers"""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = f"{process_time:.4f}"
    return response


# Security headers
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# Logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests"""
    logger.info(f"Request: {request.method} {request.url.path}")
    response = await call_next(request)
    logger.info(f"Response: {response.status_code} - {request.method} {request.url.path}")
    return response


# Exception handlers
app.add_exception_handler(KeyHubError, keyhub_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


# Include routers
app.include_router(health.router)
app.include_router(auth.router, prefix=settings.API_PREFIX)
app.include_router(keys.router, prefix=settings.API_PREFIX)
app.include_router(subscriptions.router, prefix=settings.API_PREFIX)
app.include_router(maintenance.router, prefix=settings.API_PREFIX)
app.include_router(verify.router, prefix=settings.API_PREFIX)


@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    """Favicon endpoint"""
    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "keyhub.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
