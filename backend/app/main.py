"""
QueueFlow - Subscription Lifecycle & Entitlement Backend
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging_config import setup_logging
from app.core.redis import close_redis_client, ping_redis
from app.api.v1 import api_router
from app.services.entitlement_service import FeatureNotAvailableError, LimitReachedError

# Configure logging before anything else
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Redis is connected lazily; only shutdown needs work."""
    logger.info("app_startup: %s v%s env=%s debug=%s", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT, settings.DEBUG)

    yield

    await close_redis_client()
    logger.info("app_shutdown: %s", settings.APP_NAME)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Subscription lifecycle, Stripe billing and plan entitlements for QueueFlow tenants",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not settings.DEBUG:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.ALLOWED_HOSTS,
    )


@app.exception_handler(LimitReachedError)
async def limit_reached_handler(_request: Request, exc: LimitReachedError) -> JSONResponse:
    """Quota denial body read by the upgrade prompt."""
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={
            "error": exc.detail,
            "code": exc.code,
            "limitReached": True,
            "currentCount": exc.current_count,
            "maxLimit": exc.max_limit,
            "planType": exc.plan_type,
            "resource": exc.resource.value,
        },
    )


@app.exception_handler(FeatureNotAvailableError)
async def feature_not_available_handler(
    _request: Request,
    exc: FeatureNotAvailableError,
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={
            "error": exc.detail,
            "code": exc.code,
            "limitReached": False,
            "featureRequired": exc.feature.value,
            "planType": exc.plan_type,
        },
    )


app.include_router(api_router, prefix="/api/v1")


@app.get("/", tags=["Health"])
async def root():
    """Liveness probe."""
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "operational",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Readiness: reports "degraded" while Redis is down (DB-only mode)."""
    redis_ok = await ping_redis()
    return {
        "status": "healthy" if redis_ok else "degraded",
        "redis": "ok" if redis_ok else "unavailable",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=settings.UVICORN_PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
