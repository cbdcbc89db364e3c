import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from siteforms.api.v1 import send
from siteforms.core.config import settings
from siteforms.core.errors import ConfigurationError, register_exception_handlers
from siteforms.core.logging import setup_logging
from siteforms.core.middleware import LatencyMonitorMiddleware, RequestIdMiddleware
from siteforms.core.security_headers import SecurityHeadersMiddleware

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


def check_configuration() -> None:
    """Build the submission pipeline once so missing credentials surface at startup."""
    try:
        send.get_submission_pipeline()
    except ConfigurationError as exc:
        if settings.ENVIRONMENT == "production":
            raise
        logger.error("Submission pipeline misconfigured: %s", exc)
        return
    if settings.verification_bypassed:
        logger.warning("hCaptcha test site key configured: verification disabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info(f"Starting {settings.PROJECT_NAME} v{settings.VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    check_configuration()

    yield

    logger.info("Shutting down...")
    send.close_submission_pipeline()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Contact and executive coach RFP form submissions for the personal site.",
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)

# CORS middleware (API routes only exist under /api)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=86400,
)

app.add_middleware(SecurityHeadersMiddleware)

# Latency Monitoring (SLO Check)
app.add_middleware(LatencyMonitorMiddleware)

# Request ID Tracing
app.add_middleware(RequestIdMiddleware)

register_exception_handlers(app)

# Path used by the site's forms, plus the versioned alias
app.include_router(send.router, prefix=settings.API_PREFIX, tags=["forms"])
app.include_router(send.router, prefix=settings.API_V1_PREFIX, tags=["forms"])


@app.get("/health", summary="Health check")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
    }
