import logging
import math
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.router import api_v1_router
from app.core.config import settings, validate_settings_for_production
from app.core.dependencies import close_gateway, get_gateway
from app.core.logging import setup_logging
from app.core.metrics import PrometheusMiddleware, metrics_response
from app.core.rate_limit import limiter
from app.core.sentry import init_sentry
from app.gateway.errors import CircuitOpen, GatewayError, RateLimited
from app.gateway.types import AuditOutcome

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting action gateway (mode=%s, audit=%s)...", settings.deployment_mode, settings.audit_sink)
    get_gateway()

    yield

    # Shutdown
    await close_gateway()
    logger.info("Action gateway shut down")


app = FastAPI(
    title="Action Gateway",
    description="Dispatch and resilience gateway for chat, search, browser, runtime and memory providers",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    headers = {}
    if isinstance(exc, (RateLimited, CircuitOpen)) and exc.retry_after > 0:
        headers["Retry-After"] = str(math.ceil(exc.retry_after))
    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, "error": exc.to_dict()},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {
                "kind": AuditOutcome.INVALID_ENVELOPE.value,
                "message": "request body must be a JSON object",
                "retryable": False,
            },
        },
    )


# Log unhandled exceptions without echoing internals to the caller
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {"kind": "internal_error", "message": type(exc).__name__, "retryable": False},
        },
    )


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Prometheus HTTP metrics
app.add_middleware(PrometheusMiddleware)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health():
    return {
        "status": "ok",
        "mode": settings.deployment_mode,
        "audit_sink": settings.audit_sink,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
