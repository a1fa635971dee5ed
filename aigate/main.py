import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from aigate.api.router import api_router
from aigate.core.config import settings, validate_settings_for_production
from aigate.core.exceptions import ApiError
from aigate.core.logging import setup_logging
from aigate.core.metrics import PrometheusMiddleware, metrics_response
from aigate.core.sentry import init_sentry
from aigate.gateway.gateway import AdmissionGateway
from aigate.gateway.provider_resolver import ProviderResolver
from aigate.gateway.rate_limiter import FixedWindowRateLimiter
from aigate.gateway.request_key import JwtAuthVerifier, RequestKeyResolver
from aigate.gateway.types import ErrorCode, ErrorPayload
from aigate.gateway.usage_guard import UsageGuard
from aigate.gateway.usage_oracle import HttpUsageOracle, LocalUsageOracle
from aigate.gateway.vendor_adapters import build_adapters

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


def build_gateway() -> AdmissionGateway:
    """Wire the gateway and its collaborators from settings."""
    store = None
    if settings.settings_store_enabled:
        from aigate.db.postgres import async_session_factory
        from aigate.gateway.settings_store import DatabaseSettingsStore

        store = DatabaseSettingsStore(async_session_factory)

    if settings.usage_oracle_url:
        oracle = HttpUsageOracle(
            settings.usage_oracle_url,
            api_key=settings.usage_oracle_api_key,
            timeout=settings.usage_timeout_ms / 1000,
        )
    else:
        logger.warning("USAGE_ORACLE_URL not set, using in-process usage caps")
        oracle = LocalUsageOracle()

    return AdmissionGateway(
        key_resolver=RequestKeyResolver(JwtAuthVerifier(), timeout_ms=settings.auth_timeout_ms),
        rate_limiter=FixedWindowRateLimiter(),
        usage_guard=UsageGuard(
            oracle,
            timeout_ms=settings.usage_timeout_ms,
            increment_timeout_ms=settings.usage_increment_timeout_ms,
        ),
        provider_resolver=ProviderResolver(
            store=store,
            ttl_seconds=settings.provider_cache_ttl_s,
            store_timeout_ms=settings.settings_store_timeout_ms,
        ),
        max_body_bytes=settings.max_body_bytes,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    logger.info("Starting AI admission gateway (env=%s)...", settings.app_env)

    # Settings store is optional: provider resolution fails open without it
    if settings.settings_store_enabled:
        from aigate.db.postgres import init_schema

        try:
            await init_schema()
            logger.info("Settings store: connected and schema ready")
        except Exception as e:
            logger.warning("Settings store unavailable at startup: %s", e)

    yield

    # Shutdown
    await app.state.gateway.usage_guard.drain()
    if settings.settings_store_enabled:
        from aigate.db.postgres import engine

        await engine.dispose()
    logger.info("AI admission gateway shut down")


app = FastAPI(
    title="AI Gateway",
    description="Admission control in front of upstream AI vendors",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)

app.state.gateway = build_gateway()
app.state.adapters = build_adapters(settings)


# --- Error contract ---


def _error_response(payload: ErrorPayload, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=payload.status, content=payload.to_dict(), headers=headers)


@app.exception_handler(ApiError)
async def _api_error_handler(request: Request, exc: ApiError):
    return _error_response(exc.payload, exc.headers)


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 405:
        payload = ErrorPayload(405, ErrorCode.METHOD_NOT_ALLOWED, "Method not allowed.", False)
    elif exc.status_code == 404:
        payload = ErrorPayload(404, ErrorCode.BAD_REQUEST, "Not found.", False)
    elif exc.status_code < 500:
        payload = ErrorPayload(exc.status_code, ErrorCode.BAD_REQUEST, str(exc.detail), False)
    else:
        payload = ErrorPayload(exc.status_code, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred.", True)
    return _error_response(payload, getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    payload = ErrorPayload(400, ErrorCode.BAD_REQUEST, "Invalid request.", False)
    return _error_response(payload)


# Log unhandled exceptions with the full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    payload = ErrorPayload(500, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred. Please try again.", True)
    return _error_response(payload)


# --- Middleware ---

app.add_middleware(PrometheusMiddleware)

# CORS, parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
        "X-AI-Remaining",
        "X-AI-Limit",
        "X-AI-Membership",
        "X-AI-Burst-Remaining",
        "X-AI-Burst-Limit",
        "X-AI-Provider-Used",
    ],
)

# API routes
app.include_router(api_router)


@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "gateway": app.state.gateway.get_status(),
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
