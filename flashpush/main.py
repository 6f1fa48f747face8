from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security.utils import get_authorization_scheme_param
from fastapi.responses import JSONResponse

from flashpush.api.router import api_router
from flashpush.config import get_settings
from flashpush.core.errors import ErrorCode, FlashPushError
from flashpush.core.logging import get_logger, setup_logging
from flashpush.core.scheduler import start_scheduler, stop_scheduler
from flashpush.core.security import AuthenticationError, sanitize_object, verify_access_token
from flashpush.services import posthog_client

logger = get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    # Startup
    setup_logging()
    await start_scheduler()
    yield
    # Shutdown
    await stop_scheduler()
    posthog_client.shutdown()


app = FastAPI(
    title="FlashPush",
    description="Flash offer push notification delivery",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "content-type"],
)


@app.exception_handler(FlashPushError)
async def flash_push_error_handler(request: Request, exc: FlashPushError) -> JSONResponse:
    """Render service failures as {success: false, error, code, details?}."""
    headers = {}
    if exc.code == ErrorCode.RATE_LIMIT_EXCEEDED and exc.details:
        headers["Retry-After"] = str(exc.details.get("retryAfterSeconds") or 86400)

    return JSONResponse(
        status_code=exc.status_code,
        content=sanitize_object(exc.to_dict()),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and query parameters are INVALID_REQUEST.

    FastAPI validates the body before route dependencies run, so the caller is
    authenticated here first. Unauthenticated requests always get UNAUTHORIZED.
    """
    scheme, token = get_authorization_scheme_param(request.headers.get("Authorization"))
    try:
        verify_access_token(token if scheme.lower() == "bearer" else None)
    except AuthenticationError as e:
        error = FlashPushError(ErrorCode.UNAUTHORIZED, str(e))
    else:
        error = FlashPushError(ErrorCode.INVALID_REQUEST, "Invalid request body or parameters")
        logger.bind(path=request.url.path, errors=len(exc.errors())).info(
            "request_validation_failed"
        )
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# Include API routes
app.include_router(api_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint for load balancers."""
    return {"status": "healthy"}
