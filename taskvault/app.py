from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from taskvault.api.error_handling import register_exception_handlers
from taskvault.api.routes import router
from taskvault.api.schemas import HealthResponse
from taskvault.config import get_settings
from taskvault.logging import bind_request_context, get_logger
from taskvault.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving and release the store afterwards."""
    runtime = await asyncio.to_thread(get_runtime)
    logger.info(
        "app_started",
        environment=runtime.settings.environment.value,
        version=__version__,
    )
    yield
    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Taskvault API", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins(),
    allow_credentials=get_settings().cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def bind_request_logging(request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or generated).

    The id, method and path are bound into the log context and the id is
    echoed on the response.
    """
    request_id = bind_request_context(
        request.headers.get("X-Request-ID"), request.method, request.url.path
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and get_settings().is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return "Taskvault API is running"


@app.get("/health", response_model=HealthResponse)
async def health():
    """Liveness plus a bounded store probe; answers 503 when the store is down."""
    runtime = get_runtime()
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        database = "up"
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        database = "down"
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        database = "down"

    payload = HealthResponse(
        status="up" if database == "up" else "down",
        environment=runtime.settings.environment.value,
        database=database,
        timestamp=datetime.now(timezone.utc),
    )
    if database != "up":
        return JSONResponse(status_code=503, content=payload.model_dump(mode="json"))
    return payload


def create_app() -> FastAPI:
    return app
