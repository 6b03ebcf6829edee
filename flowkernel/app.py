from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flowkernel.api.error_handling import register_exception_handlers
from flowkernel.api.routes import router
from flowkernel.api.schemas import HealthResponse
from flowkernel.config import Settings
from flowkernel.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from flowkernel.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", handler_kinds=runtime.registry.kinds(), version=__version__)

    yield

    try:
        await get_runtime().shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Flow Kernel", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for structured logs.

    Taken from the X-Request-ID header when the client sends one, generated
    otherwise, and echoed back in the response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.get("/healthz", response_model=HealthResponse)
async def health() -> HealthResponse:
    from flowkernel.service.runtime import get_runtime

    runtime = get_runtime()
    active = [kernel for kernel in runtime.engine.kernels.values() if not kernel.status.is_terminal]
    return HealthResponse(
        status="healthy",
        version=__version__,
        handler_kinds=runtime.registry.kinds(),
        active_runs=len(active),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


register_exception_handlers(app)
app.include_router(router)
