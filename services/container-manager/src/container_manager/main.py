"""Container manager service - folder-as-a-service control plane on FastAPI."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import time
import uuid

from fastapi import FastAPI, Request
import structlog

from shared.logging_config import clear_context, set_correlation_id, setup_logging_from_settings

from . import __version__, routers
from .config import Settings, get_settings
from .errors import register_exception_handlers
from .plane import ControlPlane
from .runtime import ContainerRuntime


def create_app(
    settings: Settings | None = None,
    runtime: ContainerRuntime | None = None,
    plane: ControlPlane | None = None,
) -> FastAPI:
    """Build the application. Tests pass an in-memory runtime or a prebuilt plane."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        setup_logging_from_settings(settings)
        control_plane = plane or ControlPlane.build(settings, runtime=runtime)
        app.state.plane = control_plane
        await control_plane.start()
        yield
        await control_plane.close()

    app = FastAPI(
        title="Container Manager",
        description="Folder-as-a-service: detect, deploy and operate workspace folders",
        version=__version__,
        lifespan=lifespan,
    )
    register_exception_handlers(app)

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID", f"req_{uuid.uuid4().hex[:8]}")
        set_correlation_id(correlation_id)
        structlog.contextvars.bind_contextvars(method=request.method, path=request.url.path)

        start = time.time()
        logger = structlog.get_logger()

        try:
            response = await call_next(request)
            duration_ms = round((time.time() - start) * 1000, 2)

            if response.status_code >= 500:  # noqa: PLR2004
                logger.error(
                    "http_request_failed", status_code=response.status_code, duration_ms=duration_ms
                )
            else:
                logger.info(
                    "http_request", status_code=response.status_code, duration_ms=duration_ms
                )

            response.headers["X-Correlation-ID"] = correlation_id
            return response
        except Exception as e:
            logger.error(
                "http_request_exception",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.time() - start) * 1000, 2),
                exc_info=True,
            )
            raise
        finally:
            clear_context()

    @app.get("/")
    async def root():
        """Root endpoint - service information."""
        return {
            "name": "Container Manager",
            "version": __version__,
            "runtime": settings.runtime_backend,
        }

    app.include_router(routers.health.router)
    app.include_router(routers.workspaces.router)
    app.include_router(routers.services.router)
    app.include_router(routers.events_ws.router)
    return app
