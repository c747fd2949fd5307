"""Error taxonomy and FastAPI exception handlers.

Every error raised by the control plane derives from `ServiceError`, carrying
a machine-readable `code` and the HTTP status it maps to. Handlers render them
as `{"error": code, "detail": message}`.
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

logger = structlog.get_logger()


class ServiceError(Exception):
    """Base class for control-plane errors."""

    status_code: int = 400
    code: str = "service_error"

    def __init__(self, message: str, code: str | None = None, **context: Any):
        self.message = message
        if code:
            self.code = code
        self.context = context
        super().__init__(message)


class ScanError(ServiceError):
    """Workspace folder could not be read."""

    status_code = 400
    code = "scan_error"

    def __init__(self, message: str, path: str):
        super().__init__(message, path=path)
        self.path = path


class ValidationError(ServiceError):
    """Bad configuration, port or name collision."""

    status_code = 422
    code = "validation_error"


class InvalidTransitionError(ValidationError):
    """Requested lifecycle transition is not allowed from the current state."""

    code = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot transition from '{current}' to '{target}'",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class ConflictError(ServiceError):
    """Another lifecycle operation is already in flight for the instance."""

    status_code = 409
    code = "operation_in_progress"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class PermissionDeniedError(ServiceError):
    status_code = 403
    code = "permission_denied"


class ContainerRuntimeError(ServiceError):
    """Failure reported by the container runtime adapter."""

    status_code = 500
    code = "runtime_error"
    transient: bool = False


class TransientRuntimeError(ContainerRuntimeError):
    """Runtime failure worth retrying (registry timeout, daemon hiccup)."""

    code = "runtime_transient"
    transient = True


class PermanentRuntimeError(ContainerRuntimeError):
    """Runtime failure that retrying cannot fix (malformed build file, timeout)."""

    code = "runtime_permanent"


def error_body(exc: ServiceError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": exc.code, "detail": exc.message}
    if exc.context:
        body["context"] = exc.context
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """Map the error taxonomy onto HTTP responses."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:  # noqa: PLR2004
            logger.error("request_runtime_error", code=exc.code, error=exc.message)
        else:
            logger.info("request_rejected", code=exc.code, status_code=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        # Unparseable JSON is a malformed request, not a validation failure
        if any(err.get("type") == "json_invalid" for err in errors):
            return JSONResponse(
                status_code=400,
                content={"error": "malformed_request", "detail": "Request body is not valid JSON"},
            )
        return JSONResponse(
            status_code=422,
            content={
                "error": "validation_error",
                "detail": "Request validation failed",
                "context": {"errors": jsonable_errors(errors)},
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "detail": "Internal server error"},
        )


def jsonable_errors(errors: Any) -> list[dict[str, Any]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in errors
    ]
