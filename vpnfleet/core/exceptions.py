from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
)

from .logging import get_logger


logger = get_logger(__name__)


# --- Typed domain exceptions (module-level for importability) ---
class FleetError(Exception):
    """Base class for every error the controller reports to callers"""

    status_code: int = HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "FLEET_ERROR"

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(FleetError):
    status_code = HTTP_400_BAD_REQUEST
    error_code = "VALIDATION_ERROR"


class AuthenticationError(FleetError):
    status_code = HTTP_401_UNAUTHORIZED
    error_code = "AUTHENTICATION_ERROR"


class AuthorizationError(FleetError):
    status_code = HTTP_403_FORBIDDEN
    error_code = "AUTHORIZATION_ERROR"


class NotFoundError(FleetError):
    status_code = HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"


class ConflictError(FleetError):
    status_code = HTTP_409_CONFLICT
    error_code = "CONFLICT"


class GuardrailViolation(ConflictError):
    """A state change was refused because a safety condition does not hold"""

    error_code = "GUARDRAIL_VIOLATION"


class ConfigurationError(FleetError):
    """Rendered configuration is incomplete or inconsistent"""

    status_code = 422
    error_code = "CONFIGURATION_ERROR"


class RemoteExecutionError(FleetError):
    status_code = HTTP_502_BAD_GATEWAY
    error_code = "REMOTE_EXECUTION_ERROR"


def install_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers producing structured failures"""

    @app.exception_handler(FleetError)
    async def _fleet_error(request: Request, exc: FleetError):  # type: ignore[unused-ignore]
        if exc.status_code >= 500:
            logger.error(f"{exc.error_code} on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": str(exc) or exc.error_code,
                "details": exc.details,
            },
        )

    @app.exception_handler(ValueError)
    async def _value_error(request: Request, exc: ValueError):  # type: ignore[unused-ignore]
        return JSONResponse(
            status_code=HTTP_400_BAD_REQUEST,
            content={"error": "VALIDATION_ERROR", "message": str(exc) or "Bad Request", "details": {}},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception(request: Request, exc: Exception):  # type: ignore[unused-ignore]
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": exc.__class__.__name__,
                "message": "Internal Server Error",
                "details": {},
            },
        )
