"""
Error types and handlers for the API error envelope.

Services raise ``APIError`` subclasses; the handlers registered here turn
them, request validation failures and stray ``ValueError``s into a
single JSON shape::

    {"detail": "...", "error_code": "...", "path": "/api/v1/..."}
"""

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Body of every error response"""

    detail: Any
    error_code: Optional[str] = None
    path: str


class APIError(HTTPException):
    """HTTPException carrying a machine-readable error code"""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code

    def __str__(self) -> str:
        return f"{self.error_code}: {self.detail}"


class NotFoundError(APIError):
    def __init__(
        self, detail: str = "Resource not found", error_code: str = "NOT_FOUND"
    ):
        super().__init__(status.HTTP_404_NOT_FOUND, detail, error_code)


class ValidationError(APIError):
    """Request is well-formed but breaks a business rule"""

    def __init__(
        self, detail: str = "Validation failed", error_code: str = "VALIDATION_ERROR"
    ):
        super().__init__(status.HTTP_400_BAD_REQUEST, detail, error_code)


class AuthenticationError(APIError):
    def __init__(
        self, detail: str = "Authentication failed", error_code: str = "AUTH_FAILED"
    ):
        super().__init__(
            status.HTTP_401_UNAUTHORIZED,
            detail,
            error_code,
            headers={"WWW-Authenticate": "Bearer"},
        )


class PermissionError(APIError):
    """Caller is authenticated but not allowed to act on the resource"""

    def __init__(
        self, detail: str = "Permission denied", error_code: str = "PERMISSION_DENIED"
    ):
        super().__init__(status.HTTP_403_FORBIDDEN, detail, error_code)


class ConflictError(APIError):
    """Resource is not in a state that allows the operation"""

    def __init__(self, detail: str = "Resource conflict", error_code: str = "CONFLICT"):
        super().__init__(status.HTTP_409_CONFLICT, detail, error_code)


class UpstreamError(APIError):
    """A dependency outside this service failed (502) or is unavailable (503)"""

    def __init__(
        self,
        detail: str,
        error_code: str = "UPSTREAM_ERROR",
        status_code: int = status.HTTP_502_BAD_GATEWAY,
    ):
        super().__init__(status_code, detail, error_code)


def _error_response(
    request: Request,
    status_code: int,
    detail: Any,
    error_code: Optional[str],
    headers: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    body = ErrorResponse(detail=detail, error_code=error_code, path=request.url.path)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def handle_api_error(request: Request, exc: APIError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} at {request.url.path}: {exc.detail}")
    return _error_response(
        request, exc.status_code, exc.detail, exc.error_code, exc.headers
    )


async def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed bodies and query strings"""
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg")}
        for error in exc.errors()
    ]
    return _error_response(
        request, status.HTTP_422_UNPROCESSABLE_ENTITY, errors, "REQUEST_VALIDATION"
    )


async def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.warning(f"ValueError at {request.url.path}: {str(exc)}")
    return _error_response(
        request, status.HTTP_400_BAD_REQUEST, str(exc), "VALIDATION_ERROR"
    )


def register_exception_handlers(app):
    """Register all exception handlers with the FastAPI app"""
    app.add_exception_handler(APIError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(ValueError, handle_value_error)
