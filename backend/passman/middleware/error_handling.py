"""
API error mapping for hosts that expose the core over FastAPI
Turns core errors into standardized JSON responses with the right status
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..database import utcnow
from ..exceptions import AuthenticationError, ErrorKind, PassmanError

logger = logging.getLogger(__name__)


class ErrorDetail(BaseModel):
    """Detailed error information"""

    field: Optional[str] = None
    message: str
    type: Optional[str] = None
    code: Optional[str] = None


class APIErrorResponse(BaseModel):
    """Standardized API error response"""

    success: bool = False
    error: str
    message: str
    details: List[ErrorDetail] = Field(default_factory=list)
    error_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    timestamp: datetime = Field(default_factory=utcnow)
    path: Optional[str] = None
    method: Optional[str] = None


class ErrorType:
    """Standard error types for consistent handling"""

    VALIDATION_ERROR = "validation_error"
    AUTHENTICATION_ERROR = "authentication_error"
    AUTHORIZATION_ERROR = "authorization_error"
    NOT_FOUND_ERROR = "not_found_error"
    CONFLICT_ERROR = "conflict_error"
    SERVICE_ERROR = "service_error"
    INTERNAL_ERROR = "internal_error"


ERROR_KIND_STATUS = {
    ErrorKind.VALIDATION: (status.HTTP_400_BAD_REQUEST, ErrorType.VALIDATION_ERROR),
    ErrorKind.NOT_FOUND: (status.HTTP_404_NOT_FOUND, ErrorType.NOT_FOUND_ERROR),
    ErrorKind.FORBIDDEN: (status.HTTP_403_FORBIDDEN, ErrorType.AUTHORIZATION_ERROR),
    ErrorKind.AUTHENTICATION: (status.HTTP_401_UNAUTHORIZED, ErrorType.AUTHENTICATION_ERROR),
    ErrorKind.CONFLICT: (status.HTTP_409_CONFLICT, ErrorType.CONFLICT_ERROR),
    ErrorKind.TRANSIENT: (status.HTTP_503_SERVICE_UNAVAILABLE, ErrorType.SERVICE_ERROR),
}


def _respond(request: Request, status_code: int, error_response: APIErrorResponse, headers=None) -> JSONResponse:
    error_response.path = str(request.url.path)
    error_response.method = request.method
    return JSONResponse(status_code=status_code, content=jsonable_encoder(error_response), headers=headers)


async def passman_error_handler(request: Request, exc: PassmanError) -> JSONResponse:
    """Map a core error to its status code; the message is already caller-safe"""
    status_code, error_type = ERROR_KIND_STATUS.get(
        exc.kind, (status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorType.INTERNAL_ERROR)
    )
    code = exc.reason.value if isinstance(exc, AuthenticationError) else None
    error_response = APIErrorResponse(
        error=error_type,
        message=exc.message,
        details=[ErrorDetail(field=exc.field, message=exc.message, type=exc.kind.value, code=code)],
    )

    if status_code >= 500:
        logger.error(f"HTTP {status_code} on {request.url.path}: {exc.message} [{error_response.error_id}]")
    else:
        logger.warning(f"HTTP {status_code} on {request.url.path}: {exc.message} [{error_response.error_id}]")

    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    if status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        headers = {"Retry-After": "1"}
    return _respond(request, status_code, error_response, headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = []
    for item in exc.errors():
        loc = item.get("loc") or ()
        details.append(
            ErrorDetail(
                field=str(loc[-1]) if loc else None,
                message=item.get("msg", "Validation error"),
                type=item.get("type"),
            )
        )
    error_response = APIErrorResponse(
        error=ErrorType.VALIDATION_ERROR, message="Invalid request data provided", details=details
    )
    return _respond(request, status.HTTP_400_BAD_REQUEST, error_response)


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Generic 500 that never leaks internals to the caller"""
    error_response = APIErrorResponse(error=ErrorType.INTERNAL_ERROR, message="Internal server error occurred")
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path} [{error_response.error_id}]",
        exc_info=exc,
    )
    return _respond(request, status.HTTP_500_INTERNAL_SERVER_ERROR, error_response)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the core's error mapping on a FastAPI application"""
    app.add_exception_handler(PassmanError, passman_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
