"""
Consistent error handling for the marketplace integration backend.

All errors raised by the credential, cache and integration layers MUST use
these classes so API callers always see the same error shape.
Stack traces are NEVER returned to clients.

Error taxonomy:
- ConfigurationError (500): master key, proxy or OAuth app misconfiguration
- IntegrityError (500): ciphertext failed authentication / malformed blob
- AuthExpiredError (401): marketplace rejected the token after one refresh
- UpstreamUnavailableError (502): marketplace unreachable or non-2xx
- BuildFailureError (502): tenant client could not be constructed
- NotFoundError (404): tenant account does not exist
- ValidationError (400): bad input (e.g. undecodable OAuth state)
"""

import logging
import uuid
from typing import Any, Optional
from fastapi import Request, HTTPException, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class AppError(Exception):
    """
    Base application error with consistent error shape.

    All custom errors should inherit from this class.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    """Validation error (400)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class ConfigurationError(AppError):
    """
    Fatal misconfiguration (500).

    Raised at startup for a missing/short master key, and per operation for
    malformed proxy settings or missing OAuth app credentials.
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="CONFIGURATION_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


class IntegrityError(AppError):
    """
    Stored ciphertext failed authentication or is malformed (500).

    SECURITY: never carries plaintext or key material, and callers must never
    fall back to treating the value as plaintext.
    """

    def __init__(self, message: str = "Stored credential failed integrity check"):
        super().__init__(
            code="CREDENTIAL_INTEGRITY_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class AuthExpiredError(AppError):
    """Marketplace rejected the credentials after a refresh attempt (401)."""

    def __init__(self, message: str = "Marketplace authorization expired", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="AUTH_EXPIRED",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )


class UpstreamUnavailableError(AppError):
    """Marketplace endpoint unreachable or returned non-2xx (502)."""

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        details = {}
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        super().__init__(
            code="UPSTREAM_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )
        self.upstream_status = upstream_status


class BuildFailureError(AppError):
    """
    Tenant client could not be constructed (502).

    The original failure is kept on ``cause`` so callers can branch on it
    (e.g. IntegrityError vs AuthExpiredError) without parsing messages.
    """

    def __init__(self, tenant_id: Any, cause: Exception):
        super().__init__(
            code="CLIENT_BUILD_FAILED",
            message=f"Failed to build marketplace client for account {tenant_id}",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={
                "tenant_id": str(tenant_id),
                "cause": getattr(cause, "code", type(cause).__name__),
            },
        )
        self.tenant_id = tenant_id
        self.cause = cause


CORRELATION_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """Incoming X-Correlation-ID header, then request state, then a new id."""
    return (
        request.headers.get(CORRELATION_HEADER)
        or getattr(request.state, "correlation_id", None)
        or generate_correlation_id()
    )


def _error_response(status_code: int, payload: dict, correlation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=payload,
        headers={CORRELATION_HEADER: correlation_id},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Converts exceptions escaping a route into the AppError JSON shape.

    Every response carries X-Correlation-ID. Unexpected exceptions are
    logged with their traceback server-side and answered with a generic
    500 whose only detail is the correlation id.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id
        context = {
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
        }

        try:
            response = await call_next(request)
        except AppError as e:
            logger.warning(
                "Request failed",
                extra={**context, "error_code": e.code, "status_code": e.status_code}
            )
            return _error_response(e.status_code, e.to_dict(), correlation_id)
        except HTTPException as e:
            logger.warning(
                "HTTP exception",
                extra={**context, "status_code": e.status_code}
            )
            payload = {"error": {"code": "HTTP_ERROR", "message": str(e.detail), "details": {}}}
            return _error_response(e.status_code, payload, correlation_id)
        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={**context, "error_type": type(e).__name__}
            )
            payload = {
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                    "details": {"correlation_id": correlation_id},
                }
            }
            return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, payload, correlation_id)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
