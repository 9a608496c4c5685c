"""
Error Handling & Sanitization

SECURITY REQUIREMENTS:
- Access-grant failures never tell the caller *why* a token was refused
- Generic error messages for users
- Detailed errors only in secure logs
- Consistent error format
"""

import uuid
import logging
from typing import Optional, Dict, Any
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from medaccess.core.logging import log_error

logger = logging.getLogger(__name__)

INVALID_OR_EXPIRED_MESSAGE = "Invalid or expired access code"
SESSION_LIMIT_MESSAGE = "Maximum concurrent sessions reached. Close an existing session and try again."


class AccessGrantError(Exception):
    """Base class for access-grant failures that are not validation outcomes"""
    status_code = 400
    public_message = "Access request could not be processed"


class SessionCapacityError(AccessGrantError):
    """Doctor already holds the maximum number of live sessions"""
    status_code = 409
    public_message = SESSION_LIMIT_MESSAGE

    def __init__(self, max_sessions: int):
        super().__init__(f"Maximum {max_sessions} concurrent sessions allowed")
        self.max_sessions = max_sessions


class SessionNotFoundError(AccessGrantError):
    status_code = 404
    public_message = "Session not found"


class StoreUnavailableError(AccessGrantError):
    """Persistence failure after the bounded retry; safe for the caller to retry"""
    status_code = 503
    public_message = "Service temporarily unavailable"
    retryable = True


class ErrorSanitizer:
    """Sanitizes errors to prevent information leakage"""

    SAFE_ERROR_MESSAGES = {
        "authentication_required": "Authentication required",
        "access_denied": "Access denied",
        "resource_not_found": "Resource not found",
        "invalid_or_expired": INVALID_OR_EXPIRED_MESSAGE,
        "session_limit": SESSION_LIMIT_MESSAGE,
        "service_unavailable": "Service temporarily unavailable",
    }

    @staticmethod
    def sanitize_error(error: Exception, context: Optional[str] = None) -> Dict[str, Any]:
        """
        Sanitize error for client response

        Args:
            error: Exception instance
            context: Additional context

        Returns:
            Sanitized error dictionary
        """
        if isinstance(error, AccessGrantError):
            sanitized = {
                "error": error.public_message,
                "status_code": error.status_code,
                "type": "access_grant_error",
            }
            if getattr(error, "retryable", False):
                sanitized["retryable"] = True
            return sanitized

        if isinstance(error, HTTPException):
            return {
                "error": error.detail,
                "status_code": error.status_code,
                "type": "http_exception"
            }

        if isinstance(error, PermissionError):
            return {
                "error": "Access denied",
                "status_code": 403,
                "type": "access_denied"
            }

        return {
            "error": "An error occurred processing your request",
            "status_code": 500,
            "type": "internal_error",
            "error_id": ErrorSanitizer._generate_error_id()
        }

    @staticmethod
    def _generate_error_id() -> str:
        """Generate a unique error ID for tracking"""
        return str(uuid.uuid4())[:8]


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to catch and sanitize all errors
    Prevents information leakage while maintaining audit trail
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            error_id = ErrorSanitizer._generate_error_id()
            log_error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}",
                logger_name="error_handler",
                exc_info=True
            )

            sanitized = ErrorSanitizer.sanitize_error(e)
            sanitized["error_id"] = error_id

            return JSONResponse(
                status_code=sanitized["status_code"],
                content=sanitized
            )


async def access_grant_exception_handler(request: Request, exc: AccessGrantError) -> JSONResponse:
    """Exception handler for typed access-grant failures raised by routes"""
    log_error(
        f"Access grant failure on {request.url.path}: {type(exc).__name__}: {exc}",
        logger_name="error_handler",
    )
    sanitized = ErrorSanitizer.sanitize_error(exc)
    return JSONResponse(status_code=sanitized["status_code"], content=sanitized)
