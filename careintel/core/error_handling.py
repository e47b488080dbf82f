"""
Error Handling & Sanitization
Prevents information leakage through error messages

SECURITY REQUIREMENTS:
- No resident data or internals in error responses
- Domain errors rendered with a stable {"error", "type", "status_code"} body
- Detailed errors only in secure logs
"""

import logging
import uuid
from typing import Optional, Dict, Any
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from careintel.core.exceptions import (
    CareIntelligenceError,
    InvalidObservation,
    InvalidTransition,
    StaleState,
    NotFound,
    InvalidConfiguration,
)
from careintel.core.logging import SecureLogger, log_error

logger = logging.getLogger(__name__)


DOMAIN_STATUS_CODES = {
    InvalidObservation: 422,
    InvalidTransition: 409,
    StaleState: 409,
    NotFound: 404,
    InvalidConfiguration: 422,
}


class ErrorSanitizer:
    """Sanitizes errors to prevent information leakage"""

    SENSITIVE_PATTERNS = [
        'password', 'secret', 'token', 'credential',
        'database', 'connection', 'sql', 'query', 'stack',
        'traceback', 'file', 'path', 'internal', 'server'
    ]

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
        if isinstance(error, CareIntelligenceError):
            status_code = ErrorSanitizer.status_code_for(error)
            message = error.message
            if any(pattern in message.lower() for pattern in ErrorSanitizer.SENSITIVE_PATTERNS):
                message = "Request could not be processed"
            body = {
                "error": message,
                "status_code": status_code,
                "type": error.error_type
            }
            if isinstance(error, InvalidObservation):
                body["reasons"] = error.reasons
            return body

        if type(error).__name__ in ["ValidationError", "ValueError"]:
            return {
                "error": "Validation error",
                "status_code": 400,
                "type": "validation_error"
            }

        # Default generic error
        return {
            "error": "An error occurred processing your request",
            "status_code": 500,
            "type": "internal_error",
            "error_id": ErrorSanitizer._generate_error_id()
        }

    @staticmethod
    def status_code_for(error: CareIntelligenceError) -> int:
        for error_class, status_code in DOMAIN_STATUS_CODES.items():
            if isinstance(error, error_class):
                return status_code
        return 400

    @staticmethod
    def _generate_error_id() -> str:
        """Generate a unique error ID for tracking"""
        return str(uuid.uuid4())[:8]


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to catch and sanitize unexpected errors
    Prevents information leakage while maintaining audit trail
    """

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except Exception as e:
            # Log full error details securely
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


async def domain_error_handler(request: Request, exc: CareIntelligenceError) -> JSONResponse:
    sanitized = ErrorSanitizer.sanitize_error(exc)
    SecureLogger.log(
        logger,
        logging.WARNING,
        f"{request.method} {request.url.path} -> {sanitized['status_code']} {exc.error_type}: {exc.message}"
    )
    return JSONResponse(status_code=sanitized["status_code"], content=sanitized)


def register_exception_handlers(app: FastAPI):
    """Render domain errors with their mapped status codes"""
    app.add_exception_handler(CareIntelligenceError, domain_error_handler)
