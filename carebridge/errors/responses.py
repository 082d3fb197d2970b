"""
Outward error responses and FastAPI exception handlers.

Response body:
    {
        "error": true,
        "code": "...",
        "message": "<user message>",
        "correlation_id": "...",
        "timestamp": "<ISO 8601>",
        "support_info": {...},
        "technical_details": {...}   # only with detailed logging enabled
    }

The body never contains the raw error text or a stack trace.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from carebridge.errors.classifier import ErrorClassifier, ErrorContext, UnifiedError
from carebridge.errors.types import ErrorCategory, RecoveryStrategy, ServiceError

logger = logging.getLogger(__name__)

SUPPORT_INFO = {
    "contact": "For immediate help, contact support with your correlation ID",
    "privacy": "We never share your health information",
}

AUTHENTICATION_CODES = frozenset({"INVALID_TOKEN", "MISSING_AUTH", "TOKEN_EXPIRED"})

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}


def http_status_for(unified: UnifiedError) -> int:
    """HTTP status for a classified error."""
    if unified.category == ErrorCategory.VALIDATION:
        return 400
    if unified.category == ErrorCategory.BUSINESS:
        return 401 if unified.error_code in AUTHENTICATION_CODES else 403
    if unified.category == ErrorCategory.EXTERNAL:
        return 503 if unified.recovery_strategy == RecoveryStrategy.FALLBACK else 502
    return 500


def build_error_response(
    unified: UnifiedError,
    detailed_logging_enabled: bool = False,
) -> Dict[str, Any]:
    """
    Build the outward error body.

    Args:
        unified: Classified error
        detailed_logging_enabled: Include classification details

    Returns:
        JSON-serializable response body
    """
    body: Dict[str, Any] = {
        "error": True,
        "code": unified.error_code,
        "message": unified.user_message,
        "correlation_id": unified.correlation_id,
        "timestamp": unified.timestamp.isoformat(),
        "support_info": dict(SUPPORT_INFO),
    }
    if detailed_logging_enabled:
        body["technical_details"] = {
            "category": unified.category.value,
            "recovery_strategy": unified.recovery_strategy.value,
            "error_type": unified.error_type,
            "service": unified.service,
            "operation": unified.operation,
            "circuit_breaker_status": unified.circuit_breaker_status,
        }
    return body


def build_json_response(
    unified: UnifiedError,
    detailed_logging_enabled: bool = False,
) -> JSONResponse:
    headers = {"X-Correlation-ID": unified.correlation_id, **SECURITY_HEADERS}
    if unified.retry_after is not None and unified.recovery_strategy == RecoveryStrategy.FALLBACK:
        headers["Retry-After"] = str(int(unified.retry_after))
    return JSONResponse(
        status_code=http_status_for(unified),
        content=build_error_response(unified, detailed_logging_enabled),
        headers=headers,
    )


def _context_from_request(request: Request, exc: BaseException) -> ErrorContext:
    dependency: Optional[str] = getattr(exc, "dependency", None)
    return ErrorContext(
        service=dependency,
        operation=f"{request.method} {request.url.path}",
        correlation_id=request.headers.get("X-Correlation-ID"),
    )


def register_error_handlers(app: FastAPI, classifier: ErrorClassifier, settings: Any) -> None:
    """
    Register exception handlers that turn errors into the outward body.

    Args:
        app: The FastAPI application
        classifier: Classifier sharing the breaker registry
        settings: Settings; detailed_logging_enabled gates technical details
    """

    def _respond(request: Request, exc: BaseException) -> JSONResponse:
        unified = classifier.create_unified_error(exc, _context_from_request(request, exc))
        log = logger.error if unified.category == ErrorCategory.TECHNICAL else logger.warning
        log(
            f"Request failed: {unified.error_code}",
            extra={
                "correlation_id": unified.correlation_id,
                "category": unified.category.value,
                "error_type": unified.error_type,
                "technical_message": unified.technical_message,
                "path": request.url.path,
            },
        )
        return build_json_response(unified, settings.detailed_logging_enabled)

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        """Handle typed errors raised by collaborators."""
        return _respond(request, exc)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle anything else as a classified foreign error."""
        return _respond(request, exc)
