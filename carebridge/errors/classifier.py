"""
Error classification for request handlers.

Turns any raised error plus its call context into a category, a recovery
strategy and a stable error code, then wraps that in a UnifiedError that
carries a safe user message.

Typed errors (ServiceError subclasses) already know their category and
code. Anything else is classified from its type, the call context and
keywords in its message, which is the fallback for errors raised by code
outside this package.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, Optional

from carebridge.errors.messages import user_message_for
from carebridge.errors.types import (
    CircuitOpenError,
    ErrorCategory,
    RecoveryStrategy,
    ServiceError,
)
from carebridge.observability.logging import get_request_id
from carebridge.observability.metrics import record_error_classification

if TYPE_CHECKING:
    from carebridge.resilience.registry import CircuitBreakerRegistry

logger = logging.getLogger(__name__)

# Classification runs on every failing request
PERFORMANCE_BUDGET_MS = 5.0

CORRELATION_PREFIX = "carebridge"

AUTH_SERVICES = frozenset({"identity_provider", "oauth"})
EXTERNAL_SERVICES = frozenset({
    "inference",
    "bedrock",
    "object_store",
    "s3",
    "identity_provider",
    "oauth",
    "key_management",
    "secret_vault",
})
INFERENCE_SERVICES = frozenset({"inference", "bedrock"})

VALIDATION_KEYWORDS = ("validation", "invalid", "required", "format")

RECOVERY_STRATEGIES: Dict[ErrorCategory, RecoveryStrategy] = {
    ErrorCategory.EXTERNAL: RecoveryStrategy.RETRY,
    ErrorCategory.TECHNICAL: RecoveryStrategy.RETRY,
    ErrorCategory.VALIDATION: RecoveryStrategy.ESCALATE,
    ErrorCategory.BUSINESS: RecoveryStrategy.ESCALATE,
}


@dataclass(frozen=True)
class ErrorContext:
    """Where an error happened."""

    service: Optional[str] = None
    operation: Optional[str] = None
    user_id: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass(frozen=True)
class ErrorClassification:
    category: ErrorCategory
    recovery_strategy: RecoveryStrategy
    error_code: str
    correlation_id: str
    circuit_breaker_status: str
    timestamp: datetime
    categorization_time_ms: float


@dataclass(frozen=True)
class UnifiedError:
    """Classification plus everything a handler needs to answer its caller.

    technical_message is the raw error text and belongs in logs only.
    """

    category: ErrorCategory
    recovery_strategy: RecoveryStrategy
    error_code: str
    user_message: str
    technical_message: str
    fallback_available: bool
    retry_after: Optional[float]
    correlation_id: str
    timestamp: datetime
    error_type: str
    circuit_breaker_status: str
    service: Optional[str] = None
    operation: Optional[str] = None


def generate_correlation_id() -> str:
    return f"{CORRELATION_PREFIX}-{uuid.uuid4().hex[:8]}"


def _heuristic_category(error: BaseException, context: ErrorContext) -> ErrorCategory:
    message = str(error).lower()
    operation = (context.operation or "").lower()
    service = (context.service or "").lower()

    if "token" in message or "auth" in message or "auth" in operation or service in AUTH_SERVICES:
        return ErrorCategory.BUSINESS
    if any(keyword in message for keyword in VALIDATION_KEYWORDS):
        return ErrorCategory.VALIDATION
    if service in EXTERNAL_SERVICES or "timeout" in message or "timed out" in message:
        return ErrorCategory.EXTERNAL
    return ErrorCategory.TECHNICAL


def _heuristic_code(error: BaseException, context: ErrorContext) -> str:
    message = str(error).lower()
    service = (context.service or "").lower()

    if "token" in message:
        return "INVALID_TOKEN"
    if "not found" in message:
        return "NOT_FOUND"
    if isinstance(error, TimeoutError) or "timeout" in message or "timed out" in message:
        return "TIMEOUT"
    if "validation" in message:
        return "VALIDATION_ERROR"
    if service in INFERENCE_SERVICES:
        return "AI_SERVICE_ERROR"
    if service in AUTH_SERVICES:
        return "OAUTH_ERROR"
    return "INTERNAL_ERROR"


def determine_category(error: BaseException, context: ErrorContext) -> ErrorCategory:
    """Category from the error variant, or from heuristics for foreign errors."""
    if isinstance(error, ServiceError):
        return error.category
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorCategory.EXTERNAL
    return _heuristic_category(error, context)


def determine_error_code(error: BaseException, context: ErrorContext) -> str:
    if isinstance(error, ServiceError):
        return error.code
    if isinstance(error, ConnectionError):
        return "SERVICE_UNAVAILABLE"
    return _heuristic_code(error, context)


def determine_strategy(error: BaseException, category: ErrorCategory) -> RecoveryStrategy:
    """Recovery strategy as a function of category.

    A breaker rejection is never retried; the caller should serve a
    fallback or give up.
    """
    if isinstance(error, CircuitOpenError):
        return RecoveryStrategy.FALLBACK
    return RECOVERY_STRATEGIES[category]


class ErrorClassifier:
    """
    Classifies errors and reports dependency outcomes.

    Breaker status and outcome reporting go through the same
    CircuitBreakerRegistry that guards the calls themselves.

    Usage:
        classifier = ErrorClassifier(registry)
        try:
            ...
        except Exception as e:
            unified = classifier.create_unified_error(e, ErrorContext(service="object_store"))
    """

    def __init__(
        self,
        registry: Optional["CircuitBreakerRegistry"] = None,
        default_retry_after: float = 1.0,
    ):
        """
        Args:
            registry: Shared breaker registry; status reads as closed without one
            default_retry_after: Seconds suggested to callers of retryable errors
        """
        self.registry = registry
        self.default_retry_after = default_retry_after

    def _circuit_status(self, service: Optional[str]) -> str:
        if self.registry is None:
            return "closed"
        return self.registry.status(service).value

    def categorize(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None,
    ) -> ErrorClassification:
        """
        Classify an error.

        Category, strategy and code depend only on the error's type and
        message and on the context's service and operation.

        Args:
            error: The raised error
            context: Where it happened

        Returns:
            ErrorClassification
        """
        context = context or ErrorContext()
        started = time.perf_counter()
        correlation_id = context.correlation_id or get_request_id() or generate_correlation_id()

        try:
            category = determine_category(error, context)
            strategy = determine_strategy(error, category)
            error_code = determine_error_code(error, context)
            circuit_status = self._circuit_status(context.service)
        except Exception:
            logger.exception(
                "Error categorization failed",
                extra={"service": context.service, "correlation_id": correlation_id},
            )
            category = ErrorCategory.TECHNICAL
            strategy = RecoveryStrategy.ESCALATE
            error_code = "CATEGORIZATION_FAILED"
            circuit_status = "closed"

        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > PERFORMANCE_BUDGET_MS:
            logger.warning(
                f"Error categorization took {elapsed_ms:.2f}ms (budget {PERFORMANCE_BUDGET_MS}ms)",
                extra={"service": context.service, "operation": context.operation},
            )
        record_error_classification(category.value, context.service or "unknown", elapsed_ms / 1000)

        return ErrorClassification(
            category=category,
            recovery_strategy=strategy,
            error_code=error_code,
            correlation_id=correlation_id,
            circuit_breaker_status=circuit_status,
            timestamp=datetime.now(timezone.utc),
            categorization_time_ms=elapsed_ms,
        )

    def create_unified_error(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None,
    ) -> UnifiedError:
        """
        Classify an error and attach the user message and retry hints.

        Args:
            error: The raised error
            context: Where it happened

        Returns:
            UnifiedError
        """
        context = context or ErrorContext()
        classification = self.categorize(error, context)
        strategy = classification.recovery_strategy

        if isinstance(error, CircuitOpenError):
            retry_after: Optional[float] = float(error.retry_after)
        elif strategy == RecoveryStrategy.RETRY:
            retry_after = self.default_retry_after
        else:
            retry_after = None

        return UnifiedError(
            category=classification.category,
            recovery_strategy=strategy,
            error_code=classification.error_code,
            user_message=user_message_for(classification.error_code),
            technical_message=str(error) or type(error).__name__,
            fallback_available=strategy == RecoveryStrategy.FALLBACK,
            retry_after=retry_after,
            correlation_id=classification.correlation_id,
            timestamp=classification.timestamp,
            error_type=type(error).__name__,
            circuit_breaker_status=classification.circuit_breaker_status,
            service=context.service,
            operation=context.operation,
        )

    def report_outcome(
        self,
        service: str,
        success: bool,
        error: Optional[BaseException] = None,
    ) -> str:
        """
        Record a dependency outcome on the shared breaker.

        Returns:
            Breaker state after the update ("closed" without a registry)
        """
        if self.registry is None:
            return "closed"
        return self.registry.report_outcome(service, success, error).value
