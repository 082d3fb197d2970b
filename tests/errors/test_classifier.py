"""
Tests for error classification.
"""
import re
from unittest.mock import MagicMock

import pytest

from carebridge.errors.classifier import (
    ErrorClassifier,
    ErrorContext,
    generate_correlation_id,
)
from carebridge.errors.messages import USER_MESSAGES, user_message_for
from carebridge.errors.types import (
    AuthenticationError,
    CircuitOpenError,
    CircuitTimeoutError,
    ErrorCategory,
    InferenceServiceError,
    MissingFieldError,
    PermissionDeniedError,
    RecoveryStrategy,
    StorageError,
    TokenExpiredError,
)
from carebridge.observability.logging import set_request_context
from carebridge.resilience.registry import CircuitBreakerRegistry

CORRELATION_ID_PATTERN = re.compile(r"^carebridge-[0-9a-f]{8}$")


@pytest.fixture
def classifier():
    return ErrorClassifier()


class TestTypedErrors:
    """Typed errors carry their own category and code."""

    @pytest.mark.parametrize(
        "error, category, strategy, code",
        [
            (MissingFieldError("email", field="email"), ErrorCategory.VALIDATION, RecoveryStrategy.ESCALATE, "MISSING_REQUIRED_FIELD"),
            (TokenExpiredError("expired"), ErrorCategory.BUSINESS, RecoveryStrategy.ESCALATE, "TOKEN_EXPIRED"),
            (PermissionDeniedError("no"), ErrorCategory.BUSINESS, RecoveryStrategy.ESCALATE, "INSUFFICIENT_PERMISSIONS"),
            (InferenceServiceError("503 from model"), ErrorCategory.EXTERNAL, RecoveryStrategy.RETRY, "AI_SERVICE_UNAVAILABLE"),
            (StorageError("disk full"), ErrorCategory.TECHNICAL, RecoveryStrategy.RETRY, "STORAGE_ERROR"),
            (CircuitTimeoutError(30, dependency="inference"), ErrorCategory.EXTERNAL, RecoveryStrategy.RETRY, "TIMEOUT"),
        ],
    )
    def test_typed_error_mapping(self, classifier, error, category, strategy, code):
        result = classifier.categorize(error, ErrorContext(service="inference"))

        assert result.category == category
        assert result.recovery_strategy == strategy
        assert result.error_code == code

    def test_circuit_open_maps_to_fallback(self, classifier):
        error = CircuitOpenError("inference", 5, None, 30)
        result = classifier.categorize(error, ErrorContext(service="inference"))

        assert result.category == ErrorCategory.EXTERNAL
        assert result.recovery_strategy == RecoveryStrategy.FALLBACK
        assert result.error_code == "SERVICE_UNAVAILABLE"

    def test_typed_error_ignores_misleading_message(self, classifier):
        # Message mentions a token but the variant says storage
        result = classifier.categorize(StorageError("token bucket exhausted"))
        assert result.category == ErrorCategory.TECHNICAL
        assert result.error_code == "STORAGE_ERROR"


class TestForeignErrors:
    """Errors from outside the package fall back to heuristics."""

    def test_token_message_is_business(self, classifier):
        result = classifier.categorize(Exception("Invalid token signature"))
        assert result.category == ErrorCategory.BUSINESS
        assert result.recovery_strategy == RecoveryStrategy.ESCALATE
        assert result.error_code == "INVALID_TOKEN"

    def test_auth_operation_is_business(self, classifier):
        result = classifier.categorize(
            Exception("unexpected response"),
            ErrorContext(operation="authenticate_user"),
        )
        assert result.category == ErrorCategory.BUSINESS

    def test_required_message_is_validation(self, classifier):
        result = classifier.categorize(Exception("field is required"))
        assert result.category == ErrorCategory.VALIDATION
        assert result.recovery_strategy == RecoveryStrategy.ESCALATE

    def test_external_service_context_is_external(self, classifier):
        result = classifier.categorize(
            Exception("upstream returned garbage"),
            ErrorContext(service="inference"),
        )
        assert result.category == ErrorCategory.EXTERNAL
        assert result.recovery_strategy == RecoveryStrategy.RETRY
        assert result.error_code == "AI_SERVICE_ERROR"

    def test_timeout_message_is_external(self, classifier):
        result = classifier.categorize(Exception("request timed out"))
        assert result.category == ErrorCategory.EXTERNAL
        assert result.error_code == "TIMEOUT"

    def test_builtin_timeout_error(self, classifier):
        result = classifier.categorize(TimeoutError())
        assert result.category == ErrorCategory.EXTERNAL
        assert result.error_code == "TIMEOUT"

    def test_connection_error(self, classifier):
        result = classifier.categorize(ConnectionError("refused"))
        assert result.category == ErrorCategory.EXTERNAL
        assert result.error_code == "SERVICE_UNAVAILABLE"

    def test_not_found_message(self, classifier):
        result = classifier.categorize(KeyError("profile not found"))
        assert result.error_code == "NOT_FOUND"

    def test_everything_else_is_technical(self, classifier):
        result = classifier.categorize(RuntimeError("division by zero"))
        assert result.category == ErrorCategory.TECHNICAL
        assert result.recovery_strategy == RecoveryStrategy.RETRY
        assert result.error_code == "INTERNAL_ERROR"


class TestClassificationProperties:

    def test_same_input_same_classification(self, classifier):
        context = ErrorContext(service="object_store", operation="upload")
        first = classifier.categorize(RuntimeError("connection reset by peer"), context)
        second = classifier.categorize(RuntimeError("connection reset by peer"), context)

        assert (first.category, first.recovery_strategy, first.error_code) == (
            second.category,
            second.recovery_strategy,
            second.error_code,
        )

    def test_records_categorization_time(self, classifier):
        result = classifier.categorize(RuntimeError("x"))
        assert result.categorization_time_ms >= 0
        assert result.timestamp.tzinfo is not None

    def test_correlation_id_from_context(self, classifier):
        result = classifier.categorize(RuntimeError("x"), ErrorContext(correlation_id="req-123"))
        assert result.correlation_id == "req-123"

    def test_correlation_id_from_request_context(self, classifier):
        set_request_context("carebridge-0badc0de")
        result = classifier.categorize(RuntimeError("x"))
        assert result.correlation_id == "carebridge-0badc0de"

    def test_correlation_id_generated(self, classifier):
        result = classifier.categorize(RuntimeError("x"))
        assert CORRELATION_ID_PATTERN.match(result.correlation_id)
        assert CORRELATION_ID_PATTERN.match(generate_correlation_id())

    def test_internal_failure_degrades_to_escalate(self):
        registry = MagicMock()
        registry.status.side_effect = RuntimeError("state store down")
        classifier = ErrorClassifier(registry)

        result = classifier.categorize(ConnectionError("x"), ErrorContext(service="inference"))

        assert result.category == ErrorCategory.TECHNICAL
        assert result.recovery_strategy == RecoveryStrategy.ESCALATE
        assert result.error_code == "CATEGORIZATION_FAILED"


class TestCircuitStatus:

    def test_status_without_registry_is_closed(self, classifier):
        result = classifier.categorize(RuntimeError("x"), ErrorContext(service="inference"))
        assert result.circuit_breaker_status == "closed"

    def test_status_from_shared_registry(self, clock):
        registry = CircuitBreakerRegistry(clock=clock)
        classifier = ErrorClassifier(registry)
        for _ in range(5):
            classifier.report_outcome("inference", False, ConnectionError("down"))

        result = classifier.categorize(RuntimeError("x"), ErrorContext(service="inference"))
        assert result.circuit_breaker_status == "open"

    def test_report_outcome_without_registry(self, classifier):
        assert classifier.report_outcome("inference", True) == "closed"


class TestUnifiedError:

    def test_user_message_never_contains_raw_error(self, classifier):
        error = RuntimeError("psycopg2: password authentication failed for patient 4711")
        unified = classifier.create_unified_error(error)

        assert "4711" not in unified.user_message
        assert "psycopg2" not in unified.user_message
        assert unified.technical_message == str(error)
        assert unified.user_message in USER_MESSAGES.values()

    def test_circuit_open_carries_retry_after(self, classifier):
        error = CircuitOpenError("inference", 5, None, 12.5)
        unified = classifier.create_unified_error(error, ErrorContext(service="inference"))

        assert unified.fallback_available is True
        assert unified.retry_after == 13.0
        assert unified.error_type == "CircuitOpenError"

    def test_retryable_error_gets_default_retry_after(self):
        classifier = ErrorClassifier(default_retry_after=2.0)
        unified = classifier.create_unified_error(ConnectionError("reset"))

        assert unified.recovery_strategy == RecoveryStrategy.RETRY
        assert unified.retry_after == 2.0
        assert unified.fallback_available is False

    def test_escalated_error_has_no_retry_after(self, classifier):
        unified = classifier.create_unified_error(AuthenticationError("bad signature"))
        assert unified.retry_after is None
        assert unified.user_message == USER_MESSAGES["INVALID_TOKEN"]


class TestUserMessages:

    def test_every_message_is_eight_to_twelve_words(self):
        for code, message in USER_MESSAGES.items():
            words = len(message.split())
            assert 8 <= words <= 12, f"{code} has {words} words"

    def test_unknown_code_falls_back(self):
        assert user_message_for("NO_SUCH_CODE") == USER_MESSAGES["INTERNAL_ERROR"]

    def test_every_typed_error_code_has_a_message(self):
        from carebridge.errors import types

        for value in vars(types).values():
            if isinstance(value, type) and issubclass(value, types.ServiceError):
                assert value.code in USER_MESSAGES, f"{value.__name__} code {value.code}"
