"""Typed errors, error classification and outward error responses."""
from carebridge.errors.types import (
    AuthenticationError,
    BusinessRuleError,
    CircuitOpenError,
    CircuitTimeoutError,
    DependencyTimeoutError,
    ErrorCategory,
    ExternalServiceError,
    IdentityProviderError,
    InferenceServiceError,
    InputValidationError,
    InvalidFormatError,
    KeyManagementError,
    MissingFieldError,
    ObjectStoreError,
    PermissionDeniedError,
    RecoveryStrategy,
    ResourceNotFoundError,
    ServiceError,
    StorageError,
    TechnicalError,
    ThrottledError,
    TokenExpiredError,
)
from carebridge.errors.classifier import (
    ErrorClassification,
    ErrorClassifier,
    ErrorContext,
    UnifiedError,
)
from carebridge.errors.messages import USER_MESSAGES, user_message_for
from carebridge.errors.responses import build_error_response, register_error_handlers

__all__ = [
    "AuthenticationError",
    "BusinessRuleError",
    "CircuitOpenError",
    "CircuitTimeoutError",
    "DependencyTimeoutError",
    "ErrorCategory",
    "ErrorClassification",
    "ErrorClassifier",
    "ErrorContext",
    "ExternalServiceError",
    "IdentityProviderError",
    "InferenceServiceError",
    "InputValidationError",
    "InvalidFormatError",
    "KeyManagementError",
    "MissingFieldError",
    "ObjectStoreError",
    "PermissionDeniedError",
    "RecoveryStrategy",
    "ResourceNotFoundError",
    "ServiceError",
    "StorageError",
    "TechnicalError",
    "ThrottledError",
    "TokenExpiredError",
    "USER_MESSAGES",
    "UnifiedError",
    "build_error_response",
    "register_error_handlers",
    "user_message_for",
]
