"""Typed error variants raised by collaborators of the core.

Each collaborator (store client, inference client, vault client, identity
provider) raises a subclass of ``ServiceError`` that already carries its
category and stable error code, so classification is a match over variants
instead of message inspection.

Hierarchy:

    ServiceError
    ├── TechnicalError          (server / infrastructure faults)
    │   └── StorageError
    ├── InputValidationError    (malformed input)
    │   ├── MissingFieldError
    │   └── InvalidFormatError
    ├── BusinessRuleError       (authorization / business rules)
    │   ├── AuthenticationError
    │   │   └── TokenExpiredError
    │   ├── PermissionDeniedError
    │   └── ResourceNotFoundError
    └── ExternalServiceError    (dependency failures)
        ├── InferenceServiceError
        ├── ObjectStoreError
        ├── KeyManagementError
        ├── IdentityProviderError
        ├── ThrottledError
        ├── DependencyTimeoutError
        │   └── CircuitTimeoutError
        └── CircuitOpenError
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import ClassVar


class ErrorCategory(str, Enum):
    """Error taxonomy shared by every handler."""

    TECHNICAL = "technical"
    VALIDATION = "validation"
    BUSINESS = "business"
    EXTERNAL = "external"


class RecoveryStrategy(str, Enum):
    """What the caller should do with a classified error."""

    RETRY = "retry"
    FALLBACK = "fallback"
    ESCALATE = "escalate"
    IGNORE = "ignore"


class ServiceError(Exception):
    """Base class for typed errors that carry their own category.

    Attributes:
        category: Category of every instance of this class.
        code: Stable error code used for the user message lookup.
        dependency: Dependency the error originated from, if any.
    """

    category: ClassVar[ErrorCategory] = ErrorCategory.TECHNICAL
    code: ClassVar[str] = "INTERNAL_ERROR"

    def __init__(self, message: str = "", dependency: str | None = None):
        self.message = message or self.__class__.__name__
        self.dependency = dependency
        super().__init__(self.message)


class TechnicalError(ServiceError):
    category = ErrorCategory.TECHNICAL
    code = "INTERNAL_ERROR"


class StorageError(TechnicalError):
    code = "STORAGE_ERROR"


class InputValidationError(ServiceError):
    category = ErrorCategory.VALIDATION
    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "", field: str | None = None, dependency: str | None = None):
        self.field = field
        super().__init__(message, dependency=dependency)


class MissingFieldError(InputValidationError):
    code = "MISSING_REQUIRED_FIELD"


class InvalidFormatError(InputValidationError):
    code = "INVALID_JSON"


class BusinessRuleError(ServiceError):
    category = ErrorCategory.BUSINESS
    code = "INSUFFICIENT_PERMISSIONS"


class AuthenticationError(BusinessRuleError):
    code = "INVALID_TOKEN"


class TokenExpiredError(AuthenticationError):
    code = "TOKEN_EXPIRED"


class PermissionDeniedError(BusinessRuleError):
    code = "INSUFFICIENT_PERMISSIONS"


class ResourceNotFoundError(BusinessRuleError):
    code = "DATA_NOT_FOUND"


class ExternalServiceError(ServiceError):
    category = ErrorCategory.EXTERNAL
    code = "SERVICE_UNAVAILABLE"


class InferenceServiceError(ExternalServiceError):
    code = "AI_SERVICE_UNAVAILABLE"


class ObjectStoreError(ExternalServiceError):
    code = "S3_UPLOAD_FAILED"


class KeyManagementError(ExternalServiceError):
    code = "STORAGE_ERROR"


class IdentityProviderError(ExternalServiceError):
    code = "OAUTH_VERIFICATION_FAILED"


class ThrottledError(ExternalServiceError):
    """Raised when a dependency rejects a call for rate or quota reasons (HTTP 429)."""

    code = "RATE_LIMITED"


class DependencyTimeoutError(ExternalServiceError):
    code = "TIMEOUT"


class CircuitTimeoutError(DependencyTimeoutError):
    """Raised when a call guarded by a circuit breaker exceeds its timeout."""

    def __init__(self, timeout: float, dependency: str | None = None):
        self.timeout = timeout
        super().__init__(
            f"Call timed out after {timeout:g}s",
            dependency=dependency,
        )


class CircuitOpenError(ExternalServiceError):
    """Raised when a circuit breaker rejects a call without invoking it.

    Never retried: the breaker already knows the dependency is unhealthy.
    """

    code = "SERVICE_UNAVAILABLE"

    def __init__(
        self,
        dependency: str,
        failure_count: int,
        last_failure_time: datetime | None,
        retry_after: float,
    ):
        self.failure_count = failure_count
        self.last_failure_time = last_failure_time
        self.retry_after = max(1, math.ceil(retry_after))
        super().__init__(f"Circuit breaker is open for {dependency}", dependency=dependency)
