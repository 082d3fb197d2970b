"""User-facing messages keyed by stable error code.

Every message is 8-12 words, plain language, and free of identifiers,
health data and technical detail. Unknown codes map to INTERNAL_ERROR.
"""

from typing import Dict

USER_MESSAGES: Dict[str, str] = {
    # Authentication and authorization
    "INVALID_TOKEN": "We're having trouble verifying your account. Please sign in again",
    "MISSING_AUTH": "We need you to sign in first before we continue",
    "TOKEN_EXPIRED": "Your session expired for security. Please sign in again",
    "INSUFFICIENT_PERMISSIONS": "We can't access that for you. Please check your permissions",
    # Validation
    "VALIDATION_ERROR": "Some of the information looks incorrect. Please check and retry",
    "INVALID_JSON": "We received invalid data. Please check your request format",
    "MISSING_REQUIRED_FIELD": "We're missing some required information. Please complete all fields",
    "INVALID_FILE_TYPE": "We only support PDF and image files. Please try another",
    "FILE_TOO_LARGE": "That file is too large for us. Please use smaller files",
    # Processing
    "PROCESSING_FAILED": "We couldn't process your document right now. Let's try again",
    "AI_SERVICE_UNAVAILABLE": "Our analysis service is temporarily down. Please try again shortly",
    "AI_SERVICE_ERROR": "Our analysis service had a problem. Please try again shortly",
    "DOCUMENT_ANALYSIS_FAILED": "We had trouble analyzing your document. Please try again",
    # Data and storage
    "USER_NOT_FOUND": "We couldn't find your account. Please check your sign-in details",
    "DATA_NOT_FOUND": "We couldn't find that information. Please check your request",
    "NOT_FOUND": "We couldn't find what you asked for. Please check again",
    "STORAGE_ERROR": "We're having trouble saving your data. Please try again",
    # External services
    "OAUTH_VERIFICATION_FAILED": "We couldn't verify your account with your provider. Try again",
    "OAUTH_ERROR": "Your sign-in provider isn't responding right now. Please try again",
    "TIMEOUT": "This is taking longer than expected. Please try again shortly",
    "S3_UPLOAD_FAILED": "We couldn't save your file. Please try uploading again",
    # Subscription
    "PREMIUM_REQUIRED": "That feature requires a premium subscription. Would you like to upgrade",
    "SUBSCRIPTION_EXPIRED": "Your premium subscription expired. Please renew it to continue",
    "USAGE_LIMIT_EXCEEDED": "You've reached your monthly limit. Upgrade for more access",
    # Generic fallbacks
    "INTERNAL_ERROR": "Something unexpected happened on our end. Please try again",
    "SERVICE_UNAVAILABLE": "We're temporarily unavailable for maintenance. Please try again shortly",
    "RATE_LIMITED": "Too many requests right now. Please wait a moment and retry",
}

DEFAULT_CODE = "INTERNAL_ERROR"


def user_message_for(code: str) -> str:
    return USER_MESSAGES.get(code, USER_MESSAGES[DEFAULT_CODE])
