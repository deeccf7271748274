"""
Exception hierarchy for the formguard input security engine.

Every error raised by the engine derives from BaseApplicationError, which logs itself through
structlog, increments the error counter and renders a JSON-safe dictionary for HTTP responses.

Key Features:
- Hierarchical exception classes for consistent error categorization
- Structured error response formatting for API consistency
- Structured logging integration with structlog
- Prometheus metrics integration for error tracking
- Rate limit errors that carry the denial result and a Retry-After hint
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

import structlog
from flask import has_request_context, request

from formguard.monitoring.metrics import error_counter

logger = structlog.get_logger(__name__)


class ErrorCategory(Enum):
    """Error categories for hierarchical classification."""

    VALIDATION = "validation"
    SANITIZATION = "sanitization"
    FILE_VALIDATION = "file_validation"
    RATE_LIMIT = "rate_limit"
    BACKEND = "backend"
    CONFIGURATION = "configuration"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BaseApplicationError(Exception):
    """
    Base exception class for all engine errors.

    Attributes:
        message: Human-readable error message
        code: Application-specific error code
        category: Error category for classification
        severity: Error severity level
        details: Additional error context
        correlation_id: Unique identifier for error tracking
        recoverable: Whether the error condition can be retried
        user_friendly: Whether the message is safe to display to users
        http_status: Status code used when the error reaches a Flask handler
    """

    def __init__(
        self,
        message: str,
        code: str = None,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        recoverable: bool = False,
        user_friendly: bool = True,
        http_status: int = 500
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.correlation_id = correlation_id or str(uuid4())
        self.recoverable = recoverable
        self.user_friendly = user_friendly
        self.http_status = http_status
        self.timestamp = datetime.now(timezone.utc).isoformat()

        self.endpoint = request.endpoint if has_request_context() else None
        self.path = request.path if has_request_context() else None

        self._log_error()
        error_counter.labels(
            error_type=self.code,
            error_category=self.category.value
        ).inc()

    def _log_error(self) -> None:
        log_data = {
            'error_code': self.code,
            'error_category': self.category.value,
            'error_severity': self.severity.value,
            'correlation_id': self.correlation_id,
            'http_status': self.http_status,
            'endpoint': self.endpoint,
            'path': self.path,
            'details': self.details
        }

        if self.severity in [ErrorSeverity.HIGH, ErrorSeverity.CRITICAL]:
            logger.error(self.message, **log_data)
        elif self.severity == ErrorSeverity.MEDIUM:
            logger.warning(self.message, **log_data)
        else:
            logger.info(self.message, **log_data)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary format for JSON responses.

        Returns:
            Dictionary representation of the error
        """
        error_dict = {
            'error': True,
            'message': self.message if self.user_friendly else "An internal error occurred",
            'code': self.code,
            'category': self.category.value,
            'correlation_id': self.correlation_id,
            'timestamp': self.timestamp,
            'recoverable': self.recoverable
        }

        if self.user_friendly:
            error_dict['details'] = self.details

        return error_dict


class ValidationError(BaseApplicationError):
    """
    Validation error for rejected form submissions.

    ``errors`` holds the flat ``"<field>: <message>"`` list produced by the
    form validator.
    """

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[List[str]] = None,
        **kwargs
    ):
        kwargs.setdefault('category', ErrorCategory.VALIDATION)
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        kwargs.setdefault('http_status', 400)
        super().__init__(message=message, user_friendly=True, **kwargs)
        self.errors = list(errors or [])
        if self.errors:
            self.details['errors'] = self.errors


class SanitizationError(ValidationError):
    """Raised when a value cannot be walked or coerced during sanitization."""

    def __init__(
        self,
        message: str = "Failed to sanitize input",
        field: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault('category', ErrorCategory.SANITIZATION)
        super().__init__(message=message, **kwargs)
        if field:
            self.details['field'] = field


class CircularReferenceError(SanitizationError):
    """Raised when a form payload contains itself on its own ancestor path."""

    def __init__(self, message: str = "Circular reference detected in form data", **kwargs):
        super().__init__(message=message, **kwargs)


class FileValidationError(ValidationError):
    """
    Raised when an uploaded file is rejected.

    Size-only failures map to 413 so that clients can distinguish them from
    content or type rejections.
    """

    def __init__(
        self,
        message: str = "File validation failed",
        errors: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
        security_score: Optional[int] = None,
        filename: Optional[str] = None,
        size_only: bool = False,
        result: Any = None,
        **kwargs
    ):
        super().__init__(
            message=message,
            errors=errors,
            category=ErrorCategory.FILE_VALIDATION,
            severity=ErrorSeverity.MEDIUM,
            http_status=413 if size_only else 400,
            **kwargs
        )
        self.result = result
        self.warnings = list(warnings or [])
        self.security_score = security_score
        if self.warnings:
            self.details['warnings'] = self.warnings
        if security_score is not None:
            self.details['security_score'] = security_score
        if filename:
            self.details['filename'] = filename


class RateLimitExceededError(BaseApplicationError):
    """
    Raised when a caller is over its rate limit.

    Attributes:
        result: The denial result returned by the limiter
        retry_after: Whole seconds until the window resets (at least 1)
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        result: Any = None,
        retry_after: Optional[int] = None,
        limit_type: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.RATE_LIMIT,
            severity=ErrorSeverity.LOW,
            http_status=429,
            user_friendly=True,
            recoverable=True,
            **kwargs
        )
        self.result = result
        self.retry_after = retry_after
        if retry_after is not None:
            self.details['retry_after'] = retry_after
        if limit_type:
            self.details['limit_type'] = limit_type


class RateLimitBackendError(BaseApplicationError):
    """Raised when the distributed rate limit storage cannot be reached."""

    def __init__(
        self,
        message: str = "Rate limit backend unavailable",
        backend: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.BACKEND,
            severity=ErrorSeverity.HIGH,
            http_status=503,
            user_friendly=False,
            recoverable=True,
            **kwargs
        )
        if backend:
            self.details['backend'] = backend


class ConfigurationError(BaseApplicationError):
    """Raised for invalid or missing configuration."""

    def __init__(self, message: str = "Invalid configuration", **kwargs):
        super().__init__(
            message=message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            http_status=500,
            user_friendly=False,
            recoverable=False,
            **kwargs
        )


def format_error_response(error: Union[BaseApplicationError, Exception]) -> Dict[str, Any]:
    """
    Format error response for consistent API error responses.

    Args:
        error: Exception to format

    Returns:
        Formatted error response dictionary
    """
    if isinstance(error, BaseApplicationError):
        return error.to_dict()

    correlation_id = str(uuid4())
    logger.error(
        str(error),
        error_code=error.__class__.__name__,
        error_category=ErrorCategory.UNKNOWN.value,
        correlation_id=correlation_id
    )
    error_counter.labels(
        error_type=error.__class__.__name__,
        error_category=ErrorCategory.UNKNOWN.value
    ).inc()

    return {
        'error': True,
        'message': "An unexpected error occurred",
        'code': error.__class__.__name__,
        'category': ErrorCategory.UNKNOWN.value,
        'correlation_id': correlation_id,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'recoverable': False
    }


__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'BaseApplicationError',
    'ValidationError',
    'SanitizationError',
    'CircularReferenceError',
    'FileValidationError',
    'RateLimitExceededError',
    'RateLimitBackendError',
    'ConfigurationError',
    'format_error_response'
]
