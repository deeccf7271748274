"""
Utility package: exceptions, text sanitizers, form validation and file handle adapters.

Module Organization:
- exceptions: error hierarchy with structured logging and JSON rendering
- sanitizers: plain text and allow-list HTML sanitization
- validators: recursive form payload validation
- file_utils: file handle protocol, werkzeug adapter and filename helpers
"""

from formguard.utils.exceptions import (
    BaseApplicationError,
    CircularReferenceError,
    ConfigurationError,
    ErrorCategory,
    ErrorSeverity,
    FileValidationError,
    RateLimitBackendError,
    RateLimitExceededError,
    SanitizationError,
    ValidationError,
)
from formguard.utils.file_utils import (
    FileHandle,
    FileStorageHandle,
    InMemoryFile,
    generate_secure_filename,
    sanitize_filename,
)
from formguard.utils.sanitizers import (
    HtmlSanitizer,
    StringSanitizer,
    is_html_allowed_field,
    sanitize_html,
    sanitize_string,
)
from formguard.utils.validators import (
    FormDataValidator,
    FormValidationResult,
    SanitizationResult,
    sanitize_input,
    validate_form_data,
)

__all__ = [
    'BaseApplicationError',
    'CircularReferenceError',
    'ConfigurationError',
    'ErrorCategory',
    'ErrorSeverity',
    'FileValidationError',
    'RateLimitBackendError',
    'RateLimitExceededError',
    'SanitizationError',
    'ValidationError',
    'FileHandle',
    'FileStorageHandle',
    'InMemoryFile',
    'generate_secure_filename',
    'sanitize_filename',
    'HtmlSanitizer',
    'StringSanitizer',
    'is_html_allowed_field',
    'sanitize_html',
    'sanitize_string',
    'FormDataValidator',
    'FormValidationResult',
    'SanitizationResult',
    'sanitize_input',
    'validate_form_data'
]
