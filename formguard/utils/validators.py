"""
Form data validation utilities providing recursive sanitization of untrusted value trees.

This module walks submitted form payloads of arbitrary shape, routes every string through the
plain text or HTML sanitizer depending on the field name, passes file handles through untouched
and aggregates per-field errors into a single verdict.

Key Features:
- Standardized SanitizationResult and FormValidationResult containers
- Recursive traversal of nested mappings and sequences preserving the input shape
- Field-name based routing between plain text and allow-list HTML sanitization
- File handle pass-through without reading or copying the upload
- Deterministic cycle detection for self-referential payloads
- Structured logging and Prometheus metrics for every validation outcome
"""

from collections.abc import Mapping
from numbers import Number
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

import structlog

from formguard.monitoring.logging import truncate_payload
from formguard.monitoring.metrics import form_validation_counter
from formguard.utils.exceptions import CircularReferenceError, SanitizationError
from formguard.utils.file_utils import is_file_like
from formguard.utils.sanitizers import HtmlSanitizer, StringSanitizer, is_html_allowed_field

logger = structlog.get_logger(__name__)

FORM_DATA_REQUIRED_ERROR = "Form data is required"
FORM_DATA_TYPE_ERROR = "Form data must be an object"
FORM_DATA_STRUCTURE_ERROR = "Failed to process form data structure"
CIRCULAR_REFERENCE_ERROR = "Circular reference detected in form data"
SANITIZE_FAILURE_ERROR = "Failed to sanitize input"


class SanitizationResult:
    """
    Outcome of sanitizing one value.

    ``is_valid`` is False only when the value could not be converted to text; the
    sanitized value is then an empty string.
    """

    def __init__(self, is_valid: bool, sanitized: Any, error: Optional[str] = None):
        self.is_valid = is_valid
        self.sanitized = sanitized
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        result = {'is_valid': self.is_valid, 'sanitized': self.sanitized}
        if self.error:
            result['error'] = self.error
        return result

    def __repr__(self) -> str:
        return f"SanitizationResult(is_valid={self.is_valid!r}, error={self.error!r})"


class FormValidationResult:
    """
    Outcome of validating a whole form payload.

    ``sanitized`` mirrors the shape of the submitted tree. Validity is derived from
    ``errors`` so the two can never disagree.
    """

    def __init__(self, sanitized: Any = None, errors: Optional[List[str]] = None):
        self.sanitized = sanitized if sanitized is not None else {}
        self.errors = errors or []

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'sanitized': self.sanitized,
            'errors': list(self.errors)
        }

    def __repr__(self) -> str:
        return f"FormValidationResult(is_valid={self.is_valid!r}, errors={self.errors!r})"


class FormDataValidator:
    """
    Recursive validator for untrusted form payloads.

    Args:
        string_sanitizer: Sanitizer applied to plain text fields
        html_sanitizer: Sanitizer applied to fields allowed to keep formatting
        html_field_predicate: Decides from a field name whether HTML is allowed
    """

    def __init__(
        self,
        string_sanitizer: Optional[StringSanitizer] = None,
        html_sanitizer: Optional[HtmlSanitizer] = None,
        html_field_predicate: Callable[[str], bool] = is_html_allowed_field
    ):
        self.string_sanitizer = string_sanitizer or StringSanitizer()
        self.html_sanitizer = html_sanitizer or HtmlSanitizer()
        self.html_field_predicate = html_field_predicate

    def sanitize_value(self, value: Any, allow_html: bool = False) -> SanitizationResult:
        """
        Sanitize a single value without raising.

        Args:
            value: Untrusted value
            allow_html: Whether allow-listed formatting tags may be kept

        Returns:
            SanitizationResult with the sanitized text or a coercion error
        """
        sanitizer = self.html_sanitizer if allow_html else self.string_sanitizer
        try:
            return SanitizationResult(True, sanitizer.sanitize(value))
        except SanitizationError:
            return SanitizationResult(False, '', SANITIZE_FAILURE_ERROR)

    def validate_form_data(self, data: Any) -> FormValidationResult:
        """
        Validate and sanitize a complete form payload.

        Never raises on adversarial input: missing, non-mapping, circular or otherwise
        unwalkable payloads produce an invalid result with an empty sanitized mapping.

        Args:
            data: Untrusted payload, expected to be a mapping

        Returns:
            FormValidationResult with the sanitized tree and ``"<field>: <message>"`` errors
        """
        if data is None:
            form_validation_counter.labels(result='invalid').inc()
            return FormValidationResult({}, [FORM_DATA_REQUIRED_ERROR])

        if not isinstance(data, Mapping):
            form_validation_counter.labels(result='invalid').inc()
            logger.warning("Form data rejected: not a mapping", data_type=type(data).__name__)
            return FormValidationResult({}, [FORM_DATA_TYPE_ERROR])

        try:
            sanitized, errors = self._validate_mapping(data, frozenset())
        except CircularReferenceError:
            form_validation_counter.labels(result='error').inc()
            return FormValidationResult({}, [CIRCULAR_REFERENCE_ERROR])
        except Exception as e:
            form_validation_counter.labels(result='error').inc()
            logger.error(
                "Form data traversal failed",
                error=str(e),
                error_type=type(e).__name__
            )
            return FormValidationResult({}, [FORM_DATA_STRUCTURE_ERROR])

        result = FormValidationResult(sanitized, errors)
        form_validation_counter.labels(result='valid' if result.is_valid else 'invalid').inc()
        if not result.is_valid:
            logger.info(
                "Form data validation failed",
                error_count=len(errors),
                field_count=len(sanitized)
            )
        return result

    def validate_and_sanitize_field(self, key: Any, value: Any) -> SanitizationResult:
        """
        Validate and sanitize one field of a form payload.

        Args:
            key: Field name, used to route strings to the HTML or plain text sanitizer
            value: Untrusted field value of any supported shape

        Returns:
            SanitizationResult carrying the sanitized value and, on failure, the field error.
            Circular or unwalkable values give an invalid result with an empty mapping.
        """
        try:
            sanitized, error = self._sanitize_field(key, value, frozenset())
        except CircularReferenceError:
            return SanitizationResult(False, {}, CIRCULAR_REFERENCE_ERROR)
        except Exception as e:
            logger.error(
                "Field traversal failed",
                field=truncate_payload(key),
                error=str(e),
                error_type=type(e).__name__
            )
            return SanitizationResult(False, {}, FORM_DATA_STRUCTURE_ERROR)
        return SanitizationResult(error is None, sanitized, error)

    def _validate_mapping(
        self,
        data: Mapping,
        ancestors: FrozenSet[int]
    ) -> Tuple[Dict[Any, Any], List[str]]:
        if id(data) in ancestors:
            raise CircularReferenceError()
        ancestors = ancestors | {id(data)}

        sanitized: Dict[Any, Any] = {}
        errors: List[str] = []
        for key, value in data.items():
            field_value, error = self._sanitize_field(key, value, ancestors)
            sanitized[key] = field_value
            if error:
                errors.append(f"{key}: {error}")
        return sanitized, errors

    def _sanitize_field(
        self,
        key: Any,
        value: Any,
        ancestors: FrozenSet[int]
    ) -> Tuple[Any, Optional[str]]:
        if isinstance(value, (list, tuple)):
            items, errors = self._sanitize_sequence(value, ancestors)
            return items, ', '.join(errors) if errors else None

        if is_file_like(value):
            return value, None

        if isinstance(value, Mapping):
            nested, errors = self._validate_mapping(value, ancestors)
            return nested, ', '.join(errors) if errors else None

        if isinstance(value, str):
            result = self.sanitize_value(value, allow_html=self.html_field_predicate(str(key)))
            return result.sanitized, result.error

        if value is None or isinstance(value, (bool, Number)):
            return value, None

        result = self.sanitize_value(value)
        return result.sanitized, result.error

    def _sanitize_sequence(
        self,
        values: Any,
        ancestors: FrozenSet[int]
    ) -> Tuple[List[Any], List[str]]:
        if id(values) in ancestors:
            raise CircularReferenceError()
        ancestors = ancestors | {id(values)}

        items: List[Any] = []
        errors: List[str] = []
        for index, item in enumerate(values):
            if isinstance(item, str):
                result = self.sanitize_value(item)
                items.append(result.sanitized)
                if result.error:
                    errors.append(f"[{index}] {result.error}")
            elif is_file_like(item):
                items.append(item)
            elif isinstance(item, Mapping):
                nested, nested_errors = self._validate_mapping(item, ancestors)
                items.append(nested)
                errors.extend(f"[{index}] {error}" for error in nested_errors)
            elif isinstance(item, (list, tuple)):
                nested_items, nested_errors = self._sanitize_sequence(item, ancestors)
                items.append(nested_items)
                errors.extend(f"[{index}] {error}" for error in nested_errors)
            elif item is None or isinstance(item, (bool, Number)):
                items.append(item)
            else:
                result = self.sanitize_value(item)
                items.append(result.sanitized)
                if result.error:
                    errors.append(f"[{index}] {result.error}")
        return items, errors


_default_validator = FormDataValidator()


def validate_form_data(data: Any) -> FormValidationResult:
    """
    Convenience function validating a form payload with the default validator.

    Args:
        data: Untrusted payload

    Returns:
        FormValidationResult for the payload
    """
    return _default_validator.validate_form_data(data)


def sanitize_input(value: Any, allow_html: bool = False) -> SanitizationResult:
    """
    Convenience function sanitizing a single value with the default validator.

    Args:
        value: Untrusted value
        allow_html: Whether allow-listed formatting tags may be kept

    Returns:
        SanitizationResult for the value
    """
    return _default_validator.sanitize_value(value, allow_html=allow_html)


__all__ = [
    'FORM_DATA_REQUIRED_ERROR',
    'FORM_DATA_TYPE_ERROR',
    'FORM_DATA_STRUCTURE_ERROR',
    'CIRCULAR_REFERENCE_ERROR',
    'SANITIZE_FAILURE_ERROR',
    'SanitizationResult',
    'FormValidationResult',
    'FormDataValidator',
    'validate_form_data',
    'sanitize_input'
]
