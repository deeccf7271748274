"""
Flask integration for the submission pipeline.

``init_app`` attaches a SubmissionGuard to an application and registers JSON error handlers.
``guarded_submission`` protects a view: the client is rate limited, the request payload is
sanitized and uploads are validated before the view runs, and the view reads the cleaned
data from ``flask.g``.

Example:
    app = Flask(__name__)
    init_app(app)

    @app.route('/api/contact', methods=['POST'])
    @guarded_submission(limit_type='formSubmission')
    def contact():
        save_message(g.sanitized_form)
        return jsonify({'status': 'received'})
"""

import time
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import structlog
from flask import Flask, current_app, g, jsonify, make_response, request

from formguard.pipeline import SubmissionGuard
from formguard.ratelimit.backends import DEFAULT_LIMIT_TYPE
from formguard.ratelimit.limiter import RateLimiter
from formguard.security.file_upload import FileUploadConfig, FileUploadValidator
from formguard.utils.exceptions import (
    BaseApplicationError,
    ConfigurationError,
    RateLimitExceededError,
    format_error_response,
)
from formguard.utils.file_utils import FileStorageHandle

logger = structlog.get_logger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

EXTENSION_NAME = 'formguard'


def init_app(app: Flask, guard: Optional[SubmissionGuard] = None, settings: Any = None) -> SubmissionGuard:
    """
    Attach a SubmissionGuard to a Flask application.

    Args:
        app: Flask application instance
        guard: Pre-built guard, otherwise one is built from ``settings``
        settings: Configuration object, defaults to get_config()

    Returns:
        The guard used by ``guarded_submission`` views of this application
    """
    if guard is None:
        if settings is None:
            from formguard.config.settings import get_config
            settings = get_config()
        guard = SubmissionGuard(
            rate_limiter=RateLimiter.from_config(settings),
            upload_validator=FileUploadValidator.from_settings(settings)
        )
        app.config.setdefault('FORMGUARD_UPLOAD_CONFIG', FileUploadConfig.from_settings(settings))

    app.extensions[EXTENSION_NAME] = guard
    register_error_handlers(app)
    return guard


def get_guard() -> SubmissionGuard:
    """
    Return the guard of the current application.

    Raises:
        ConfigurationError: When ``init_app`` was not called for the application
    """
    guard = current_app.extensions.get(EXTENSION_NAME)
    if guard is None:
        raise ConfigurationError("formguard is not initialized; call init_app(app) first")
    return guard


def _read_form_payload() -> Any:
    if request.is_json:
        return request.get_json(silent=True)
    return request.form.to_dict()


def guarded_submission(
    limit_type: str = DEFAULT_LIMIT_TYPE,
    upload_config: Optional[FileUploadConfig] = None
) -> Callable[[F], F]:
    """
    Protect a Flask view with rate limiting, form sanitization and upload validation.

    On success the view finds ``g.sanitized_form``, ``g.validated_files`` (the original
    FileStorage objects), ``g.file_results`` and ``g.rate_limit``. Rate limit headers are
    added to the view's response.

    Args:
        limit_type: Rate limit policy name
        upload_config: Upload policy, defaults to the application's FORMGUARD_UPLOAD_CONFIG

    Raises:
        RateLimitExceededError: When the client is over its limit (429)
        ValidationError: When the form payload is invalid (400)
        FileValidationError: When an upload is rejected (400, or 413 for size)
    """
    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            guard = get_guard()
            identifier = RateLimiter.get_client_identifier(request.headers)

            storages = {name: storage for name, storage in request.files.items()}
            handles = {name: FileStorageHandle(storage) for name, storage in storages.items()}
            config = upload_config or current_app.config.get('FORMGUARD_UPLOAD_CONFIG')

            verdict = guard.enforce(
                identifier,
                data=_read_form_payload(),
                files=handles,
                limit_type=limit_type,
                upload_config=config
            )

            g.sanitized_form = verdict.form.sanitized if verdict.form is not None else {}
            g.validated_files = storages
            g.file_results = verdict.files
            g.rate_limit = verdict.rate_limit

            logger.debug(
                "Submission accepted",
                endpoint=request.endpoint,
                limit_type=limit_type,
                file_count=len(storages),
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2)
            )

            response = make_response(func(*args, **kwargs))
            response.headers.extend(verdict.rate_limit.headers())
            return response

        return wrapper  # type: ignore
    return decorator


def register_error_handlers(app: Flask) -> None:
    """
    Register JSON error handlers for engine exceptions.

    Args:
        app: Flask application instance
    """

    @app.errorhandler(RateLimitExceededError)
    def handle_rate_limit_error(error: RateLimitExceededError):
        """Handle rate limit denials with Retry-After and rate limit headers."""
        response = jsonify(format_error_response(error))
        response.status_code = error.http_status
        if error.retry_after is not None:
            response.headers['Retry-After'] = str(error.retry_after)
        if error.result is not None:
            response.headers.extend(error.result.headers())
        return response

    @app.errorhandler(BaseApplicationError)
    def handle_application_error(error: BaseApplicationError):
        """Handle every other engine error with its own status code."""
        response = jsonify(format_error_response(error))
        response.status_code = error.http_status
        return response


__all__ = [
    'init_app',
    'get_guard',
    'guarded_submission',
    'register_error_handlers'
]
