"""
formguard - input security and rate limiting engine for form and file submissions.

Every write request passes three gates: the client is rate limited (with progressive penalties
and a distributed/in-memory dual backend), the submitted value tree is sanitized against XSS,
and every uploaded file is checked for MIME, extension and signature consistency, embedded
script content and executable payloads.

Package Organization:
- config: environment driven settings
- monitoring: structured logging and Prometheus metrics
- utils: exceptions, sanitizers, form validation and file handles
- security: file type registry, content scanner and upload validator
- ratelimit: rate limit backends and facade
- pipeline: submission guard running all gates in order
- decorators: Flask integration
"""

from formguard.config.settings import get_config
from formguard.decorators import guarded_submission, init_app, register_error_handlers
from formguard.pipeline import SubmissionGuard, SubmissionVerdict
from formguard.ratelimit.limiter import RateLimiter, with_rate_limit
from formguard.security.file_upload import FileUploadConfig, FileUploadValidator, validate_file
from formguard.utils.sanitizers import sanitize_html, sanitize_string
from formguard.utils.validators import FormDataValidator, validate_form_data

__version__ = '1.0.0'

__all__ = [
    '__version__',
    'get_config',
    'guarded_submission',
    'init_app',
    'register_error_handlers',
    'SubmissionGuard',
    'SubmissionVerdict',
    'RateLimiter',
    'with_rate_limit',
    'FileUploadConfig',
    'FileUploadValidator',
    'validate_file',
    'sanitize_html',
    'sanitize_string',
    'FormDataValidator',
    'validate_form_data'
]
