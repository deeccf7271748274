"""
Upload security validation combining size, type consistency, content and name checks.

FileUploadValidator starts every file at a security score of 100 and subtracts a fixed penalty
for each finding. A file is accepted only when it produced no errors and kept a score of at
least 50, so an accumulation of warnings alone can still reject it.

Key Features:
- Configurable size ceiling with empty and very large file detection
- MIME type, extension and signature consistency through FileSignatureValidator
- Script and executable detection through FileContentScanner
- Executable extension denylist
- Sanitized, collision-free storage names for every upload
- Standard upload configuration and storage path allow-list
- Security score histogram and per-check Prometheus counters
"""

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import structlog

from formguard.monitoring.logging import log_security_event, truncate_payload
from formguard.monitoring.metrics import file_security_score, file_validation_counter
from formguard.security.content_scanner import FileContentScanner
from formguard.security.file_types import MEGABYTE, FileSignatureValidator, normalize_mime_type
from formguard.utils.file_utils import FileHandle, as_file_handle, sanitize_filename

logger = structlog.get_logger(__name__)

INITIAL_SECURITY_SCORE = 100
MINIMUM_SECURITY_SCORE = 50
LARGE_FILE_WARNING_THRESHOLD = 100 * MEGABYTE
MAX_RECOMMENDED_UPLOAD_SIZE = 100 * MEGABYTE

SIZE_EXCEEDED_PENALTY = 30
EMPTY_FILE_PENALTY = 50
LARGE_FILE_PENALTY = 10
CONSISTENCY_FAILURE_PENALTY = 60
LEGACY_TYPE_PENALTY = 5
EXECUTABLE_EXTENSION_PENALTY = 60
PER_ERROR_PENALTY = 5
PER_WARNING_PENALTY = 2

EXECUTABLE_EXTENSIONS = (
    '.exe', '.bat', '.cmd', '.com', '.pif', '.scr', '.vbs', '.js', '.jar',
    '.php', '.asp', '.aspx', '.jsp', '.py', '.rb', '.pl', '.sh', '.ps1',
)

ALLOWED_IMAGE_TYPES = (
    'image/jpeg', 'image/jpg', 'image/png', 'image/webp', 'image/avif', 'image/svg+xml', 'image/gif',
)

ALLOWED_DOCUMENT_TYPES = (
    'application/pdf',
    'application/msword',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'text/plain',
)

LEGACY_ALLOWED_TYPES = ALLOWED_IMAGE_TYPES + ALLOWED_DOCUMENT_TYPES

FILE_SIZE_LIMITS = {
    'image': 8 * MEGABYTE,
    'document': 10 * MEGABYTE,
    'archive': 50 * MEGABYTE,
    'default': 5 * MEGABYTE,
}

STANDARD_UPLOAD_TYPES = (
    'image/jpeg', 'image/png', 'image/gif', 'image/webp', 'image/avif',
    'image/heic', 'image/heif', 'image/svg+xml', 'application/pdf',
)

ALLOWED_UPLOAD_PATHS = (
    'solutions', 'portfolio', 'resources', 'posts', 'products', 'news', 'about', 'contact',
    'general', 'temp', 'tags/global', 'tags/clients', 'tags/brands', 'tags/icons', 'industries',
)


@dataclass(frozen=True)
class FileUploadConfig:
    """
    Per-endpoint upload policy.

    Attributes:
        max_size: Size ceiling in bytes, applied in addition to the per-type ceilings
        allowed_types: Secondary allow-list; types outside it only produce a warning
        allow_executables: Skip the executable extension denylist
    """

    max_size: int = FILE_SIZE_LIMITS['default']
    allowed_types: Tuple[str, ...] = LEGACY_ALLOWED_TYPES
    allow_executables: bool = False

    @classmethod
    def for_category(cls, category: str, **overrides: Any) -> 'FileUploadConfig':
        """Build a config whose size ceiling comes from FILE_SIZE_LIMITS."""
        max_size = FILE_SIZE_LIMITS.get(category, FILE_SIZE_LIMITS['default'])
        return replace(cls(max_size=max_size), **overrides)

    @classmethod
    def from_settings(cls, settings: Any) -> 'FileUploadConfig':
        return cls(max_size=settings.UPLOAD_MAX_SIZE)


@dataclass
class FileValidationResult:
    """
    Verdict for one uploaded file.

    ``is_valid`` holds exactly when there are no errors and the score is at least 50.
    """

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    security_score: int = INITIAL_SECURITY_SCORE
    sanitized_name: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return not self.errors and self.security_score >= MINIMUM_SECURITY_SCORE

    @property
    def size_only_failure(self) -> bool:
        """True when every error is a size violation."""
        return bool(self.errors) and all(error.startswith('File size') for error in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'sanitized_name': self.sanitized_name,
            'security_score': self.security_score
        }


def get_standard_upload_config() -> FileUploadConfig:
    """Upload policy shared by the content management endpoints."""
    return FileUploadConfig(max_size=10 * MEGABYTE, allowed_types=STANDARD_UPLOAD_TYPES)


def is_upload_path_allowed(path: str) -> bool:
    """
    Check a storage folder against the upload path allow-list.

    Any traversal sequence or home directory reference rejects the path outright.
    """
    if not path or '..' in path or '~' in path:
        return False
    normalized = path.strip().strip('/')
    return any(
        normalized == allowed or normalized.startswith(allowed + '/')
        for allowed in ALLOWED_UPLOAD_PATHS
    )


def validate_upload_config(config: FileUploadConfig) -> List[str]:
    """
    Report risky settings in an upload config.

    Returns:
        Advisory messages, empty when the config looks sound
    """
    problems = []
    if config.max_size > MAX_RECOMMENDED_UPLOAD_SIZE:
        problems.append("Maximum file size exceeds recommended limit of 100MB")
    if not config.allowed_types:
        problems.append("No allowed file types specified")
    if config.allow_executables:
        problems.append("Allowing executable files poses security risks")
    return problems


class FileUploadValidator:
    """
    Orchestrates every upload check into one scored verdict.

    Args:
        signature_validator: MIME, extension, signature and per-type size checks
        content_scanner: Pattern and executable header scanning
        clock: Returns epoch seconds, used for the storage name suffix
    """

    def __init__(
        self,
        signature_validator: Optional[FileSignatureValidator] = None,
        content_scanner: Optional[FileContentScanner] = None,
        clock: Callable[[], float] = time.time
    ):
        self.signature_validator = signature_validator or FileSignatureValidator()
        self.content_scanner = content_scanner or FileContentScanner()
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Any, clock: Callable[[], float] = time.time) -> 'FileUploadValidator':
        """Build a validator whose content scan ceiling comes from CONTENT_SCAN_MAX_FILE_SIZE."""
        return cls(
            content_scanner=FileContentScanner(max_scan_size=settings.CONTENT_SCAN_MAX_FILE_SIZE),
            clock=clock
        )

    def validate_file(self, file: Any, config: Optional[FileUploadConfig] = None) -> FileValidationResult:
        """
        Validate one upload.

        Args:
            file: FileHandle or werkzeug FileStorage
            config: Upload policy, defaults to FileUploadConfig()

        Returns:
            FileValidationResult with errors, warnings, score and storage name
        """
        config = config or FileUploadConfig()
        result = FileValidationResult()

        try:
            handle = as_file_handle(file)
            score = self._run_checks(handle, config, result)
        except Exception as e:
            logger.error(
                "File validation failed unexpectedly",
                error=str(e),
                error_type=type(e).__name__
            )
            result.errors.append("File validation failed")
            result.security_score = 0
            file_validation_counter.labels(
                validation_type='upload',
                result='error',
                error_type=type(e).__name__
            ).inc()
            return result

        if len(result.errors) > 1:
            score -= PER_ERROR_PENALTY * len(result.errors)
        if len(result.warnings) > 2:
            score -= PER_WARNING_PENALTY * len(result.warnings)
        result.security_score = max(0, min(INITIAL_SECURITY_SCORE, score))

        file_security_score.observe(result.security_score)
        file_validation_counter.labels(
            validation_type='upload',
            result='passed' if result.is_valid else 'failed',
            error_type='none' if not result.errors else 'validation_errors'
        ).inc()

        if not result.is_valid:
            logger.info(
                "File upload rejected",
                filename=truncate_payload(result.sanitized_name),
                mime_type=handle.content_type,
                security_score=result.security_score,
                error_count=len(result.errors),
                warning_count=len(result.warnings)
            )
        return result

    def _run_checks(self, handle: FileHandle, config: FileUploadConfig, result: FileValidationResult) -> int:
        score = INITIAL_SECURITY_SCORE

        if handle.size > config.max_size:
            result.errors.append(
                f"File size {handle.size / MEGABYTE:.2f}MB exceeds maximum allowed size of "
                f"{config.max_size / MEGABYTE:.2f}MB"
            )
            score -= SIZE_EXCEEDED_PENALTY

        if handle.size == 0:
            result.errors.append("File is empty")
            score -= EMPTY_FILE_PENALTY

        if handle.size > LARGE_FILE_WARNING_THRESHOLD:
            result.warnings.append("File is very large and may impact performance")
            score -= LARGE_FILE_PENALTY

        result.sanitized_name = sanitize_filename(handle.name, timestamp=int(self.clock() * 1000))

        consistency = self.signature_validator.check_consistency(handle)
        if not consistency.is_valid:
            result.errors.extend(consistency.errors)
            score -= CONSISTENCY_FAILURE_PENALTY
        elif normalize_mime_type(handle.content_type) not in config.allowed_types:
            result.warnings.append(f"File type {handle.content_type} not in legacy allowedTypes list")
            score -= LEGACY_TYPE_PENALTY

        scan = self.content_scanner.scan(handle)
        result.errors.extend(scan.errors)
        result.warnings.extend(scan.warnings)
        score += scan.security_score_delta

        if not config.allow_executables:
            lowered = (handle.name or '').lower()
            for extension in EXECUTABLE_EXTENSIONS:
                if lowered.endswith(extension):
                    result.errors.append(f"Executable file extension {extension} is not allowed")
                    score -= EXECUTABLE_EXTENSION_PENALTY
                    log_security_event(
                        'executable_extension_upload',
                        severity='high',
                        description="Upload with executable extension rejected",
                        filename=truncate_payload(handle.name),
                        extension=extension
                    )
                    break

        return score

    def validate_files(
        self,
        files: Mapping[str, Any],
        config: Optional[FileUploadConfig] = None
    ) -> Dict[str, FileValidationResult]:
        """Validate several uploads keyed by form field name."""
        return {name: self.validate_file(file, config) for name, file in files.items()}


_default_validator = FileUploadValidator()


def validate_file(file: Any, config: Optional[FileUploadConfig] = None) -> FileValidationResult:
    """Convenience function validating an upload with the default validator."""
    return _default_validator.validate_file(file, config)


__all__ = [
    'MINIMUM_SECURITY_SCORE',
    'EXECUTABLE_EXTENSIONS',
    'LEGACY_ALLOWED_TYPES',
    'FILE_SIZE_LIMITS',
    'ALLOWED_UPLOAD_PATHS',
    'FileUploadConfig',
    'FileValidationResult',
    'FileUploadValidator',
    'get_standard_upload_config',
    'is_upload_path_allowed',
    'validate_upload_config',
    'validate_file'
]
