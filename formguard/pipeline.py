"""
Submission pipeline running every gate a write request must pass.

The rate limit is checked first so that abusive clients are rejected before any parsing work,
then the form payload is sanitized and every uploaded file is validated. Form errors do not
stop the file checks, which lets callers report every problem of a submission at once.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import structlog

from formguard.ratelimit.backends import DEFAULT_LIMIT_TYPE, RateLimitResult
from formguard.ratelimit.limiter import RateLimiter
from formguard.security.file_upload import FileUploadConfig, FileUploadValidator, FileValidationResult
from formguard.utils.exceptions import FileValidationError, RateLimitExceededError, ValidationError
from formguard.utils.validators import FormDataValidator, FormValidationResult

logger = structlog.get_logger(__name__)


@dataclass
class SubmissionVerdict:
    """Combined outcome of the rate limit, form and file gates."""

    rate_limit: RateLimitResult
    form: Optional[FormValidationResult] = None
    files: Dict[str, FileValidationResult] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'rate_limit': self.rate_limit.to_dict(),
            'form': self.form.to_dict() if self.form is not None else None,
            'files': {name: result.to_dict() for name, result in self.files.items()},
            'errors': list(self.errors)
        }


class SubmissionGuard:
    """
    Runs rate limiting, form sanitization and upload validation for one submission.

    Args:
        rate_limiter: Rate limit facade
        form_validator: Recursive form payload validator
        upload_validator: Upload security validator
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        form_validator: Optional[FormDataValidator] = None,
        upload_validator: Optional[FileUploadValidator] = None
    ):
        self.rate_limiter = rate_limiter or RateLimiter.from_config()
        self.form_validator = form_validator or FormDataValidator()
        self.upload_validator = upload_validator or FileUploadValidator()

    def check(
        self,
        identifier: str,
        data: Any = None,
        files: Optional[Mapping[str, Any]] = None,
        limit_type: str = DEFAULT_LIMIT_TYPE,
        upload_config: Optional[FileUploadConfig] = None
    ) -> SubmissionVerdict:
        """
        Evaluate a submission without raising.

        Args:
            identifier: Client identifier for rate limiting
            data: Untrusted form payload, skipped when None and files are present
            files: Uploads keyed by form field name
            limit_type: Rate limit policy name
            upload_config: Upload policy for every file

        Returns:
            SubmissionVerdict; ``form`` and ``files`` stay empty when rate limited
        """
        rate_limit = self.rate_limiter.check_limit(identifier, limit_type)
        verdict = SubmissionVerdict(rate_limit=rate_limit)
        if not rate_limit.success:
            verdict.errors.append(RateLimiter.format_rate_limit_message(rate_limit))
            return verdict

        if data is not None or not files:
            verdict.form = self.form_validator.validate_form_data(data)
            verdict.errors.extend(verdict.form.errors)

        for field_name, file in (files or {}).items():
            result = self.upload_validator.validate_file(file, upload_config)
            verdict.files[field_name] = result
            if not result.is_valid:
                reasons = result.errors or [
                    f"Security score {result.security_score} is below the acceptance threshold"
                ]
                verdict.errors.extend(f"{field_name}: {reason}" for reason in reasons)

        if not verdict.allowed:
            logger.info(
                "Submission rejected",
                limit_type=limit_type,
                error_count=len(verdict.errors),
                file_count=len(verdict.files)
            )
        return verdict

    def enforce(
        self,
        identifier: str,
        data: Any = None,
        files: Optional[Mapping[str, Any]] = None,
        limit_type: str = DEFAULT_LIMIT_TYPE,
        upload_config: Optional[FileUploadConfig] = None
    ) -> SubmissionVerdict:
        """
        Evaluate a submission and raise on the first failing gate.

        Raises:
            RateLimitExceededError: When the client is over its limit
            ValidationError: When the form payload is invalid
            FileValidationError: When an upload is rejected
        """
        verdict = self.check(identifier, data, files, limit_type, upload_config)

        if not verdict.rate_limit.success:
            raise RateLimitExceededError(
                verdict.errors[0],
                result=verdict.rate_limit,
                retry_after=max(1, self.rate_limiter.retry_after(verdict.rate_limit)),
                limit_type=limit_type
            )

        if verdict.form is not None and not verdict.form.is_valid:
            raise ValidationError("Form data validation failed", errors=verdict.errors)

        rejected = {name: result for name, result in verdict.files.items() if not result.is_valid}
        if rejected:
            result = next(iter(rejected.values()))
            raise FileValidationError(
                "File validation failed",
                errors=list(verdict.errors),
                warnings=result.warnings,
                security_score=result.security_score,
                filename=result.sanitized_name,
                size_only=all(r.size_only_failure for r in rejected.values()),
                result=result
            )

        return verdict


__all__ = [
    'SubmissionVerdict',
    'SubmissionGuard'
]
