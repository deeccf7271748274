"""
Rate limiter facade.

RateLimiter prefers the distributed backend when one is configured and falls back to the
in-memory backup on any distributed failure, so a storage outage degrades to per-process
limiting instead of rejecting every request. Callers only ever see a RateLimitResult.

Key Features:
- Backend selection from configuration with transparent fail-open fallback
- Progressive limiting that moves repeat offenders onto the strict policy
- Upload quota checks and remaining quota lookups over the fileUpload policy
- Client identifier derivation from forwarded IP headers
- Administrative resets restricted to development and testing
- Human readable limit messages and Retry-After computation
- Prometheus counters per limit type, backend and outcome
- Security audit logging of denials, fallbacks and refused resets
"""

import math
import time
from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional, TypeVar

import structlog

from formguard.monitoring.logging import log_security_event
from formguard.monitoring.metrics import rate_limit_counter, rate_limit_fallback_counter
from formguard.ratelimit.backends import (
    DEFAULT_LIMIT_TYPE,
    DistributedRateLimitBackend,
    InMemoryRateLimitBackend,
    RateLimitBackend,
    RateLimitResult,
)
from formguard.utils.exceptions import RateLimitBackendError, RateLimitExceededError

logger = structlog.get_logger(__name__)

T = TypeVar('T')

UNKNOWN_CLIENT = 'unknown_client'
UPLOAD_LIMIT_TYPE = 'fileUpload'
PROGRESSIVE_LIMIT_TYPE = 'strict'
PROGRESSIVE_VIOLATION_THRESHOLD = 3


def _get_header(headers: Any, name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None and isinstance(headers, Mapping):
        lowered = name.lower()
        for header_name, header_value in headers.items():
            if str(header_name).lower() == lowered:
                return header_value
    return value


class RateLimiter:
    """
    Facade over the distributed and in-memory rate limit backends.

    Args:
        backup: In-memory backend, always present
        distributed: Optional distributed backend tried first
        admin_operations_allowed: Whether clear operations may run
        clock: Returns epoch seconds
    """

    def __init__(
        self,
        backup: Optional[InMemoryRateLimitBackend] = None,
        distributed: Optional[RateLimitBackend] = None,
        admin_operations_allowed: bool = False,
        clock: Callable[[], float] = time.time
    ):
        self.backup = backup or InMemoryRateLimitBackend(clock=clock)
        self.distributed = distributed
        self.admin_operations_allowed = admin_operations_allowed
        self.clock = clock

    @classmethod
    def from_config(cls, settings: Any = None, clock: Callable[[], float] = time.time) -> 'RateLimiter':
        """
        Build a limiter from settings.

        A distributed storage that cannot be initialized is logged and skipped.

        Args:
            settings: Configuration object, defaults to get_config()
            clock: Returns epoch seconds

        Returns:
            Configured RateLimiter
        """
        if settings is None:
            from formguard.config.settings import get_config
            settings = get_config()

        backup = InMemoryRateLimitBackend(
            grace_period_seconds=settings.RATELIMIT_GRACE_PERIOD_SECONDS,
            penalty_threshold=settings.RATELIMIT_PENALTY_THRESHOLD,
            clock=clock
        )

        distributed = None
        if settings.distributed_rate_limiting_enabled:
            try:
                distributed = DistributedRateLimitBackend(settings.RATELIMIT_STORAGE_URI)
            except RateLimitBackendError as e:
                rate_limit_fallback_counter.labels(reason='initialization_failed').inc()
                logger.warning(
                    "Distributed rate limiting unavailable, using in-memory backup",
                    error=e.message
                )

        logger.info(
            "Rate limiter configured",
            backend='distributed' if distributed is not None else 'memory',
            environment=settings.ENVIRONMENT
        )
        return cls(
            backup=backup,
            distributed=distributed,
            admin_operations_allowed=settings.admin_operations_allowed,
            clock=clock
        )

    def is_configured(self) -> bool:
        """Whether a distributed backend is active."""
        return self.distributed is not None

    def check_limit(self, identifier: str, limit_type: str = DEFAULT_LIMIT_TYPE) -> RateLimitResult:
        """
        Count one request for an identifier and decide whether it is admitted.

        Args:
            identifier: Opaque client identifier
            limit_type: Policy name, unknown names use the formSubmission policy

        Returns:
            RateLimitResult from whichever backend served the request
        """
        backend_name = self.backup.name
        result = None

        if self.distributed is not None:
            try:
                result = self.distributed.check(identifier, limit_type)
                backend_name = self.distributed.name
            except Exception as e:
                rate_limit_fallback_counter.labels(reason=type(e).__name__).inc()
                log_security_event(
                    'rate_limit_backend_fallback',
                    severity='medium',
                    description="Distributed rate limiting failed, using in-memory backup",
                    limit_type=limit_type,
                    error=str(e)
                )

        if result is None:
            result = self.backup.check(identifier, limit_type)

        rate_limit_counter.labels(
            limit_type=limit_type,
            backend=backend_name,
            result='allowed' if result.success else 'denied'
        ).inc()

        if not result.success:
            log_security_event(
                'rate_limit_exceeded',
                severity='medium',
                description="Request denied by rate limiter",
                identifier=identifier,
                limit_type=limit_type,
                limit=result.limit,
                reset=result.reset.isoformat()
            )
        return result


    def check_with_progression(self, identifier: str, base_type: str = DEFAULT_LIMIT_TYPE) -> RateLimitResult:
        """
        Check a limit, moving repeat offenders onto the strict policy.

        Every denial is recorded against the identifier for an hour. Identifiers with
        PROGRESSIVE_VIOLATION_THRESHOLD or more recorded denials are checked against the
        ``strict`` policy instead of ``base_type``. When violation history cannot be read
        the base policy is used.

        Args:
            identifier: Opaque client identifier
            base_type: Policy applied to identifiers without a violation history

        Returns:
            RateLimitResult of the policy that was applied
        """
        try:
            violations = self._violations(identifier, record=False)
        except Exception as e:
            logger.warning("Progressive rate limiting failed, using base policy", error=str(e))
            return self.check_limit(identifier, base_type)

        limit_type = PROGRESSIVE_LIMIT_TYPE if violations >= PROGRESSIVE_VIOLATION_THRESHOLD else base_type
        result = self.check_limit(identifier, limit_type)

        if not result.success:
            try:
                self._violations(identifier, record=True)
            except Exception as e:
                logger.warning("Failed to record rate limit violation", error=str(e))
        return result

    def _violations(self, identifier: str, record: bool) -> int:
        if self.distributed is not None:
            try:
                if record:
                    return self.distributed.record_violation(identifier)
                return self.distributed.get_violations(identifier)
            except Exception as e:
                rate_limit_fallback_counter.labels(reason=type(e).__name__).inc()
                logger.warning("Distributed violation tracking failed, using in-memory backup", error=str(e))

        if record:
            return self.backup.record_violation(identifier)
        return self.backup.get_violations(identifier)

    def get_remaining(self, identifier: str, limit_type: str = DEFAULT_LIMIT_TYPE) -> int:
        """Requests left for an identifier in its current window, without counting one."""
        if self.distributed is not None:
            try:
                return self.distributed.get_remaining(identifier, limit_type)
            except Exception as e:
                rate_limit_fallback_counter.labels(reason=type(e).__name__).inc()
                logger.warning("Distributed quota lookup failed, using in-memory backup", error=str(e))
        return self.backup.get_remaining(identifier, limit_type)

    def can_upload(self, identifier: str) -> bool:
        """Count one upload against the fileUpload policy and report whether it is admitted."""
        return self.check_limit(identifier, UPLOAD_LIMIT_TYPE).success

    def get_remaining_uploads(self, identifier: str) -> int:
        return self.get_remaining(identifier, UPLOAD_LIMIT_TYPE)
    @staticmethod
    def get_client_identifier(headers: Any = None) -> str:
        """
        Derive a client identifier from request headers.

        Args:
            headers: Request headers (werkzeug Headers or any mapping)

        Returns:
            ``ip_<address>`` from X-Forwarded-For or X-Real-IP, ``ip_unknown`` when
            neither is present, ``unknown_client`` when no headers are available
        """
        if headers is None:
            return UNKNOWN_CLIENT

        forwarded_for = _get_header(headers, 'X-Forwarded-For')
        if forwarded_for:
            first_address = forwarded_for.split(',')[0].strip()
            if first_address:
                return f"ip_{first_address}"

        real_ip = _get_header(headers, 'X-Real-IP')
        if real_ip and real_ip.strip():
            return f"ip_{real_ip.strip()}"

        return 'ip_unknown'

    def _refuse_admin_operation(self, operation: str, **context: Any) -> bool:
        if self.admin_operations_allowed:
            return False
        log_security_event(
            'rate_limit_clear_refused',
            severity='high',
            description=f"{operation} is disabled outside development and testing",
            **context
        )
        return True

    def clear_limit(self, identifier: str, limit_type: str = DEFAULT_LIMIT_TYPE) -> bool:
        """
        Reset the counter of one identifier.

        Returns:
            True when the limit was cleared, False when clearing is not permitted
        """
        if self._refuse_admin_operation('clear_limit', identifier=identifier, limit_type=limit_type):
            return False

        self.backup.clear(identifier, limit_type)
        if self.distributed is not None:
            try:
                self.distributed.clear(identifier, limit_type)
            except Exception as e:
                logger.warning("Failed to clear distributed rate limit", limit_type=limit_type, error=str(e))

        logger.info("Rate limit cleared", identifier=identifier, limit_type=limit_type)
        return True

    def clear_all_limits(self) -> bool:
        """
        Reset every counter.

        Returns:
            True when the limits were cleared, False when clearing is not permitted
        """
        if self._refuse_admin_operation('clear_all_limits'):
            return False

        self.backup.clear_all()
        if self.distributed is not None:
            try:
                self.distributed.clear_all()
            except Exception as e:
                logger.warning("Failed to reset distributed rate limits", error=str(e))

        logger.info("All rate limits cleared")
        return True

    def get_backup_stats(self) -> Dict[str, int]:
        return self.backup.get_stats()

    @staticmethod
    def format_rate_limit_message(result: RateLimitResult) -> str:
        """Describe a decision for API responses."""
        reset_at = result.reset.strftime('%H:%M:%S')
        if result.success:
            return f"{result.remaining}/{result.limit} requests remaining. Reset at {reset_at}"
        return (
            f"Rate limit exceeded: {result.remaining}/{result.limit}. "
            f"Try again after reset at {reset_at}"
        )

    def retry_after(self, result: RateLimitResult, now: Optional[float] = None) -> int:
        """Whole seconds until the window of ``result`` resets, rounded up."""
        now = self.clock() if now is None else now
        return max(0, math.ceil(result.reset.timestamp() - now))


def with_rate_limit(
    limiter: RateLimiter,
    identifier: str,
    limit_type: str,
    operation: Callable[[], T]
) -> T:
    """
    Run ``operation`` only when the identifier is within its limit.

    Raises:
        RateLimitExceededError: When the request is denied
    """
    result = limiter.check_limit(identifier, limit_type)
    if not result.success:
        raise RateLimitExceededError(
            limiter.format_rate_limit_message(result),
            result=result,
            retry_after=max(1, limiter.retry_after(result)),
            limit_type=limit_type
        )
    return operation()


__all__ = [
    'UNKNOWN_CLIENT',
    'UPLOAD_LIMIT_TYPE',
    'PROGRESSIVE_LIMIT_TYPE',
    'PROGRESSIVE_VIOLATION_THRESHOLD',
    'RateLimiter',
    'RateLimitResult',
    'with_rate_limit'
]
