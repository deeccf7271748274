"""
Rate limit storage backends.

Two interchangeable strategies implement RateLimitBackend: an in-process store with sliding
counters, lazy TTL eviction and progressive penalties for repeat offenders, and a distributed
store built on the limits library (the storage engine behind Flask-Limiter) using its moving
window strategy over Redis or any other limits storage URI.

Key Features:
- Per limit type policies with a formSubmission fallback for unknown types
- Atomic read-check-increment under a process-wide lock for the in-memory store
- Window reset, grace period eviction and violation tracking per key
- Progressive penalty doubling the window for identifiers with repeated denials
- Per-identifier violation history with a one hour TTL in both stores
- limits MovingWindowRateLimiter integration with normalized results
- Backend failures surfaced as RateLimitBackendError for the facade to fall back on
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import structlog
from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from formguard.monitoring.logging import log_security_event
from formguard.utils.exceptions import RateLimitBackendError

logger = structlog.get_logger(__name__)

DEFAULT_LIMIT_TYPE = 'formSubmission'
DEFAULT_GRACE_PERIOD_SECONDS = 300
DEFAULT_PENALTY_THRESHOLD = 3
PENALTY_WINDOW_MULTIPLIER = 2
VIOLATION_TTL_SECONDS = 3600


@dataclass(frozen=True)
class RateLimitPolicy:
    """Allowed number of requests per window for one limit type."""

    max_requests: int
    window_seconds: int


RATE_LIMIT_POLICIES: Dict[str, RateLimitPolicy] = {
    'formSubmission': RateLimitPolicy(15, 60),
    'authentication': RateLimitPolicy(3, 300),
    'authenticationFailed': RateLimitPolicy(2, 900),
    'fileUpload': RateLimitPolicy(15, 60),
    'adminAction': RateLimitPolicy(20, 60),
    'strict': RateLimitPolicy(2, 60),
}

# The distributed store takes integer counts, so 1.5 per minute becomes 3 per two minutes
DISTRIBUTED_RATE_LIMIT_POLICIES: Dict[str, RateLimitPolicy] = {
    **RATE_LIMIT_POLICIES,
    'authenticationFailed': RateLimitPolicy(4, 900),
    'strict': RateLimitPolicy(3, 120),
}


def get_policy(
    limit_type: str,
    policies: Optional[Mapping[str, RateLimitPolicy]] = None
) -> RateLimitPolicy:
    """Return the policy for a limit type, falling back to formSubmission."""
    policies = RATE_LIMIT_POLICIES if policies is None else policies
    return policies.get(limit_type) or policies[DEFAULT_LIMIT_TYPE]


def _to_datetime(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


@dataclass(frozen=True)
class RateLimitResult:
    """
    Normalized decision returned by every backend.

    Attributes:
        success: Whether the request is admitted
        limit: Maximum requests in the window
        remaining: Requests left in the window, never negative
        reset: When the current window ends (UTC)
        error: Optional reason attached by the caller
    """

    success: bool
    limit: int
    remaining: int
    reset: datetime
    error: Optional[str] = None

    def headers(self) -> Dict[str, str]:
        return {
            'X-RateLimit-Limit': str(self.limit),
            'X-RateLimit-Remaining': str(self.remaining),
            'X-RateLimit-Reset': str(int(self.reset.timestamp())),
        }

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': self.success,
            'limit': self.limit,
            'remaining': self.remaining,
            'reset': self.reset.isoformat()
        }
        if self.error:
            result['error'] = self.error
        return result


@dataclass
class RateLimitRecord:
    """
    In-memory counter for one ``(limit_type, identifier)`` key.

    Times are epoch seconds. ``expires_at`` trails ``reset_time`` by the grace period.
    """

    count: int
    reset_time: float
    violations: int
    expires_at: float


class RateLimitBackend(ABC):
    """Strategy interface shared by the in-memory and distributed stores."""

    name = 'abstract'

    @abstractmethod
    def check(self, identifier: str, limit_type: str) -> RateLimitResult:
        """Count one request and return the decision."""

    @abstractmethod
    def clear(self, identifier: str, limit_type: str) -> bool:
        """Forget the counter for one key. Returns True when something was removed."""

    @abstractmethod
    def clear_all(self) -> None:
        """Forget every counter."""

    @abstractmethod
    def get_remaining(self, identifier: str, limit_type: str) -> int:
        """Requests left in the current window, without counting one."""

    @abstractmethod
    def get_violations(self, identifier: str) -> int:
        """Denials recorded for an identifier within the violation TTL."""

    @abstractmethod
    def record_violation(self, identifier: str) -> int:
        """Count one denial for an identifier and return the new total."""


class InMemoryRateLimitBackend(RateLimitBackend):
    """
    Process-wide sliding counter store with lazy eviction and progressive penalties.

    Records are evicted only when their key is accessed after ``expires_at`` (or during
    ``get_stats``), so abandoned keys live at most one window plus the grace period past
    their last use.

    Args:
        policies: Limit type to policy table
        grace_period_seconds: Delay between window end and eviction
        penalty_threshold: Violations after which every denial doubles the window
        clock: Returns epoch seconds
    """

    name = 'memory'

    def __init__(
        self,
        policies: Optional[Mapping[str, RateLimitPolicy]] = None,
        grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
        penalty_threshold: int = DEFAULT_PENALTY_THRESHOLD,
        clock: Callable[[], float] = time.time
    ):
        self.policies = RATE_LIMIT_POLICIES if policies is None else policies
        self.grace_period_seconds = grace_period_seconds
        self.penalty_threshold = penalty_threshold
        self.clock = clock
        self._records: Dict[str, RateLimitRecord] = {}
        self._violations: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(limit_type: str, identifier: str) -> str:
        return f"{limit_type}_{identifier}"

    def check(self, identifier: str, limit_type: str) -> RateLimitResult:
        policy = get_policy(limit_type, self.policies)
        window = policy.window_seconds
        storage_key = self.make_key(limit_type, identifier)
        penalized = False

        with self._lock:
            now = self.clock()
            record = self._records.get(storage_key)

            if record is not None and now > record.expires_at:
                del self._records[storage_key]
                record = None

            if record is None or now > record.reset_time:
                reset_time = now + window
                record = RateLimitRecord(
                    count=0,
                    reset_time=reset_time,
                    violations=record.violations if record is not None else 0,
                    expires_at=reset_time + self.grace_period_seconds
                )
                self._records[storage_key] = record

            if record.count >= policy.max_requests:
                record.violations += 1
                if record.violations >= self.penalty_threshold:
                    record.reset_time = max(record.reset_time, now + PENALTY_WINDOW_MULTIPLIER * window)
                    record.expires_at = record.reset_time + self.grace_period_seconds
                    penalized = True
                result = RateLimitResult(False, policy.max_requests, 0, _to_datetime(record.reset_time))
                violations = record.violations
            else:
                record.count += 1
                result = RateLimitResult(
                    True,
                    policy.max_requests,
                    policy.max_requests - record.count,
                    _to_datetime(record.reset_time)
                )

        if penalized:
            log_security_event(
                'rate_limit_penalty_applied',
                severity='high',
                description="Repeated rate limit violations extended the window",
                identifier=identifier,
                limit_type=limit_type,
                violations=violations,
                reset=result.reset.isoformat()
            )
        return result

    def get_remaining(self, identifier: str, limit_type: str) -> int:
        policy = get_policy(limit_type, self.policies)
        with self._lock:
            record = self._records.get(self.make_key(limit_type, identifier))
            if record is None or self.clock() > record.reset_time:
                return policy.max_requests
            return max(0, policy.max_requests - record.count)

    def get_violations(self, identifier: str) -> int:
        with self._lock:
            return self._current_violations(identifier, self.clock())

    def record_violation(self, identifier: str) -> int:
        with self._lock:
            now = self.clock()
            violations = self._current_violations(identifier, now) + 1
            self._violations[identifier] = (violations, now + VIOLATION_TTL_SECONDS)
            return violations

    def _current_violations(self, identifier: str, now: float) -> int:
        entry = self._violations.get(identifier)
        if entry is None:
            return 0
        violations, expires_at = entry
        if now > expires_at:
            del self._violations[identifier]
            return 0
        return violations

    def get_record(self, identifier: str, limit_type: str) -> Optional[RateLimitRecord]:
        """Return a copy of the stored record, without evicting or counting."""
        with self._lock:
            record = self._records.get(self.make_key(limit_type, identifier))
            return replace(record) if record is not None else None

    def clear(self, identifier: str, limit_type: str) -> bool:
        with self._lock:
            self._violations.pop(identifier, None)
            return self._records.pop(self.make_key(limit_type, identifier), None) is not None

    def clear_all(self) -> None:
        with self._lock:
            self._records.clear()
            self._violations.clear()

    def get_stats(self) -> Dict[str, int]:
        """
        Sweep expired records and count what remains.

        Returns:
            ``total_entries`` still stored and ``active_entries`` whose window is open
        """
        with self._lock:
            now = self.clock()
            expired = [key for key, record in self._records.items() if now > record.expires_at]
            for storage_key in expired:
                del self._records[storage_key]
            for identifier in [key for key, (_, expires_at) in self._violations.items() if now > expires_at]:
                del self._violations[identifier]
            active = sum(1 for record in self._records.values() if now <= record.reset_time)
            return {'total_entries': len(self._records), 'active_entries': active}


class DistributedRateLimitBackend(RateLimitBackend):
    """
    Moving window rate limiting on a shared limits storage such as Redis.

    ``hit`` is an atomic check-and-record in the storage, so concurrent workers
    cannot both slip past the limit.

    Args:
        storage_uri: limits storage URI, e.g. ``redis://localhost:6379/2`` or ``memory://``
        policies: Limit type to policy table
        storage: Pre-built limits storage, overrides ``storage_uri``

    Raises:
        RateLimitBackendError: When the storage cannot be created
    """

    name = 'distributed'

    def __init__(
        self,
        storage_uri: str = 'memory://',
        policies: Optional[Mapping[str, RateLimitPolicy]] = None,
        storage: Any = None
    ):
        self.policies = DISTRIBUTED_RATE_LIMIT_POLICIES if policies is None else policies
        try:
            self.storage = storage if storage is not None else storage_from_string(storage_uri)
            self.limiter = MovingWindowRateLimiter(self.storage)
        except Exception as e:
            raise RateLimitBackendError(
                f"Failed to initialize rate limit storage: {str(e)}",
                backend=self.name
            )

    def _item(self, limit_type: str) -> RateLimitItemPerSecond:
        policy = get_policy(limit_type, self.policies)
        return RateLimitItemPerSecond(policy.max_requests, policy.window_seconds)

    def check(self, identifier: str, limit_type: str) -> RateLimitResult:
        item = self._item(limit_type)
        try:
            allowed = self.limiter.hit(item, limit_type, identifier)
            stats = self.limiter.get_window_stats(item, limit_type, identifier)
        except Exception as e:
            raise RateLimitBackendError(
                f"Rate limit storage unavailable: {str(e)}",
                backend=self.name
            )

        return RateLimitResult(
            success=bool(allowed),
            limit=item.amount,
            remaining=max(0, int(stats.remaining)),
            reset=_to_datetime(stats.reset_time)
        )

    def clear(self, identifier: str, limit_type: str) -> bool:
        try:
            self.limiter.clear(self._item(limit_type), limit_type, identifier)
            self.storage.clear(self._violation_key(identifier))
        except Exception as e:
            raise RateLimitBackendError(f"Failed to clear rate limit: {str(e)}", backend=self.name)
        return True

    def clear_all(self) -> None:
        try:
            self.storage.reset()
        except Exception as e:
            raise RateLimitBackendError(f"Failed to reset rate limit storage: {str(e)}", backend=self.name)

    def get_remaining(self, identifier: str, limit_type: str) -> int:
        item = self._item(limit_type)
        try:
            stats = self.limiter.get_window_stats(item, limit_type, identifier)
        except Exception as e:
            raise RateLimitBackendError(f"Rate limit storage unavailable: {str(e)}", backend=self.name)
        return max(0, int(stats.remaining))

    @staticmethod
    def _violation_key(identifier: str) -> str:
        return f"violations_{identifier}"

    def get_violations(self, identifier: str) -> int:
        try:
            return int(self.storage.get(self._violation_key(identifier)) or 0)
        except Exception as e:
            raise RateLimitBackendError(f"Failed to read violations: {str(e)}", backend=self.name)

    def record_violation(self, identifier: str) -> int:
        try:
            return int(self.storage.incr(self._violation_key(identifier), VIOLATION_TTL_SECONDS))
        except Exception as e:
            raise RateLimitBackendError(f"Failed to record violation: {str(e)}", backend=self.name)

    def is_healthy(self) -> bool:
        try:
            return bool(self.storage.check())
        except Exception:
            return False


__all__ = [
    'DEFAULT_LIMIT_TYPE',
    'RATE_LIMIT_POLICIES',
    'DISTRIBUTED_RATE_LIMIT_POLICIES',
    'VIOLATION_TTL_SECONDS',
    'RateLimitPolicy',
    'RateLimitResult',
    'RateLimitRecord',
    'RateLimitBackend',
    'InMemoryRateLimitBackend',
    'DistributedRateLimitBackend',
    'get_policy'
]
