"""
Prometheus metrics for the formguard input security engine.

All collectors are registered on the default prometheus-client registry at import time so
that any host application exposing ``/metrics`` picks them up without further wiring.

Key Features:
- Sanitization and form validation outcome counters
- File validation counters broken down by check and error type
- Security score distribution histogram for accepted and rejected uploads
- Rate limit decision counters per limit type and backend
- Distributed backend fallback counter for storage outage alerting
"""

from prometheus_client import Counter, Histogram

sanitization_counter = Counter(
    'formguard_sanitization_total',
    'Total sanitization operations by sanitizer and outcome',
    ['sanitizer', 'result']
)

form_validation_counter = Counter(
    'formguard_form_validation_total',
    'Total form validation operations by outcome',
    ['result']
)

file_validation_counter = Counter(
    'formguard_file_validation_total',
    'Total file validation checks by type and outcome',
    ['validation_type', 'result', 'error_type']
)

file_security_score = Histogram(
    'formguard_file_security_score',
    'Distribution of file security scores',
    buckets=(0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100)
)

rate_limit_counter = Counter(
    'formguard_rate_limit_checks_total',
    'Total rate limit decisions by limit type, backend and outcome',
    ['limit_type', 'backend', 'result']
)

rate_limit_fallback_counter = Counter(
    'formguard_rate_limit_backend_fallback_total',
    'Total fallbacks from the distributed backend to the in-memory backup',
    ['reason']
)

error_counter = Counter(
    'formguard_errors_total',
    'Total number of engine errors by type',
    ['error_type', 'error_category']
)


__all__ = [
    'sanitization_counter',
    'form_validation_counter',
    'file_validation_counter',
    'file_security_score',
    'rate_limit_counter',
    'rate_limit_fallback_counter',
    'error_counter'
]
