"""
Monitoring package providing structured logging and Prometheus metrics for the engine.

Modules:
- logging: structlog configuration, correlation IDs and security audit events
- metrics: Prometheus counters and histograms for every security decision
"""

from formguard.monitoring.logging import (
    get_correlation_id,
    log_security_event,
    set_correlation_id,
    setup_structured_logging,
)
from formguard.monitoring.metrics import (
    file_security_score,
    file_validation_counter,
    form_validation_counter,
    rate_limit_counter,
    rate_limit_fallback_counter,
    sanitization_counter,
)

__all__ = [
    'get_correlation_id',
    'log_security_event',
    'set_correlation_id',
    'setup_structured_logging',
    'file_security_score',
    'file_validation_counter',
    'form_validation_counter',
    'rate_limit_counter',
    'rate_limit_fallback_counter',
    'sanitization_counter'
]
