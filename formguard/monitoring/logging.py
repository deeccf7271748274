"""
Structured logging for the formguard input security engine.

Engine modules obtain loggers with ``structlog.get_logger(__name__)`` and log events with
keyword context. This module wires those loggers into the standard library logging tree,
renders records as JSON through python-json-logger in production and as readable console
lines in development.

Key Features:
- structlog processor pipeline with ISO timestamps and correlation ID enrichment
- python-json-logger formatter for log aggregation systems
- Sensitive key masking so tokens and credentials never reach the log stream
- Security event helper for denials, spoofing attempts and malicious content findings
- Payload truncation so attacker-controlled input is never logged in full
"""

import logging
import os
import socket
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from pythonjsonlogger import jsonlogger

SECURITY_LOGGER_NAME = 'formguard.security.audit'

# Attacker-controlled values are cut to this many characters before logging
MAX_LOGGED_PAYLOAD_LENGTH = 50

SENSITIVE_FIELDS = ['password', 'secret', 'token', 'key', 'auth', 'credential']

correlation_id_context: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set the correlation ID for the current context.

    Args:
        correlation_id: ID to use, a new UUID4 is generated when omitted

    Returns:
        The correlation ID now in effect
    """
    correlation_id = correlation_id or str(uuid4())
    correlation_id_context.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    return correlation_id_context.get()


def clear_correlation_id() -> None:
    correlation_id_context.set(None)


def truncate_payload(value: Any, max_length: int = MAX_LOGGED_PAYLOAD_LENGTH) -> str:
    """Render ``value`` as a string no longer than ``max_length`` characters."""
    try:
        text = value if isinstance(value, str) else repr(value)
    except Exception:
        text = f"<unrepresentable {type(value).__name__}>"
    if len(text) > max_length:
        return text[:max_length] + '...'
    return text


def add_correlation_id(logger, method_name, event_dict):
    correlation_id = correlation_id_context.get()
    if correlation_id:
        event_dict['correlation_id'] = correlation_id
    return event_dict


def filter_sensitive_data(logger, method_name, event_dict):
    """
    Mask values whose keys look like credentials.

    Args:
        logger: Wrapped logger instance
        method_name: Logging method name
        event_dict: Event dictionary to filter

    Returns:
        Filtered event dictionary with sensitive data masked
    """

    def mask_sensitive_value(value: Any) -> str:
        if isinstance(value, str) and len(value) > 4:
            return f"{value[:2]}***{value[-2:]}"
        return "***"

    def filter_dict(data: Dict[str, Any]) -> Dict[str, Any]:
        filtered = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if key != 'event' and any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
                filtered[key] = mask_sensitive_value(value)
            elif isinstance(value, dict):
                filtered[key] = filter_dict(value)
            elif isinstance(value, list):
                filtered[key] = [
                    filter_dict(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                filtered[key] = value
        return filtered

    return filter_dict(event_dict)


class FormguardJSONFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding service identification fields to each record."""

    def __init__(self, *args, **kwargs):
        format_string = ' '.join([
            '%(asctime)s',
            '%(name)s',
            '%(levelname)s',
            '%(message)s'
        ])
        super().__init__(format_string, *args, **kwargs)

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record['service'] = 'formguard'
        log_record['environment'] = os.getenv('FORMGUARD_ENV', 'production')
        log_record['hostname'] = socket.gethostname()
        if not log_record.get('timestamp'):
            log_record['timestamp'] = datetime.now(timezone.utc).isoformat()


def setup_structured_logging(config: Optional[Any] = None) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog and the standard library root logger.

    Args:
        config: Settings object exposing LOG_LEVEL and LOG_FORMAT, defaults to get_config()

    Returns:
        Configured structured logger for the engine
    """
    if config is None:
        from formguard.config.settings import get_config
        config = get_config()

    log_format = config.LOG_FORMAT.lower()
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        add_correlation_id,
        filter_sensitive_data,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == 'json':
        # Event dict travels as ``extra`` so the JSON formatter emits flat fields
        processors.append(structlog.stdlib.render_to_log_kwargs)
        formatter = FormguardJSONFormatter()
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
        formatter = logging.Formatter('%(message)s')

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        handlers=[handler],
        force=True
    )

    logger = structlog.get_logger('formguard')
    logger.info(
        "Structured logging initialized",
        log_level=config.LOG_LEVEL,
        log_format=log_format,
        environment=getattr(config, 'ENVIRONMENT', None)
    )
    return logger


def log_security_event(
    event_type: str,
    severity: str = 'medium',
    description: Optional[str] = None,
    **additional_data: Any
) -> None:
    """
    Log a security relevant event on the audit logger.

    Args:
        event_type: Short machine readable event name, e.g. ``rate_limit_exceeded``
        severity: Severity level (low, medium, high, critical)
        description: Optional human readable description
        **additional_data: Extra context; string values are truncated
    """
    security_logger = structlog.get_logger(SECURITY_LOGGER_NAME)
    security_event = {
        'event_category': 'security',
        'event_type': event_type,
        'severity': severity,
        'description': description,
        'security_audit': True,
        **{
            key: truncate_payload(value) if isinstance(value, str) else value
            for key, value in additional_data.items()
        }
    }

    if severity == 'critical':
        security_logger.critical(f"CRITICAL SECURITY EVENT: {event_type}", **security_event)
    elif severity == 'high':
        security_logger.error(f"Security violation: {event_type}", **security_event)
    elif severity == 'medium':
        security_logger.warning(f"Security event: {event_type}", **security_event)
    else:
        security_logger.info(f"Security notice: {event_type}", **security_event)


__all__ = [
    'SECURITY_LOGGER_NAME',
    'MAX_LOGGED_PAYLOAD_LENGTH',
    'set_correlation_id',
    'get_correlation_id',
    'clear_correlation_id',
    'truncate_payload',
    'add_correlation_id',
    'filter_sensitive_data',
    'FormguardJSONFormatter',
    'setup_structured_logging',
    'log_security_event'
]
