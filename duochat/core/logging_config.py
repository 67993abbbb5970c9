"""
Structured JSON logging configuration.

Provides structured JSON logging with mandatory fields:
- timestamp (ISO 8601)
- level (INFO, WARNING, ERROR, etc.)
- service (service name)
- trace_id (OpenTelemetry trace ID for correlation)
- session_id / user_id (when the caller passes them in ``extra``)
- message (log message)

Usage:
    import logging

    logger = logging.getLogger(__name__)
    logger.info("Session admitted", extra={"user_id": 3, "session_id": "..."})
"""
import logging
import sys
from datetime import datetime, timezone
from typing import Dict, Any
from pythonjsonlogger.json import JsonFormatter


class CustomJsonFormatter(JsonFormatter):
    """
    JSON formatter with mandatory observability fields.

    Ensures all log records include timestamp, level, service, trace_id and
    message, plus any context passed through ``extra``.
    """

    def __init__(self, service_name: str = "duochat", *args, **kwargs):
        self.service_name = service_name
        super().__init__(*args, **kwargs)

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['service'] = self.service_name
        log_record['message'] = record.getMessage()
        log_record['trace_id'] = getattr(record, 'trace_id', 'no-trace')

        for field in ('session_id', 'user_id', 'conversation_id'):
            if hasattr(record, field):
                log_record[field] = getattr(record, field)

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno


class LogContextFilter(logging.Filter):
    """Inject the current OpenTelemetry trace id into every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            from opentelemetry import trace
            span_context = trace.get_current_span().get_span_context()
            if span_context.is_valid:
                record.trace_id = format(span_context.trace_id, '032x')
            else:
                record.trace_id = 'no-trace'
        except Exception:
            record.trace_id = 'no-trace'
        return True


def configure_logging(
    service_name: str = "duochat",
    level: str = "INFO",
    enable_json: bool = True
) -> None:
    """
    Configure structured logging for the application.

    Args:
        service_name: Name of the service emitting logs
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_json: Whether to use JSON formatting (True for production)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(LogContextFilter())

    if enable_json:
        formatter = CustomJsonFormatter(
            service_name=service_name,
            fmt='%(timestamp)s %(level)s %(service)s %(trace_id)s %(message)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Suppress noisy third-party loggers
    logging.getLogger('kafka').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
