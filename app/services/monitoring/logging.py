"""
Structured Logging with Correlation ID
JSON output for stdlib and structlog records, tagged with the request's correlation id
"""

import logging
import sys

import structlog
from pythonjsonlogger import jsonlogger
from asgi_correlation_id.context import correlation_id

from app.config import settings

SERVICE_NAME = "library-loan-service"


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter adding correlation_id, service and environment to every record.

    The correlation ID comes from the request context set by
    CorrelationIdMiddleware; outside a request it is 'none'.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['correlation_id'] = correlation_id.get() or 'none'
        log_record['service'] = SERVICE_NAME
        log_record['environment'] = settings.environment


def add_correlation_id(logger, method_name, event_dict):
    """structlog processor: attach the current correlation id."""
    event_dict.setdefault('correlation_id', correlation_id.get() or 'none')
    return event_dict


def setup_logging(level: int = logging.INFO):
    """
    Configure JSON logging to stdout for stdlib and structlog.

    - Root logger gets a StreamHandler with CorrelationJsonFormatter
    - structlog renders ISO timestamp, level and correlation id as JSON

    Args:
        level: Root log level (DEBUG in development shows lock traffic)

    Returns:
        logging.Handler: The configured handler (for testing)
    """
    handler = logging.StreamHandler(sys.stdout)

    formatter = CorrelationJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s',
        rename_fields={
            'timestamp': 'asctime',
            'level': 'levelname'
        }
    )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            add_correlation_id,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )

    return handler
