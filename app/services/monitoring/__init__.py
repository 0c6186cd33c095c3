"""
Monitoring Module
Exports for structured logging
"""

from app.services.monitoring.logging import setup_logging, CorrelationJsonFormatter, add_correlation_id

__all__ = [
    "setup_logging",
    "CorrelationJsonFormatter",
    "add_correlation_id",
]
