"""
Correlation ID Middleware
Tags every request (and its log lines) with an X-Request-ID correlation id
"""

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id

# Re-export CorrelationIdMiddleware for convenience
__all__ = ["CorrelationIdMiddleware", "get_correlation_id"]


def get_correlation_id() -> str:
    """
    Get current correlation ID from request context.

    Included in generic error responses so a client can quote it when
    reporting a failed borrow/return.

    Returns:
        str: The correlation ID or 'none' if not available
    """
    return correlation_id.get() or 'none'
