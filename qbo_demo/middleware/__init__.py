"""
Middleware modules for the QuickBooks demo.

- Request ID tracking for log correlation
"""

from .correlation import CorrelationIdMiddleware, RequestIdLogFilter, request_id_ctx

__all__ = [
    "CorrelationIdMiddleware",
    "RequestIdLogFilter",
    "request_id_ctx",
]
