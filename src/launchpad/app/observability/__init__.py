"""Observability infrastructure for launchpad.

Provides structured logging with request/session correlation, Prometheus
metrics, and request-ID middleware.

Quick start::

    from launchpad.app.observability import configure_logging, get_logger
    from launchpad.app.observability.middleware import RequestIdMiddleware

    configure_logging()
    app.add_middleware(RequestIdMiddleware)
"""

from .logging import configure_logging, get_logger, request_id_ctx, session_id_ctx
from .metrics import metrics_text

__all__ = [
    "configure_logging",
    "get_logger",
    "metrics_text",
    "request_id_ctx",
    "session_id_ctx",
]
