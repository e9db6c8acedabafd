"""
Observability module: structured logging and request IDs.

Usage:
    from carebrain.observability import get_logger, RequestContext

    logger = get_logger(__name__)
    logger.info("Processing request", extra={"resident_id": "res-1"})

    with RequestContext(operation="trajectory.project") as ctx:
        logger.info("Request started")
"""

from .context import RequestContext, generate_request_id, get_operation, get_request_id, set_request_id
from .logging import CorrelationIdMiddleware, HumanFormatter, JSONFormatter, configure_logging, get_logger

__all__ = [
    "get_logger",
    "configure_logging",
    "JSONFormatter",
    "HumanFormatter",
    "CorrelationIdMiddleware",
    "RequestContext",
    "generate_request_id",
    "get_operation",
    "get_request_id",
    "set_request_id",
]
