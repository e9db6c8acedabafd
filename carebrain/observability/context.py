"""
Request and operation context carried through log records.
"""

import contextvars
import uuid
from typing import Optional

_request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)
_operation_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "operation", default=None
)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return _request_id_var.get()


def set_request_id(request_id: str) -> contextvars.Token:
    """Set the request ID in context. Returns token for reset."""
    return _request_id_var.set(request_id)


def get_operation() -> Optional[str]:
    """Name of the core operation currently executing, if any."""
    return _operation_var.get()


def generate_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:16]}"


class RequestContext:
    """
    Context manager for request-scoped operations.

    Usage:
        with RequestContext(operation="correlation.evaluate") as ctx:
            logger.info("Evaluating")   # carries ctx.request_id and the operation

        with RequestContext(request_id="req-abc123"):
            ...
    """

    def __init__(self, request_id: Optional[str] = None, operation: Optional[str] = None):
        self.request_id = request_id or get_request_id() or generate_request_id()
        self.operation = operation
        self._tokens: list[tuple[contextvars.ContextVar, contextvars.Token]] = []

    def __enter__(self) -> "RequestContext":
        self._tokens.append((_request_id_var, _request_id_var.set(self.request_id)))
        if self.operation is not None:
            self._tokens.append((_operation_var, _operation_var.set(self.operation)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
