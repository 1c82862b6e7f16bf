"""Shared pieces of the transports: contexts, codes, and wire helpers."""

from __future__ import annotations

import json
import threading
import weakref
from enum import Enum, IntEnum
from typing import Any, Protocol


class LoggingLevel(str, Enum):
    """Log levels a client may request from the server."""

    DEBUG = "debug"
    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    ALERT = "alert"
    EMERGENCY = "emergency"


class ErrorCode(IntEnum):
    """Standard JSON-RPC error codes."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


_MISSING = object()


class Context:
    """Carries request-scoped values and a cancellation signal.

    Values are looked up through the chain of parents. Cancelling a context
    cancels every context derived from it, except detached ones.
    """

    def __init__(self, values: dict[Any, Any] | None = None, parent: Context | None = None) -> None:
        self._values = dict(values or {})
        self._value_parent = parent
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._children: weakref.WeakSet[Context] = weakref.WeakSet()
        if parent is not None:
            parent._attach(self)

    def _attach(self, child: Context) -> None:
        with self._lock:
            if not self._done.is_set():
                self._children.add(child)
                return
        child.cancel()

    def with_value(self, key: Any, value: Any) -> Context:
        """Return a derived context holding ``key`` -> ``value``."""
        return Context({key: value}, self)

    def value(self, key: Any) -> Any:
        """Return the value stored for ``key``, or None when absent."""
        ctx: Context | None = self
        while ctx is not None:
            found = ctx._values.get(key, _MISSING)
            if found is not _MISSING:
                return found
            ctx = ctx._value_parent
        return None

    def cancel(self) -> None:
        """Cancel this context and everything derived from it."""
        with self._lock:
            if self._done.is_set():
                return
            self._done.set()
            children = list(self._children)
            self._children.clear()
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._done.is_set()

    def detached(self) -> Context:
        """Return a context sharing this one's values but not its cancellation."""
        ctx = Context()
        ctx._value_parent = self
        return ctx

    def child(self) -> Context:
        """Return a context cancelled together with this one, or on its own."""
        return Context(None, self)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` passes; return whether cancelled."""
        return self._done.wait(timeout)


class MessageHandler(Protocol):
    """The protocol server that the transports hand messages to."""

    def handle_message(self, context: Context, message: Any) -> dict[str, Any] | None:
        """Process one JSON-RPC message; return the response, or None for notifications."""
        ...

    def register_session(self, context: Context, session: Any) -> None:
        """Register a client session; raise on failure."""
        ...

    def unregister_session(self, context: Context, session_id: str) -> None:
        """Forget a client session."""
        ...

    def with_context(self, context: Context, session: Any) -> Context:
        """Return a context bound to the given session."""
        ...


def create_error_response(id: Any, code: int, message: str) -> dict[str, Any]:
    """Build a JSON-RPC error response object."""
    return {
        "jsonrpc": "2.0",
        "id": id,
        "error": {"code": int(code), "message": message},
    }


_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _dumps(data: Any) -> str:
    text = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in _ESCAPES.items():
        text = text.replace(char, escaped)
    return text


def format_sse_event(data: Any) -> str:
    """Encode ``data`` as JSON inside a server-sent ``message`` event."""
    return f"event: message\ndata: {_dumps(data)}\n\n"