"""Streamable HTTP transport: JSON responses that upgrade to event streams."""

from __future__ import annotations

import json
import queue
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from http import HTTPStatus
from socketserver import ThreadingMixIn
from typing import Any
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from .base import Context, ErrorCode, MessageHandler, _dumps, create_error_response, format_sse_event
from .logger import Logger, default_logger
from .session_ids import (
    InsecureStatefulSessionIdManager,
    SessionIdManager,
    StatelessSessionIdManager,
)

HTTPContextFunc = Callable[[Context, dict], Context]
StartResponse = Callable[..., Any]

SESSION_ID_HEADER = "Mcp-Session-Id"
_SESSION_ID_ENVIRON = "HTTP_MCP_SESSION_ID"
_NOTIFICATION_BUFFER = 100
_POLL_INTERVAL = 0.05
_PING = {"jsonrpc": "2.0", "id": None, "method": "ping"}


class SessionToolsStore:
    """Thread-safe map of session id to that session's tools."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tools: dict[str, dict[str, Any]] = {}

    def get(self, session_id: str) -> dict[str, Any] | None:
        """Return the tools of a session, or None if it has none."""
        with self._lock:
            tools = self._tools.get(session_id)
            return dict(tools) if tools is not None else None

    def set(self, session_id: str, tools: dict[str, Any] | None) -> None:
        """Replace the tools of a session; None removes them."""
        with self._lock:
            if tools is None:
                self._tools.pop(session_id, None)
            else:
                self._tools[session_id] = dict(tools)


class StreamableHTTPSession:
    """A client session of the streamable HTTP transport.

    For POST requests it lives only as long as the request; for GET
    requests it is registered with the protocol server.
    """

    def __init__(self, session_id: str, tools_store: SessionToolsStore) -> None:
        self.session_id = session_id
        self.notifications: queue.Queue[Any] = queue.Queue(maxsize=_NOTIFICATION_BUFFER)
        self._tools_store = tools_store
        # These sessions are ephemeral and count as initialised from the start.
        self.initialized = True

    def initialize(self) -> None:
        """Mark the session initialised; it needs no other setup."""
        self.initialized = True

    def notify(self, notification: Any) -> None:
        """Queue a notification for the client; raise queue.Full if the buffer is full."""
        self.notifications.put_nowait(notification)

    @property
    def session_tools(self) -> dict[str, Any] | None:
        return self._tools_store.get(self.session_id)

    @session_tools.setter
    def session_tools(self, tools: dict[str, Any] | None) -> None:
        self._tools_store.set(self.session_id, tools)


class _Stream:
    """A WSGI response body that runs a cleanup action when closed."""

    def __init__(self, chunks: Iterator[bytes], on_close: Callable[[], None]) -> None:
        self._chunks = chunks
        self._on_close = on_close
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        return self._chunks

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            close = getattr(self._chunks, "close", None)
            if close is not None:
                close()
        finally:
            self._on_close()


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    logger: Logger | None = None


class _LoggingHandler(WSGIRequestHandler):
    """Request handler that sends its log lines to the transport's logger."""

    def _logger(self) -> Logger:
        logger = getattr(self.server, "logger", None)
        return logger if logger is not None else default_logger()

    def log_message(self, format: str, *args: Any) -> None:
        self._logger().infof("%s - %s", self.address_string(), format % args)

    def log_error(self, format: str, *args: Any) -> None:
        self._logger().errorf("%s - %s", self.address_string(), format % args)


def _status(code: int) -> str:
    status = HTTPStatus(code)
    return f"{status.value} {status.phrase}"


def _plain_error(start_response: StartResponse, message: str, code: int) -> list[bytes]:
    body = (message + "\n").encode("utf-8")
    start_response(
        _status(code),
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(body))),
        ],
    )
    return [body]


def _read_body(environ: dict[str, Any]) -> bytes:
    try:
        size = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        size = 0
    stream = environ.get("wsgi.input")
    if stream is None or size <= 0:
        return b""
    return stream.read(size)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant: {name}")


def _parse_message(raw: bytes) -> tuple[Any, str]:
    message = json.loads(raw, parse_constant=_reject_constant)
    if message is None:
        return None, ""
    if not isinstance(message, dict):
        raise ValueError("message is not a JSON object")
    method = message.get("method")
    if method is None:
        return message, ""
    if not isinstance(method, str):
        raise ValueError("method is not a string")
    return message, method


class StreamableHTTPServer:
    """WSGI application serving the streamable HTTP transport.

    POST carries requests and notifications, GET listens for server
    notifications, DELETE ends a session. Batching and stream resumption
    are not supported.
    """

    def __init__(
        self,
        server: MessageHandler,
        *,
        endpoint_path: str = "/mcp",
        stateless: bool = False,
        session_id_manager: SessionIdManager | None = None,
        heartbeat_interval: float = 0.0,
        context_func: HTTPContextFunc | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.server = server
        self.session_tools = SessionToolsStore()
        self.endpoint_path = "/" + endpoint_path.strip("/")
        if session_id_manager is not None:
            self.session_id_manager: SessionIdManager = session_id_manager
        elif stateless:
            self.session_id_manager = StatelessSessionIdManager()
        else:
            self.session_id_manager = InsecureStatefulSessionIdManager()
        self.heartbeat_interval = heartbeat_interval
        self.context_func = context_func
        self.logger = logger if logger is not None else default_logger()
        self.http_server: WSGIServer | None = None
        self._lock = threading.Lock()
        self._closing = threading.Event()

    def __call__(self, environ: dict[str, Any], start_response: StartResponse) -> Any:
        method = environ.get("REQUEST_METHOD", "GET").upper()
        if method == "POST":
            return self._handle_post(environ, start_response)
        if method == "GET":
            return self._handle_get(environ, start_response)
        if method == "DELETE":
            return self._handle_delete(environ, start_response)
        return _plain_error(start_response, "404 page not found", 404)

    def start(self, addr: str) -> None:
        """Serve on ``addr`` ("host:port") at the endpoint path until shut down."""
        host, _, port = addr.rpartition(":")
        host = host.strip("[]")
        with self._lock:
            self._closing.clear()
            httpd = make_server(
                host,
                int(port),
                self._route,
                server_class=_ThreadingWSGIServer,
                handler_class=_LoggingHandler,
            )
            httpd.logger = self.logger
            self.http_server = httpd
        httpd.serve_forever()

    def shutdown(self) -> None:
        """End open listening streams and stop the HTTP server, if started."""
        self._closing.set()
        with self._lock:
            httpd = self.http_server
            self.http_server = None
        if httpd is not None:
            httpd.shutdown()
            httpd.server_close()

    def _route(self, environ: dict[str, Any], start_response: StartResponse) -> Any:
        if environ.get("PATH_INFO", "") == self.endpoint_path:
            return self(environ, start_response)
        return _plain_error(start_response, "404 page not found", 404)

    def _json_rpc_error(
        self, start_response: StartResponse, id: Any, code: int, message: str
    ) -> list[bytes]:
        body = (_dumps(create_error_response(id, code, message)) + "\n").encode("utf-8")
        start_response(
            _status(400),
            [("Content-Type", "application/json"), ("Content-Length", str(len(body)))],
        )
        return [body]

    def _encode_event(self, data: Any) -> bytes:
        try:
            return format_sse_event(data).encode("utf-8")
        except (TypeError, ValueError) as exc:
            self.logger.errorf("Failed to write SSE event: %s", exc)
            return b""

    def _handle_post(self, environ: dict[str, Any], start_response: StartResponse) -> Any:
        if environ.get("CONTENT_TYPE", "") != "application/json":
            return _plain_error(
                start_response, "Invalid content type: must be 'application/json'", 400
            )
        try:
            raw = _read_body(environ)
        except OSError as exc:
            return self._json_rpc_error(
                start_response, None, ErrorCode.PARSE_ERROR, f"read request body error: {exc}"
            )
        try:
            message, method = _parse_message(raw)
        except ValueError:
            return self._json_rpc_error(
                start_response, None, ErrorCode.PARSE_ERROR, "request body is not valid json"
            )
        is_initialize = method == "initialize"

        if is_initialize:
            session_id = self.session_id_manager.generate()
        else:
            session_id = environ.get(_SESSION_ID_ENVIRON, "")
            try:
                terminated = self.session_id_manager.validate(session_id)
            except Exception:
                return _plain_error(start_response, "Invalid session ID", 400)
            if terminated:
                return _plain_error(start_response, "Session terminated", 404)

        session = StreamableHTTPSession(session_id, self.session_tools)
        request_ctx = Context()
        ctx = self.server.with_context(request_ctx, session)
        if self.context_func is not None:
            ctx = self.context_func(ctx, environ)

        outcome: dict[str, Any] = {}
        finished = threading.Event()

        def run() -> None:
            try:
                outcome["response"] = self.server.handle_message(ctx, message)
            except BaseException as exc:
                outcome["error"] = exc
            finally:
                finished.set()

        threading.Thread(target=run, daemon=True).start()

        def next_notification() -> Any:
            """Return the next notification, or raise StopIteration once handling ended."""
            while True:
                try:
                    return session.notifications.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    if finished.is_set() and session.notifications.empty():
                        raise StopIteration from None

        try:
            first = next_notification()
        except StopIteration:
            request_ctx.cancel()
            return self._plain_response(start_response, outcome, is_initialize, session_id)

        start_response(
            _status(202),
            [("Content-Type", "text/event-stream"), ("Cache-Control", "no-cache")],
        )

        def events() -> Iterator[bytes]:
            yield self._encode_event(first)
            while True:
                try:
                    item = next_notification()
                except StopIteration:
                    break
                yield self._encode_event(item)
            if "error" in outcome:
                raise outcome["error"]
            response = outcome.get("response")
            if response is not None:
                try:
                    yield format_sse_event(response).encode("utf-8")
                except (TypeError, ValueError) as exc:
                    self.logger.errorf("Failed to write final SSE response event: %s", exc)

        return _Stream(events(), request_ctx.cancel)

    def _plain_response(
        self,
        start_response: StartResponse,
        outcome: dict[str, Any],
        is_initialize: bool,
        session_id: str,
    ) -> list[bytes]:
        if "error" in outcome:
            raise outcome["error"]
        response = outcome.get("response")
        if response is None:
            start_response(_status(202), [("Content-Length", "0")])
            return []
        try:
            body = (_dumps(response) + "\n").encode("utf-8")
        except (TypeError, ValueError) as exc:
            self.logger.errorf("Failed to write response: %s", exc)
            body = b""
        headers = [("Content-Type", "application/json")]
        if is_initialize and session_id:
            headers.append((SESSION_ID_HEADER, session_id))
        headers.append(("Content-Length", str(len(body))))
        start_response(_status(200), headers)
        return [body]

    def _handle_get(self, environ: dict[str, Any], start_response: StartResponse) -> Any:
        session_id = environ.get(_SESSION_ID_ENVIRON, "") or str(uuid.uuid4())
        session = StreamableHTTPSession(session_id, self.session_tools)
        request_ctx = Context()
        try:
            self.server.register_session(request_ctx, session)
        except Exception as exc:
            return _plain_error(start_response, f"Session registration failed: {exc}", 400)

        start_response(
            _status(202),
            [("Content-Type", "text/event-stream"), ("Cache-Control", "no-cache")],
        )

        def cleanup() -> None:
            request_ctx.cancel()
            self.server.unregister_session(request_ctx, session_id)

        return _Stream(self._listen(session, request_ctx), cleanup)

    def _listen(self, session: StreamableHTTPSession, ctx: Context) -> Iterator[bytes]:
        interval = self.heartbeat_interval
        next_beat = time.monotonic() + interval if interval > 0 else None
        while not self._closing.is_set() and not ctx.cancelled:
            timeout = _POLL_INTERVAL
            if next_beat is not None:
                timeout = max(0.0, min(timeout, next_beat - time.monotonic()))
            try:
                item = session.notifications.get(timeout=timeout)
            except queue.Empty:
                if next_beat is None or time.monotonic() < next_beat:
                    continue
                next_beat = time.monotonic() + interval
                item = _PING
            try:
                chunk = format_sse_event(item).encode("utf-8")
            except (TypeError, ValueError) as exc:
                self.logger.errorf("Failed to write SSE event: %s", exc)
                return
            yield chunk

    def _handle_delete(self, environ: dict[str, Any], start_response: StartResponse) -> Any:
        session_id = environ.get(_SESSION_ID_ENVIRON, "")
        try:
            not_allowed = self.session_id_manager.terminate(session_id)
        except Exception as exc:
            return _plain_error(start_response, f"Session termination failed: {exc}", 500)
        if not_allowed:
            return _plain_error(start_response, "Session termination not allowed", 405)
        self.session_tools.set(session_id, None)
        start_response(_status(200), [("Content-Length", "0")])
        return []