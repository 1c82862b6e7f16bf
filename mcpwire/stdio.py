"""Transport that serves a single client over standard input and output."""

from __future__ import annotations

import io
import json
import queue
import signal
import sys
import threading
from collections.abc import Callable
from typing import IO, Any

from .base import Context, ErrorCode, LoggingLevel, MessageHandler, _dumps, create_error_response
from .logger import Logger, default_logger

StdioContextFunc = Callable[[Context], Context]

_NOTIFICATION_BUFFER = 100
_POLL_INTERVAL = 0.05
_EOF = object()


class StdioSession:
    """The one client session of a stdio server."""

    session_id = "stdio"

    def __init__(self) -> None:
        self.notifications: queue.Queue[Any] = queue.Queue(maxsize=_NOTIFICATION_BUFFER)
        self.initialized = False
        self.log_level = LoggingLevel.ERROR

    def initialize(self) -> None:
        """Mark the session initialised and reset its log level."""
        self.log_level = LoggingLevel.ERROR
        self.initialized = True

    def notify(self, notification: Any) -> None:
        """Queue a notification for the client; raise queue.Full if the buffer is full."""
        self.notifications.put_nowait(notification)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant: {name}")


class StdioServer:
    """Serves JSON-RPC messages, one per line, on a pair of streams."""

    def __init__(
        self,
        server: MessageHandler,
        *,
        error_logger: Logger | None = None,
        context_func: StdioContextFunc | None = None,
    ) -> None:
        self.server = server
        self.error_logger = error_logger if error_logger is not None else default_logger()
        self.context_func = context_func
        self.session = StdioSession()
        self._write_lock = threading.Lock()

    def listen(self, stdin: IO[Any], stdout: IO[Any], context: Context | None = None) -> None:
        """Serve until input ends or ``context`` is cancelled.

        A final line without a newline is treated as the end of input.
        """
        base = context if context is not None else Context()
        try:
            self.server.register_session(base, self.session)
        except Exception as exc:
            raise RuntimeError(f"register session: {exc}") from exc
        try:
            ctx = self.server.with_context(base, self.session)
            if self.context_func is not None:
                ctx = self.context_func(ctx)
            stop = threading.Event()
            notifier = threading.Thread(
                target=self._forward_notifications, args=(ctx, stop, stdout), daemon=True
            )
            notifier.start()
            try:
                self._process_input(ctx, stdin, stdout)
            finally:
                stop.set()
                notifier.join()
        finally:
            self.server.unregister_session(base, self.session.session_id)

    def process_message(self, context: Context, line: str | bytes, writer: IO[Any]) -> None:
        """Handle one input line and write the response, if any."""
        try:
            message = json.loads(line, parse_constant=_reject_constant)
        except ValueError:
            self._write(create_error_response(None, ErrorCode.PARSE_ERROR, "Parse error"), writer)
            return
        response = self.server.handle_message(context, message)
        if response is not None:
            self._write(response, writer)

    def _process_input(self, ctx: Context, stdin: IO[Any], stdout: IO[Any]) -> None:
        lines: queue.Queue[Any] = queue.Queue(maxsize=1)
        threading.Thread(target=self._read_lines, args=(stdin, lines), daemon=True).start()
        while not ctx.cancelled:
            try:
                item = lines.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _EOF:
                return
            if isinstance(item, BaseException):
                self.error_logger.errorf("Error reading input: %s", item)
                raise item
            try:
                self.process_message(ctx, item, stdout)
            except Exception as exc:
                self.error_logger.errorf("Error handling message: %s", exc)
                raise

    @staticmethod
    def _read_lines(stdin: IO[Any], lines: queue.Queue[Any]) -> None:
        try:
            while True:
                line = stdin.readline()
                newline = b"\n" if isinstance(line, bytes) else "\n"
                if not line.endswith(newline):
                    lines.put(_EOF)
                    return
                lines.put(line)
        except Exception as exc:
            lines.put(exc)

    def _forward_notifications(self, ctx: Context, stop: threading.Event, stdout: IO[Any]) -> None:
        while not stop.is_set() and not ctx.cancelled:
            try:
                notification = self.session.notifications.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self._write(notification, stdout)
            except Exception as exc:
                self.error_logger.errorf("Error writing notification: %s", exc)

    def _write(self, message: Any, writer: IO[Any]) -> None:
        text = _dumps(message) + "\n"
        payload: str | bytes = text if isinstance(writer, io.TextIOBase) else text.encode("utf-8")
        with self._write_lock:
            writer.write(payload)
            flush = getattr(writer, "flush", None)
            if flush is not None:
                flush()


def serve_stdio(
    server: MessageHandler,
    *,
    error_logger: Logger | None = None,
    context_func: StdioContextFunc | None = None,
) -> None:
    """Serve ``server`` on the process's stdin and stdout until EOF, SIGTERM or SIGINT."""
    stdio = StdioServer(server, error_logger=error_logger, context_func=context_func)
    context = Context()

    def _stop(signum: int, frame: Any) -> None:
        context.cancel()

    previous: dict[int, Any] = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGTERM, signal.SIGINT):
            previous[sig] = signal.signal(sig, _stop)
    try:
        stdio.listen(sys.stdin, sys.stdout, context)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        context.cancel()