import http.client
import io
import json
import threading
import time
from dataclasses import dataclass
from wsgiref.util import setup_testing_defaults

import pytest

from mcpwire.session_ids import SessionIdManager
from mcpwire.streamable_http import (
    SessionToolsStore,
    StreamableHTTPServer,
    StreamableHTTPSession,
)

INIT_REQUEST = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-03-26",
        "clientInfo": {"name": "test-client", "version": "1.0.0"},
    },
}

PING_REQUEST = {"jsonrpc": "2.0", "id": 123, "method": "ping", "params": {}}

NOTIFICATION = {"jsonrpc": "2.0", "method": "testNotification", "params": {"param1": "value1"}}


class FakeServer:
    def __init__(self):
        self.sessions = {}
        self.registered = []
        self.fail_registration = False

    def with_context(self, context, session):
        return context.with_value("session", session)

    def register_session(self, context, session):
        if self.fail_registration:
            raise RuntimeError("session exists")
        self.sessions[session.session_id] = session
        self.registered.append(session)

    def unregister_session(self, context, session_id):
        self.sessions.pop(session_id, None)

    def notify_all(self, notification):
        for session in list(self.sessions.values()):
            session.notify(notification)

    def handle_message(self, context, message):
        if not isinstance(message, dict) or "id" not in message:
            return None
        method = message.get("method")
        if method == "initialize":
            result = {"protocolVersion": message["params"]["protocolVersion"]}
        elif method == "ping":
            result = {}
        elif method == "tools/call":
            session = context.value("session")
            for i in range(10):
                session.notify(
                    {"jsonrpc": "2.0", "method": "test/notification", "params": {"value": i}}
                )
                time.sleep(0.005)
            result = {"content": [{"type": "text", "text": "done"}]}
        elif method == "context/value":
            result = {"value": context.value("test")}
        else:
            return {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": "Method not found"}}
        return {"jsonrpc": "2.0", "id": message["id"], "result": result}


@dataclass
class Reply:
    status: int
    headers: dict
    body: bytes


def make_environ(method, body=None, headers=None, content_type="application/json"):
    environ = {}
    setup_testing_defaults(environ)
    environ["REQUEST_METHOD"] = method
    if body is None:
        data = b""
    elif isinstance(body, bytes):
        data = body
    else:
        data = json.dumps(body).encode()
    environ["wsgi.input"] = io.BytesIO(data)
    environ["CONTENT_LENGTH"] = str(len(data))
    environ.pop("CONTENT_TYPE", None)
    if content_type is not None:
        environ["CONTENT_TYPE"] = content_type
    for key, value in (headers or {}).items():
        environ["HTTP_" + key.upper().replace("-", "_")] = value
    return environ


def open_app(app, method, body=None, headers=None, content_type="application/json"):
    captured = {}

    def start_response(status, response_headers, exc_info=None):
        captured["status"] = int(status.split()[0])
        captured["headers"] = dict(response_headers)

    result = app(make_environ(method, body, headers, content_type), start_response)
    return captured, result


def call(app, method, body=None, headers=None, content_type="application/json"):
    captured, result = open_app(app, method, body, headers, content_type)
    try:
        data = b"".join(result)
    finally:
        close = getattr(result, "close", None)
        if close is not None:
            close()
    return Reply(captured["status"], captured["headers"], data)


def initialize(app):
    reply = call(app, "POST", INIT_REQUEST)
    return reply.headers.get("Mcp-Session-Id", "")


def test_endpoint_path_default_and_normalised():
    fake = FakeServer()
    assert StreamableHTTPServer(fake).endpoint_path == "/mcp"
    assert StreamableHTTPServer(fake, endpoint_path="mcp/").endpoint_path == "/mcp"
    assert StreamableHTTPServer(fake, endpoint_path="/mcp").endpoint_path == "/mcp"


def test_invalid_content_type():
    app = StreamableHTTPServer(FakeServer())
    reply = call(app, "POST", b"{}", content_type="text/plain")
    assert reply.status == 400
    assert b"Invalid content type" in reply.body


def test_invalid_json():
    app = StreamableHTTPServer(FakeServer())
    reply = call(app, "POST", b"{invalid json")
    assert reply.status == 400
    assert b"jsonrpc" in reply.body
    assert b"not valid json" in reply.body
    assert json.loads(reply.body)["error"]["code"] == -32700


def test_json_array_is_rejected():
    app = StreamableHTTPServer(FakeServer())
    reply = call(app, "POST", b"[]")
    assert reply.status == 400
    assert b"not valid json" in reply.body


def test_initialize_returns_session_id():
    app = StreamableHTTPServer(FakeServer())
    reply = call(app, "POST", INIT_REQUEST)
    assert reply.status == 200
    assert json.loads(reply.body)["result"]["protocolVersion"] == "2025-03-26"
    assert reply.headers["Mcp-Session-Id"].startswith("mcp-session-")


def test_ping_with_session():
    app = StreamableHTTPServer(FakeServer())
    session_id = initialize(app)
    reply = call(app, "POST", PING_REQUEST, headers={"Mcp-Session-Id": session_id})
    assert reply.status == 200
    assert reply.headers["Content-Type"] == "application/json"
    assert json.loads(reply.body)["id"] == 123


def test_notification_returns_accepted_without_body():
    app = StreamableHTTPServer(FakeServer())
    session_id = initialize(app)
    reply = call(app, "POST", NOTIFICATION, headers={"Mcp-Session-Id": session_id})
    assert reply.status == 202
    assert reply.body == b""


def test_invalid_session_id():
    app = StreamableHTTPServer(FakeServer())
    initialize(app)
    reply = call(app, "POST", PING_REQUEST, headers={"Mcp-Session-Id": "dummy-session-id"})
    assert reply.status == 400
    assert b"Invalid session ID" in reply.body


def test_response_upgrades_to_sse():
    app = StreamableHTTPServer(FakeServer())
    session_id = initialize(app)
    request = {"jsonrpc": "2.0", "id": 123, "method": "tools/call", "params": {"name": "sseTool"}}
    reply = call(app, "POST", request, headers={"Mcp-Session-Id": session_id})
    assert reply.status == 202
    assert reply.headers["Content-Type"] == "text/event-stream"
    text = reply.body.decode()
    assert "data:" in text
    assert text.count("test/notification") == 10
    for i in range(10):
        assert '{"value":%d}' % i in text
    last_line = text.strip().split("\n")[-1]
    assert "id" in last_line and "done" in last_line


def test_stateless_initialize_has_no_session_header():
    app = StreamableHTTPServer(FakeServer(), stateless=True)
    reply = call(app, "POST", INIT_REQUEST)
    assert reply.status == 200
    assert json.loads(reply.body)["result"]["protocolVersion"] == "2025-03-26"
    assert "Mcp-Session-Id" not in reply.headers


def test_stateless_ping_and_notification():
    app = StreamableHTTPServer(FakeServer(), stateless=True)
    reply = call(app, "POST", PING_REQUEST)
    assert reply.status == 200
    assert json.loads(reply.body)["id"] == 123
    reply = call(app, "POST", NOTIFICATION)
    assert reply.status == 202
    assert reply.body == b""


def test_stateless_rejects_session_id():
    app = StreamableHTTPServer(FakeServer(), stateless=True)
    reply = call(app, "POST", PING_REQUEST, headers={"Mcp-Session-Id": "dummy-session-id"})
    assert reply.status == 400


class TerminatedManager(SessionIdManager):
    def __init__(self, refuse=False, fail=False):
        self.refuse = refuse
        self.fail = fail

    def generate(self):
        return "fixed-id"

    def validate(self, session_id):
        return True

    def terminate(self, session_id):
        if self.fail:
            raise RuntimeError("storage offline")
        return self.refuse


def test_terminated_session_gives_not_found():
    app = StreamableHTTPServer(FakeServer(), session_id_manager=TerminatedManager())
    reply = call(app, "POST", PING_REQUEST, headers={"Mcp-Session-Id": "fixed-id"})
    assert reply.status == 404
    assert b"Session terminated" in reply.body


def test_session_id_manager_overrides_stateless():
    app = StreamableHTTPServer(FakeServer(), stateless=True, session_id_manager=TerminatedManager())
    reply = call(app, "POST", INIT_REQUEST)
    assert reply.headers["Mcp-Session-Id"] == "fixed-id"


def test_context_func_sees_request():
    app = StreamableHTTPServer(
        FakeServer(),
        context_func=lambda ctx, environ: ctx.with_value("test", environ.get("HTTP_X_TEST_HEADER", "")),
    )
    session_id = initialize(app)
    request = {"jsonrpc": "2.0", "id": 2, "method": "context/value"}
    reply = call(
        app, "POST", request, headers={"Mcp-Session-Id": session_id, "X-Test-Header": "test_value"}
    )
    body = json.loads(reply.body)
    assert body["id"] == 2
    assert body["result"]["value"] == "test_value"


def test_get_streams_notifications_and_unregisters():
    fake = FakeServer()
    app = StreamableHTTPServer(fake)
    captured, result = open_app(app, "GET", content_type="text/event-stream")
    try:
        assert captured["status"] == 202
        assert captured["headers"]["Content-Type"] == "text/event-stream"
        assert len(fake.sessions) == 1
        fake.notify_all({"jsonrpc": "2.0", "method": "test/notification", "params": {"value": "all clients"}})
        chunk = next(iter(result))
        assert chunk.startswith(b"event: message\n")
        assert b"all clients" in chunk
    finally:
        result.close()
    assert fake.sessions == {}


def test_get_uses_given_session_id():
    fake = FakeServer()
    app = StreamableHTTPServer(fake)
    _, result = open_app(app, "GET", headers={"Mcp-Session-Id": "listener-1"})
    result.close()
    assert [s.session_id for s in fake.registered] == ["listener-1"]


def test_get_sends_heartbeat():
    app = StreamableHTTPServer(FakeServer(), heartbeat_interval=0.05)
    _, result = open_app(app, "GET")
    try:
        chunk = next(iter(result))
    finally:
        result.close()
    assert json.loads(chunk.decode().split("data: ", 1)[1])["method"] == "ping"


def test_get_registration_failure():
    fake = FakeServer()
    fake.fail_registration = True
    reply = call(StreamableHTTPServer(fake), "GET")
    assert reply.status == 400
    assert b"Session registration failed: session exists" in reply.body


def test_shutdown_ends_listening_stream():
    fake = FakeServer()
    app = StreamableHTTPServer(fake)
    _, result = open_app(app, "GET")
    app.shutdown()
    try:
        assert list(result) == []
    finally:
        result.close()
    assert fake.sessions == {}


def test_delete_clears_session_tools():
    app = StreamableHTTPServer(FakeServer())
    app.session_tools.set("mcp-session-x", {"tool": {"name": "tool"}})
    reply = call(app, "DELETE", headers={"Mcp-Session-Id": "mcp-session-x"})
    assert reply.status == 200
    assert app.session_tools.get("mcp-session-x") is None


def test_delete_not_allowed():
    app = StreamableHTTPServer(FakeServer(), session_id_manager=TerminatedManager(refuse=True))
    reply = call(app, "DELETE", headers={"Mcp-Session-Id": "fixed-id"})
    assert reply.status == 405
    assert b"Session termination not allowed" in reply.body


def test_delete_failure():
    app = StreamableHTTPServer(FakeServer(), session_id_manager=TerminatedManager(fail=True))
    reply = call(app, "DELETE", headers={"Mcp-Session-Id": "fixed-id"})
    assert reply.status == 500
    assert b"Session termination failed: storage offline" in reply.body


def test_unsupported_method_is_not_found():
    reply = call(StreamableHTTPServer(FakeServer()), "PUT")
    assert reply.status == 404


def test_session_tools_round_trip():
    store = SessionToolsStore()
    session = StreamableHTTPSession("abc", store)
    assert session.session_tools is None
    session.session_tools = {"test_tool": {"name": "test_tool"}}
    assert session.session_tools == {"test_tool": {"name": "test_tool"}}
    assert store.get("abc") == {"test_tool": {"name": "test_tool"}}
    session.session_tools = None
    assert store.get("abc") is None


def test_session_tools_concurrent_access():
    store = SessionToolsStore()
    session = StreamableHTTPSession("abc", store)

    def writer(i):
        session.session_tools = {f"tool_{i}": {"name": f"tool_{i}"}}

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(10)]
    threads += [threading.Thread(target=lambda: session.session_tools) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    session.session_tools = {"final_tool": {"name": "final_tool"}}
    assert list(session.session_tools) == ["final_tool"]


def test_session_notify_buffer_limit():
    session = StreamableHTTPSession("abc", SessionToolsStore())
    for i in range(100):
        session.notify({"n": i})
    with pytest.raises(Exception) as info:
        session.notify({"n": 100})
    assert type(info.value).__name__ == "Full"
    assert session.initialized is True


def test_start_serves_endpoint_and_shuts_down():
    app = StreamableHTTPServer(FakeServer())
    thread = threading.Thread(target=app.start, args=("127.0.0.1:0",), daemon=True)
    thread.start()
    deadline = time.monotonic() + 5
    while app.http_server is None and time.monotonic() < deadline:
        time.sleep(0.01)
    port = app.http_server.server_address[1]

    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
    conn.request("POST", "/mcp", body=json.dumps(INIT_REQUEST), headers={"Content-Type": "application/json"})
    response = conn.getresponse()
    body = json.loads(response.read())
    conn.close()
    assert response.status == 200
    assert body["result"]["protocolVersion"] == "2025-03-26"

    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
    conn.request("POST", "/other", body=json.dumps(INIT_REQUEST), headers={"Content-Type": "application/json"})
    response = conn.getresponse()
    response.read()
    conn.close()
    assert response.status == 404

    app.shutdown()
    thread.join(5)
    assert not thread.is_alive()
    assert app.http_server is None