# mcpwire

Transports that carry JSON-RPC messages between Model Context Protocol
clients and a server you provide. The package takes care of the wire:
reading and writing messages, handing out session IDs and streaming
notifications. Your server takes care of what the messages mean.

Two transports are included:

- **stdio** (`mcpwire.stdio`): one client talking over standard input and
  output, one JSON message per line.
- **Streamable HTTP** (`mcpwire.streamable_http`): clients post messages to
  a single endpoint. Replies come back as a JSON body, or as an event stream
  when the server sends notifications while it works. A GET on the same
  endpoint opens a stream for server-initiated notifications.

The HTTP transport is a WSGI application, so it can be served on its own or
mounted in any WSGI stack. The package needs nothing outside the standard
library.

## The server you provide

Every transport wraps an object that follows the `mcpwire.base.MessageHandler`
protocol:

- `handle_message(context, message)`: handles one parsed JSON-RPC message and
  returns the response as a dict, or `None` for notifications.
- `register_session(context, session)` and
  `unregister_session(context, session_id)`: called as clients connect and
  go away. `register_session` may raise to refuse a session.
- `with_context(context, session)`: returns a `Context` that carries the
  session to the handler.

A session has a `session_id` and a `notify(notification)` method; to push a
notification to a client, your server calls `session.notify(...)`. Sessions
buffer up to 100 notifications and raise `queue.Full` beyond that.

`mcpwire.base` also provides:

- `Context`: carries values (`with_value`, `value`) and a cancellation signal
  (`cancel`, `cancelled`, `wait`). `child()` is cancelled together with its
  parent; `detached()` keeps the parent's values but not its cancellation.
- `ErrorCode`: the standard JSON-RPC error codes, and `LoggingLevel`: the log
  levels a client may ask for.
- `create_error_response(id, code, message)`: builds a JSON-RPC error reply.
- `format_sse_event(data)`: frames data as a Server-Sent `message` event.

## stdio

```python
import sys

from mcpwire.stdio import StdioServer, serve_stdio

# Serve on the process's own standard streams; SIGINT and SIGTERM stop it.
serve_stdio(my_server)

# Or choose the streams yourself, optionally with a Context to cancel.
StdioServer(my_server).listen(sys.stdin, sys.stdout)
```

`listen` registers the single `StdioSession` (ID `"stdio"`), handles lines
until input ends or the context is cancelled, and writes each response and
each notification as one line of JSON. A line that is not valid JSON is
answered with a parse error. A last line without a trailing newline is taken
as the end of input.

`context_func` lets you add values to the context once, before messages are
handled, for example values read from the environment. `error_logger` sets
where read and write errors are reported.

## Streamable HTTP

```python
from mcpwire.streamable_http import StreamableHTTPServer

http = StreamableHTTPServer(my_server, endpoint_path="/mcp")
http.start(":8080")   # serves http://<host>:8080/mcp until http.shutdown()
```

`start` serves only `endpoint_path`; other paths get 404. Used as a WSGI
application (`StreamableHTTPServer` instances are callable), it answers on
whatever path it is mounted at.

- **POST** must have the content type `application/json`; other types get
  400, as does a body that is not valid JSON (with a JSON-RPC parse error).
  An `initialize` request is given a new session ID in the `Mcp-Session-Id`
  response header; later requests must carry it back, or get 400 for an
  invalid ID and 404 for a terminated one. A notification is answered with
  `202 Accepted` and no body, a request with `200` and the JSON reply. If the
  server sends notifications while handling the request, the reply becomes
  a `202` event stream holding those notifications and then the response.
- **GET** opens a listening event stream. A session is registered with your
  server for as long as the stream is open, using the `Mcp-Session-Id`
  header or a random ID.
- **DELETE** with the `Mcp-Session-Id` header ends the session and drops its
  tools.

Session IDs come from a `mcpwire.session_ids.SessionIdManager`. The default,
`InsecureStatefulSessionIdManager`, hands out `mcp-session-` followed by a
UUID and only checks the format. `stateless=True` uses
`StatelessSessionIdManager`, which hands out no IDs and rejects requests that
send one. Pass `session_id_manager` for a policy of your own: `validate`
raises `InvalidSessionIdError` for a bad ID and returns whether the session
is terminated; `terminate` returns `True` when clients may not end sessions
(set `client_termination_allowed = False` on the built-in managers for that).

Other options:

- `heartbeat_interval` (seconds) sends `ping` requests on listening streams
  so that proxies keep them open; `0` (the default) sends none.
- `context_func(context, environ)` adds values to the context of each posted
  message, from the WSGI environ of the request that carried it.
- `logger` takes any `mcpwire.logger.Logger`.

Each session's tools are kept in a shared `SessionToolsStore`; a
`StreamableHTTPSession` reads and replaces them through its `session_tools`
property.

`shutdown()` ends open listening streams and stops the server started by
`start`.

Batched messages and resuming a broken stream are not supported.

## URL helpers

`mcpwire.urls` holds path helpers for HTTP transports:
`normalize_url_path(*parts)` joins and cleans path parts into a path with a
leading and no trailing slash, `url_path(url)` returns the decoded path of a
URL, and `validate_base_url(base_url)` returns an http(s) base URL without its
trailing slash, or `None` if it has no host or carries a query.

## Logging

`mcpwire.logger.default_logger()` returns a `StdLogger` that writes through
the `mcpwire` logger of Python's `logging` module, prefixing messages with
`INFO: ` or `ERROR: `. Configure `logging` to see them. Anything with
`infof(format, *args)` and `errorf(format, *args)` can stand in for it.

## What is not included

The package has no protocol server of its own: it does not implement
`initialize`, tools, resources or prompts, and needs a `MessageHandler` to do
anything. It has no transport in which clients hold an event stream open on
one endpoint and post their messages to a second one; only stdio and
streamable HTTP are provided. There is no command-line program.