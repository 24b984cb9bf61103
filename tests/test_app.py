import asyncio
import io
from pathlib import Path
from typing import Any

import pytest
from conftest import MockHTTPProtocol, mock_scope

from weft import App, Box, Context
from weft.app import join_paths
from weft.rsgi import HTTPProtocol, HTTPScope


def quiet_app(**kwargs) -> App:
    return App(enable_log=False, **kwargs)


def recorder(calls: list[str], name: str):
    async def handler(ctx: Context) -> None:
        calls.append(name)

    return handler


def failing(calls: list[str], name: str, exc: Exception):
    async def handler(ctx: Context) -> None:
        calls.append(name)
        raise exc

    return handler


# --- path joining -------------------------------------------------------------
@pytest.mark.parametrize(
    ("parts", "expected"),
    [
        (("", "/x"), "/x"),
        (("/api", "/x"), "/api/x"),
        (("/api/", "/x"), "/api/x"),
        (("/api", "x"), "/api/x"),
        (("/api//v1", "//x"), "/api/v1/x"),
        (("/api", "/"), "/api"),
        (("", "/"), "/"),
        (("/a", "../b"), "/b"),
        (("", ""), ""),
    ],
)
def test_join_paths(parts: tuple[str, str], expected: str) -> None:
    assert join_paths(*parts) == expected


# --- middleware ordering ------------------------------------------------------
@pytest.mark.asyncio
async def test_middleware_runs_in_registration_order() -> None:
    calls: list[str] = []
    app = quiet_app()
    app.use(recorder(calls, "h1"))
    app.use(recorder(calls, "h2"), recorder(calls, "h3"))
    app.get("/x", recorder(calls, "handler"))
    app.use(recorder(calls, "h4"))  # added after the route, still runs before it

    await app.__rsgi__(mock_scope("/x"), MockHTTPProtocol())
    assert calls == ["h1", "h2", "h3", "h4", "handler"]


@pytest.mark.asyncio
async def test_middleware_failure_short_circuits() -> None:
    calls: list[str] = []
    errors: list[Exception] = []
    boom = RuntimeError("boom")

    async def on_error(ctx: Context, exc: Exception) -> None:
        errors.append(exc)
        ctx.text(418, "handled")

    app = quiet_app(error_handler=on_error)
    app.use(recorder(calls, "h1"), failing(calls, "h2", boom), recorder(calls, "h3"))
    app.get("/x", recorder(calls, "handler"))

    proto = MockHTTPProtocol()
    await app.__rsgi__(mock_scope("/x"), proto)
    assert calls == ["h1", "h2"]
    assert errors == [boom]
    assert proto.response_status == 418
    assert proto.response_body == b"handled"


@pytest.mark.asyncio
async def test_handler_failure_invokes_error_handler_once() -> None:
    errors: list[Exception] = []
    boom = ValueError("bad input")

    async def on_error(ctx: Context, exc: Exception) -> None:
        errors.append(exc)

    calls: list[str] = []
    app = quiet_app(error_handler=on_error)
    app.use(recorder(calls, "h1"))
    app.get("/x", failing(calls, "handler", boom))

    await app.__rsgi__(mock_scope("/x"), MockHTTPProtocol())
    assert calls == ["h1", "handler"]
    assert errors == [boom]


@pytest.mark.asyncio
async def test_default_error_handler_writes_500() -> None:
    calls: list[str] = []
    app = quiet_app()
    app.get("/x", failing(calls, "handler", RuntimeError("database is down")))

    proto = MockHTTPProtocol()
    await app.__rsgi__(mock_scope("/x"), proto)
    assert proto.response_status == 500
    assert proto.response_body == b"database is down\n"
    assert proto.header("content-type") == "text/plain; charset=utf-8"


@pytest.mark.asyncio
async def test_error_handler_exception_propagates() -> None:
    async def on_error(ctx: Context, exc: Exception) -> None:
        raise KeyError("from error handler")

    calls: list[str] = []
    app = quiet_app(error_handler=on_error)
    app.get("/x", failing(calls, "handler", RuntimeError("boom")))

    with pytest.raises(KeyError, match="from error handler"):
        await app.__rsgi__(mock_scope("/x"), MockHTTPProtocol())


@pytest.mark.asyncio
async def test_silent_handler_gets_empty_200() -> None:
    app = quiet_app()
    app.get("/x", recorder([], "handler"))

    proto = MockHTTPProtocol()
    await app.__rsgi__(mock_scope("/x"), proto)
    assert proto.response_status == 200
    assert proto.response_body == b""


# --- subrouters ---------------------------------------------------------------
@pytest.mark.asyncio
async def test_subrouter_prefix_composition() -> None:
    calls: list[str] = []
    app = quiet_app()
    box = app.subrouter("/api").subrouter("/v1")
    assert isinstance(box, Box)
    assert box.prefix == "/api/v1"
    box.get("/x", recorder(calls, "x"))

    await app.__rsgi__(mock_scope("/api/v1/x"), MockHTTPProtocol())
    assert calls == ["x"]


@pytest.mark.asyncio
async def test_subrouter_middleware_snapshot() -> None:
    calls: list[str] = []
    app = quiet_app()
    app.use(recorder(calls, "a"))
    box = app.subrouter("/s")
    app.use(recorder(calls, "b"))
    box.get("/x", recorder(calls, "box handler"))
    app.get("/x", recorder(calls, "app handler"))

    await app.__rsgi__(mock_scope("/s/x"), MockHTTPProtocol())
    assert calls == ["a", "box handler"]

    calls.clear()
    await app.__rsgi__(mock_scope("/x"), MockHTTPProtocol())
    assert calls == ["a", "b", "app handler"]


@pytest.mark.asyncio
async def test_subrouter_use_does_not_leak_to_parent_or_siblings() -> None:
    calls: list[str] = []
    app = quiet_app()
    first = app.subrouter("/first")
    second = app.subrouter("/second")
    first.use(recorder(calls, "first mw"))
    first.get("/x", recorder(calls, "first"))
    second.get("/x", recorder(calls, "second"))
    app.get("/x", recorder(calls, "app"))

    for path in ("/first/x", "/second/x", "/x"):
        await app.__rsgi__(mock_scope(path), MockHTTPProtocol())
    assert calls == ["first mw", "first", "second", "app"]
    assert app.middleware == ()


@pytest.mark.asyncio
async def test_reset_clears_only_the_box() -> None:
    calls: list[str] = []
    app = quiet_app()
    app.use(recorder(calls, "auth"))
    public = app.subrouter("/public").reset()
    sibling = app.subrouter("/private")
    public.get("/x", recorder(calls, "public"))
    sibling.get("/x", recorder(calls, "private"))

    await app.__rsgi__(mock_scope("/public/x"), MockHTTPProtocol())
    await app.__rsgi__(mock_scope("/private/x"), MockHTTPProtocol())
    assert calls == ["public", "auth", "private"]
    assert len(app.middleware) == 1


def test_subrouter_shares_routes_with_parent() -> None:
    app = quiet_app()
    box = app.subrouter("/api")
    box.get("/x", recorder([], "x"))
    assert app._router.lookup("GET", "/api/x").handler is not None
    with pytest.raises(ValueError, match="a handler is already registered"):
        app.get("/api/x", recorder([], "again"))


def test_subrouter_copies_error_handler_by_value() -> None:
    async def parent_errors(ctx: Context, exc: Exception) -> None:
        pass

    async def box_errors(ctx: Context, exc: Exception) -> None:
        pass

    app = quiet_app(error_handler=parent_errors)
    box = app.subrouter("/api")
    box.error_handler = box_errors
    assert app.error_handler is parent_errors


@pytest.mark.asyncio
async def test_not_found_handler_is_shared() -> None:
    called: list[str] = []

    async def not_found(s: HTTPScope, p: HTTPProtocol) -> None:
        called.append(s.path)
        p.response_str(404, [], "nope")

    app = quiet_app()
    box = app.subrouter("/api")
    box.not_found_handler = not_found
    assert app.not_found_handler is not_found

    await app.__rsgi__(mock_scope("/missing"), MockHTTPProtocol())
    assert called == ["/missing"]


@pytest.mark.asyncio
async def test_not_found_does_not_reach_error_handler() -> None:
    errors: list[Exception] = []

    async def on_error(ctx: Context, exc: Exception) -> None:
        errors.append(exc)

    app = quiet_app(error_handler=on_error)
    app.get("/x", recorder([], "x"))
    proto = MockHTTPProtocol()
    await app.__rsgi__(mock_scope("/y"), proto)
    await app.__rsgi__(mock_scope("/x", "POST"), MockHTTPProtocol())
    assert proto.response_status == 404
    assert errors == []


# --- context values -----------------------------------------------------------
@pytest.mark.asyncio
async def test_bind_context_values_reach_handlers() -> None:
    seen: list[object] = []

    async def handler(ctx: Context) -> None:
        seen.append(ctx.context.get("db"))

    app = quiet_app()
    app.get("/x", handler)
    await app.__rsgi__(mock_scope("/x"), MockHTTPProtocol())
    app.bind_context({"db": "pool"})
    await app.__rsgi__(mock_scope("/x"), MockHTTPProtocol())
    assert seen == [None, "pool"]


@pytest.mark.asyncio
async def test_each_request_gets_a_fresh_context() -> None:
    seen: list[Context] = []

    async def handler(ctx: Context) -> None:
        seen.append(ctx)

    app = quiet_app()
    app.get("/x/:id", handler)
    await app.__rsgi__(mock_scope("/x/1"), MockHTTPProtocol())
    await app.__rsgi__(mock_scope("/x/2"), MockHTTPProtocol())
    assert seen[0] is not seen[1]
    assert [c.param("id") for c in seen] == ["1", "2"]
    assert seen[0].app is app


@pytest.mark.parametrize("method", ["get", "post", "put", "patch", "delete", "head", "options"])
@pytest.mark.asyncio
async def test_method_helpers(method: str) -> None:
    calls: list[str] = []
    app = quiet_app()
    getattr(app, method)("/x", recorder(calls, method))
    await app.__rsgi__(mock_scope("/x", method.upper()), MockHTTPProtocol())
    assert calls == [method]


# --- rsgi entry ---------------------------------------------------------------
@pytest.mark.asyncio
async def test_websocket_connections_are_closed() -> None:
    app = quiet_app()
    scope = mock_scope("/ws")
    scope.proto = "ws"  # ty: ignore[invalid-assignment]
    proto = MockHTTPProtocol()
    await app.__rsgi__(scope, proto)
    assert proto.closed_with == 403


@pytest.mark.asyncio
async def test_access_log_written_per_request() -> None:
    out = io.StringIO()

    async def ping(ctx: Context) -> None:
        ctx.text(200, "pong")

    app = App(output=out)
    app.get("/ping", ping)
    await app.__rsgi__(mock_scope("/ping"), MockHTTPProtocol())

    lines = out.getvalue().splitlines()
    assert len(lines) == 1
    fields = lines[0].split(" ")
    assert fields[0] == "127.0.0.1"
    assert fields[4:9] == ["GET", "/ping", "HTTP/1.1", "200", "4"]


@pytest.mark.asyncio
async def test_access_log_disabled() -> None:
    out = io.StringIO()
    app = App(output=out, enable_log=False)
    app.get("/ping", recorder([], "ping"))
    await app.__rsgi__(mock_scope("/ping"), MockHTTPProtocol())
    assert out.getvalue() == ""


# --- cancellation and deadlines -----------------------------------------------
@pytest.mark.asyncio
async def test_cancelled_request_skips_error_handler() -> None:
    errors: list[Exception] = []
    started = asyncio.Event()

    async def on_error(ctx: Context, exc: Exception) -> None:
        errors.append(exc)

    async def slow(ctx: Context) -> None:
        started.set()
        await asyncio.Event().wait()

    app = quiet_app(error_handler=on_error)
    app.get("/slow", slow)
    proto = MockHTTPProtocol()
    task = asyncio.create_task(app.__rsgi__(mock_scope("/slow"), proto))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert errors == []
    assert proto.response_status is None


@pytest.mark.asyncio
async def test_handler_deadline_reaches_error_handler() -> None:
    errors: list[Exception] = []

    async def on_error(ctx: Context, exc: Exception) -> None:
        errors.append(exc)
        ctx.text(504, "deadline exceeded")

    async def slow(ctx: Context) -> None:
        async with asyncio.timeout(0.01):
            await asyncio.Event().wait()

    app = quiet_app(error_handler=on_error)
    app.get("/slow", slow)
    proto = MockHTTPProtocol()
    await app.__rsgi__(mock_scope("/slow"), proto)
    assert [type(e) for e in errors] == [TimeoutError]
    assert proto.response_status == 504


# --- serving ------------------------------------------------------------------
class FakeServer:
    block = False

    def __init__(self, target: Any, **kwargs: Any) -> None:
        self.target = target
        self.kwargs = kwargs
        self.served = False
        self.shut_down = False
        servers.append(self)

    async def serve(self) -> None:
        self.served = True
        if self.block:
            await asyncio.Event().wait()

    async def shutdown(self) -> None:
        self.shut_down = True


servers: list[FakeServer] = []


@pytest.fixture
def fake_server(monkeypatch: pytest.MonkeyPatch) -> list[FakeServer]:
    servers.clear()
    monkeypatch.setattr("weft.app.Server", FakeServer)
    return servers


@pytest.mark.asyncio
async def test_serve(fake_server: list[FakeServer]) -> None:
    app = quiet_app()
    await app.serve(8080)
    [server] = fake_server
    assert server.target is app
    assert server.kwargs == {"address": "0.0.0.0", "port": 8080}  # noqa: S104
    assert server.served


@pytest.mark.asyncio
async def test_serve_tls(fake_server: list[FakeServer]) -> None:
    app = quiet_app()
    await app.serve_tls(8443, "certs/server.pem", "certs/server.key")
    [server] = fake_server
    assert server.target is app
    assert server.kwargs == {
        "address": "0.0.0.0",  # noqa: S104
        "port": 8443,
        "ssl_cert": Path("certs/server.pem"),
        "ssl_key": Path("certs/server.key"),
    }
    assert server.served


@pytest.mark.asyncio
async def test_cancelled_serve_shuts_down(
    fake_server: list[FakeServer], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(FakeServer, "block", True)
    app = quiet_app()
    task = asyncio.create_task(app.serve(8080))
    while not fake_server or not fake_server[0].served:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert fake_server[0].shut_down
