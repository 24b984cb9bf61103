"""Application object: route registration, middleware and dispatch.

    app = App()
    app.use(authenticate)

    api = app.subrouter("/api")
    api.get("/user/:id", get_user)

    asyncio.run(app.serve(8080))

Registration is expected to finish before the first request is served; the
route table and middleware are read without locking.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, TextIO

import uvloop
from granian.server.embed import Server

from .access_log import AccessLogHTTPProtocol, format_line
from .context import Context, Renderer
from .request import clean_path
from .response import write_error
from .router import HTTPMethod, Router, path_params
from .static import file_server

if TYPE_CHECKING:
    from .rsgi import HTTPProtocol, HTTPScope, RSGIHTTPHandler

logger = logging.getLogger(__name__)

type Handler = Callable[[Context], Awaitable[None]]
type ErrorHandler = Callable[[Context, Exception], Awaitable[None]]

_EMPTY_CONTEXT: Mapping[str, Any] = MappingProxyType({})


async def default_error_handler(ctx: Context, exc: Exception) -> None:
    """Replies 500 with the exception message as plain text.

    Meant for development, the message is sent to the client unredacted.
    """
    write_error(ctx.response, str(exc), 500)


def join_paths(*parts: str) -> str:
    """Joins path segments and cleans the result, like go's path.Join."""
    joined = "/".join(p for p in parts if p)
    if not joined:
        return ""
    return clean_path(joined)


class App:
    """Routes requests to handlers through a shared middleware chain.

    Args:
        error_handler: Called with (ctx, exc) when a middleware or handler
            raises. Defaults to a 500 plain text response.
        not_found_handler: RSGI handler for unmatched paths.
        method_not_allowed_handler: RSGI handler for matched paths with an
            unregistered method.
        output: Stream the access log is written to.
        enable_log: Write one access-log line per request.
    """

    def __init__(
        self,
        *,
        error_handler: ErrorHandler = default_error_handler,
        not_found_handler: RSGIHTTPHandler | None = None,
        method_not_allowed_handler: RSGIHTTPHandler | None = None,
        output: TextIO | None = None,
        enable_log: bool = True,
    ) -> None:
        self.error_handler = error_handler
        self.output = output if output is not None else sys.stderr
        self.enable_log = enable_log
        self.renderer: Renderer | None = None
        self._router = Router(
            not_found=not_found_handler,
            method_not_allowed=method_not_allowed_handler,
        )
        self._middleware: list[Handler] = []
        self._prefix = ""
        self._context = _EMPTY_CONTEXT

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def middleware(self) -> tuple[Handler, ...]:
        return tuple(self._middleware)

    @property
    def not_found_handler(self) -> RSGIHTTPHandler | None:
        return self._router.not_found

    @not_found_handler.setter
    def not_found_handler(self, handler: RSGIHTTPHandler | None) -> None:
        self._router.not_found = handler

    @property
    def method_not_allowed_handler(self) -> RSGIHTTPHandler | None:
        return self._router.method_not_allowed

    @method_not_allowed_handler.setter
    def method_not_allowed_handler(self, handler: RSGIHTTPHandler | None) -> None:
        self._router.method_not_allowed = handler

    async def __rsgi__(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        if scope.proto != "http":
            logger.warning("rejecting %s connection to %s", scope.proto, scope.path)
            proto.close(403)  # ty: ignore[unresolved-attribute]  # websocket protocol
            return
        if not self.enable_log:
            await self._router(scope, proto)
            return
        start = datetime.now().astimezone()
        started = time.perf_counter()
        logged_proto = AccessLogHTTPProtocol(proto)
        await self._router(scope, logged_proto)
        line = format_line(
            scope,
            start,
            logged_proto.status,
            logged_proto.size,
            time.perf_counter() - started,
        )
        self.output.write(line + "\n")

    # --- registration ---------------------------------------------------------
    def use(self, *handlers: Handler) -> None:
        """Appends middleware. Middleware runs in the order it was added."""
        self._middleware.extend(handlers)

    def subrouter(self, prefix: str) -> Box:
        """Returns a Box under prefix with a copy of the current middleware."""
        return Box(self, prefix)

    def bind_context(self, values: Mapping[str, Any]) -> None:
        """Sets values every Context created afterwards will carry.

        Typically used once at startup for things like a database pool.
        Cancellation does not travel through these values: the request runs
        in its own task, and server shutdown cancels it with
        `asyncio.CancelledError`, which dispatch lets through without calling
        the error handler. Deadlines are set inside a handler with
        `asyncio.timeout`; the resulting `TimeoutError` reaches the error
        handler like any other failure.
        """
        self._context = values

    def set_template_engine(self, renderer: Renderer) -> None:
        self.renderer = renderer

    def method(self, method: HTTPMethod | None, path: str, handler: Handler) -> None:
        """Registers handler at path for method (None for any method)."""
        self._router.handle(
            method, join_paths(self._prefix, path), self._make_entry_point(handler)
        )

    def get(self, path: str, handler: Handler) -> None:
        """Registers handler at path for GET."""
        self.method("GET", path, handler)

    def post(self, path: str, handler: Handler) -> None:
        """Registers handler at path for POST."""
        self.method("POST", path, handler)

    def put(self, path: str, handler: Handler) -> None:
        """Registers handler at path for PUT."""
        self.method("PUT", path, handler)

    def patch(self, path: str, handler: Handler) -> None:
        """Registers handler at path for PATCH."""
        self.method("PATCH", path, handler)

    def delete(self, path: str, handler: Handler) -> None:
        """Registers handler at path for DELETE."""
        self.method("DELETE", path, handler)

    def head(self, path: str, handler: Handler) -> None:
        """Registers handler at path for HEAD."""
        self.method("HEAD", path, handler)

    def options(self, path: str, handler: Handler) -> None:
        """Registers handler at path for OPTIONS."""
        self.method("OPTIONS", path, handler)

    def static(self, prefix: str, directory: str | Path) -> None:
        """Serves files from directory under prefix.

            app.static("/public", "./assets")

        The prefix is used as given, not joined with this router's prefix.
        """
        self._router.handle(
            "GET", join_paths(prefix, "*filepath"), file_server(directory)
        )

    # --- dispatch -------------------------------------------------------------
    def _make_entry_point(self, handler: Handler) -> RSGIHTTPHandler:
        async def entry_point(scope: HTTPScope, proto: HTTPProtocol) -> None:
            ctx = Context(scope, proto, path_params.get({}), self._context, self)
            try:
                for middleware in self._middleware:
                    await middleware(ctx)
                await handler(ctx)
            except Exception as exc:  # noqa: BLE001  - handed to the error handler
                await self.error_handler(ctx, exc)
            await ctx.response.finish()

        return entry_point

    # --- serving --------------------------------------------------------------
    async def serve(self, port: int) -> None:
        """Serves the app on 0.0.0.0:port until cancelled."""
        logger.info("app listening on 0.0.0.0:%d", port)
        await self._serve(Server(self, address="0.0.0.0", port=port))  # noqa: S104

    async def serve_tls(self, port: int, cert_file: str, key_file: str) -> None:
        """Serves the app over TLS on 0.0.0.0:port until cancelled."""
        logger.info("app listening TLS on 0.0.0.0:%d", port)
        server = Server(
            self,
            address="0.0.0.0",  # noqa: S104
            port=port,
            ssl_cert=Path(cert_file),
            ssl_key=Path(key_file),
        )
        await self._serve(server)

    def run(self, port: int) -> None:
        """Blocking helper: serves on port with a uvloop event loop."""
        uvloop.run(self.serve(port))

    @staticmethod
    async def _serve(server: Server) -> None:
        try:
            await server.serve()
        except asyncio.CancelledError:
            await server.shutdown()
            raise


class Box(App):
    """Subrouter: a snapshot of its parent with a composed prefix.

    Shares the parent's route table. Middleware, error handler, renderer and
    bound context are copied at creation, so later changes on either side
    don't leak to the other.
    """

    def __init__(self, parent: App, prefix: str) -> None:
        self.__dict__.update(parent.__dict__)
        self._prefix = parent.prefix + prefix
        self._middleware = list(parent.middleware)

    def reset(self) -> Box:
        """Clears the middleware of this box only."""
        self._middleware = []
        return self
