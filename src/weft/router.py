"""RSGI router over the segment trie.

Publishes the matched path parameters and route pattern through context
variables so the handler (and anything it calls) can read them.
"""

from contextvars import ContextVar
from typing import Literal

from .response import error_text
from .rsgi import HTTPProtocol, HTTPScope, RSGIHTTPHandler
from .tree import FrozenDict, LeafKey, Match, Node, add_route, find_handler

path_params: ContextVar[FrozenDict[str, str]] = ContextVar("path_params")
http_route: ContextVar[str] = ContextVar("http_route")

type HTTPMethod = Literal[
    "CONNECT", "DELETE", "GET", "HEAD", "OPTIONS", "PATCH", "POST", "PUT", "TRACE"
]


async def default_not_found(scope: HTTPScope, proto: HTTPProtocol) -> None:
    proto.response_str(*error_text("404 page not found", 404))


async def default_method_not_allowed(scope: HTTPScope, proto: HTTPProtocol) -> None:
    proto.response_str(*error_text("Method Not Allowed", 405))


class Router:
    """Maps (method, path) to RSGI HTTP handlers.

    Handlers for unmatched paths and unmatched methods are plain RSGI
    handlers and fall back to text 404/405 responses when unset.
    """

    __slots__ = ("_tree", "method_not_allowed", "not_found")
    _tree: Node[RSGIHTTPHandler]
    not_found: RSGIHTTPHandler | None
    method_not_allowed: RSGIHTTPHandler | None

    def __init__(
        self,
        *,
        not_found: RSGIHTTPHandler | None = None,
        method_not_allowed: RSGIHTTPHandler | None = None,
    ) -> None:
        self._tree = Node()
        self.not_found = not_found
        self.method_not_allowed = method_not_allowed

    async def __call__(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        match = self.lookup(scope.method, scope.path)
        if match.handler is not None:
            handler = match.handler
        elif match.method_not_allowed:
            handler = self.method_not_allowed or default_method_not_allowed
        else:
            handler = self.not_found or default_not_found
        params_token = path_params.set(match.params)
        route_token = http_route.set(match.route)
        try:
            await handler(scope, proto)
        finally:
            http_route.reset(route_token)
            path_params.reset(params_token)

    def lookup(self, method: str, path: str) -> Match[RSGIHTTPHandler]:
        """Returns the match for method and path without invoking anything."""
        try:
            key = LeafKey(method.upper())
        except ValueError:
            key = LeafKey.ANY_HTTP  # unknown methods only reach catch-any routes
        return find_handler(path, key, self._tree)

    def handle(
        self, method: HTTPMethod | None, path: str, handler: RSGIHTTPHandler
    ) -> None:
        """Registers handler in tree at path for method (None for any method)."""
        self._tree = add_route(
            self._tree,
            LeafKey(method) if method is not None else LeafKey.ANY_HTTP,
            path,
            handler,
        )
