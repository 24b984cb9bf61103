"""Per-request context handed to every handler and middleware."""

from __future__ import annotations

import html
import json
from collections.abc import Callable, Mapping
from http import HTTPStatus
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlsplit

from .errors import DecodeError, InvalidRedirectCode, RendererNotConfigured
from .request import Request, clean_path
from .response import ResponseWriter

if TYPE_CHECKING:
    from .app import App
    from .rsgi import HTTPProtocol, HTTPScope


class Writer(Protocol):
    def write(self, data: str | bytes) -> int: ...


class Renderer(Protocol):
    """Anything that can render a named template into a writer."""

    def render(self, out: Writer, name: str, data: Any) -> None: ...


class Context:
    """Bundles the request, the response writer and the route's path params.

    `context` holds the values bound with `App.bind_context`. A Context is
    created for one request and used by one task only.
    """

    __slots__ = ("_params", "app", "context", "request", "response")

    def __init__(
        self,
        scope: HTTPScope,
        proto: HTTPProtocol,
        params: Mapping[str, str],
        context: Mapping[str, Any],
        app: App,
    ) -> None:
        self.request = Request(scope, proto)
        self.response = ResponseWriter(proto)
        self._params = params
        self.context = context
        self.app = app

    @property
    def params(self) -> Mapping[str, str]:
        return self._params

    def param(self, name: str) -> str:
        """Path parameter bound by the route, e.g. "id" for "/user/:id"."""
        return self._params.get(name, "")

    def query(self, name: str) -> str:
        values = self.request.query.get(name)
        return values[0] if values else ""

    async def form(self, name: str) -> str:
        """Form value from an urlencoded or multipart body, else the query string."""
        values = (await self.request.form()).get(name)
        if values:
            return values[0]
        return self.query(name)

    def header(self, name: str) -> str:
        return self.request.header(name)

    def json(self, code: int, value: Any) -> None:
        """Writes value as JSON with the status code.

        The status is committed before encoding, so an encoding error cannot
        change it. The error still propagates to the caller.
        """
        self.response.headers["content-type"] = "application/json"
        self.response.write_header(code)
        self.response.write(json.dumps(value, separators=(",", ":")) + "\n")

    def text(self, code: int, text: str) -> None:
        self.response.headers["content-type"] = "text/plain"
        self.response.write_header(code)
        self.response.write(text)

    async def decode_json[T](self, into: Callable[..., T] | None = None) -> T | Any:
        """Decodes the request body.

        With `into`, the body must be a JSON object and is passed as keyword
        arguments, e.g. a dataclass.
        """
        body = await self.request.body()
        try:
            value = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            msg = f"invalid JSON body: {e}"
            raise DecodeError(msg) from e
        if into is None:
            return value
        if not isinstance(value, dict):
            msg = f"cannot decode JSON {type(value).__name__} into {_name(into)}"
            raise DecodeError(msg)
        try:
            return into(**value)
        except TypeError as e:
            msg = f"cannot decode JSON object into {_name(into)}: {e}"
            raise DecodeError(msg) from e

    def render(self, name: str, data: Any) -> None:
        renderer = self.app.renderer
        if renderer is None:
            msg = "no renderer configured, see App.set_template_engine"
            raise RendererNotConfigured(msg)
        renderer.render(self.response, name, data)

    def redirect(self, url: str, code: int) -> None:
        """Redirects the request to url with a 3xx status code."""
        if code < HTTPStatus.MULTIPLE_CHOICES or code > HTTPStatus.TEMPORARY_REDIRECT:
            msg = f"invalid redirect code {code}"
            raise InvalidRedirectCode(msg)

        location = _resolve_location(self.request.path, url)
        method = self.request.method
        self.response.headers["location"] = location
        if method in ("GET", "HEAD") and "content-type" not in self.response.headers:
            self.response.headers["content-type"] = "text/html; charset=utf-8"
        self.response.write_header(code)
        # a short body for clients that don't follow redirects
        if method == "GET":
            self.response.write(
                f'<a href="{html.escape(location)}">{_status_text(code)}</a>.\n'
            )


def _resolve_location(request_path: str, url: str) -> str:
    """Makes url absolute against the request path and cleans it.

    URLs with a scheme or host are returned unchanged.
    """
    parts = urlsplit(url)
    if parts.scheme or parts.netloc:
        return url
    if not url.startswith("/"):
        current = request_path or "/"
        url = current[: current.rfind("/") + 1] + url
    path, sep, query = url.partition("?")
    trailing = path.endswith("/")
    path = clean_path(path)
    if trailing and not path.endswith("/"):
        path += "/"
    return path + sep + query


def _status_text(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return ""


def _name(obj: object) -> str:
    return getattr(obj, "__qualname__", repr(obj))
