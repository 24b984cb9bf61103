"""Read-only request view over an RSGI scope and protocol."""

import logging
import posixpath
import re
from urllib.parse import parse_qs

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from .rsgi import HTTPProtocol, HTTPScope

logger = logging.getLogger(__name__)

_FORM_METHODS = frozenset({"POST", "PUT", "PATCH"})
_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
_MULTIPART_CONTENT_TYPE = "multipart/form-data"


class Request:
    __slots__ = ("_body", "_form", "_proto", "_query", "scope")

    def __init__(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        self.scope = scope
        self._proto = proto
        self._body: bytes | None = None
        self._query: dict[str, list[str]] | None = None
        self._form: dict[str, list[str]] | None = None

    @property
    def method(self) -> str:
        return self.scope.method

    @property
    def path(self) -> str:
        return self.scope.path

    @property
    def query(self) -> dict[str, list[str]]:
        if self._query is None:
            self._query = parse_qs(self.scope.query_string, keep_blank_values=True)
        return self._query

    def header(self, name: str) -> str:
        return self.scope.headers.get(name.lower()) or ""

    async def body(self) -> bytes:
        """Reads the request body once and caches it."""
        if self._body is None:
            self._body = await self._proto()
        return self._body

    async def form(self) -> dict[str, list[str]]:
        """Parses form fields from the body.

        Urlencoded bodies are read for POST, PUT and PATCH. Multipart bodies
        are read for any method; file parts are skipped. Other content types
        give an empty form.
        """
        if self._form is None:
            self._form = {}
            content_type = self.header("content-type")
            media_type = content_type.split(";", 1)[0].strip().lower()
            if media_type == _FORM_CONTENT_TYPE and self.method in _FORM_METHODS:
                body = await self.body()
                self._form = parse_qs(
                    body.decode("utf-8", errors="replace"), keep_blank_values=True
                )
            elif media_type == _MULTIPART_CONTENT_TYPE:
                self._form = parse_multipart(await self.body(), content_type)
        return self._form


def parse_multipart(body: bytes, content_type: str) -> dict[str, list[str]]:
    """Field values of a multipart/form-data body, keyed by field name.

    Parts carrying a filename are uploads and are left out. A body that
    stops parsing halfway keeps the fields read up to that point.
    """
    _, options = parse_options_header(content_type)
    boundary = options.get(b"boundary")
    if not boundary:
        logger.debug("multipart body without boundary, ignoring")
        return {}

    fields: dict[str, list[str]] = {}
    header_field = bytearray()
    header_value = bytearray()
    data = bytearray()
    name: str | None = None
    is_file = False

    def on_part_begin() -> None:
        nonlocal name, is_file
        data.clear()
        name = None
        is_file = False

    def on_header_field(chunk: bytes, start: int, end: int) -> None:
        header_field.extend(chunk[start:end])

    def on_header_value(chunk: bytes, start: int, end: int) -> None:
        header_value.extend(chunk[start:end])

    def on_header_end() -> None:
        nonlocal name, is_file
        if bytes(header_field).lower() == b"content-disposition":
            _, params = parse_options_header(bytes(header_value))
            if b"name" in params:
                name = params[b"name"].decode("utf-8", errors="replace")
            is_file = b"filename" in params
        header_field.clear()
        header_value.clear()

    def on_part_data(chunk: bytes, start: int, end: int) -> None:
        data.extend(chunk[start:end])

    def on_part_end() -> None:
        if name is None or is_file:
            return
        fields.setdefault(name, []).append(data.decode("utf-8", errors="replace"))

    parser = MultipartParser(
        boundary,
        {
            "on_part_begin": on_part_begin,
            "on_header_field": on_header_field,
            "on_header_value": on_header_value,
            "on_header_end": on_header_end,
            "on_part_data": on_part_data,
            "on_part_end": on_part_end,
        },
    )
    try:
        parser.write(body)
        parser.finalize()
    except MultipartParseError as e:
        logger.debug("malformed multipart body: %s", e)
    return fields


def request_uri(scope: HTTPScope) -> str:
    """Path plus query string, as sent by the client."""
    if scope.query_string:
        return f"{scope.path}?{scope.query_string}"
    return scope.path


def clean_path(path: str) -> str:
    """Shortest equivalent of a rooted path, like go's path.Clean."""
    return posixpath.normpath(re.sub("/{2,}", "/", path))
