"""Access-log line formatting and the protocol wrapper that feeds it."""

from __future__ import annotations

import os
from datetime import datetime
from typing import TYPE_CHECKING

from .request import request_uri

if TYPE_CHECKING:
    from .rsgi import HTTPProtocol, HTTPScope, HTTPStreamTransport


class _CountingHTTPStreamTransport:
    """Wraps a stream transport to count the bytes sent through it."""

    __slots__ = ("_owner", "_transport")

    def __init__(
        self, transport: HTTPStreamTransport, owner: AccessLogHTTPProtocol
    ) -> None:
        self._transport = transport
        self._owner = owner

    async def send_bytes(self, data: bytes) -> None:
        await self._transport.send_bytes(data)
        self._owner.size += len(data)

    async def send_str(self, data: str) -> None:
        await self._transport.send_str(data)
        self._owner.size += len(data.encode("utf-8"))


class AccessLogHTTPProtocol:
    """Wraps HTTPProtocol to capture response status and size for the access log."""

    __slots__ = ("_proto", "size", "status")

    def __init__(self, proto: HTTPProtocol) -> None:
        self._proto = proto
        self.status = 0
        self.size = 0

    async def __call__(self) -> bytes:
        return await self._proto()

    def __aiter__(self) -> bytes:
        return self._proto.__aiter__()

    async def client_disconnect(self) -> None:
        await self._proto.client_disconnect()

    def response_empty(self, status: int, headers: list[tuple[str, str]]) -> None:
        self.status = status
        self._proto.response_empty(status, headers)

    def response_str(
        self, status: int, headers: list[tuple[str, str]], body: str
    ) -> None:
        self.status = status
        self._proto.response_str(status, headers, body)
        self.size += len(body.encode("utf-8"))

    def response_bytes(
        self, status: int, headers: list[tuple[str, str]], body: bytes
    ) -> None:
        self.status = status
        self._proto.response_bytes(status, headers, body)
        self.size += len(body)

    def response_file(
        self, status: int, headers: list[tuple[str, str]], file: str
    ) -> None:
        self.status = status
        self._proto.response_file(status, headers, file)
        self.size += os.path.getsize(file)

    def response_file_range(
        self,
        status: int,
        headers: list[tuple[str, str]],
        file: str,
        start: int,
        end: int,
    ) -> None:
        self.status = status
        self._proto.response_file_range(status, headers, file, start, end)
        self.size += end - start

    def response_stream(
        self, status: int, headers: list[tuple[str, str]]
    ) -> HTTPStreamTransport:
        self.status = status
        return _CountingHTTPStreamTransport(
            self._proto.response_stream(status, headers), self
        )


_PROTOCOLS = {"1": "HTTP/1.0", "1.1": "HTTP/1.1", "2": "HTTP/2.0"}
_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)  # fmt: skip


def format_line(
    scope: HTTPScope, start: datetime, status: int, size: int, elapsed: float
) -> str:
    """Formats one access-log line (without the trailing newline).

        127.0.0.1 - [02/Jan/2006:15:04:05 -0700] GET /ping HTTP/1.1 200 4 1.2ms
    """
    return "%s - [%s] %s %s %s %d %d %s" % (  # noqa: UP031
        split_host(scope.client),
        format_timestamp(start),
        scope.method,
        request_uri(scope),
        _PROTOCOLS.get(scope.http_version, f"HTTP/{scope.http_version}"),
        status,
        size,
        format_duration(elapsed),
    )


def format_timestamp(t: datetime) -> str:
    """02/Jan/2006:15:04:05 -0700, with English month names in any locale."""
    return "%02d/%s/%04d:%s" % (  # noqa: UP031
        t.day,
        _MONTHS[t.month - 1],
        t.year,
        t.strftime("%H:%M:%S %z"),
    )


def split_host(hostport: str) -> str:
    """Host part of "host:port" or "[v6]:port". Empty when there is no port."""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end == -1 or not hostport[end + 1 :].startswith(":"):
            return ""
        return hostport[1:end]
    host, sep, _port = hostport.rpartition(":")
    if not sep or ":" in host:
        return ""
    return host


_US = 1_000
_MS = 1_000_000
_S = 1_000_000_000
_MINUTE = 60 * _S
_HOUR = 60 * _MINUTE


def format_duration(seconds: float) -> str:
    """Go-style duration: 950ns, 12.5µs, 1.234567ms, 2.5s, 1m15.5s, 2h0m3s."""
    ns = round(seconds * 1e9)
    if ns < _US:
        return f"{ns}ns"
    if ns < _MS:
        return _decimal(ns, _US) + "µs"
    if ns < _S:
        return _decimal(ns, _MS) + "ms"
    if ns < _MINUTE:
        return _decimal(ns, _S) + "s"
    hours, ns = divmod(ns, _HOUR)
    minutes, ns = divmod(ns, _MINUTE)
    text = f"{minutes}m{_decimal(ns, _S)}s"
    return f"{hours}h{text}" if hours else text


def _decimal(value: int, scale: int) -> str:
    """value / scale without trailing zeros, exact for integer nanoseconds."""
    whole, frac = divmod(value, scale)
    if not frac:
        return str(whole)
    digits = len(str(scale)) - 1
    return f"{whole}.{frac:0{digits}d}".rstrip("0")
