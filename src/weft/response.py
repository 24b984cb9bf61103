"""Buffered response writer on top of an RSGI HTTP protocol.

RSGI sends a response in one call (or opens a stream), so the writer keeps
the status, headers and body until `finish()` or `flush()`:

    w.headers["content-type"] = "text/plain"
    w.write_header(201)      # commits status and snapshots headers
    w.write("created")       # buffered
    await w.finish()         # one response_bytes call
"""

from __future__ import annotations

import logging

from .rsgi import HTTPProtocol, HTTPStreamTransport

logger = logging.getLogger(__name__)


def error_text(message: str, code: int) -> tuple[int, list[tuple[str, str]], str]:
    """Status, headers and body of a plain text error response."""
    headers = [
        ("content-type", "text/plain; charset=utf-8"),
        ("x-content-type-options", "nosniff"),
    ]
    return code, headers, message + "\n"


def write_error(w: ResponseWriter, message: str, code: int) -> None:
    """Replies to the request with the message as plain text and the status code."""
    _, headers, body = error_text(message, code)
    w.headers.update(headers)
    w.write_header(code)
    w.write(body)


class ResponseWriter:
    """Collects a response and sends it through the RSGI protocol.

    Header keys are lower-case. Once a status is committed, later header
    changes are not sent.
    """

    __slots__ = (
        "_body",
        "_finished",
        "_proto",
        "_sent_headers",
        "_status",
        "_transport",
        "headers",
    )

    def __init__(self, proto: HTTPProtocol) -> None:
        self._proto = proto
        self.headers: dict[str, str] = {}
        self._status = 0
        self._sent_headers: list[tuple[str, str]] = []
        self._body: list[bytes] = []
        self._transport: HTTPStreamTransport | None = None
        self._finished = False

    @property
    def status(self) -> int:
        """Committed status code, 0 until `write_header` or `write` is called."""
        return self._status

    @property
    def committed(self) -> bool:
        return self._status != 0

    def write_header(self, code: int) -> None:
        if self._status:
            logger.warning(
                "superfluous write_header(%d), status %d already committed",
                code,
                self._status,
            )
            return
        self._status = code
        self._sent_headers = list(self.headers.items())

    def write(self, data: str | bytes) -> int:
        if not self._status:
            self.write_header(200)
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._body.append(data)
        return len(data)

    async def flush(self) -> None:
        """Switches to a streamed response and sends everything buffered so far."""
        if not self._status:
            self.write_header(200)
        if self._transport is None:
            self._transport = self._proto.response_stream(
                self._status, self._sent_headers
            )
        if self._body:
            data = b"".join(self._body)
            self._body.clear()
            await self._transport.send_bytes(data)

    async def finish(self) -> None:
        """Sends whatever has not been sent yet. Safe to call more than once."""
        if self._finished:
            return
        self._finished = True
        if self._transport is not None:
            if self._body:
                await self.flush()
            return
        if not self._status:
            self.write_header(200)
        if self._body:
            self._proto.response_bytes(
                self._status, self._sent_headers, b"".join(self._body)
            )
        else:
            self._proto.response_empty(self._status, self._sent_headers)
