from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal

from weft.rsgi import HTTPScope


@dataclass
class MockHTTPScope:
    proto: Literal["http"] = "http"
    http_version: Literal["1", "1.1", "2"] = "1.1"
    rsgi_version: str = "1.0"
    server: str = "localhost"
    client: str = "127.0.0.1:54321"
    scheme: str = "http"
    method: str = "GET"
    path: str = "/"
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    authority: str | None = None


class MockHTTPStreamTransport:
    """Mock stream transport that captures sent data."""

    def __init__(self) -> None:
        self.chunks: list[bytes] = []

    async def send_bytes(self, data: bytes) -> None:
        self.chunks.append(data)

    async def send_str(self, data: str) -> None:
        self.chunks.append(data.encode("utf-8"))

    def get_data(self) -> bytes:
        return b"".join(self.chunks)


class MockHTTPProtocol:
    """Mock protocol that serves a fixed request body and captures the response."""

    def __init__(self, body: bytes = b"") -> None:
        self.request_body = body
        self.response_status: int | None = None
        self.response_headers: list[tuple[str, str]] | None = None
        self.response_body: bytes | None = None
        self.response_file_path: str | None = None
        self.file_range: tuple[int, int] | None = None
        self.stream_transport: MockHTTPStreamTransport | None = None
        self.closed_with: int | None = None

    async def __call__(self) -> bytes:
        return self.request_body

    def __aiter__(self) -> bytes:
        raise NotImplementedError

    async def client_disconnect(self) -> None:
        raise NotImplementedError

    def close(self, status: int | None = None) -> None:
        self.closed_with = status

    def response_empty(self, status: int, headers: list[tuple[str, str]]) -> None:
        self.response_status = status
        self.response_headers = headers
        self.response_body = b""

    def response_str(
        self, status: int, headers: list[tuple[str, str]], body: str
    ) -> None:
        self.response_status = status
        self.response_headers = headers
        self.response_body = body.encode("utf-8")

    def response_bytes(
        self, status: int, headers: list[tuple[str, str]], body: bytes
    ) -> None:
        self.response_status = status
        self.response_headers = headers
        self.response_body = body

    def response_file(
        self, status: int, headers: list[tuple[str, str]], file: str
    ) -> None:
        self.response_status = status
        self.response_headers = headers
        self.response_file_path = file

    def response_file_range(
        self,
        status: int,
        headers: list[tuple[str, str]],
        file: str,
        start: int,
        end: int,
    ) -> None:
        self.response_status = status
        self.response_headers = headers
        self.response_file_path = file
        self.file_range = (start, end)

    def response_stream(
        self, status: int, headers: list[tuple[str, str]]
    ) -> MockHTTPStreamTransport:
        self.response_status = status
        self.response_headers = headers
        self.stream_transport = MockHTTPStreamTransport()
        return self.stream_transport

    def header(self, name: str) -> str | None:
        return dict(self.response_headers or []).get(name)


def mock_scope(
    path: str = "/",
    method: str = "GET",
    headers: dict[str, str] | None = None,
    query_string: str = "",
    client: str = "127.0.0.1:54321",
) -> HTTPScope:
    return MockHTTPScope(
        path=path,
        method=method,
        headers=headers or {},
        query_string=query_string,
        client=client,
    )
