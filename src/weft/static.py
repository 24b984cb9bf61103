"""Directory-backed static file handler.

Mounted behind a catch-all route, e.g. `App.static("/public", "./assets")`
registers GET "/public/*filepath".

Responses carry `last-modified`, a weak `etag` and `accept-ranges: bytes`.
Conditional requests (`if-none-match`, `if-modified-since`) get a 304 and
a single `range: bytes=...` gets a 206. Multiple ranges are answered with
the whole file.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import re
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .response import error_text
from .router import path_params

if TYPE_CHECKING:
    from .rsgi import HTTPProtocol, HTTPScope, RSGIHTTPHandler

logger = logging.getLogger(__name__)

INDEX_FILE = "index.html"

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


def _get_content_type(path: Path) -> str:
    """Guess MIME type for a file."""
    mime_type, _ = mimetypes.guess_type(str(path))
    return mime_type or "application/octet-stream"


def _etag(stat: os.stat_result) -> str:
    return f'W/"{stat.st_size:x}-{stat.st_mtime_ns:x}"'


def _not_modified(scope: HTTPScope, etag: str, mtime: int) -> bool:
    """Evaluates if-none-match, then if-modified-since (ignored when the former is set)."""
    if_none_match = scope.headers.get("if-none-match")
    if if_none_match is not None:
        tags = {t.strip().removeprefix("W/") for t in if_none_match.split(",")}
        return "*" in tags or etag.removeprefix("W/") in tags
    if_modified_since = scope.headers.get("if-modified-since")
    if if_modified_since:
        try:
            since = parsedate_to_datetime(if_modified_since)
        except (TypeError, ValueError):
            return False
        return mtime <= int(since.timestamp())
    return False


def parse_range(header: str, size: int) -> tuple[int, int] | None:
    """Inclusive (first, last) byte positions of a single bytes range.

    Raises ValueError when the range can't be satisfied. Returns None when
    the header is not a single well-formed range, the whole file is sent
    then.
    """
    m = _RANGE_RE.match(header.strip())
    if m is None:
        return None
    first, last = m.groups()
    if not first and not last:
        return None
    if not first:  # suffix range: the last n bytes
        n = int(last)
        if n == 0 or size == 0:
            msg = f"unsatisfiable range {header!r}"
            raise ValueError(msg)
        return max(size - n, 0), size - 1
    start = int(first)
    if start >= size:
        msg = f"unsatisfiable range {header!r}"
        raise ValueError(msg)
    end = min(int(last), size - 1) if last else size - 1
    if end < start:
        return None
    return start, end


def file_server(directory: str | Path, *, param: str = "filepath") -> RSGIHTTPHandler:
    """Create an RSGI handler serving files below directory.

    Args:
        directory: Root directory. Requests can't escape it, `..` segments
            and symlinks pointing outside resolve to a 404.
        param: Name of the catch-all path parameter holding the file path.

    Returns:
        RSGI HTTP handler. Directories are served through their index.html.
    """
    root = Path(directory).resolve()

    def _locate(rel_path: str) -> Path | None:
        candidate = (root / rel_path.lstrip("/")).resolve()
        if not candidate.is_relative_to(root):
            return None
        if candidate.is_dir():
            candidate = candidate / INDEX_FILE
        if not candidate.is_file():
            return None
        return candidate

    async def app(scope: HTTPScope, proto: HTTPProtocol) -> None:
        """RSGI handler for serving static files."""
        file = _locate(path_params.get({}).get(param, ""))
        if file is None:
            proto.response_str(*error_text("404 page not found", 404))
            return

        stat = file.stat()
        etag = _etag(stat)
        mtime = int(stat.st_mtime)
        validators = [
            ("last-modified", formatdate(mtime, usegmt=True)),
            ("etag", etag),
        ]
        if _not_modified(scope, etag, mtime):
            proto.response_empty(304, validators)
            return

        headers = [
            ("content-type", _get_content_type(file)),
            ("accept-ranges", "bytes"),
            *validators,
        ]
        range_header = scope.headers.get("range")
        if range_header:
            try:
                byte_range = parse_range(range_header, stat.st_size)
            except ValueError:
                logger.debug("static files: %s for %s", range_header, file)
                proto.response_str(
                    416,
                    [
                        ("content-type", "text/plain; charset=utf-8"),
                        ("content-range", f"bytes */{stat.st_size}"),
                    ],
                    "416 requested range not satisfiable\n",
                )
                return
            if byte_range is not None:
                first, last = byte_range
                headers += [
                    ("content-range", f"bytes {first}-{last}/{stat.st_size}"),
                    ("content-length", str(last - first + 1)),
                ]
                proto.response_file_range(206, headers, str(file), first, last + 1)
                return

        headers.append(("content-length", str(stat.st_size)))
        proto.response_file(200, headers, str(file))

    logger.debug("static files: serving %s", root)
    return app
