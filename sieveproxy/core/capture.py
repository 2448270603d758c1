"""
Response capture.

Turns a live, read-once upstream response into a ``CachedEntry`` whose body
is a plain ``bytes`` buffer. The current client and every later cache hit
read that buffer through their own ``open_body()`` reader, so nobody shares
a stream position with anybody else.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

import requests
import urllib3

from sieveproxy.core.cache import CachedEntry
from sieveproxy.core.errors import CaptureError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# Statuses that never carry a body
_BODYLESS_STATUSES = {204, 304}

_HTTP_VERSIONS = {9: "HTTP/0.9", 10: "HTTP/1.0", 11: "HTTP/1.1", 20: "HTTP/2"}


def response_has_body(method: str, status: int) -> bool:
    return method.upper() != "HEAD" and status >= 200 and status not in _BODYLESS_STATUSES


def capture_response(resp: requests.Response) -> CachedEntry:
    """Read ``resp`` to the end and snapshot it.

    ``resp`` must have been opened with ``stream=True``. The body is read
    without content decoding so the snapshot matches the origin bytes and
    its ``Content-Encoding`` header. The response is closed either way.

    Raises:
        CaptureError: the stream failed, or ended before ``Content-Length``.
    """
    raw = resp.raw
    headers = _copy_headers(resp)
    declared = _declared_length(headers)
    method = resp.request.method if resp.request is not None else "GET"

    chunks: List[bytes] = []
    try:
        for chunk in raw.stream(CHUNK_SIZE, decode_content=False):
            chunks.append(chunk)
    except (urllib3.exceptions.HTTPError, OSError) as e:
        raise CaptureError(f"Upstream body read failed: {e}", partial=b"".join(chunks)) from e
    finally:
        resp.close()

    body = b"".join(chunks)
    if (declared >= 0 and len(body) < declared
            and response_has_body(method, resp.status_code)):
        raise CaptureError(
            f"Upstream body truncated: got {len(body)} of {declared} bytes",
            partial=body,
        )

    return CachedEntry(
        status=resp.status_code,
        reason=resp.reason or "",
        protocol=_HTTP_VERSIONS.get(getattr(raw, "version", 0), "HTTP/1.1"),
        headers=tuple(headers),
        body=body,
        content_length=declared,
    )


def _copy_headers(resp: requests.Response) -> List[Tuple[str, str]]:
    """Header pairs in origin order, repeated fields kept apart."""
    raw_headers = getattr(resp.raw, "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "getlist"):
        return [(k, v) for k in raw_headers for v in raw_headers.getlist(k)]
    return list(resp.headers.items())


def _declared_length(headers: List[Tuple[str, str]]) -> int:
    for key, value in headers:
        if key.lower() == "content-length":
            try:
                return int(value.split(",")[0].strip())
            except ValueError:
                return -1
    return -1
