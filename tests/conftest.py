"""Shared fixtures for SieveProxy tests."""

import io
from typing import Callable, List, Optional, Tuple

import pytest
import requests
import urllib3
from requests.structures import CaseInsensitiveDict


def build_response(
    body: bytes = b"hello from origin",
    status: int = 200,
    reason: str = "OK",
    headers: Optional[List[Tuple[str, str]]] = None,
    method: str = "GET",
    url: str = "http://example.com/",
) -> requests.Response:
    """A streaming ``requests.Response`` backed by an in-memory body."""
    if headers is None:
        headers = [("Content-Type", "text/plain"), ("Content-Length", str(len(body)))]
    raw = urllib3.HTTPResponse(
        body=io.BytesIO(body),
        headers=headers,
        status=status,
        version=11,
        reason=reason,
        preload_content=False,
        decode_content=False,
    )
    resp = requests.Response()
    resp.raw = raw
    resp.status_code = status
    resp.reason = reason
    resp.url = url
    resp.headers = CaseInsensitiveDict(raw.headers)
    resp.request = requests.Request(method, url).prepare()
    return resp


@pytest.fixture
def make_response() -> Callable[..., requests.Response]:
    return build_response
