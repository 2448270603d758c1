"""
Upstream forwarding over ``requests``.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, List, Optional, Tuple

import requests

from sieveproxy.core.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

# Connection-scoped headers that must not be forwarded (RFC 9110 §7.6.1)
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


def strip_hop_by_hop(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Drop hop-by-hop headers, including any named in ``Connection``."""
    headers = list(headers)
    extra = set()
    for key, value in headers:
        if key.lower() == "connection":
            extra.update(t.strip().lower() for t in value.split(",") if t.strip())
    return [
        (k, v) for k, v in headers
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in extra
    ]


class UpstreamClient:
    """Sends client requests on to the origin.

    One ``requests.Session`` per thread keeps origin connections alive
    without sharing a session between handler threads. Sessions carry no
    default headers and ignore proxy environment variables.
    """

    def __init__(self, timeout: Optional[float] = 30.0, connect_timeout: Optional[float] = 10.0):
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._local = threading.local()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.clear()
            session.trust_env = False
            self._local.session = session
        return session

    def forward(
        self,
        method: str,
        url: str,
        headers: Iterable[Tuple[str, str]] = (),
        body: Optional[bytes] = None,
    ) -> requests.Response:
        """Send the request and return the still-unread, streaming response.

        Raises:
            UpstreamUnavailable: the origin could not be reached.
        """
        forwarded = {}
        for key, value in strip_hop_by_hop(headers):
            if key in forwarded:
                forwarded[key] = f"{forwarded[key]}, {value}"
            else:
                forwarded[key] = value

        try:
            return self._session().request(
                method=method,
                url=url,
                headers=forwarded,
                data=body or None,
                stream=True,
                allow_redirects=False,
                timeout=(self.connect_timeout, self.timeout),
            )
        except requests.RequestException as e:
            logger.debug(f"Upstream request to {url} failed: {e}")
            raise UpstreamUnavailable(f"Upstream unavailable: {e}") from e

    def close(self) -> None:
        session = getattr(self._local, "session", None)
        if session is not None:
            session.close()
            self._local.session = None
