"""
Proxy error taxonomy.

Every failure is terminal for the request it belongs to; nothing here is
retried. ``status`` is the HTTP status surfaced to the client.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for request-terminating proxy failures."""

    status: int = 500
    kind: str = "proxy_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def __str__(self) -> str:
        return self.message


class ClientError(ProxyError):
    """Malformed request target."""

    status = 400
    kind = "client_error"


class PolicyError(ProxyError):
    """Target host is on the blocklist."""

    status = 403
    kind = "blocked"


class UpstreamUnavailable(ProxyError):
    """Dialing or talking to the origin failed before a response arrived."""

    status = 503
    kind = "upstream_unavailable"


class CaptureError(ProxyError):
    """The origin body could not be read in full.

    ``partial`` holds whatever bytes were read before the failure.
    """

    status = 502
    kind = "capture_error"

    def __init__(self, message: str = "", partial: bytes = b""):
        super().__init__(message)
        self.partial = partial


class TransportError(ProxyError):
    """The client connection could not be taken over for tunnelling."""

    status = 500
    kind = "transport_error"
