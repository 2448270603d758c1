"""
SieveProxy Tunnel Relay
=======================
Opaque CONNECT tunnelling: dial the origin, take over the client socket,
send ``200 Connection Established`` and copy bytes both ways until either
side goes away. Nothing inside the tunnel is inspected.

Each direction runs in its own thread. When a direction ends (EOF or
error) it shuts down and closes both of its sockets, which makes the
blocked ``recv`` in the opposite direction return, so the whole session
ends within one round trip of either peer disconnecting. There is no idle
timeout.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Optional, Protocol, Tuple

from sieveproxy.core.errors import ClientError, TransportError, UpstreamUnavailable

logger = logging.getLogger(__name__)

RELAY_BUFFER_SIZE = 64 * 1024


class Detachable(Protocol):
    """A transport that can hand over its raw client socket exactly once."""

    def detach(self) -> socket.socket: ...


def parse_authority(authority: str) -> Tuple[str, int]:
    """Split a CONNECT ``host:port`` target.

    Raises:
        ClientError: missing or invalid port, or empty host.
    """
    host, sep, port = authority.rpartition(":")
    if not sep or not host:
        raise ClientError(f"Invalid CONNECT target: {authority!r}")
    host = host.strip("[]")  # IPv6 literal
    try:
        port_num = int(port)
    except ValueError:
        raise ClientError(f"Invalid CONNECT port: {authority!r}") from None
    if not host or not 0 < port_num < 65536:
        raise ClientError(f"Invalid CONNECT target: {authority!r}")
    return host, port_num


def _close(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


# ── Session ──────────────────────────────────────────────────────────────────

class TunnelSession:
    """A client/origin socket pair relayed by two threads."""

    def __init__(self, client: socket.socket, origin: socket.socket, name: str = "tunnel"):
        self.client = client
        self.origin = origin
        self.name = name
        self.bytes_up = 0    # client → origin
        self.bytes_down = 0  # origin → client
        self._threads = []

    def start(self) -> None:
        self._threads = [
            threading.Thread(
                target=self._pipe, args=(self.client, self.origin, "up"),
                daemon=True, name=f"{self.name}-up",
            ),
            threading.Thread(
                target=self._pipe, args=(self.origin, self.client, "down"),
                daemon=True, name=f"{self.name}-down",
            ),
        ]
        for t in self._threads:
            t.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until both directions finish. True if they did."""
        for t in self._threads:
            t.join(timeout)
        return not self.is_alive

    @property
    def is_alive(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def _pipe(self, source: socket.socket, destination: socket.socket, direction: str) -> None:
        try:
            while True:
                data = source.recv(RELAY_BUFFER_SIZE)
                if not data:
                    break
                destination.sendall(data)
                if direction == "up":
                    self.bytes_up += len(data)
                else:
                    self.bytes_down += len(data)
        except OSError as e:
            logger.debug(f"{self.name} {direction} ended: {e}")
        finally:
            _close(destination)
            _close(source)


# ── Relay ────────────────────────────────────────────────────────────────────

class TunnelRelay:
    """Builds tunnel sessions for CONNECT requests."""

    def __init__(self, connect_timeout: Optional[float] = 10.0):
        self.connect_timeout = connect_timeout

    def dial(self, host: str, port: int) -> socket.socket:
        """Open a TCP connection to the origin.

        Raises:
            UpstreamUnavailable: the connection could not be made.
        """
        try:
            sock = socket.create_connection((host, port), timeout=self.connect_timeout)
        except OSError as e:
            raise UpstreamUnavailable(f"Cannot connect to {host}:{port}: {e}") from e
        sock.settimeout(None)
        return sock

    def establish(
        self,
        transport: object,
        origin: socket.socket,
        protocol: str = "HTTP/1.1",
        name: str = "tunnel",
    ) -> TunnelSession:
        """Take over the client socket, acknowledge, and start relaying.

        ``origin`` must already be connected (see ``dial``); it is closed if
        the takeover fails.

        Raises:
            TransportError: the transport cannot detach its socket.
        """
        detach = getattr(transport, "detach", None)
        if not callable(detach):
            _close(origin)
            raise TransportError("Hijacking not supported")

        try:
            client = detach()
        except TransportError:
            _close(origin)
            raise

        try:
            client.sendall(f"{protocol} 200 Connection Established\r\n\r\n".encode("latin-1"))
        except OSError as e:
            _close(client)
            _close(origin)
            raise TransportError(f"Tunnel handshake failed: {e}") from e

        session = TunnelSession(client, origin, name=name)
        session.start()
        logger.debug(f"{name} established")
        return session
