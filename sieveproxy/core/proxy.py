"""
SieveProxy Server
=================
Threaded forward proxy tying the dispatch pipeline and the tunnel relay to
a listening socket.

Routing:
  • ``CONNECT host:port``  → opaque tunnel (never cached, never inspected)
  • any other method       → blocklist → cache → origin pipeline

Architecture:
  Uses Python's ``http.server`` + ``socketserver`` with one daemon thread
  per client connection. Upstream HTTP goes through ``requests``.

Status codes produced by the proxy itself:
  400 malformed target · 403 blocked host · 500 connection takeover failed ·
  502 origin body cut short · 503 origin unreachable
"""

from __future__ import annotations

import logging
import shutil
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler
from socketserver import ThreadingTCPServer
from typing import Any, Dict, Optional

from sieveproxy import __version__
from sieveproxy.config import SieveProxyConfig
from sieveproxy.core.blocklist import BlockedHostSet, load_blocklist
from sieveproxy.core.cache import CachedEntry, CacheSweeper, ResponseCache
from sieveproxy.core.capture import response_has_body
from sieveproxy.core.errors import (
    CaptureError,
    ClientError,
    TransportError,
    UpstreamUnavailable,
)
from sieveproxy.core.pipeline import HttpDispatcher, ProxyRequest, Upstream
from sieveproxy.core.tunnel import TunnelRelay, parse_authority
from sieveproxy.core.upstream import UpstreamClient, strip_hop_by_hop
from sieveproxy.eventlog import EventLog, LogType

logger = logging.getLogger(__name__)

MAX_CHUNK_LINE = 65536


# ── Proxy Handler ────────────────────────────────────────────────────────────

class _ProxyHandler(BaseHTTPRequestHandler):
    """HTTP proxy request handler."""

    protocol_version = "HTTP/1.1"
    server_version = f"SieveProxy/{__version__}"

    def setup(self):
        super().setup()
        self._detached = False

    # Route access logging through the module logger instead of stderr
    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")

    def do_GET(self):
        self._proxy_request()

    def do_POST(self):
        self._proxy_request()

    def do_PUT(self):
        self._proxy_request()

    def do_DELETE(self):
        self._proxy_request()

    def do_PATCH(self):
        self._proxy_request()

    def do_HEAD(self):
        self._proxy_request()

    def do_OPTIONS(self):
        self._proxy_request()

    def do_TRACE(self):
        self._proxy_request()

    # ── Connection takeover ──────────────────────────────────────────────

    def detach(self) -> socket.socket:
        """Hand the raw client socket to the caller. Only works once."""
        if self._detached:
            raise TransportError("Connection already taken over")
        self._detached = True
        self.close_connection = True
        return self.connection

    # ── CONNECT ──────────────────────────────────────────────────────────

    def do_CONNECT(self):
        """Handle HTTPS CONNECT tunnelling."""
        engine: ProxyEngine = self.server._proxy_engine  # type: ignore
        authority = self.path
        url = f"https://{authority}"

        try:
            host, port = parse_authority(authority)
        except ClientError as e:
            self.send_error(400, explain=e.message)
            return

        if engine.config.blocklist.block_tunnels and engine.blocklist.is_blocked(host):
            logger.info(f"Blocked tunnel to: {authority}")
            engine.events.blocked(url)
            engine._count_tunnel("blocked")
            self.send_error(403, explain="Access to this URL is blocked")
            return

        try:
            origin = engine.relay.dial(host, port)
        except UpstreamUnavailable as e:
            logger.warning(f"Tunnel dial failed: {e}")
            engine.events.error(url, e)
            engine._count_tunnel("failed")
            self.send_error(503, explain=e.message)
            return

        try:
            session = engine.relay.establish(
                self, origin,
                protocol=self.request_version,
                name=f"tunnel-{self.client_address[0]}:{self.client_address[1]}->{authority}",
            )
        except TransportError as e:
            logger.warning(f"Tunnel takeover failed: {e}")
            engine.events.error(url, e)
            engine._count_tunnel("failed")
            if not self._detached:
                self.send_error(500, explain=e.message)
            self.close_connection = True
            return

        logger.info(f"Tunnel established to {authority}")
        engine._count_tunnel("opened")
        try:
            # socketserver closes the request socket once we return
            session.wait()
        finally:
            engine._count_tunnel("closed")
        logger.debug(
            f"Tunnel to {authority} closed "
            f"({session.bytes_up}B up, {session.bytes_down}B down)"
        )

    # ── Plain HTTP ───────────────────────────────────────────────────────

    def _proxy_request(self):
        """Run the request through the dispatch pipeline and write the reply."""
        engine: ProxyEngine = self.server._proxy_engine  # type: ignore

        try:
            body = self._read_body()
        except ValueError as e:
            self.send_error(400, explain=f"Malformed request body: {e}")
            return

        request = ProxyRequest(
            method=self.command,
            target=self.path,
            headers=[
                (k, v) for k, v in self.headers.items()
                if k.lower() != "content-length"
            ],
            body=body,
            client=f"{self.client_address[0]}:{self.client_address[1]}",
        )
        reply = engine.dispatcher.dispatch(request)

        try:
            if reply.entry is not None:
                self._write_entry(reply.entry)
            elif isinstance(reply.error, CaptureError):
                self._write_partial(reply.error)
            else:
                self.send_error(reply.status, explain=reply.error.message if reply.error else None)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Client {request.client} went away: {e}")
            self.close_connection = True

    def _read_body(self) -> bytes:
        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            return self._read_chunked()
        length = int(self.headers.get("Content-Length") or 0)
        if length < 0:
            raise ValueError("negative Content-Length")
        return self.rfile.read(length) if length else b""

    def _read_chunked(self) -> bytes:
        chunks = []
        while True:
            line = self.rfile.readline(MAX_CHUNK_LINE)
            size = int(line.split(b";", 1)[0].strip(), 16)
            if size == 0:
                # Discard trailers
                while self.rfile.readline(MAX_CHUNK_LINE) not in (b"\r\n", b"\n", b""):
                    pass
                return b"".join(chunks)
            chunks.append(self.rfile.read(size))
            self.rfile.readline(MAX_CHUNK_LINE)

    def _write_entry(self, entry: CachedEntry) -> None:
        """Replay a snapshot; the body comes from a fresh reader every time."""
        has_body = response_has_body(self.command, entry.status)

        self.log_request(entry.status)
        self.send_response_only(entry.status, entry.reason or None)
        for key, value in strip_hop_by_hop(entry.headers):
            if key.lower() == "content-length":
                continue
            self.send_header(key, value)
        if has_body:
            self.send_header("Content-Length", str(len(entry.body)))
        elif self.command == "HEAD" and entry.content_length >= 0:
            self.send_header("Content-Length", str(entry.content_length))
        self.end_headers()

        if has_body:
            shutil.copyfileobj(entry.open_body(), self.wfile)

    def _write_partial(self, err: CaptureError) -> None:
        """Forward what was read before the origin failed, then hang up."""
        self.log_request(err.status)
        self.send_response_only(err.status)
        self.send_header("Content-Type", "application/octet-stream")
        self.send_header("Content-Length", str(len(err.partial)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(err.partial)


# ── Proxy Server ─────────────────────────────────────────────────────────────

class _ProxyServer(ThreadingTCPServer):
    """Threaded TCP server with proxy engine reference."""
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, addr, handler, engine: "ProxyEngine"):
        self._proxy_engine = engine
        super().__init__(addr, handler)


# ── Proxy Engine ─────────────────────────────────────────────────────────────

class ProxyEngine:
    """
    Filtering, caching forward proxy.

    Owns one cache, blocklist, dispatcher, tunnel relay and event log. Any
    of them can be injected, which is how tests get a fresh cache each.
    """

    def __init__(
        self,
        config: Optional[SieveProxyConfig] = None,
        cache: Optional[ResponseCache] = None,
        blocklist: Optional[BlockedHostSet] = None,
        events: Optional[EventLog] = None,
        upstream: Optional[Upstream] = None,
    ):
        self.config = config if config is not None else SieveProxyConfig()
        cfg = self.config

        self.cache = cache if cache is not None else ResponseCache(ttl=cfg.cache.ttl)
        self.blocklist = blocklist if blocklist is not None else load_blocklist(cfg.blocklist.file)
        self.events = events if events is not None else EventLog(
            directory=cfg.logging.events_dir,
            files={
                LogType.BLOCKED: cfg.logging.blocked_file,
                LogType.ERROR: cfg.logging.error_file,
            },
        )
        self.upstream = upstream if upstream is not None else UpstreamClient(
            timeout=cfg.upstream.timeout,
            connect_timeout=cfg.upstream.connect_timeout,
        )
        self.dispatcher = HttpDispatcher(
            cache=self.cache,
            blocklist=self.blocklist,
            upstream=self.upstream,
            events=self.events,
            cacheable_methods=cfg.cache.cacheable_methods,
        )
        self.relay = TunnelRelay(connect_timeout=cfg.upstream.connect_timeout)
        self.sweeper = CacheSweeper(self.cache, cfg.cache.sweep_interval)

        self._server: Optional[_ProxyServer] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.host: str = cfg.server.host
        self.port: int = cfg.server.port
        self.is_running: bool = False
        self._start_time: float = 0
        self._tunnels: Dict[str, int] = {"opened": 0, "closed": 0, "blocked": 0, "failed": 0}

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self, host: Optional[str] = None, port: Optional[int] = None) -> Dict[str, Any]:
        """Start the proxy server in a background thread.

        Args:
            host: Interface to bind (default from config).
            port: Port to listen on (default from config, 0 picks a free one).

        Returns:
            Status dict with host, port, result.
        """
        if self.is_running:
            return {"ok": False, "error": f"Proxy already running on port {self.port}"}

        host = host if host is not None else self.config.server.host
        port = port if port is not None else self.config.server.port
        try:
            self._server = _ProxyServer((host, port), _ProxyHandler, self)
        except OSError as e:
            return {"ok": False, "error": f"Cannot bind {host}:{port}: {e}"}

        self.host = host
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name=f"sieveproxy-{self.port}",
        )
        self._thread.start()
        self.sweeper.start()
        self.is_running = True
        self._start_time = time.time()
        logger.info(f"Proxy server running on {host}:{self.port}")
        return {
            "ok": True,
            "host": host,
            "port": self.port,
            "message": f"Proxy listening on {host}:{self.port}",
            "curl_example": f"curl -x http://{host}:{self.port} http://example.com",
            "env_hint": f"export http_proxy=http://{host}:{self.port}",
        }

    def stop(self) -> Dict[str, Any]:
        """Stop the proxy server.

        Returns:
            Status dict with final stats.
        """
        if not self.is_running:
            return {"ok": False, "error": "Proxy is not running"}

        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as e:
            logger.debug(f"Error during proxy shutdown: {e}")

        self.sweeper.stop()
        self.is_running = False
        uptime = time.time() - self._start_time

        stats = self.get_stats()
        stats["ok"] = True
        stats["uptime_seconds"] = round(uptime, 1)
        stats["message"] = "Proxy stopped"
        logger.info("Proxy stopped")
        return stats

    # ── Statistics ───────────────────────────────────────────────────────

    def _count_tunnel(self, outcome: str) -> None:
        with self._lock:
            self._tunnels[outcome] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get proxy statistics."""
        with self._lock:
            tunnels = dict(self._tunnels)
        tunnels["active"] = tunnels["opened"] - tunnels["closed"]
        requests_by_state = self.dispatcher.get_counts()
        return {
            "is_running": self.is_running,
            "host": self.host if self.is_running else None,
            "port": self.port if self.is_running else None,
            "total_requests": sum(requests_by_state.values()),
            "requests": requests_by_state,
            "tunnels": tunnels,
            "cache": self.cache.get_stats(),
            "blocked_entries": len(self.blocklist),
        }


# ── Module-Level Singleton ───────────────────────────────────────────────────

_proxy_engine: Optional[ProxyEngine] = None


def get_proxy_engine(config: Optional[SieveProxyConfig] = None) -> ProxyEngine:
    """Get or create the global proxy engine singleton."""
    global _proxy_engine
    if _proxy_engine is None:
        _proxy_engine = ProxyEngine(config)
    return _proxy_engine


def reset_proxy_engine() -> None:
    """Reset the global proxy engine (for testing)."""
    global _proxy_engine
    if _proxy_engine and _proxy_engine.is_running:
        _proxy_engine.stop()
    _proxy_engine = None
