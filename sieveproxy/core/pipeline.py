"""
SieveProxy HTTP Dispatch Pipeline
=================================
Per-request decision flow for plain (non-tunnelled) proxy requests:

    Received → Validated → BlockCheck → CacheCheck → {ServeFromCache | Forward} → Respond

Terminal rejections are ``400`` for an unparseable target and ``403`` for a
blocked host. A cache miss forwards upstream, captures the origin response
into memory, stores it and hands the same snapshot back to the caller.

Concurrent misses for one key each fetch and store independently; the last
store wins. There is no single-flight de-duplication.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple
from urllib.parse import SplitResult, urlsplit, urlunsplit

import requests

from sieveproxy.core.blocklist import BlockedHostSet
from sieveproxy.core.cache import CachedEntry, ResponseCache
from sieveproxy.core.capture import capture_response
from sieveproxy.core.errors import (
    CaptureError,
    ClientError,
    PolicyError,
    ProxyError,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("http", "https")


# ── Enums ────────────────────────────────────────────────────────────────────

class DispatchState(str, Enum):
    """Terminal state a request reached."""
    SERVE_FROM_CACHE = "cache"
    FORWARD = "origin"
    REJECTED_BAD_REQUEST = "bad_request"
    REJECTED_BLOCKED = "blocked"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    CAPTURE_FAILED = "capture_failed"


# ── Data Models ──────────────────────────────────────────────────────────────

@dataclass
class ProxyRequest:
    """An inbound request as read off the client connection."""
    method: str
    target: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    client: str = ""


@dataclass
class Reply:
    """What the handler should write back.

    Exactly one of ``entry`` (a response to replay) or ``error`` is set.
    """
    state: DispatchState
    entry: Optional[CachedEntry] = None
    error: Optional[ProxyError] = None
    url: str = ""

    @property
    def from_cache(self) -> bool:
        return self.state == DispatchState.SERVE_FROM_CACHE

    @property
    def status(self) -> int:
        if self.entry is not None:
            return self.entry.status
        return self.error.status if self.error is not None else 500


class Upstream(Protocol):
    def forward(
        self,
        method: str,
        url: str,
        headers: Iterable[Tuple[str, str]] = (),
        body: Optional[bytes] = None,
    ) -> requests.Response: ...


class EventSink(Protocol):
    def blocked(self, url: str) -> bool: ...

    def error(self, url: str, err: object) -> bool: ...


# ── Target Parsing ───────────────────────────────────────────────────────────

def parse_target(target: str) -> SplitResult:
    """Parse an absolute-form request target.

    Raises:
        ClientError: not an absolute http(s) URL with a host.
    """
    try:
        parsed = urlsplit(target)
        _ = parsed.port  # ValueError on a malformed port
    except ValueError as e:
        raise ClientError(f"Invalid URL: {e}") from e

    if parsed.scheme not in SUPPORTED_SCHEMES:
        raise ClientError(f"Invalid URL: unsupported scheme in {target!r}")
    if not parsed.hostname:
        raise ClientError(f"Invalid URL: no host in {target!r}")
    return parsed


def cache_key(parsed: SplitResult) -> str:
    """The cache key is the URL as parsed, without further normalisation."""
    return urlunsplit(parsed)


# ── Dispatcher ───────────────────────────────────────────────────────────────

class HttpDispatcher:
    """
    Ties blocklist, cache and upstream together for one request at a time.

    Thread-safe: the only shared mutable state is the injected cache (which
    locks itself) and the outcome counters (guarded here).
    """

    def __init__(
        self,
        cache: ResponseCache,
        blocklist: BlockedHostSet,
        upstream: Upstream,
        events: Optional[EventSink] = None,
        cacheable_methods: Iterable[str] = ("GET",),
    ):
        self.cache = cache
        self.blocklist = blocklist
        self.upstream = upstream
        self.events = events
        self.cacheable_methods = frozenset(m.upper() for m in cacheable_methods)
        self._counts: Dict[str, int] = {s.value: 0 for s in DispatchState}
        self._lock = threading.Lock()

    def dispatch(self, request: ProxyRequest) -> Reply:
        reply = self._dispatch(request)
        with self._lock:
            self._counts[reply.state.value] += 1
        return reply

    def _dispatch(self, request: ProxyRequest) -> Reply:
        # Received → Validated
        try:
            parsed = parse_target(request.target)
        except ClientError as e:
            logger.info(f"Rejected malformed target from {request.client}: {request.target!r}")
            return Reply(DispatchState.REJECTED_BAD_REQUEST, error=e, url=request.target)

        url = cache_key(parsed)

        # Validated → BlockCheck
        if self.blocklist.is_blocked(parsed.hostname):
            logger.info(f"Blocked request to: {url}")
            if self.events is not None:
                self.events.blocked(url)
            return Reply(
                DispatchState.REJECTED_BLOCKED,
                error=PolicyError("Access to this URL is blocked"),
                url=url,
            )

        logger.info(f"Received request from {request.client} for {url}")

        # BlockCheck → CacheCheck
        cacheable = request.method.upper() in self.cacheable_methods
        if cacheable:
            entry, found = self.cache.lookup(url)
            if found:
                logger.info(f"Serving cached response for: {url}")
                return Reply(DispatchState.SERVE_FROM_CACHE, entry=entry, url=url)

        # CacheCheck → Forward
        try:
            resp = self.upstream.forward(
                request.method, url, request.headers, request.body or None,
            )
        except UpstreamUnavailable as e:
            logger.warning(f"Upstream unavailable for {url}: {e}")
            self._log_error(url, e)
            return Reply(DispatchState.UPSTREAM_UNAVAILABLE, error=e, url=url)

        logger.info(f"Response status: {resp.status_code} {resp.reason or ''}".rstrip())

        try:
            snapshot = capture_response(resp)
        except CaptureError as e:
            logger.warning(f"Capture failed for {url}: {e} ({len(e.partial)}B read)")
            self._log_error(url, e)
            return Reply(DispatchState.CAPTURE_FAILED, error=e, url=url)

        if cacheable:
            snapshot = self.cache.store(url, snapshot)
        return Reply(DispatchState.FORWARD, entry=snapshot, url=url)

    def _log_error(self, url: str, err: ProxyError) -> None:
        if self.events is not None:
            self.events.error(url, err)

    def get_counts(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._counts)
