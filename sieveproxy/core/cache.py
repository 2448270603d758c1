"""
SieveProxy Response Cache
=========================
Thread-safe, time-limited store of captured origin responses keyed by the
request URL.

Expiry is lazy: ``lookup`` treats a stale entry as a miss but leaves it in
place until the next ``store`` for the same key overwrites it. Callers that
need bounded memory can run ``purge_expired`` themselves or start a
``CacheSweeper``.
"""

from __future__ import annotations

import dataclasses
import io
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 10 * 60  # seconds

Header = Tuple[str, str]


# ── Data Models ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CachedEntry:
    """Immutable snapshot of an origin response."""
    status: int
    reason: str = ""
    protocol: str = "HTTP/1.1"
    headers: Tuple[Header, ...] = ()
    body: bytes = b""
    content_length: int = -1  # declared by the origin, -1 if absent
    expires_at: float = 0.0

    def open_body(self) -> io.BytesIO:
        """Return a new reader positioned at the start of the body."""
        return io.BytesIO(self.body)

    def get_header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """First value of ``name`` (case-insensitive)."""
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        name = name.lower()
        return [v for k, v in self.headers if k.lower() == name]

    def is_fresh(self, now: float) -> bool:
        return self.expires_at > now

    @property
    def status_line(self) -> str:
        return f"{self.protocol} {self.status} {self.reason}".rstrip()


# ── Cache ────────────────────────────────────────────────────────────────────

class ResponseCache:
    """
    Mapping from cache key to ``CachedEntry`` guarded by a single lock.

    The lock only ever covers the dict operation itself; fetching and
    buffering happen outside it.
    """

    def __init__(self, ttl: float = DEFAULT_CACHE_TTL, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CachedEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.stores = 0

    def lookup(self, key: str) -> Tuple[Optional[CachedEntry], bool]:
        """Return ``(entry, found)``; expired entries count as not found."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            found = entry is not None and entry.is_fresh(now)
            if found:
                self.hits += 1
            else:
                self.misses += 1

        if not found:
            logger.debug(f"Cache MISS: {key}")
            return None, False
        logger.debug(f"Cache HIT: {key}")
        return entry, True

    def store(self, key: str, entry: CachedEntry) -> CachedEntry:
        """Insert or replace the entry for ``key`` (last write wins)."""
        stored = dataclasses.replace(entry, expires_at=self._clock() + self.ttl)
        with self._lock:
            self._entries[key] = stored
            self.stores += 1
        logger.debug(f"Cache STORE: {key} ({len(stored.body)}B)")
        return stored

    def purge_expired(self) -> int:
        """Drop every stale entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if not e.is_fresh(now)]
            for k in stale:
                del self._entries[k]
        if stale:
            logger.debug(f"Cache PURGE: {len(stale)} expired entries")
        return len(stale)

    def clear(self) -> int:
        """Remove all entries and reset counters. Returns number cleared."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self.hits = 0
            self.misses = 0
            self.stores = 0
        logger.info(f"Cache cleared: {count} entries removed")
        return count

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._entries)
            hits, misses, stores = self.hits, self.misses, self.stores
        total = hits + misses
        return {
            "size": size,
            "ttl": self.ttl,
            "hits": hits,
            "misses": misses,
            "stores": stores,
            "hit_rate": f"{(hits / total * 100) if total else 0:.1f}%",
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        """Whether ``key`` is resident, fresh or not."""
        with self._lock:
            return key in self._entries


# ── Background Sweep ─────────────────────────────────────────────────────────

@dataclass
class CacheSweeper:
    """Daemon thread that calls ``purge_expired`` every ``interval`` seconds."""
    cache: ResponseCache
    interval: float
    _stop: threading.Event = field(default_factory=threading.Event, init=False)
    _thread: Optional[threading.Thread] = field(default=None, init=False)

    def start(self) -> None:
        if self.interval <= 0 or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="sieveproxy-cache-sweeper",
        )
        self._thread.start()
        logger.info(f"Cache sweeper running every {self.interval}s")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.cache.purge_expired()
