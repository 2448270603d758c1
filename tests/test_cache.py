"""
Tests for the SieveProxy response cache.
"""

import threading

import pytest

from sieveproxy.core.cache import DEFAULT_CACHE_TTL, CachedEntry, CacheSweeper, ResponseCache


# ── Helpers ──────────────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_entry(body: bytes = b"hello", status: int = 200, headers=None) -> CachedEntry:
    return CachedEntry(
        status=status,
        reason="OK",
        headers=tuple(headers or [("Content-Type", "text/plain")]),
        body=body,
        content_length=len(body),
    )


# ── CachedEntry ──────────────────────────────────────────────────────────────


class TestCachedEntry:
    def test_open_body_returns_independent_readers(self):
        entry = _make_entry(b"0123456789")
        first = entry.open_body()
        second = entry.open_body()
        assert first.read(4) == b"0123"
        assert second.read() == b"0123456789"
        assert first.read() == b"456789"

    def test_is_immutable(self):
        entry = _make_entry()
        with pytest.raises(AttributeError):
            entry.status = 500  # type: ignore[misc]

    def test_get_header_case_insensitive(self):
        entry = _make_entry(headers=[("Content-Type", "text/html"), ("X-A", "1")])
        assert entry.get_header("content-type") == "text/html"
        assert entry.get_header("missing") is None
        assert entry.get_header("missing", "x") == "x"

    def test_get_all_keeps_repeated_headers(self):
        entry = _make_entry(headers=[("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")])
        assert entry.get_all("set-cookie") == ["a=1", "b=2"]

    def test_status_line(self):
        entry = CachedEntry(status=404, reason="Not Found", protocol="HTTP/1.0")
        assert entry.status_line == "HTTP/1.0 404 Not Found"


# ── ResponseCache ────────────────────────────────────────────────────────────


class TestResponseCache:
    def setup_method(self):
        self.clock = FakeClock()
        self.cache = ResponseCache(ttl=600, clock=self.clock)

    def test_default_ttl_is_ten_minutes(self):
        assert DEFAULT_CACHE_TTL == 600
        assert ResponseCache().ttl == 600

    def test_lookup_empty(self):
        entry, found = self.cache.lookup("http://example.com/")
        assert entry is None
        assert found is False

    def test_store_then_lookup(self):
        self.cache.store("http://example.com/", _make_entry(b"body"))
        entry, found = self.cache.lookup("http://example.com/")
        assert found
        assert entry.body == b"body"
        assert entry.status == 200

    def test_store_sets_expiration(self):
        stored = self.cache.store("k", _make_entry())
        assert stored.expires_at == self.clock.now + 600

    def test_fresh_just_before_expiry(self):
        self.cache.store("k", _make_entry())
        self.clock.advance(599.9)
        _, found = self.cache.lookup("k")
        assert found

    def test_expired_exactly_at_expiry(self):
        self.cache.store("k", _make_entry())
        self.clock.advance(600)
        entry, found = self.cache.lookup("k")
        assert not found
        assert entry is None

    def test_lookup_does_not_remove_expired(self):
        self.cache.store("k", _make_entry())
        self.clock.advance(601)
        self.cache.lookup("k")
        assert "k" in self.cache
        assert len(self.cache) == 1

    def test_store_overwrites_stale_entry(self):
        self.cache.store("k", _make_entry(b"old"))
        self.clock.advance(700)
        self.cache.store("k", _make_entry(b"new"))
        entry, found = self.cache.lookup("k")
        assert found
        assert entry.body == b"new"
        assert len(self.cache) == 1

    def test_last_write_wins(self):
        self.cache.store("k", _make_entry(b"first"))
        self.cache.store("k", _make_entry(b"second"))
        entry, _ = self.cache.lookup("k")
        assert entry.body == b"second"

    def test_keys_are_not_normalised(self):
        self.cache.store("http://example.com/a", _make_entry(b"a"))
        assert not self.cache.lookup("http://example.com/a/")[1]
        assert not self.cache.lookup("http://example.com/A")[1]
        assert not self.cache.lookup("http://example.com/a?x=1")[1]

    def test_purge_expired(self):
        self.cache.store("old", _make_entry())
        self.clock.advance(500)
        self.cache.store("new", _make_entry())
        self.clock.advance(200)
        assert self.cache.purge_expired() == 1
        assert "old" not in self.cache
        assert "new" in self.cache

    def test_clear(self):
        self.cache.store("a", _make_entry())
        self.cache.store("b", _make_entry())
        self.cache.lookup("a")
        assert self.cache.clear() == 2
        assert len(self.cache) == 0
        assert self.cache.get_stats()["hits"] == 0

    def test_stats(self):
        self.cache.store("a", _make_entry())
        self.cache.lookup("a")
        self.cache.lookup("b")
        stats = self.cache.get_stats()
        assert stats["size"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["stores"] == 1
        assert stats["hit_rate"] == "50.0%"
        assert stats["ttl"] == 600

    def test_concurrent_store_and_lookup(self):
        cache = ResponseCache()
        errors = []

        def worker(n):
            try:
                for i in range(200):
                    cache.store(f"k{i % 10}", _make_entry(str(n).encode()))
                    cache.lookup(f"k{i % 10}")
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(cache) == 10
        assert cache.get_stats()["stores"] == 8 * 200


# ── CacheSweeper ─────────────────────────────────────────────────────────────


class TestCacheSweeper:
    def test_disabled_with_zero_interval(self):
        sweeper = CacheSweeper(ResponseCache(), interval=0)
        sweeper.start()
        assert not sweeper.is_running

    def test_sweeps_expired_entries(self):
        clock = FakeClock()
        cache = ResponseCache(ttl=1, clock=clock)
        cache.store("k", _make_entry())
        clock.advance(5)

        sweeper = CacheSweeper(cache, interval=0.01)
        sweeper.start()
        try:
            for _ in range(200):
                if len(cache) == 0:
                    break
                threading.Event().wait(0.01)
        finally:
            sweeper.stop()

        assert len(cache) == 0
        assert not sweeper.is_running
