"""
Blocked host matching.

Membership is a plain substring test against the host: an entry
``example.com`` also blocks ``notexample.com.evil.org``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import FrozenSet, Iterable, Iterator, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class BlockedHostSet:
    """Immutable set of blocked host substrings."""

    def __init__(self, entries: Iterable[str] = ()):
        cleaned = (e.strip().lower() for e in entries)
        self._entries: FrozenSet[str] = frozenset(
            e for e in cleaned if e and not e.startswith("#")
        )
        self._ordered: Tuple[str, ...] = tuple(sorted(self._entries))

    def is_blocked(self, host: str) -> bool:
        """True if any blocked entry occurs anywhere in ``host``."""
        return self.matching_entry(host) is not None

    def matching_entry(self, host: str) -> Optional[str]:
        """Return the first entry contained in ``host`` (sorted order), or None."""
        if not host or not self._entries:
            return None
        host = host.lower()
        for entry in self._ordered:
            if entry in host:
                return entry
        return None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ordered)

    def __contains__(self, entry: object) -> bool:
        return isinstance(entry, str) and entry.strip().lower() in self._entries

    def __repr__(self) -> str:
        return f"BlockedHostSet({list(self._ordered)!r})"


def load_blocklist(path: Union[str, Path]) -> BlockedHostSet:
    """Read a newline-delimited blocklist file.

    A missing or unreadable file yields an empty set; it is never fatal.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            blocked = BlockedHostSet(f.read().splitlines())
    except FileNotFoundError:
        logger.info(f"Blocked hosts file not found: {path}")
        return BlockedHostSet()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Error reading blocked hosts file {path}: {e}")
        return BlockedHostSet()

    logger.info(f"Loaded {len(blocked)} blocked host entries from {path}")
    return blocked
