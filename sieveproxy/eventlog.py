"""
SieveProxy Event Log
====================
Append-only text files recording blocked and failed requests, one file per
event kind. Writing never affects the request being served: failures are
logged and swallowed.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)


class LogType(str, Enum):
    ERROR = "error"
    BLOCKED = "blocked"


DEFAULT_FILES: Dict[LogType, str] = {
    LogType.ERROR: "error.txt",
    LogType.BLOCKED: "blocked.txt",
}


def _timestamp() -> str:
    return datetime.now().isoformat(timespec="seconds")


def format_block_text(url: str) -> str:
    return f"{_timestamp()} Blocked request to: {url}\n"


def format_error_text(url: str, err: object) -> str:
    return f"{_timestamp()} Error on request to: {url}: {err}\n"


class EventLog:
    """Writes formatted event lines to per-kind files under ``directory``."""

    def __init__(
        self,
        directory: Union[str, Path] = ".",
        files: Optional[Dict[LogType, str]] = None,
    ):
        self.directory = Path(directory)
        self.files = {**DEFAULT_FILES, **(files or {})}
        self._lock = threading.Lock()

    def path_for(self, log_type: LogType) -> Path:
        return self.directory / self.files[LogType(log_type)]

    def write(self, log_type: LogType, data: str) -> bool:
        """Append ``data`` to the file for ``log_type``. Returns success."""
        try:
            path = self.path_for(log_type)
        except ValueError:
            logger.debug(f"Invalid log type: {log_type!r}")
            return False

        if not data.endswith("\n"):
            data += "\n"
        try:
            with self._lock:
                self.directory.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write(data)
        except OSError as e:
            logger.debug(f"Event log write to {path} failed: {e}")
            return False
        return True

    def blocked(self, url: str) -> bool:
        return self.write(LogType.BLOCKED, format_block_text(url))

    def error(self, url: str, err: object) -> bool:
        return self.write(LogType.ERROR, format_error_text(url, err))
