"""
SieveProxy Configuration Management
===================================
Handles config loading, environment overrides, and platform-specific paths.
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from platformdirs import user_config_dir, user_data_dir

APP_NAME = "sieveproxy"

# ── paths ────────────────────────────────────────────────────────────────────

CONFIG_DIR = Path(user_config_dir(APP_NAME))
DATA_DIR = Path(user_data_dir(APP_NAME))
LOGS_DIR = DATA_DIR / "logs"
CONFIG_FILE = CONFIG_DIR / "config.yaml"


def ensure_dirs() -> None:
    """Create all required directories."""
    for d in (CONFIG_DIR, DATA_DIR, LOGS_DIR):
        d.mkdir(parents=True, exist_ok=True)


# ── default config ───────────────────────────────────────────────────────────

DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {
        "host": "127.0.0.1",
        "port": 8080,
    },
    "cache": {
        "ttl": 600,
        "cacheable_methods": ["GET"],
        "sweep_interval": 0,
    },
    "blocklist": {
        "file": "blockedURLs",
        "block_tunnels": True,
    },
    "upstream": {
        "timeout": 30.0,
        "connect_timeout": 10.0,
    },
    "logging": {
        "level": "INFO",
        "events_dir": str(LOGS_DIR),
        "blocked_file": "blocked.txt",
        "error_file": "error.txt",
    },
}


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class CacheConfig:
    ttl: float = 600
    cacheable_methods: List[str] = field(default_factory=lambda: ["GET"])
    sweep_interval: float = 0  # seconds, 0 disables the background sweep


@dataclass
class BlocklistConfig:
    file: str = "blockedURLs"
    block_tunnels: bool = True


@dataclass
class UpstreamConfig:
    timeout: Optional[float] = 30.0
    connect_timeout: Optional[float] = 10.0


@dataclass
class LogConfig:
    level: str = "INFO"
    events_dir: str = str(LOGS_DIR)
    blocked_file: str = "blocked.txt"
    error_file: str = "error.txt"


@dataclass
class SieveProxyConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    blocklist: BlocklistConfig = field(default_factory=BlocklistConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    logging: LogConfig = field(default_factory=LogConfig)


def load_config(path: Optional[Path] = None) -> SieveProxyConfig:
    """Load configuration from disk, env vars, and defaults."""
    config_file = Path(path) if path else CONFIG_FILE
    raw: Dict[str, Any] = {}

    if config_file.exists():
        with open(config_file) as f:
            raw = yaml.safe_load(f) or {}

    # Merge with defaults
    merged = _deep_merge(DEFAULT_CONFIG, raw)

    # Env-var overrides
    if os.environ.get("SIEVEPROXY_HOST"):
        merged["server"]["host"] = os.environ["SIEVEPROXY_HOST"]
    if os.environ.get("SIEVEPROXY_PORT"):
        merged["server"]["port"] = int(os.environ["SIEVEPROXY_PORT"])
    if os.environ.get("SIEVEPROXY_CACHE_TTL"):
        merged["cache"]["ttl"] = float(os.environ["SIEVEPROXY_CACHE_TTL"])
    if os.environ.get("SIEVEPROXY_BLOCKLIST"):
        merged["blocklist"]["file"] = os.environ["SIEVEPROXY_BLOCKLIST"]
    if os.environ.get("SIEVEPROXY_LOG_LEVEL"):
        merged["logging"]["level"] = os.environ["SIEVEPROXY_LOG_LEVEL"].upper()
    if os.environ.get("SIEVEPROXY_EVENTS_DIR"):
        merged["logging"]["events_dir"] = os.environ["SIEVEPROXY_EVENTS_DIR"]

    cfg = SieveProxyConfig(
        server=ServerConfig(**merged.get("server", {})),
        cache=CacheConfig(**merged.get("cache", {})),
        blocklist=BlocklistConfig(**merged.get("blocklist", {})),
        upstream=UpstreamConfig(**merged.get("upstream", {})),
        logging=LogConfig(**merged.get("logging", {})),
    )
    return cfg


def save_config(cfg: SieveProxyConfig, path: Optional[Path] = None) -> Path:
    """Persist current configuration to disk."""
    config_file = Path(path) if path else CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "server": {
            "host": cfg.server.host,
            "port": cfg.server.port,
        },
        "cache": {
            "ttl": cfg.cache.ttl,
            "cacheable_methods": cfg.cache.cacheable_methods,
            "sweep_interval": cfg.cache.sweep_interval,
        },
        "blocklist": {
            "file": cfg.blocklist.file,
            "block_tunnels": cfg.blocklist.block_tunnels,
        },
        "upstream": {
            "timeout": cfg.upstream.timeout,
            "connect_timeout": cfg.upstream.connect_timeout,
        },
        "logging": {
            "level": cfg.logging.level,
            "events_dir": cfg.logging.events_dir,
            "blocked_file": cfg.logging.blocked_file,
            "error_file": cfg.logging.error_file,
        },
    }
    with open(config_file, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    return config_file


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    result = copy.deepcopy(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result
