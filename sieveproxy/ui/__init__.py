"""
SieveProxy Terminal UI
======================
Rich console helpers shared by the command line: themed messages, the
startup banner and status/config tables.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from sieveproxy import __version__

# ── Theme ────────────────────────────────────────────────────────────────────

SIEVEPROXY_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "title": "bold bright_green",
    "subtitle": "dim",
    "blocked": "bold red",
    "cached": "bold cyan",
    "dim": "dim white",
})

console = Console(theme=SIEVEPROXY_THEME)

BANNER_SMALL = (
    f"[bold bright_green]⚡ SieveProxy[/] [dim]v{__version__}[/] "
    "[dim]|[/] [bold bright_cyan]Filtering · Caching · Tunnelling[/]"
)


def show_banner() -> None:
    console.print(BANNER_SMALL)


def setup_logging(level: str = "INFO") -> None:
    """Send all log records through a rich handler on the shared console."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


# ── Messages ─────────────────────────────────────────────────────────────────

def print_info(text: str) -> None:
    console.print(f"[info]ℹ {text}[/]")


def print_success(text: str) -> None:
    console.print(f"[success]✅ {text}[/]")


def print_warning(text: str) -> None:
    console.print(f"[warning]⚠️  {text}[/]")


def print_error(text: str) -> None:
    console.print(f"[error]❌ {text}[/]")


# ── Status & Config ──────────────────────────────────────────────────────────

def show_server_status(result: Dict[str, Any], blocked_entries: int, ttl: float) -> None:
    """Display the listening address and the main knobs."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Listening", f"{result['host']}:{result['port']}")
    table.add_row("Blocked hosts", str(blocked_entries))
    table.add_row("Cache TTL", f"{ttl:g}s")
    table.add_row("Try", result["curl_example"])

    console.print(Panel(table, title="[title]SieveProxy[/]", border_style="green"))


def show_config(config: Dict[str, Dict[str, Any]]) -> None:
    """Display the effective configuration, one row per setting."""
    table = Table(title="Configuration", show_lines=False)
    table.add_column("Section", style="bold")
    table.add_column("Key")
    table.add_column("Value", style="dim")

    for section, values in config.items():
        for key, value in values.items():
            table.add_row(section, key, str(value))

    console.print(table)


def show_stats(stats: Dict[str, Any]) -> None:
    """Display request, cache and tunnel counters."""
    table = Table(title="Proxy Statistics", show_lines=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value")

    for state, count in stats["requests"].items():
        table.add_row(f"requests.{state}", str(count))
    for key, value in stats["cache"].items():
        table.add_row(f"cache.{key}", str(value))
    for key, value in stats["tunnels"].items():
        table.add_row(f"tunnels.{key}", str(value))

    console.print(table)
