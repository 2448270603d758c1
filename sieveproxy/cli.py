"""
SieveProxy CLI
==============
Command-line entry point: run the proxy, test hosts against the
blocklist, and inspect the effective configuration.
"""

from __future__ import annotations

import time
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from sieveproxy import __version__
from sieveproxy.config import CONFIG_FILE, SieveProxyConfig, load_config
from sieveproxy.core.blocklist import load_blocklist
from sieveproxy.core.proxy import ProxyEngine
from sieveproxy.ui import (
    console,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
    show_banner,
    show_config,
    show_server_status,
    show_stats,
)

load_dotenv()


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              type=click.Path(dir_okay=False, path_type=Path),
              help=f"Config file (default: {CONFIG_FILE})")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.version_option(__version__, prog_name="sieveproxy")
@click.pass_context
def main(ctx, config_path: Optional[Path], verbose: bool):
    """SieveProxy: filtering, caching forward proxy"""
    ctx.ensure_object(dict)

    config = load_config(config_path)
    if verbose:
        config.logging.level = "DEBUG"

    setup_logging(config.logging.level)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path or CONFIG_FILE


@main.command()
@click.option("--host", default=None, help="Interface to bind")
@click.option("--port", "-p", default=None, type=int, help="Port to listen on")
@click.option("--blocklist", "-b", default=None, help="Blocked hosts file")
@click.option("--ttl", default=None, type=float, help="Cache lifetime in seconds")
@click.pass_context
def serve(ctx, host, port, blocklist, ttl):
    """Run the proxy in the foreground until Ctrl+C."""
    config: SieveProxyConfig = ctx.obj["config"]

    if host:
        config.server.host = host
    if port is not None:
        config.server.port = port
    if blocklist:
        config.blocklist.file = blocklist
    if ttl is not None:
        config.cache.ttl = ttl

    show_banner()
    engine = ProxyEngine(config)
    result = engine.start()
    if not result["ok"]:
        print_error(result["error"])
        raise SystemExit(1)

    show_server_status(result, len(engine.blocklist), engine.cache.ttl)
    print_info("Press Ctrl+C to stop")

    try:
        while engine.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        console.print()

    stats = engine.stop()
    print_success(
        f"Proxy stopped after {stats['uptime_seconds']}s, "
        f"{stats['total_requests']} requests served."
    )
    show_stats(stats)


@main.command()
@click.argument("host")
@click.option("--blocklist", "-b", default=None, help="Blocked hosts file")
@click.pass_context
def check(ctx, host, blocklist):
    """Report whether HOST would be blocked."""
    config: SieveProxyConfig = ctx.obj["config"]
    blocked = load_blocklist(blocklist or config.blocklist.file)

    entry = blocked.matching_entry(host)
    if entry is None:
        print_success(f"{host} is allowed")
    else:
        print_warning(f"{host} is blocked (matches '{entry}')")
        ctx.exit(1)


@main.command()
@click.pass_context
def config(ctx):
    """Show the effective configuration."""
    cfg: SieveProxyConfig = ctx.obj["config"]
    show_config(asdict(cfg))
    print_info(f"Config file: {ctx.obj['config_path']}")


if __name__ == "__main__":
    main()
