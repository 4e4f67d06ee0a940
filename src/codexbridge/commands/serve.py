"""codexbridge serve — run the HTTP bridge until interrupted."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from pathlib import Path

import click
from aiohttp import web

from codexbridge.config import BridgeConfig, ConfigError, load_config
from codexbridge.pidfile import write_pidfile
from codexbridge.server import REGISTRY_KEY, create_app
from codexbridge.shutdown import ShutdownManager

logger = logging.getLogger(__name__)


@click.command()
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option("--host", type=str, default=None, help="Bind address (overrides config).")
@click.option("--port", type=int, default=None, help="Bind port (overrides config).")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def serve(
    config_file: str | None,
    host: str | None,
    port: int | None,
    verbose: bool,
) -> None:
    """Start the HTTP bridge to the codex app-server."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    overrides = {k: v for k, v in (("host", host), ("port", port)) if v is not None}
    if overrides:
        config = config.model_copy(
            update={"server": config.server.model_copy(update=overrides)}
        )

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(_run_server(config))


async def _run_server(config: BridgeConfig) -> None:
    """Serve until SIGINT/SIGTERM, then shut down gracefully."""
    started_at = time.monotonic()
    app = create_app(config)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.server.host, config.server.port)
    try:
        await site.start()
    except OSError as exc:
        await runner.cleanup()
        click.echo(f"Error: cannot listen on {config.server.host}:{config.server.port}: {exc}", err=True)
        raise SystemExit(1) from exc

    click.echo(f"\n  codexbridge -- http://{config.server.host}:{config.server.port}/api/codex")
    click.echo(f"  Agent: {' '.join(config.agent.command)}")
    click.echo()

    write_pidfile(config.server.host, config.server.port)

    shutdown_event = asyncio.Event()
    reason = "user_shutdown"
    loop = asyncio.get_running_loop()

    def _signal_shutdown(sig_name: str) -> None:
        click.echo(f"\nReceived {sig_name}", err=True)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_shutdown, sig.name)

    try:
        await shutdown_event.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        shutdown_mgr = ShutdownManager(
            registry=app[REGISTRY_KEY],
            shutdown_event=shutdown_event,
            runner=runner,
            started_at=started_at,
        )
        await shutdown_mgr.execute(reason)
