"""codexbridge init — scaffold a codexbridge.yaml in the current directory."""

from __future__ import annotations

from pathlib import Path

import click

from codexbridge.config.parser import CODEX_PATH_ENV, DEFAULT_CONFIG_NAME

ENV_EXAMPLE_FILENAME = ".env.example"

TEMPLATE_YAML = """\
# codexbridge configuration
# Every key is optional; the values below are the defaults.

agent:
  # Executable that speaks JSON-RPC on stdio (CODEX_PATH overrides this)
  codex_path: codex
  args: [app-server]
  # Seconds to wait for each JSON-RPC response
  request_timeout: 30
  # Extra environment for the subprocess
  # env:
  #   RUST_LOG: info
  client_info:
    name: codex-web
    title: Codex Web UI
    version: 0.1.0

sessions:
  idle_timeout: 1800     # evict sessions idle this many seconds
  sweep_interval: 60     # how often to look for idle sessions
  ready_timeout: 30      # how long requests wait for a starting session
  queue_size: 1000       # per-stream backlog before a slow client is dropped

server:
  host: 127.0.0.1
  port: 3001
  heartbeat_interval: 15 # SSE keepalive comment interval
"""

TEMPLATE_ENV_EXAMPLE = f"""\
# Environment for codexbridge.
# Copy this file to .env; it is loaded from the config file's directory.

# Path to the codex executable (overrides agent.codex_path).
{CODEX_PATH_ENV}=
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help=f"Overwrite existing {DEFAULT_CONFIG_NAME} if it exists.",
)
def init(force: bool) -> None:
    """Scaffold a codexbridge config in the current directory."""
    cwd = Path.cwd()
    config_path = cwd / DEFAULT_CONFIG_NAME
    env_example_path = cwd / ENV_EXAMPLE_FILENAME

    if config_path.exists() and not force:
        raise click.ClickException(
            f"{DEFAULT_CONFIG_NAME} already exists. Use --force to overwrite."
        )

    try:
        config_path.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot write {DEFAULT_CONFIG_NAME}: {exc}") from exc
    click.echo(f"  Created {DEFAULT_CONFIG_NAME}")

    if not env_example_path.exists() or force:
        try:
            env_example_path.write_text(TEMPLATE_ENV_EXAMPLE, encoding="utf-8")
        except OSError as exc:
            raise click.ClickException(
                f"Cannot write {ENV_EXAMPLE_FILENAME}: {exc}"
            ) from exc
        click.echo(f"  Created {ENV_EXAMPLE_FILENAME}")
    else:
        click.echo(f"  Skipped {ENV_EXAMPLE_FILENAME} (already exists)")

    click.echo()
    click.echo("Next steps:")
    click.echo(f"  1. Point agent.codex_path (or {CODEX_PATH_ENV}) at your codex binary")
    click.echo("  2. Run `codexbridge serve` and open the web UI")
