"""codexbridge down — signal a running server to shut down gracefully."""

from __future__ import annotations

import contextlib
import os
import signal
import time

import click

from codexbridge.pidfile import (
    PidfileError,
    is_process_running,
    pidfile_path,
    read_pidfile,
    remove_pidfile,
)


@click.command()
@click.option(
    "--timeout",
    type=float,
    default=10.0,
    show_default=True,
    help="Seconds to wait before sending SIGKILL.",
)
def down(timeout: float) -> None:
    """Signal a running codexbridge server to shut down gracefully."""
    try:
        record = read_pidfile()
    except PidfileError as exc:
        click.echo(f"Invalid pidfile: {exc}")
        remove_pidfile()
        raise SystemExit(1) from None

    if record is None:
        click.echo(f"No running server found (no pidfile at {pidfile_path()})")
        raise SystemExit(1)

    pid = record.pid
    address = record.address

    if not is_process_running(pid):
        click.echo(
            f"Server on {address} (PID {pid}) is no longer running. "
            "Cleaning up stale pidfile."
        )
        remove_pidfile()
        raise SystemExit(0)

    click.echo(
        f"Shutting down server on {address} (PID {pid}, up {record.uptime:.0f}s)..."
    )

    try:
        os.kill(pid, signal.SIGTERM)
    except PermissionError:
        click.echo(f"Permission denied: cannot signal PID {pid}")
        raise SystemExit(1) from None
    except ProcessLookupError:
        click.echo("Process already exited.")
        remove_pidfile()
        raise SystemExit(0) from None

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        time.sleep(0.1)
        if not is_process_running(pid):
            click.echo("Server stopped.")
            remove_pidfile()
            return

    click.echo(f"Server didn't exit within {timeout:g}s. Sending SIGKILL...")
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.kill(pid, signal.SIGKILL)

    remove_pidfile()
    click.echo("Server killed.")
