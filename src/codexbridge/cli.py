"""Root CLI group and version flag."""

import signal

import click

from codexbridge import __version__
from codexbridge.commands.down import down
from codexbridge.commands.init import init
from codexbridge.commands.serve import serve

# Keep a closed stdout pipe from killing the process mid-echo.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)


@click.group()
@click.version_option(version=__version__, prog_name="codexbridge")
def cli() -> None:
    """HTTP/SSE bridge to a codex app-server subprocess."""


cli.add_command(init)
cli.add_command(serve)
cli.add_command(down)
