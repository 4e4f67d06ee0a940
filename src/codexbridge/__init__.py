"""codexbridge: multiplex browser sessions onto codex app-server subprocesses."""

__version__ = "0.1.0"
