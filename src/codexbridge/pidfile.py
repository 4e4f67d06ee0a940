"""The server record ``codexbridge down`` uses to find a running server."""

from __future__ import annotations

import os
import time
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

#: Record directory, relative to CWD.  ``serve`` and ``down`` must be run
#: from the same directory.
PIDFILE_DIR = Path(".codexbridge")
PIDFILE_NAME = "server.pid"

#: Largest PID the kernel hands out (Linux ``pid_max`` ceiling).
PID_MAX = 4_194_304


class PidfileError(Exception):
    """The server record exists but cannot be trusted."""


class ServerRecord(BaseModel):
    """Where a ``codexbridge serve`` process is listening."""

    pid: int = Field(gt=1, le=PID_MAX)
    host: str
    port: int = Field(ge=0, le=65535)
    started_at: float = Field(description="Unix time the server began listening.")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def uptime(self) -> float:
        return max(0.0, time.time() - self.started_at)


def pidfile_path() -> Path:
    return PIDFILE_DIR / PIDFILE_NAME


def write_pidfile(host: str, port: int) -> ServerRecord:
    """Record this process as the server listening on *host*:*port*.

    The file is written beside its final name and renamed into place, so
    a concurrent ``down`` never reads half a record.
    """
    record = ServerRecord(pid=os.getpid(), host=host, port=port, started_at=time.time())
    PIDFILE_DIR.mkdir(parents=True, exist_ok=True)
    target = pidfile_path()
    staging = target.with_suffix(".tmp")
    staging.write_text(record.model_dump_json())
    os.replace(staging, target)
    return record


def read_pidfile() -> ServerRecord | None:
    """The recorded server, or None when no record exists.

    Raises:
        PidfileError: The file is unreadable or does not describe a
            server (bad JSON, missing fields, PID out of range).
    """
    path = pidfile_path()
    try:
        raw = path.read_text()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise PidfileError(f"cannot read {path}: {exc.strerror}") from exc
    try:
        return ServerRecord.model_validate_json(raw)
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]})
        detail = ", ".join(fields) if fields else "server record"
        raise PidfileError(f"bad {detail}") from exc


def remove_pidfile() -> None:
    pidfile_path().unlink(missing_ok=True)


def is_process_running(pid: int) -> bool:
    """Whether *pid* exists, including processes owned by another user."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
