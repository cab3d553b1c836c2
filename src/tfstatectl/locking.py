"""Host-local locks that serialise mutating runs per environment.

The Terraform backend enforces its own lease on remote state. These file
locks only stop two ``tfstatectl`` processes on the same runner from
interleaving snapshot, import and verification steps for one environment.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import StateLockHeld

_POLL_INTERVAL = 0.05


class LockTimeoutError(StateLockHeld):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire advisory ``flock`` locks under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, environment: str) -> Path:
        """Return the lock file used for *environment*."""
        return self.runtime_dir / "locks" / f"{environment}.lock"

    @contextmanager
    def environment_lock(
        self,
        environment: str,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the lock for *environment* for the duration of the block."""
        path = self.lock_path(environment)
        path.parent.mkdir(parents=True, exist_ok=True)
        effective_timeout = self.default_timeout if timeout is None else timeout

        start = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= effective_timeout:
                        holder = _read_holder(path)
                        raise LockTimeoutError(
                            f"Timed out after {effective_timeout:.1f}s waiting for the "
                            f"'{environment}' lock ({path}); held by {holder}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)

            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, path, environment)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path, environment: str) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "environment": environment,
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


def _read_holder(path: Path) -> str:
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError):
        return "an unknown process"
    pid = data.get("pid") if isinstance(data, dict) else None
    return f"pid {pid}" if pid else "an unknown process"


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
