"""File locks that serialise mutating elitectl invocations.

Two operators running ``switch`` at the same time would otherwise race on the
deployment configuration. Mutating commands hold an exclusive ``flock`` on
``<runtime_dir>/deployment.lock`` for their whole duration; a second writer
waits up to the configured timeout and then fails fast.
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

DEPLOYMENT_LOCK = "deployment"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Metadata about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire advisory file locks under a runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Remember where lock files live and how long to wait for them."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def deployment_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the single-writer lock guarding deployment state."""
        with self.acquire(DEPLOYMENT_LOCK, timeout=timeout) as handle:
            yield handle

    @contextmanager
    def acquire(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Acquire the lock called *name*, waiting up to *timeout* seconds."""
        limit = self.default_timeout if timeout is None else timeout
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        holder = _read_holder(path)
                        detail = f" (held by pid {holder})" if holder else ""
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}{detail}. "
                            "Another elitectl command is modifying this deployment."
                        ) from None
                    time.sleep(_POLL_INTERVAL)

            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


def _read_holder(path: Path) -> int | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError):
        return None
    pid = data.get("pid") if isinstance(data, dict) else None
    return pid if isinstance(pid, int) else None


__all__ = ["DEPLOYMENT_LOCK", "LockHandle", "LockManager", "LockTimeoutError"]
