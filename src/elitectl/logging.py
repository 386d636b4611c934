"""Structured operation logging for elitectl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects ordered steps and a final result, then appends a single JSON record
to ``operations.jsonl``. Logging is best-effort: when the log directory cannot
be created or a write fails, the logger disables itself instead of failing the
command that is being logged.

Secret handling: argument and context keys that look like credentials are
replaced with ``***`` and any registered secret value is redacted from free
text before it reaches disk.
"""
from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

MASK = "***"
_SECRET_KEY_MARKERS = ("password", "token", "secret", "connection_string")


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_KEY_MARKERS)


class SecretRedactor:
    """Replace known secret values inside arbitrary text."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        """Seed the redactor with already known secret values."""
        self._secrets: set[str] = set()
        for value in secrets:
            self.add(value)

    def add(self, value: str | None) -> None:
        """Register *value* for redaction (short values are ignored)."""
        if value and len(value) >= 4:
            self._secrets.add(value)

    def redact(self, text: str) -> str:
        """Return *text* with every registered secret replaced by ``***``."""
        # Longest first so a secret containing another is masked whole.
        for value in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(value, MASK)
        return text


def _sanitize(value: object, redactor: SecretRedactor) -> object:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redactor.redact(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {
            str(key): (MASK if _is_secret_key(str(key)) else _sanitize(item, redactor))
            for key, item in value.items()
        }
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_sanitize(item, redactor) for item in value]
    return redactor.redact(str(value))


@dataclass
class OperationScope:
    """Mutable record of a single CLI operation."""

    logger: StructuredLogger
    name: str
    args: dict[str, object]
    target: dict[str, object]
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None
    _started_monotonic: float = field(default_factory=time.monotonic)

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an ordered step within the operation."""
        step: dict[str, object] = {
            "name": name,
            "status": status,
            "at": datetime.now(UTC).isoformat(),
        }
        if detail is not None:
            step["detail"] = self.logger.redactor.redact(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, warnings=warnings, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        redactor = self.logger.redactor
        result: dict[str, object] = {
            "status": status,
            "message": redactor.redact(message),
            "changed": changed,
            "warnings": [redactor.redact(item) for item in warnings or ()],
            "errors": [redactor.redact(item) for item in errors or ()],
            "context": _sanitize(dict(context or {}), redactor),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        redactor = self.logger.redactor
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)
        return {
            "id": self.operation_id,
            "operation": self.name,
            "started_at": self.started_at.isoformat(),
            "duration_ms": duration_ms,
            "pid": os.getpid(),
            "args": _sanitize(self.args, redactor),
            "target": _sanitize(self.target, redactor),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": list(self.steps),
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to a JSON lines file."""

    def __init__(self, log_dir: Path, *, redactor: SecretRedactor | None = None) -> None:
        """Prepare the log directory, disabling logging if it is unusable."""
        self._log_dir = log_dir.expanduser()
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self.redactor = redactor if redactor is not None else SecretRedactor()
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope, writing its record when the scope exits."""
        scope = OperationScope(
            logger=self,
            name=name,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, context={"type": type(exc).__name__})
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["MASK", "OperationScope", "SecretRedactor", "StructuredLogger"]
