"""Tests for the structured operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from elitectl.logging import SecretRedactor, StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("up", args={"keep_bridges": False}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log_path

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("status") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("status") as op:
        op.success("done", changed=0)


def test_operation_records_steps_and_lock_wait(tmp_path: Path) -> None:
    """Steps are kept in order together with the lock wait time."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("switch", args={"version": "0.2.2"}) as op:
        op.set_lock_wait_ms(12)
        op.add_step("validate", detail="ghcr.io/x/api:0.2.2 resolvable")
        op.add_step("write-config", detail="0.2.2")
        op.success("Version switched.", changed=1)

    (record,) = _records(logger)
    assert record["operation"] == "switch"
    assert record["lock_wait_ms"] == 12
    assert [step["name"] for step in record["steps"]] == ["validate", "write-config"]  # type: ignore[union-attr]
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["changed"] == 1  # type: ignore[index]


def test_secret_keys_are_masked_and_values_redacted(tmp_path: Path) -> None:
    """Credential-looking keys are masked and known secrets never reach disk."""
    redactor = SecretRedactor(["s3cretValueAa1!"])
    logger = StructuredLogger(tmp_path / "logs", redactor=redactor)

    with logger.operation(
        "exec",
        args={"command": ["sqlcmd", "-P", "s3cretValueAa1!"], "db_password": "hunter22"},
    ) as op:
        op.add_step("exec", detail="using s3cretValueAa1!")
        op.error("failed with s3cretValueAa1!")

    raw = logger.operations_log_path.read_text(encoding="utf-8")
    assert "s3cretValueAa1!" not in raw
    assert "hunter22" not in raw
    (record,) = _records(logger)
    assert record["args"]["db_password"] == "***"  # type: ignore[index]
    assert record["args"]["command"] == ["sqlcmd", "-P", "***"]  # type: ignore[index]


def test_redactor_masks_longest_secret_first() -> None:
    """A secret containing another secret is masked as a whole."""
    redactor = SecretRedactor(["abcd", "abcdefgh"])

    assert redactor.redact("x abcdefgh y abcd") == "x *** y ***"


def test_redactor_ignores_short_values() -> None:
    """Very short values would mask unrelated text and are ignored."""
    redactor = SecretRedactor(["ab", ""])

    assert redactor.redact("abc") == "abc"


def test_unhandled_exception_records_error(tmp_path: Path) -> None:
    """Exceptions escaping the scope are recorded and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="boom"):
        with logger.operation("down"):
            raise RuntimeError("boom")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["context"] == {"type": "RuntimeError"}  # type: ignore[index]


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("reset", args={"path": Path("certs")}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "warning"  # type: ignore[index]
    assert result["warnings"] == ["note"]  # type: ignore[index]
    assert result["errors"] == ["err"]  # type: ignore[index]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}  # type: ignore[index]
