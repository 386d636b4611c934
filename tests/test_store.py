"""Tests for the deployment configuration store."""
from __future__ import annotations

from pathlib import Path

import pytest

from elitectl.models import Cloud, FeatureFlag, Standalone
from elitectl.store import (
    ConfigMissingError,
    ConfigurationStore,
    parse_env_text,
    update_env_text,
)
from elitectl.versions import VersionValidationError


def _store(root: Path, environ: dict[str, str] | None = None) -> ConfigurationStore:
    return ConfigurationStore(
        env_file=root / ".env",
        template=root / ".env.template",
        previous_file=root / ".previous_version",
        environ=environ or {},
    )


def test_parse_env_text_handles_comments_quotes_and_export() -> None:
    """Comments, blanks, quotes and ``export`` prefixes are understood."""
    text = (
        "# comment\n"
        "\n"
        "TAG=0.2.1\n"
        'SYSTEM_DOMAIN="elite.example.com"\n'
        "export COMPANY_ID=acme\n"
        "HTTP_PORT=8080 # local port\n"
        "not a line\n"
    )

    assert parse_env_text(text) == {
        "TAG": "0.2.1",
        "SYSTEM_DOMAIN": "elite.example.com",
        "COMPANY_ID": "acme",
        "HTTP_PORT": "8080",
    }


def test_update_env_text_preserves_layout() -> None:
    """Updates replace lines in place and append unknown keys."""
    text = "# header\nTAG=0.2.1\nCOMPANY_ID=acme\n"

    updated = update_env_text(text, {"TAG": "0.2.2", "HTTP_PORT": "8080"})

    assert updated == "# header\nTAG=0.2.2\nCOMPANY_ID=acme\nHTTP_PORT=8080\n"


def test_ensure_creates_configuration_from_template(project_dir: Path) -> None:
    """The first load materialises the file from its template."""
    store = _store(project_dir)

    assert store.exists() is False
    assert store.ensure() is True
    assert store.ensure() is False
    assert (project_dir / ".env").read_text(encoding="utf-8") == (
        project_dir / ".env.template"
    ).read_text(encoding="utf-8")


def test_missing_template_raises(tmp_path: Path) -> None:
    """Without the file or its template there is nothing to deploy."""
    store = _store(tmp_path)

    with pytest.raises(ConfigMissingError, match=".env.template"):
        store.load()


def test_load_resolves_mode_flags_and_version(project_dir: Path) -> None:
    """Loading yields a typed configuration."""
    (project_dir / ".env").write_text(
        "TAG=0.2.1\nDOCKER_REGISTRY=ghcr.io/rediacc/elite/\nENABLE_HTTPS=true\nSHARED_SQL=no\n",
        encoding="utf-8",
    )
    store = _store(project_dir)

    deployment = store.load()

    assert deployment.current_version == "0.2.1"
    assert deployment.previous_version is None
    assert deployment.mode == Standalone()
    assert deployment.flags == frozenset({FeatureFlag.ENABLE_HTTPS})
    assert deployment.registry == "ghcr.io/rediacc/elite"


def test_instance_name_selects_cloud_mode(project_dir: Path) -> None:
    """A non-empty instance identifier means cloud mode."""
    (project_dir / ".env").write_text("TAG=0.2.1\nINSTANCE_NAME=tenant-7\n", encoding="utf-8")

    deployment = _store(project_dir).load()

    assert deployment.mode == Cloud(instance_id="tenant-7")
    assert deployment.mode.project_name == "tenant-7"


def test_missing_version_defaults_to_latest_under_ci(project_dir: Path) -> None:
    """Under CI an unset version falls back to the floating tag."""
    (project_dir / ".env").write_text("COMPANY_ID=acme\n", encoding="utf-8")

    store = _store(project_dir, environ={"CI": "true"})

    assert store.load().current_version == "latest"
    assert store.current_version() == "latest"


def test_missing_version_rejected_outside_ci(project_dir: Path) -> None:
    """Outside CI an unset version is an error, not a silent ``latest``."""
    (project_dir / ".env").write_text("COMPANY_ID=acme\n", encoding="utf-8")

    store = _store(project_dir)

    with pytest.raises(VersionValidationError, match="TAG is not set"):
        store.load()
    with pytest.raises(VersionValidationError, match="TAG is not set"):
        store.current_version()


@pytest.mark.parametrize(
    ("text", "environ", "message"),
    [
        ("TAG=bad tag!\n", {}, "Invalid version format"),
        ("TAG=latest\n", {}, "only allowed in CI"),
        ("TAG=0.2.1\n", {"TAG": "not/a/tag"}, "Invalid version format"),
    ],
)
def test_load_rejects_unacceptable_version(
    project_dir: Path, text: str, environ: dict[str, str], message: str
) -> None:
    """Hand-edited or exported tags must still satisfy the tag rule."""
    (project_dir / ".env").write_text(text, encoding="utf-8")

    with pytest.raises(VersionValidationError, match=message):
        _store(project_dir, environ=environ).load()


def test_process_environment_overrides_file(project_dir: Path) -> None:
    """Exported deployment keys win over the file for this invocation only."""
    store = _store(project_dir, environ={"TAG": "0.9.0", "UNRELATED": "x", "COMPANY_ID": " "})

    deployment = store.load()

    assert deployment.current_version == "0.9.0"
    assert deployment.company_id == "acme"
    assert "UNRELATED" not in deployment.values
    assert store.current_version() == "0.2.1"


def test_set_version_rewrites_only_the_tag(project_dir: Path) -> None:
    """Switching the version keeps the rest of the file intact."""
    store = _store(project_dir)
    store.ensure()

    store.set_version("0.2.2")

    text = (project_dir / ".env").read_text(encoding="utf-8")
    assert "TAG=0.2.2\n" in text
    assert "# Deployment configuration\n" in text
    assert "COMPANY_ID=acme\n" in text
    assert store.current_version() == "0.2.2"


def test_previous_version_pointer(project_dir: Path) -> None:
    """Only one rollback target is remembered."""
    store = _store(project_dir)

    assert store.get_previous() is None
    store.save_previous("0.2.0")
    store.save_previous("0.2.1")
    assert store.get_previous() == "0.2.1"

    store.restore_previous(None)
    assert store.get_previous() is None
    assert not (project_dir / ".previous_version").exists()


def test_destroy_removes_configuration_files(project_dir: Path) -> None:
    """Reset removes the materialised file and the pointer, never the template."""
    store = _store(project_dir)
    store.ensure()
    store.save_previous("0.2.0")

    removed = store.destroy()

    assert removed == [project_dir / ".env", project_dir / ".previous_version"]
    assert (project_dir / ".env.template").exists()
    assert store.destroy() == []
