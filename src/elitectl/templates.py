"""Jinja2 template rendering for files elitectl writes on the operator's behalf."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateNotFound,
)


class TemplateError(RuntimeError):
    """Raised when a template cannot be located or rendered."""


@dataclass(frozen=True, slots=True)
class TemplateEngine:
    """Render built-in templates, optionally shadowed by an override directory."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            loaders.append(FileSystemLoader(str(override_dir.expanduser())))
        loaders.append(PackageLoader("elitectl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701 - renders env files, never HTML
        )
        return cls(environment=environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self.environment.get_template(name)
        except TemplateNotFound as exc:
            raise TemplateError(f"Template not found: {name}") from exc
        return template.render(**dict(context))

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination* atomically; return True when content changed."""
        rendered = self.render_to_string(name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == rendered:
            os.chmod(destination, mode)
            return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
        tmp_path = Path(tmp_name)
        try:
            os.fchmod(fd, mode)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["TemplateEngine", "TemplateError"]
