"""Jinja2 template rendering for generated stone configuration files.

Built-in templates live next to this module; an override directory configured
through ``templates_dir`` may shadow any of them by relative name.
"""
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
    TemplateError as JinjaTemplateError,
)


class TemplateError(RuntimeError):
    """Raised when a template cannot be rendered."""


@dataclass(slots=True)
class TemplateEngine:
    """Render built-in templates, letting an override directory shadow them."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found under *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("stonectl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**context)
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template {template_name}: {exc}") from exc

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination* atomically; return ``True`` when content changed."""
        content = self.render_to_string(template_name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=f".{destination.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["TemplateEngine", "TemplateError"]
