"""Jinja2 template engine used to render instance artefacts.

Built-in templates ship under ``templates/builtin``. An override directory
(``templates_dir`` in the configuration) is searched first so operators can
shadow any built-in file without patching the package.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateError as JinjaTemplateError,
)

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent / "builtin"


class TemplateError(RuntimeError):
    """Raised when a template cannot be loaded or rendered."""


class TemplateEngine:
    """Render built-in or overridden templates with strict variables."""

    def __init__(self, search_paths: list[Path]) -> None:
        """Create an engine searching *search_paths* in order."""
        self.search_paths = search_paths
        loader = ChoiceLoader([FileSystemLoader(str(path)) for path in search_paths])
        self._env = Environment(
            loader=loader,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701 - renders YAML, shell and config files
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers *override_dir* over built-ins."""
        paths: list[Path] = []
        if override_dir is not None:
            candidate = Path(override_dir).expanduser()
            if candidate.is_dir():
                paths.append(candidate)
        paths.append(BUILTIN_TEMPLATES_DIR)
        return cls(paths)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self._env.get_template(name)
            return template.render(**context)
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template '{name}': {exc}") from exc

def write_atomic(destination: Path, content: str, *, mode: int | None = None) -> None:
    """Write *content* to *destination* through a temporary sibling file."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        if mode is not None:
            os.chmod(tmp_path, mode)
        else:
            os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, destination)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


__all__ = ["BUILTIN_TEMPLATES_DIR", "TemplateEngine", "TemplateError", "write_atomic"]
