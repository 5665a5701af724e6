"""Template rendering helpers backed by Jinja2.

Built-in templates ship inside this package. An optional override directory
(``templates_dir`` in the configuration) is searched first so operators can
customise generated files without patching the package.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class TemplateEngine:
    """Render Jinja2 templates with strict undefined handling."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        search_path: list[str] = []
        if override_dir is not None:
            override = Path(override_dir).expanduser()
            if override.is_dir():
                search_path.append(str(override))
        search_path.append(str(BUILTIN_TEMPLATES_DIR))
        environment = Environment(
            loader=FileSystemLoader(search_path),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        return cls(environment=environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context* and return the text."""
        template = self.environment.get_template(name)
        return template.render(**dict(context))


__all__ = ["BUILTIN_TEMPLATES_DIR", "TemplateEngine"]
