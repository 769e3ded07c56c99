"""Jinja2 template rendering."""

from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import jinja2

from fleetconf.errors import RenderError


class TemplateRenderer:
    """Renders templates from search paths or inline sources.

    Undefined variables are fatal in strict mode. Rendered output never
    contains carriage returns.

    Example:
        renderer = TemplateRenderer([Path("templates")])
        text = renderer.render_template("nginx.conf.j2", {"port": 80})
    """

    def __init__(
        self,
        search_paths: Sequence[Path] = (),
        strict: bool = True,
        templates: Optional[Mapping[str, str]] = None,
    ) -> None:
        loaders: list[jinja2.BaseLoader] = []
        if templates:
            loaders.append(jinja2.DictLoader(dict(templates)))
        if search_paths:
            loaders.append(jinja2.FileSystemLoader([str(p) for p in search_paths]))

        self.env = jinja2.Environment(
            loader=jinja2.ChoiceLoader(loaders),
            undefined=jinja2.StrictUndefined if strict else jinja2.Undefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def render(self, source: str, variables: Mapping[str, Any]) -> str:
        """Render an inline template source."""
        try:
            template = self.env.from_string(source)
        except jinja2.TemplateSyntaxError as e:
            raise RenderError(e.message or str(e), location=_location(e)) from e
        return self._render(template, variables)

    def render_template(self, name: str, variables: Mapping[str, Any]) -> str:
        """Render a template resolved by name through the loaders."""
        try:
            template = self.env.get_template(name)
        except jinja2.TemplateNotFound as e:
            raise RenderError(f"Template not found: {name}", location=name) from e
        except jinja2.TemplateSyntaxError as e:
            raise RenderError(e.message or str(e), location=_location(e)) from e
        return self._render(template, variables)

    @staticmethod
    def _render(template: jinja2.Template, variables: Mapping[str, Any]) -> str:
        try:
            text = template.render(**variables)
        except jinja2.TemplateError as e:
            raise RenderError(str(e), location=template.name) from e
        except (TypeError, ValueError, ArithmeticError) as e:
            raise RenderError(f"{type(e).__name__}: {e}", location=template.name) from e
        return text.replace("\r", "")


def _location(error: jinja2.TemplateSyntaxError) -> str:
    return f"{error.name or error.filename or '<string>'}:{error.lineno}"
