"""Sandboxed Jinja2 rendering for the markdown DevFlow posts to the platform.

Pull request bodies, issue back-link comments, milestone completion reports
and project readmes are rendered from packaged templates. The environment is
sandboxed and uses ``StrictUndefined`` so a missing variable fails loudly
instead of producing a half-empty post.

Example:
    >>> engine = TemplateRenderer()
    >>> body = engine.render("pr_body.md.j2", {"issue": issue, "plan": plan})
"""

from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined, TemplateError as JinjaTemplateError, TemplateNotFound
from jinja2.sandbox import SandboxedEnvironment

from devflow.exceptions import TemplateError

TEMPLATE_DIR = Path(__file__).parent / "templates"


class TemplateRenderer:
    """Render packaged (or user supplied) markdown templates.

    Attributes:
        template_dir: Resolved path to the template directory.
        env: The SandboxedEnvironment instance.
    """

    def __init__(self, template_dir: Path | None = None) -> None:
        self.template_dir = (template_dir or TEMPLATE_DIR).resolve()
        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def render(self, template_name: str, context: dict[str, Any]) -> str:
        """Render ``template_name`` with ``context``.

        Raises:
            TemplateError: If the template is missing or rendering fails
        """
        try:
            template = self.env.get_template(template_name)
        except TemplateNotFound as e:
            raise TemplateError(f"Template not found: {template_name}") from e
        try:
            return template.render(**context)
        except JinjaTemplateError as e:
            raise TemplateError(f"Failed to render {template_name}: {e}") from e
