"""Projects V2 template catalog.

Templates describe the fields and views a project board is provisioned with.
The catalog is static: it is loaded once (from the packaged YAML, optionally
extended by a user file) and never mutated. ``apply`` returns a concrete copy
with the project title and description filled in for one repository.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from importlib import resources
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field

from devflow.exceptions import ConfigurationError, TemplateError

log = structlog.get_logger(__name__)

TITLE_FORMAT = "{repository} - {organization}"
DESCRIPTION_FORMAT = "{description} - Managing {repository} repository with DevFlow Orchestrator"

_PLACEHOLDER = re.compile(r"\{([a-z_]+)\}")


class FieldOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    color: str = "GRAY"


class FieldTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "TEXT"
    options: tuple[FieldOption, ...] = ()


class ViewTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    layout: str = "TABLE_LAYOUT"
    group_by: str | None = None
    sort_by: str | None = None
    filter_by: str | None = None


class TemplateSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    public: bool = False


class ProjectTemplate(BaseModel):
    """A project board template. Applied copies carry a concrete title."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    organization_type: str = "unknown"
    title: str | None = None
    settings: TemplateSettings = Field(default_factory=TemplateSettings)
    fields: tuple[FieldTemplate, ...] = ()
    views: tuple[ViewTemplate, ...] = ()
    workflows: tuple[str, ...] = ()


def project_title(repository: str, organization: str) -> str:
    """Title convention that makes project creation idempotent."""
    return substitute(TITLE_FORMAT, {"repository": repository, "organization": organization})


def substitute(text: str, context: Mapping[str, Any]) -> str:
    """Replace ``{name}`` placeholders from ``context``.

    Raises:
        TemplateError: If a placeholder has no value in the context
    """

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in context or context[key] is None:
            raise TemplateError(f"Missing template variable: {key}")
        return str(context[key])

    return _PLACEHOLDER.sub(replace, text)


def _load_yaml(text: str, source: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax in {source}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Template file {source} must be a mapping of template ids")
    return data


class ProjectTemplateCatalog:
    """Immutable catalog of project templates keyed by id."""

    def __init__(self, templates: Mapping[str, ProjectTemplate]) -> None:
        self._templates = dict(templates)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Mapping[str, Any]]) -> ProjectTemplateCatalog:
        templates: dict[str, ProjectTemplate] = {}
        for template_id, data in raw.items():
            try:
                templates[template_id] = ProjectTemplate(id=template_id, **{k: v for k, v in data.items() if k != "id"})
            except Exception as e:
                raise ConfigurationError(f"Invalid project template {template_id}: {e}") from e
        return cls(templates)

    @classmethod
    def load(cls, extra_path: str | Path | None = None) -> ProjectTemplateCatalog:
        """Packaged templates plus those in ``extra_path`` (which win on id clashes)."""
        text = resources.files("devflow.config").joinpath("data/templates.yaml").read_text(encoding="utf-8")
        raw = _load_yaml(text, "built-in templates")

        if extra_path is not None:
            path = Path(extra_path)
            if not path.exists():
                raise ConfigurationError(f"Template file not found: {path}")
            raw.update(_load_yaml(path.read_text(encoding="utf-8"), str(path)))

        catalog = cls.from_mapping(raw)
        log.info("project_templates_loaded", templates=catalog.template_ids)
        return catalog

    @property
    def template_ids(self) -> list[str]:
        return list(self._templates)

    def get(self, template_id: str) -> ProjectTemplate | None:
        return self._templates.get(template_id)

    def apply(self, template_id: str, context: Mapping[str, Any]) -> ProjectTemplate:
        """Concrete template for one repository.

        ``context`` must provide ``repository`` and ``organization``; other
        keys are available to placeholders in the description.

        Raises:
            TemplateError: If the template is unknown or a placeholder cannot be filled
        """
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateError(f"Template not found: {template_id}")

        values = {"description": template.description, "organization_type": template.organization_type, **context}
        applied = template.model_copy(
            update={
                "title": substitute(TITLE_FORMAT, values),
                "description": substitute(DESCRIPTION_FORMAT, values),
            }
        )
        log.debug(
            "template_applied",
            template=template_id,
            repository=context.get("repository"),
            fields=len(applied.fields),
            views=len(applied.views),
        )
        return applied

    def is_healthy(self) -> bool:
        return bool(self._templates)
