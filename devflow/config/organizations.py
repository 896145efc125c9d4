"""Organization configuration store.

Maps an organization id to its settings: project template, security level and
automation flags. Profiles ship as packaged YAML and can be overridden or
extended from the main configuration file. Configurations are immutable once
loaded; lookups for unknown organizations return a default profile instead of
failing.
"""

from __future__ import annotations

from collections.abc import Mapping
from importlib import resources
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field

from devflow.exceptions import ConfigurationError

log = structlog.get_logger(__name__)

DEFAULT_TEMPLATE_ID = "basic"


class AutomationFlags(BaseModel):
    """Which automation steps are enabled for an organization."""

    model_config = ConfigDict(frozen=True)

    issue_labeling: bool = True
    project_routing: bool = False
    auto_branching: bool = False
    auto_pull_requests: bool = True
    deployment_triggers: bool = False


class OrganizationConfig(BaseModel):
    """Settings for one organization."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: str = "unknown"
    description: str = ""
    template_id: str = DEFAULT_TEMPLATE_ID
    security_level: str = "medium"
    approval_required: bool = False
    quality_gates: tuple[str, ...] = ()
    automation_flags: AutomationFlags = Field(default_factory=AutomationFlags)
    notification_rules: tuple[str, ...] = ()


def default_organization_config(organization_id: str) -> OrganizationConfig:
    """Profile used for organizations that have no explicit configuration."""
    return OrganizationConfig(
        id=organization_id,
        name=organization_id,
        type="unknown",
        description="Default configuration for unknown organization",
        template_id=DEFAULT_TEMPLATE_ID,
        security_level="medium",
        quality_gates=("basic-test",),
    )


def load_builtin_organizations() -> dict[str, dict[str, Any]]:
    """Read the packaged organization profiles."""
    text = resources.files("devflow.config").joinpath("data/organizations.yaml").read_text(encoding="utf-8")
    return yaml.safe_load(text) or {}


class OrganizationConfigStore:
    """Read-only lookup of organization configurations."""

    def __init__(self, configs: Mapping[str, OrganizationConfig]) -> None:
        self._configs = dict(configs)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Mapping[str, Any]]) -> OrganizationConfigStore:
        """Build a store from ``{org_id: {field: value}}`` data.

        Raises:
            ConfigurationError: If any profile fails validation
        """
        configs: dict[str, OrganizationConfig] = {}
        for org_id, data in raw.items():
            try:
                configs[org_id] = OrganizationConfig(id=org_id, **{k: v for k, v in data.items() if k != "id"})
            except Exception as e:
                raise ConfigurationError(f"Invalid configuration for organization {org_id}: {e}") from e
        return cls(configs)

    @classmethod
    def with_builtin_defaults(
        cls, overrides: Mapping[str, Mapping[str, Any]] | None = None
    ) -> OrganizationConfigStore:
        """Packaged profiles, with ``overrides`` merged on top field by field."""
        raw = load_builtin_organizations()
        for org_id, data in (overrides or {}).items():
            merged = dict(raw.get(org_id, {}))
            merged.update(data)
            raw[org_id] = merged
        store = cls.from_mapping(raw)
        log.info("organization_configs_loaded", organizations=sorted(store.organization_ids))
        return store

    @property
    def organization_ids(self) -> list[str]:
        return list(self._configs)

    def get(self, organization_id: str) -> OrganizationConfig:
        """Configuration for ``organization_id``, or the default profile."""
        config = self._configs.get(organization_id)
        if config is None:
            log.debug("organization_config_defaulted", organization=organization_id)
            return default_organization_config(organization_id)
        return config

    def is_known(self, organization_id: str) -> bool:
        return organization_id in self._configs

    def is_healthy(self) -> bool:
        return bool(self._configs)
