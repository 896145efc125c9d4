"""
Configuration system using Pydantic for type-safe settings management.

All sections have defaults, so ``DevFlowSettings()`` works with only a
``DEVFLOW_GITHUB__API_TOKEN`` environment variable. Files are loaded with
``DevFlowSettings.from_yaml``, which interpolates ``${VAR}`` and
``${VAR:-default}`` references first.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from devflow.config.rules import DEFAULT_BRANCH_STRATEGIES, BranchStrategy
from devflow.enums import BranchType
from devflow.exceptions import ConfigurationError
from devflow.utils.retry import RetryPolicy


class GitHubConfig(BaseModel):
    """Platform endpoints and credentials."""

    base_url: str = Field(default="https://api.github.com", description="REST API base URL")
    graphql_url: str = Field(default="https://api.github.com/graphql", description="GraphQL endpoint")
    api_token: SecretStr | None = Field(default=None, description="Token with repo, project and workflow scopes")
    timeout: float = Field(default=30.0, gt=0)
    max_connections: int = Field(default=10, ge=1)


class RetryConfig(BaseModel):
    """Backoff for transient platform errors."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = Field(default=0.5, ge=0.0, description="Seconds before the first retry")
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=30.0, gt=0)
    jitter: bool = True

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            backoff_factor=self.backoff_factor,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )


class RateLimitConfig(BaseModel):
    requests_per_second: float = Field(default=10.0, ge=0.0, description="0 disables client-side limiting")
    burst: int = Field(default=20, ge=1)


class ClassifierConfig(BaseModel):
    product_keyword: str = Field(default="devflow", min_length=1)


class BranchStrategyConfig(BaseModel):
    prefix: str
    base_ref: str
    protection_rules: list[str] = Field(default_factory=list)
    auto_merge: bool = False

    def to_strategy(self) -> BranchStrategy:
        return BranchStrategy(
            prefix=self.prefix,
            base_ref=self.base_ref,
            protection_rules=tuple(self.protection_rules),
            auto_merge=self.auto_merge,
        )


def _default_strategies() -> dict[BranchType, BranchStrategyConfig]:
    return {
        branch_type: BranchStrategyConfig(
            prefix=s.prefix,
            base_ref=s.base_ref,
            protection_rules=list(s.protection_rules),
            auto_merge=s.auto_merge,
        )
        for branch_type, s in DEFAULT_BRANCH_STRATEGIES.items()
    }


class WorkflowConfig(BaseModel):
    """Branch and pull request behavior."""

    issue_prefix: str = Field(default="DEVFLOW", min_length=1)
    slug_max_length: int = Field(default=50, ge=1)
    enable_auto_pr: bool = True
    enable_auto_merge: bool = True
    enable_conflict_detection: bool = True
    branch_strategies: dict[BranchType, BranchStrategyConfig] = Field(default_factory=_default_strategies)
    delay_between_repositories: float = Field(default=0.0, ge=0.0)
    rollback_on_failure: bool = False

    def strategy_table(self) -> dict[BranchType, BranchStrategy]:
        table = {t: s.to_strategy() for t, s in _default_strategies().items()}
        table.update({t: s.to_strategy() for t, s in self.branch_strategies.items()})
        return table


class ProjectsConfig(BaseModel):
    delay_between_creations: float = Field(default=0.0, ge=0.0, description="Seconds between bulk creations")
    link_repository: bool = False
    templates_path: str | None = Field(default=None, description="Extra YAML template catalog")


class MilestonesConfig(BaseModel):
    enable_auto_close: bool = True
    enable_analytics: bool = True
    retention_days: int = Field(default=90, ge=1)
    analytics_directory: str = ".devflow/analytics"
    max_concurrent_checks: int = Field(default=4, ge=1)
    report_labels: list[str] = Field(default_factory=lambda: ["automation", "analytics"])


class EventsConfig(BaseModel):
    max_queue_size: int = Field(default=1000, ge=1)


class DevFlowSettings(BaseSettings):
    """Main orchestrator settings.

    Combines all configuration sections and provides YAML loading with
    environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="DEVFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    organizations: dict[str, dict[str, Any]] = Field(
        default_factory=dict, description="Organization profile overrides, merged onto the built-ins"
    )
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    projects: ProjectsConfig = Field(default_factory=ProjectsConfig)
    milestones: MilestonesConfig = Field(default_factory=MilestonesConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    workflows_directory: str | None = Field(default=None, description="Directory of workflow definition YAML files")
    log_level: str = "INFO"

    @property
    def analytics_dir(self) -> Path:
        return Path(self.milestones.analytics_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> DevFlowSettings:
        """Load settings from YAML file with environment variable interpolation.

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports ``${VAR_NAME}`` (required) and ``${VAR_NAME:-default}``.
        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
