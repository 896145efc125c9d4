"""Caller-supplied cross-repository workflow definitions.

Definitions are pydantic models so they can be loaded from YAML files or
built from plain dictionaries::

    id: sync-shared-config
    repositories:
      - DevEcosystem/infra
      - owner: DevEcosystem
        name: deploy-tools
    steps:
      - name: branch
        type: create-branch
        required: true
        config: {branch_name: chore/sync-config, base_branch: main}
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from devflow.enums import StepType
from devflow.exceptions import ValidationError
from devflow.models.domain import RepositoryRef


class WorkflowStep(BaseModel):
    """One step executed against every repository of a workflow."""

    name: str = Field(..., min_length=1)
    type: StepType
    config: dict[str, Any] = Field(default_factory=dict)
    required: bool = Field(default=False, description="Abort the repository when this step fails")


class WorkflowDefinition(BaseModel):
    """Ordered steps applied to an ordered list of repositories."""

    id: str = Field(..., min_length=1)
    name: str | None = None
    repositories: list[RepositoryRef] = Field(..., min_length=1)
    steps: list[WorkflowStep] = Field(..., min_length=1)

    @field_validator("repositories", mode="before")
    @classmethod
    def parse_repository_strings(cls, value: Any) -> Any:
        """Accept ``owner/name`` strings alongside mappings."""
        if not isinstance(value, list):
            return value
        parsed = []
        for item in value:
            if isinstance(item, str):
                try:
                    ref = RepositoryRef.parse(item)
                except ValidationError as e:
                    raise ValueError(e.message) from e
                parsed.append({"owner": ref.owner, "name": ref.name})
            else:
                parsed.append(item)
        return parsed
