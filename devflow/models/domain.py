"""
Domain models for the DevFlow orchestrator.

This module contains the dataclasses passed between components: normalized
platform records (issues, milestones, pull requests, projects) converted from
provider-specific formats, and the structured results every operation returns.

Example:
    Creating an issue snapshot::

        issue = Issue(
            number=42,
            title="Fix login bug in production",
            body="Customers are unable to sign in since the last deploy",
            labels=["bug"],
            repository=RepositoryRef("DevBusinessHub", "webapp"),
        )
"""

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from devflow.enums import (
    BranchType,
    Complexity,
    IssueState,
    IssueType,
    MilestoneState,
    Priority,
    RepositoryStatus,
    RiskLevel,
    StepType,
    WorkflowState,
)
from devflow.exceptions import ValidationError


@dataclass(frozen=True)
class RepositoryRef:
    """Owner/name pair identifying a repository on the platform."""

    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> "RepositoryRef":
        """Parse an ``owner/name`` string.

        Raises:
            ValidationError: If the value is not of the form owner/name
        """
        owner, sep, name = (value or "").strip().partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValidationError(f"Invalid repository reference: {value!r} (expected owner/name)")
        return cls(owner=owner, name=name)

    def __str__(self) -> str:
        return self.full_name


@dataclass
class Issue:
    """Read-only snapshot of a platform issue."""

    number: int
    """Issue number within the repository."""

    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    state: IssueState = IssueState.OPEN
    id: int | None = None
    node_id: str | None = None
    """Global node id; required to add the issue to a Projects V2 board."""

    milestone: int | None = None
    """Number of the milestone the issue belongs to, if any."""

    repository: RepositoryRef | None = None
    url: str = ""
    author: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Dependency:
    """Dependency extracted from issue text.

    ``kind`` is ``"issue"`` for ``#<number>`` references and ``"blocking"`` for
    a blocking phrase without a numeric target.
    """

    kind: str
    reference: str | None = None
    target: int | None = None
    blocking: bool = False
    repository: str = "current"


@dataclass(frozen=True)
class Classification:
    """Result of classifying an issue. Never persisted."""

    type: IssueType
    priority: Priority
    complexity: Complexity
    estimated_hours: int
    dependencies: tuple[Dependency, ...] = ()
    labels: tuple[str, ...] = ()
    confidence: float = 0.0
    organization: str | None = None


@dataclass
class IssueContext:
    """Context an issue event arrives with."""

    repository: RepositoryRef | None = None
    organization: str | None = None
    create_branch: bool | None = None
    """Force (True) or suppress (False) branch/PR creation; None defers to the organization flags."""

    route_to_project: bool | None = None


# =============================================================================
# Projects
# =============================================================================


@dataclass(frozen=True)
class ProjectFieldOption:
    id: str
    name: str


@dataclass
class ProjectField:
    """Custom field on a Projects V2 board."""

    id: str
    name: str
    data_type: str = "TEXT"
    options: list[ProjectFieldOption] = field(default_factory=list)

    def find_option(self, name: str) -> ProjectFieldOption | None:
        """Case-insensitive option lookup."""
        wanted = name.lower()
        return next((o for o in self.options if o.name.lower() == wanted), None)


@dataclass
class Project:
    """Projects V2 board."""

    id: str
    title: str
    number: int | None = None
    url: str = ""
    fields: list[ProjectField] = field(default_factory=list)
    views: list[str] = field(default_factory=list)

    def find_field(self, name: str) -> ProjectField | None:
        """Case-insensitive field lookup by name."""
        wanted = name.lower()
        return next((f for f in self.fields if f.name.lower() == wanted), None)

    def has_view(self, name: str) -> bool:
        wanted = name.lower()
        return any(v.lower() == wanted for v in self.views)


@dataclass
class ProjectItem:
    """An issue placed on a project board; one per (project, issue)."""

    item_id: str
    project_id: str
    issue_number: int
    field_values: dict[str, str] = field(default_factory=dict)


@dataclass
class ProjectResult:
    """Outcome of provisioning a project for one repository."""

    repository: RepositoryRef
    project: Project
    organization: str
    template_id: str
    reused: bool = False
    created_fields: list[str] = field(default_factory=list)
    created_views: list[str] = field(default_factory=list)
    linked: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class BulkSummary:
    successful: int
    failed: int
    total: int
    success_rate: float


@dataclass
class BulkProjectResult:
    """Per-repository outcomes of a bulk project creation."""

    results: list[ProjectResult]
    errors: list[dict[str, str]]
    summary: BulkSummary


@dataclass
class Routing:
    """Where an issue landed on its repository's project board.

    ``project_id`` is None when the repository has no project; that is a
    normal outcome, not an error.
    """

    project_id: str | None = None
    item_id: str | None = None
    status: str | None = None
    priority: str | None = None
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# Branches, pull requests and conflicts
# =============================================================================


@dataclass(frozen=True)
class BranchPlan:
    """Branch to create for an issue, derived deterministically from it."""

    name: str
    type: BranchType
    base_ref: str
    protection_rules: tuple[str, ...] = ()
    auto_merge: bool = False


@dataclass
class BranchResult:
    name: str
    base_ref: str
    sha: str | None = None
    url: str | None = None
    exists: bool = False
    """True when the branch was already present; not an error."""


@dataclass
class PullRequest:
    """Platform pull request."""

    number: int
    title: str
    head: str
    base: str
    url: str = ""
    body: str = ""
    state: str = "open"


@dataclass
class PullRequestResult:
    pull_request: PullRequest
    linked_issue: int | None = None
    auto_merge: bool = False
    existing: bool = False
    """True when an open pull request for the branch was reused."""

    warnings: list[str] = field(default_factory=list)


@dataclass
class IssueWorkflowResult:
    """Branch/PR state machine outcome for one issue."""

    plan: BranchPlan
    state: WorkflowState
    branch: BranchResult | None = None
    pull_request: PullRequestResult | None = None
    conflicts: "ConflictReport | None" = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ChangedFile:
    filename: str
    status: str
    changes: int = 0
    additions: int = 0
    deletions: int = 0


@dataclass
class Comparison:
    """Result of comparing two refs (base...head)."""

    ahead_by: int
    behind_by: int
    total_commits: int
    files: list[ChangedFile] = field(default_factory=list)


@dataclass
class FileConflict:
    file: str
    risk_level: RiskLevel
    factors: list[str] = field(default_factory=list)
    changes: int = 0


@dataclass
class ConflictReport:
    """Advisory conflict-risk report; never blocks."""

    branch: str
    target_branch: str
    has_conflicts: bool
    conflicts: list[FileConflict] = field(default_factory=list)
    ahead_by: int = 0
    behind_by: int = 0
    total_commits: int = 0


# =============================================================================
# Cross-repository workflows
# =============================================================================


@dataclass
class StepResult:
    name: str
    type: StepType
    success: bool
    required: bool = False
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class RepositoryWorkflowResult:
    repository: str
    status: RepositoryStatus = RepositoryStatus.PENDING
    steps: list[StepResult] = field(default_factory=list)
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status == RepositoryStatus.COMPLETED


@dataclass
class CrossRepoResult:
    """Outcome of a workflow run across several repositories."""

    workflow_id: str
    started_at: datetime
    repositories: dict[str, RepositoryWorkflowResult] = field(default_factory=dict)
    success: bool = True
    aborted: bool = False
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    created_artifacts: list[str] = field(default_factory=list)
    rollback: list[dict[str, Any]] = field(default_factory=list)


# =============================================================================
# Milestones
# =============================================================================


@dataclass
class Milestone:
    number: int
    title: str
    state: MilestoneState = MilestoneState.OPEN
    open_issues: int = 0
    closed_issues: int = 0
    description: str = ""
    url: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    due_on: datetime | None = None


@dataclass(frozen=True)
class CompletionMetrics:
    total_issues: int
    open_issues: int
    closed_issues: int
    completion_percentage: float
    is_completed: bool


@dataclass
class ClosureInfo:
    completed_at: datetime
    duration_days: int
    total_issues_completed: int
    average_velocity: float
    report_url: str | None = None
    report_number: int | None = None


@dataclass
class MilestoneCheckResult:
    """One completion check; also the analytics record that gets persisted."""

    repository: str
    milestone: Milestone
    metrics: CompletionMetrics
    auto_close_eligible: bool
    auto_closed: bool = False
    closure: ClosureInfo | None = None
    checked_at: datetime | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class MilestoneBatchSummary:
    total_checked: int
    auto_closed: int
    eligible: int


@dataclass
class MilestoneBatchResult:
    results: list[MilestoneCheckResult]
    errors: list[dict[str, Any]]
    summary: MilestoneBatchSummary


# =============================================================================
# Orchestrator
# =============================================================================


@dataclass
class IssueProcessingResult:
    """Everything that happened while processing one issue event."""

    issue_number: int
    repository: str
    classification: Classification
    routing: Routing | None = None
    workflow: IssueWorkflowResult | None = None
    warnings: list[str] = field(default_factory=list)


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes to JSON-compatible values."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
