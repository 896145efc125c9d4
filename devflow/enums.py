"""Closed enumerations shared across DevFlow components."""

from enum import Enum


class IssueType(str, Enum):
    """Classified type of an issue.

    The first eight come from the generic pattern table; the last four are
    only produced for issues that mention the product keyword.
    """

    BUG = "bug"
    FEATURE = "feature"
    DOCUMENTATION = "documentation"
    SECURITY = "security"
    PERFORMANCE = "performance"
    REFACTOR = "refactor"
    TEST = "test"
    DEVOPS = "devops"
    ARCHITECTURE = "architecture"
    INTEGRATION = "integration"
    CONFIGURATION = "configuration"
    UI = "ui"

    def __str__(self) -> str:
        return self.value


class Priority(str, Enum):
    """Issue priority, ordered from least to most urgent by ``rank``."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    def __str__(self) -> str:
        return self.value


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}


def max_priority(*priorities: Priority) -> Priority:
    """Return the most urgent of the given priorities."""
    return max(priorities, key=lambda p: p.rank)


class Complexity(str, Enum):
    """Estimated implementation complexity."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"

    def __str__(self) -> str:
        return self.value


class BranchType(str, Enum):
    """Branch strategy selected for an issue."""

    FEATURE = "feature"
    BUGFIX = "bugfix"
    HOTFIX = "hotfix"
    RELEASE = "release"

    def __str__(self) -> str:
        return self.value


class WorkflowState(str, Enum):
    """Per-issue branch/PR workflow state.

    NO_BRANCH -> BRANCH_CREATED -> PR_CREATED -> (AUTO_MERGE | MANUAL_REVIEW)
    """

    NO_BRANCH = "no_branch"
    BRANCH_CREATED = "branch_created"
    PR_CREATED = "pr_created"
    AUTO_MERGE = "auto_merge"
    MANUAL_REVIEW = "manual_review"


class StepType(str, Enum):
    """Step kinds supported by cross-repository workflows."""

    CREATE_BRANCH = "create-branch"
    CREATE_PR = "create-pr"
    RUN_ACTION = "run-action"


class RepositoryStatus(str, Enum):
    """Outcome of a cross-repository workflow for one repository."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RiskLevel(str, Enum):
    """Conflict risk level for a changed file."""

    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MilestoneState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class IssueState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
