"""Abstract interface to the development platform.

The orchestrator only talks to the platform through ``PlatformProvider``.
Implementations must translate their client library's errors into the
``devflow.exceptions`` hierarchy:

- "already exists" responses raise ``ExternalConflictError``
- rate limits, timeouts and 5xx responses raise ``ExternalTransientError``
- missing resources raise ``ExternalNotFoundError`` unless the method
  documents a ``None`` return instead
- anything else raises ``ExternalServiceError``
"""

from abc import ABC, abstractmethod
from typing import Any

from devflow.models.domain import (
    Comparison,
    Issue,
    Milestone,
    Project,
    ProjectField,
    PullRequest,
    RepositoryRef,
)


class PlatformProvider(ABC):
    """Abstract base class for platform providers."""

    # -- lifecycle -----------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        """Open client connections. Must be called before any other method."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release client connections."""
        pass

    @abstractmethod
    async def health_check(self) -> dict[str, Any]:
        """Report connectivity; must not raise."""
        pass

    # -- issues and milestones ----------------------------------------------

    @abstractmethod
    async def get_issue(self, repo: RepositoryRef, number: int) -> Issue:
        """Retrieve a single issue.

        Raises:
            ExternalNotFoundError: If the issue does not exist
        """
        pass

    @abstractmethod
    async def get_issues(
        self,
        repo: RepositoryRef,
        state: str = "open",
        labels: list[str] | None = None,
        milestone: int | None = None,
    ) -> list[Issue]:
        """List issues, optionally filtered by labels or milestone number."""
        pass

    @abstractmethod
    async def create_issue(
        self,
        repo: RepositoryRef,
        title: str,
        body: str,
        labels: list[str] | None = None,
    ) -> Issue:
        pass

    @abstractmethod
    async def add_labels(self, repo: RepositoryRef, number: int, labels: list[str]) -> None:
        """Add labels to an issue or pull request."""
        pass

    @abstractmethod
    async def add_comment(self, repo: RepositoryRef, number: int, body: str) -> None:
        pass

    @abstractmethod
    async def list_milestones(self, repo: RepositoryRef, state: str = "open") -> list[Milestone]:
        pass

    @abstractmethod
    async def get_milestone(self, repo: RepositoryRef, number: int) -> Milestone:
        pass

    @abstractmethod
    async def update_milestone_state(self, repo: RepositoryRef, number: int, state: str) -> Milestone:
        """Set a milestone's state (``open`` or ``closed``)."""
        pass

    # -- refs ----------------------------------------------------------------

    @abstractmethod
    async def get_branch_sha(self, repo: RepositoryRef, branch: str) -> str:
        """Head commit sha of ``branch``.

        Raises:
            ExternalNotFoundError: If the branch does not exist
        """
        pass

    @abstractmethod
    async def create_ref(self, repo: RepositoryRef, branch: str, sha: str) -> str:
        """Create ``refs/heads/<branch>`` at ``sha`` and return its URL.

        Raises:
            ExternalConflictError: If the branch already exists
        """
        pass

    @abstractmethod
    async def delete_ref(self, repo: RepositoryRef, branch: str) -> None:
        """Delete ``refs/heads/<branch>``.

        Raises:
            ExternalNotFoundError: If the branch does not exist
        """
        pass

    @abstractmethod
    async def compare(self, repo: RepositoryRef, base: str, head: str) -> Comparison:
        """Compare ``base...head``: commits ahead/behind and changed files."""
        pass

    # -- pull requests -------------------------------------------------------

    @abstractmethod
    async def create_pull_request(
        self,
        repo: RepositoryRef,
        title: str,
        body: str,
        head: str,
        base: str,
        draft: bool = False,
    ) -> PullRequest:
        pass

    @abstractmethod
    async def find_pull_requests(self, repo: RepositoryRef, head: str, state: str = "open") -> list[PullRequest]:
        """Pull requests whose head is ``head`` (a branch in ``repo``)."""
        pass

    @abstractmethod
    async def close_pull_request(self, repo: RepositoryRef, number: int) -> None:
        """Close the pull request without merging it."""
        pass

    @abstractmethod
    async def request_auto_merge(self, repo: RepositoryRef, number: int) -> None:
        """Ask the platform to merge the pull request once its checks pass."""
        pass

    # -- actions -------------------------------------------------------------

    @abstractmethod
    async def trigger_workflow(
        self,
        repo: RepositoryRef,
        workflow_id: str,
        ref: str,
        inputs: dict[str, Any] | None = None,
    ) -> bool:
        """Dispatch a CI workflow run. Returns whether the platform accepted it."""
        pass

    # -- projects ------------------------------------------------------------

    @abstractmethod
    async def get_owner_node_id(self, login: str) -> str:
        pass

    @abstractmethod
    async def get_repository_node_id(self, repo: RepositoryRef) -> str:
        pass

    @abstractmethod
    async def find_project(self, owner: str, title: str) -> Project | None:
        """Project owned by ``owner`` with exactly ``title``, or None."""
        pass

    @abstractmethod
    async def get_project(self, project_id: str) -> Project:
        pass

    @abstractmethod
    async def create_project(
        self,
        owner_id: str,
        title: str,
        description: str = "",
        readme: str = "",
        public: bool = False,
    ) -> Project:
        """Create a project board.

        Raises:
            ExternalConflictError: If a project with the title already exists
        """
        pass

    @abstractmethod
    async def create_project_field(
        self,
        project_id: str,
        name: str,
        data_type: str,
        options: list[dict[str, str]] | None = None,
    ) -> ProjectField:
        pass

    @abstractmethod
    async def create_project_view(
        self,
        project_id: str,
        name: str,
        layout: str,
        group_by: str | None = None,
        sort_by: str | None = None,
        filter_by: str | None = None,
    ) -> str:
        """Create a view and return its id."""
        pass

    @abstractmethod
    async def add_project_item(self, project_id: str, content_id: str) -> str:
        """Add an issue or pull request to the project and return the item id."""
        pass

    @abstractmethod
    async def update_project_item_field(
        self,
        project_id: str,
        item_id: str,
        field: ProjectField,
        value: str,
    ) -> None:
        """Set ``value`` on ``field`` for an item.

        For single-select fields ``value`` is the option id; otherwise it is
        the text value.
        """
        pass

    @abstractmethod
    async def link_repository_to_project(self, project_id: str, repository_id: str) -> None:
        pass
