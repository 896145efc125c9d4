"""GitHub provider implementation using PyGithub and the GraphQL projects client."""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import structlog
from github import Github, GithubException, RateLimitExceededException  # type: ignore[import-not-found]
from github.Issue import Issue as GHIssue  # type: ignore[import-not-found]
from github.Milestone import Milestone as GHMilestone  # type: ignore[import-not-found]
from github.PullRequest import PullRequest as GHPullRequest  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from devflow.enums import IssueState, MilestoneState
from devflow.exceptions import (
    ExternalConflictError,
    ExternalNotFoundError,
    ExternalServiceError,
    ExternalTransientError,
    NotInitializedError,
)
from devflow.models.domain import (
    ChangedFile,
    Comparison,
    Issue,
    Milestone,
    Project,
    ProjectField,
    PullRequest,
    RepositoryRef,
)
from devflow.providers.base import PlatformProvider
from devflow.providers.github_graphql import GitHubProjectsClient
from devflow.utils.rate_limiter import TokenBucket
from devflow.utils.retry import RetryPolicy, call_with_retry

log = structlog.get_logger(__name__)

T = TypeVar("T")


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous function in a thread pool.

    This prevents blocking the event loop when calling synchronous
    PyGithub methods.
    """
    return await asyncio.to_thread(func)


def _error_message(e: GithubException) -> str:
    data = e.data
    if isinstance(data, dict):
        parts = [str(data.get("message", ""))]
        for err in data.get("errors") or []:
            if isinstance(err, dict) and err.get("message"):
                parts.append(str(err["message"]))
            elif isinstance(err, str):
                parts.append(err)
        return "; ".join(p for p in parts if p)
    return str(data or e)


def _retry_after(e: GithubException) -> float | None:
    headers = getattr(e, "headers", None) or {}
    headers = {k.lower(): v for k, v in headers.items()}
    if "retry-after" in headers:
        try:
            return float(headers["retry-after"])
        except ValueError:
            try:
                return max(0.0, (parsedate_to_datetime(headers["retry-after"]) - datetime.now(UTC)).total_seconds())
            except (TypeError, ValueError):
                return None
    if "x-ratelimit-reset" in headers:
        try:
            return max(0.0, float(headers["x-ratelimit-reset"]) - datetime.now(UTC).timestamp())
        except ValueError:
            return None
    return None


def translate_github_exception(e: GithubException, action: str) -> ExternalServiceError:
    """Map a PyGithub exception onto the DevFlow hierarchy."""
    status = e.status
    message = _error_message(e)
    text = str(e.data) if e.data else None
    lowered = message.lower()

    if isinstance(e, RateLimitExceededException) or status == 429 or (status == 403 and "rate limit" in lowered):
        return ExternalTransientError(
            f"{action}: rate limit exceeded",
            status_code=status,
            response_text=text,
            retry_after=_retry_after(e),
        )
    if status is not None and status >= 500:
        return ExternalTransientError(f"{action}: {message}", status_code=status, response_text=text)
    if status == 422 and "already exist" in lowered:
        return ExternalConflictError(f"{action}: {message}", status_code=status, response_text=text)
    if status == 404:
        return ExternalNotFoundError(f"{action}: {message}", status_code=status, response_text=text)
    return ExternalServiceError(f"{action}: {message}", status_code=status, response_text=text)


class GitHubPlatformProvider(PlatformProvider):
    """GitHub implementation: PyGithub for REST, GraphQL for Projects V2.

    Every call passes the shared token bucket and is retried on transient
    errors according to ``retry_policy``.
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        graphql_url: str = "https://api.github.com/graphql",
        timeout: float = 30.0,
        max_connections: int = 10,
        retry_policy: RetryPolicy | None = None,
        limiter: TokenBucket | None = None,
    ):
        """Initialize GitHub provider.

        Args:
            token: GitHub personal access token or App token
            base_url: GitHub API base URL (for GitHub Enterprise)
            graphql_url: GraphQL endpoint
            timeout: Request timeout in seconds
            max_connections: GraphQL connection pool size
            retry_policy: Backoff for transient failures
            limiter: Shared rate limiter
        """
        self.token = token.strip() if token else token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.limiter = limiter or TokenBucket(rate=0)
        self.projects = GitHubProjectsClient(
            token=self.token,
            graphql_url=graphql_url,
            timeout=timeout,
            max_connections=max_connections,
            limiter=self.limiter,
            retry_policy=self.retry_policy,
        )
        self._client: Github | None = None
        self._repos: dict[str, GHRepository] = {}

    # -- plumbing ------------------------------------------------------------

    def _require_client(self) -> Github:
        if self._client is None:
            raise NotInitializedError("GitHubPlatformProvider", "GitHub provider is not connected; call connect() first")
        return self._client

    def _repo(self, ref: RepositoryRef) -> GHRepository:
        """Cached repository handle; call from inside a worker thread."""
        client = self._require_client()
        gh_repo = self._repos.get(ref.full_name)
        if gh_repo is None:
            gh_repo = client.get_repo(ref.full_name)
            self._repos[ref.full_name] = gh_repo
        return gh_repo

    async def _call(self, action: str, func: Callable[[], T]) -> T:
        """Run a PyGithub call with rate limiting, error translation and retry."""
        self._require_client()

        async def github_call() -> T:
            await self.limiter.acquire()
            try:
                return await _run_sync(func)
            except GithubException as e:
                error = translate_github_exception(e, action)
                if not isinstance(error, (ExternalConflictError, ExternalNotFoundError, ExternalTransientError)):
                    log.error("github_call_failed", action=action, status=e.status, error=error.message)
                raise error from e
            except OSError as e:
                raise ExternalTransientError(f"{action}: {e}") from e

        github_call.__name__ = action
        return await call_with_retry(self.retry_policy, github_call)

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Initialize GitHub client and the GraphQL pool."""
        if self._client is None:
            self._client = Github(self.token, base_url=self.base_url, timeout=int(self.timeout))
        await self.projects.connect()
        log.info("github_connected", base_url=self.base_url)

    async def disconnect(self) -> None:
        """Close GitHub client."""
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repos.clear()
        await self.projects.close()

    async def health_check(self) -> dict[str, Any]:
        if self._client is None:
            return {"healthy": False, "connected": False}
        client = self._client
        try:
            remaining, limit = await _run_sync(lambda: client.rate_limiting)
        except (GithubException, OSError) as e:
            log.warning("github_health_check_failed", error=str(e))
            return {"healthy": False, "connected": True, "error": str(e)}
        return {
            "healthy": True,
            "connected": True,
            "rate_limit_remaining": remaining,
            "rate_limit": limit,
            "graphql": self.projects.pool.health(),
        }

    # -- issues and milestones ----------------------------------------------

    async def get_issue(self, repo: RepositoryRef, number: int) -> Issue:
        gh_issue = await self._call("get_issue", lambda: self._repo(repo).get_issue(number))
        return self._convert_issue(gh_issue, repo)

    async def get_issues(
        self,
        repo: RepositoryRef,
        state: str = "open",
        labels: list[str] | None = None,
        milestone: int | None = None,
    ) -> list[Issue]:
        def _list() -> list[GHIssue]:
            gh_repo = self._repo(repo)
            kwargs: dict[str, Any] = {"state": state}
            if labels:
                kwargs["labels"] = labels
            if milestone is not None:
                kwargs["milestone"] = gh_repo.get_milestone(milestone)
            # Pull requests are issues too on this API; keep real issues only
            return [i for i in gh_repo.get_issues(**kwargs) if i.pull_request is None]

        gh_issues = await self._call("get_issues", _list)
        return [self._convert_issue(i, repo) for i in gh_issues]

    async def create_issue(
        self,
        repo: RepositoryRef,
        title: str,
        body: str,
        labels: list[str] | None = None,
    ) -> Issue:
        gh_issue = await self._call(
            "create_issue",
            lambda: self._repo(repo).create_issue(title=title, body=body, labels=labels or []),
        )
        log.info("issue_created", repository=repo.full_name, issue=gh_issue.number)
        return self._convert_issue(gh_issue, repo)

    async def add_labels(self, repo: RepositoryRef, number: int, labels: list[str]) -> None:
        if not labels:
            return
        await self._call("add_labels", lambda: self._repo(repo).get_issue(number).add_to_labels(*labels))

    async def add_comment(self, repo: RepositoryRef, number: int, body: str) -> None:
        await self._call("add_comment", lambda: self._repo(repo).get_issue(number).create_comment(body))

    async def list_milestones(self, repo: RepositoryRef, state: str = "open") -> list[Milestone]:
        gh_milestones = await self._call("list_milestones", lambda: list(self._repo(repo).get_milestones(state=state)))
        return [self._convert_milestone(m) for m in gh_milestones]

    async def get_milestone(self, repo: RepositoryRef, number: int) -> Milestone:
        gh_milestone = await self._call("get_milestone", lambda: self._repo(repo).get_milestone(number))
        return self._convert_milestone(gh_milestone)

    async def update_milestone_state(self, repo: RepositoryRef, number: int, state: str) -> Milestone:
        def _update() -> GHMilestone:
            gh_milestone = self._repo(repo).get_milestone(number)
            gh_milestone.edit(title=gh_milestone.title, state=state)
            return gh_milestone

        gh_milestone = await self._call("update_milestone_state", _update)
        log.info("milestone_state_updated", repository=repo.full_name, milestone=number, state=state)
        return self._convert_milestone(gh_milestone)

    # -- refs ----------------------------------------------------------------

    async def get_branch_sha(self, repo: RepositoryRef, branch: str) -> str:
        return await self._call(
            "get_branch_sha",
            lambda: self._repo(repo).get_git_ref(f"heads/{branch}").object.sha,
        )

    async def create_ref(self, repo: RepositoryRef, branch: str, sha: str) -> str:
        def _create() -> str:
            gh_repo = self._repo(repo)
            gh_repo.create_git_ref(ref=f"refs/heads/{branch}", sha=sha)
            return f"{gh_repo.html_url}/tree/{branch}"

        url = await self._call("create_ref", _create)
        log.info("branch_ref_created", repository=repo.full_name, branch=branch, sha=sha)
        return url

    async def delete_ref(self, repo: RepositoryRef, branch: str) -> None:
        await self._call("delete_ref", lambda: self._repo(repo).get_git_ref(f"heads/{branch}").delete())
        log.info("branch_ref_deleted", repository=repo.full_name, branch=branch)

    async def compare(self, repo: RepositoryRef, base: str, head: str) -> Comparison:
        def _compare() -> Comparison:
            result = self._repo(repo).compare(base, head)
            return Comparison(
                ahead_by=result.ahead_by,
                behind_by=result.behind_by,
                total_commits=result.total_commits,
                files=[
                    ChangedFile(
                        filename=f.filename,
                        status=f.status,
                        changes=f.changes,
                        additions=f.additions,
                        deletions=f.deletions,
                    )
                    for f in result.files
                ],
            )

        return await self._call("compare", _compare)

    # -- pull requests -------------------------------------------------------

    async def create_pull_request(
        self,
        repo: RepositoryRef,
        title: str,
        body: str,
        head: str,
        base: str,
        draft: bool = False,
    ) -> PullRequest:
        gh_pr = await self._call(
            "create_pull_request",
            lambda: self._repo(repo).create_pull(title=title, body=body, head=head, base=base, draft=draft),
        )
        log.info("pull_request_created", repository=repo.full_name, pr=gh_pr.number, head=head, base=base)
        return self._convert_pull_request(gh_pr)

    async def find_pull_requests(self, repo: RepositoryRef, head: str, state: str = "open") -> list[PullRequest]:
        gh_prs = await self._call(
            "find_pull_requests",
            lambda: list(self._repo(repo).get_pulls(state=state, head=f"{repo.owner}:{head}")),
        )
        return [self._convert_pull_request(pr) for pr in gh_prs]

    async def close_pull_request(self, repo: RepositoryRef, number: int) -> None:
        await self._call("close_pull_request", lambda: self._repo(repo).get_pull(number).edit(state="closed"))
        log.info("pull_request_closed", repository=repo.full_name, pr=number)

    async def request_auto_merge(self, repo: RepositoryRef, number: int) -> None:
        await self._call(
            "request_auto_merge",
            lambda: self._repo(repo).get_pull(number).enable_automerge(merge_method="SQUASH"),
        )

    # -- actions -------------------------------------------------------------

    async def trigger_workflow(
        self,
        repo: RepositoryRef,
        workflow_id: str,
        ref: str,
        inputs: dict[str, Any] | None = None,
    ) -> bool:
        accepted = await self._call(
            "trigger_workflow",
            lambda: self._repo(repo).get_workflow(workflow_id).create_dispatch(ref=ref, inputs=inputs or {}),
        )
        log.info("workflow_dispatched", repository=repo.full_name, workflow=workflow_id, ref=ref, accepted=accepted)
        return bool(accepted)

    # -- projects ------------------------------------------------------------

    async def get_owner_node_id(self, login: str) -> str:
        return await self.projects.get_owner_node_id(login)

    async def get_repository_node_id(self, repo: RepositoryRef) -> str:
        return await self.projects.get_repository_node_id(repo.owner, repo.name)

    async def find_project(self, owner: str, title: str) -> Project | None:
        return await self.projects.find_project(owner, title)

    async def get_project(self, project_id: str) -> Project:
        return await self.projects.get_project(project_id)

    async def create_project(
        self,
        owner_id: str,
        title: str,
        description: str = "",
        readme: str = "",
        public: bool = False,
    ) -> Project:
        return await self.projects.create_project(owner_id, title, description, readme, public)

    async def create_project_field(
        self,
        project_id: str,
        name: str,
        data_type: str,
        options: list[dict[str, str]] | None = None,
    ) -> ProjectField:
        return await self.projects.create_project_field(project_id, name, data_type, options)

    async def create_project_view(
        self,
        project_id: str,
        name: str,
        layout: str,
        group_by: str | None = None,
        sort_by: str | None = None,
        filter_by: str | None = None,
    ) -> str:
        # Grouping, sorting and filters are not settable through the API; the
        # template keeps them for the readme and manual setup.
        return await self.projects.create_project_view(project_id, name, layout)

    async def add_project_item(self, project_id: str, content_id: str) -> str:
        return await self.projects.add_project_item(project_id, content_id)

    async def update_project_item_field(
        self,
        project_id: str,
        item_id: str,
        field: ProjectField,
        value: str,
    ) -> None:
        await self.projects.update_project_item_field(project_id, item_id, field, value)

    async def link_repository_to_project(self, project_id: str, repository_id: str) -> None:
        await self.projects.link_repository_to_project(project_id, repository_id)

    # -- conversion ----------------------------------------------------------

    def _convert_issue(self, gh_issue: GHIssue, repo: RepositoryRef) -> Issue:
        """Convert PyGithub Issue to domain Issue."""
        return Issue(
            number=gh_issue.number,
            title=gh_issue.title,
            body=gh_issue.body or "",
            labels=[label.name for label in gh_issue.labels],
            state=IssueState.OPEN if gh_issue.state == "open" else IssueState.CLOSED,
            id=gh_issue.id,
            node_id=gh_issue.node_id,
            milestone=gh_issue.milestone.number if gh_issue.milestone else None,
            repository=repo,
            url=gh_issue.html_url,
            author=gh_issue.user.login if gh_issue.user else "",
            created_at=gh_issue.created_at,
            updated_at=gh_issue.updated_at,
        )

    def _convert_milestone(self, gh_milestone: GHMilestone) -> Milestone:
        return Milestone(
            number=gh_milestone.number,
            title=gh_milestone.title,
            state=MilestoneState.OPEN if gh_milestone.state == "open" else MilestoneState.CLOSED,
            open_issues=gh_milestone.open_issues,
            closed_issues=gh_milestone.closed_issues,
            description=gh_milestone.description or "",
            url=gh_milestone.url,
            created_at=gh_milestone.created_at,
            updated_at=gh_milestone.updated_at,
            due_on=gh_milestone.due_on,
        )

    def _convert_pull_request(self, gh_pr: GHPullRequest) -> PullRequest:
        """Convert PyGithub PullRequest to domain PullRequest."""
        return PullRequest(
            number=gh_pr.number,
            title=gh_pr.title,
            head=gh_pr.head.ref,
            base=gh_pr.base.ref,
            url=gh_pr.html_url,
            body=gh_pr.body or "",
            state=gh_pr.state,
        )
