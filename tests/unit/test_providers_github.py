"""Tests for devflow/providers/github_rest.py - GitHub provider implementation."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, Mock, patch

import pytest
from github import GithubException, RateLimitExceededException

from devflow.enums import IssueState, MilestoneState
from devflow.exceptions import (
    ExternalConflictError,
    ExternalNotFoundError,
    ExternalServiceError,
    ExternalTransientError,
    NotInitializedError,
)
from devflow.models.domain import RepositoryRef
from devflow.providers.github_rest import GitHubPlatformProvider, translate_github_exception
from devflow.utils.retry import RetryPolicy


def make_label(name):
    label = Mock()
    label.name = name
    return label


def make_gh_issue(number=42, title="Fix login bug in production", state="open", milestone=None):
    issue = Mock()
    issue.number = number
    issue.title = title
    issue.body = "Body"
    issue.labels = [make_label("bug")]
    issue.state = state
    issue.id = 1000 + number
    issue.node_id = f"I_{number}"
    issue.milestone = milestone
    issue.pull_request = None
    issue.html_url = f"https://github.com/DevBusinessHub/webapp/issues/{number}"
    issue.user.login = "octocat"
    issue.created_at = datetime(2026, 10, 1, tzinfo=UTC)
    issue.updated_at = datetime(2026, 10, 2, tzinfo=UTC)
    return issue


def make_gh_milestone(number=3, state="open", open_issues=0, closed_issues=12):
    milestone = Mock()
    milestone.number = number
    milestone.title = f"Sprint {number}"
    milestone.state = state
    milestone.open_issues = open_issues
    milestone.closed_issues = closed_issues
    milestone.description = None
    milestone.url = f"https://api.github.com/repos/DevBusinessHub/webapp/milestones/{number}"
    milestone.created_at = datetime(2026, 10, 1, tzinfo=UTC)
    milestone.updated_at = datetime(2026, 10, 5, tzinfo=UTC)
    milestone.due_on = None
    return milestone


def make_gh_pr(number=101, head="bugfix/DEVFLOW-42-fix-login-bug-in-production"):
    pr = Mock()
    pr.number = number
    pr.title = "Fix login bug in production (#42)"
    pr.head.ref = head
    pr.base.ref = "main"
    pr.html_url = f"https://github.com/DevBusinessHub/webapp/pull/{number}"
    pr.body = None
    pr.state = "open"
    return pr


@pytest.fixture
def provider():
    """Provider with retries that do not sleep."""
    return GitHubPlatformProvider(
        token="ghp_test_token_123",
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, jitter=False),
    )


@pytest.fixture
def gh_repo():
    repo = Mock()
    repo.html_url = "https://github.com/DevBusinessHub/webapp"
    return repo


@pytest.fixture
def connected(provider, gh_repo):
    """Provider with a mocked PyGithub client already attached."""
    client = Mock()
    client.get_repo = Mock(return_value=gh_repo)
    provider._client = client
    return provider


class TestInit:
    """Tests for provider initialization."""

    def test_init_with_defaults(self):
        """Should initialize with the public API URL and no client."""
        provider = GitHubPlatformProvider(token=" token-with-space ")

        assert provider.token == "token-with-space"
        assert provider.base_url == "https://api.github.com"
        assert provider._client is None

    def test_graphql_path_from_url(self):
        """The GraphQL endpoint path should be kept for Enterprise installs."""
        provider = GitHubPlatformProvider(
            token="t",
            base_url="https://github.example.com/api/v3/",
            graphql_url="https://github.example.com/api/graphql",
        )

        assert provider.base_url == "https://github.example.com/api/v3"
        assert provider.projects.graphql_path == "/api/graphql"
        assert provider.projects.pool.base_url == "https://github.example.com/"


class TestConnection:
    """Tests for connection management."""

    @pytest.mark.asyncio
    @patch("devflow.providers.github_rest.Github")
    async def test_connect(self, mock_github_class, provider):
        """Should create the PyGithub client and open the GraphQL pool."""
        provider.projects.connect = AsyncMock()

        await provider.connect()

        mock_github_class.assert_called_once_with("ghp_test_token_123", base_url="https://api.github.com", timeout=30)
        assert provider._client is mock_github_class.return_value
        provider.projects.connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnect(self, connected):
        """Should close the client and clear cached repositories."""
        client = connected._client
        connected.projects.close = AsyncMock()

        await connected.disconnect()

        client.close.assert_called_once()
        assert connected._client is None
        assert connected._repos == {}

    @pytest.mark.asyncio
    async def test_disconnect_when_not_connected(self, provider):
        """Should handle disconnect when not connected."""
        await provider.disconnect()

        assert provider._client is None

    @pytest.mark.asyncio
    async def test_calls_require_connect(self, provider, repo):
        with pytest.raises(NotInitializedError):
            await provider.get_issue(repo, 1)

    @pytest.mark.asyncio
    async def test_health_check(self, connected):
        connected._client.rate_limiting = (4999, 5000)

        health = await connected.health_check()

        assert health["healthy"] is True
        assert health["rate_limit_remaining"] == 4999
        assert health["rate_limit"] == 5000
        assert health["graphql"] == {"open": False, "requests_sent": 0, "last_status": None}

    @pytest.mark.asyncio
    async def test_health_check_disconnected(self, provider):
        assert (await provider.health_check())["healthy"] is False


class TestIssuesAndMilestones:
    """Tests for issue and milestone operations."""

    @pytest.mark.asyncio
    async def test_get_issue(self, connected, gh_repo, repo):
        """Should convert the PyGithub issue to the domain model."""
        milestone = Mock()
        milestone.number = 3
        gh_repo.get_issue.return_value = make_gh_issue(milestone=milestone)

        issue = await connected.get_issue(repo, 42)

        assert issue.number == 42
        assert issue.labels == ["bug"]
        assert issue.state == IssueState.OPEN
        assert issue.node_id == "I_42"
        assert issue.milestone == 3
        assert issue.repository == repo
        assert issue.author == "octocat"

    @pytest.mark.asyncio
    async def test_get_issues_skips_pull_requests(self, connected, gh_repo, repo):
        """Pull requests returned by the issues API should be dropped."""
        pr_like = make_gh_issue(number=7)
        pr_like.pull_request = Mock()
        gh_repo.get_issues.return_value = [make_gh_issue(number=1, state="closed"), pr_like]
        gh_repo.get_milestone.return_value = make_gh_milestone()

        issues = await connected.get_issues(repo, state="closed", milestone=3)

        assert [i.number for i in issues] == [1]
        assert issues[0].state == IssueState.CLOSED
        gh_repo.get_issues.assert_called_once_with(state="closed", milestone=gh_repo.get_milestone.return_value)

    @pytest.mark.asyncio
    async def test_create_issue(self, connected, gh_repo, repo):
        gh_repo.create_issue.return_value = make_gh_issue(number=90, title="Milestone Completed: Sprint 3")

        issue = await connected.create_issue(repo, "Milestone Completed: Sprint 3", "body", ["automation"])

        gh_repo.create_issue.assert_called_once_with(
            title="Milestone Completed: Sprint 3", body="body", labels=["automation"]
        )
        assert issue.number == 90

    @pytest.mark.asyncio
    async def test_add_labels(self, connected, gh_repo, repo):
        await connected.add_labels(repo, 42, ["type:bug", "priority:high"])

        gh_repo.get_issue.return_value.add_to_labels.assert_called_once_with("type:bug", "priority:high")

    @pytest.mark.asyncio
    async def test_add_no_labels_is_noop(self, connected, gh_repo, repo):
        await connected.add_labels(repo, 42, [])

        gh_repo.get_issue.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_milestones(self, connected, gh_repo, repo):
        gh_repo.get_milestones.return_value = [make_gh_milestone(1), make_gh_milestone(2, open_issues=4)]

        milestones = await connected.list_milestones(repo)

        gh_repo.get_milestones.assert_called_once_with(state="open")
        assert [m.number for m in milestones] == [1, 2]
        assert milestones[1].open_issues == 4
        assert milestones[0].description == ""

    @pytest.mark.asyncio
    async def test_update_milestone_state(self, connected, gh_repo, repo):
        """Closing should edit the milestone and return its new state."""
        gh_milestone = make_gh_milestone()

        def edit(title, state):
            gh_milestone.state = state

        gh_milestone.edit.side_effect = edit
        gh_repo.get_milestone.return_value = gh_milestone

        milestone = await connected.update_milestone_state(repo, 3, "closed")

        gh_milestone.edit.assert_called_once_with(title="Sprint 3", state="closed")
        assert milestone.state == MilestoneState.CLOSED

    @pytest.mark.asyncio
    async def test_repository_handle_cached(self, connected, repo):
        connected._client.get_repo.return_value.get_milestones.return_value = []

        await connected.list_milestones(repo)
        await connected.list_milestones(repo)

        connected._client.get_repo.assert_called_once_with("DevBusinessHub/webapp")


class TestRefsAndPullRequests:
    """Tests for branch and pull request operations."""

    @pytest.mark.asyncio
    async def test_get_branch_sha(self, connected, gh_repo, repo):
        gh_repo.get_git_ref.return_value.object.sha = "abc123"

        assert await connected.get_branch_sha(repo, "main") == "abc123"
        gh_repo.get_git_ref.assert_called_once_with("heads/main")

    @pytest.mark.asyncio
    async def test_create_ref(self, connected, gh_repo, repo):
        url = await connected.create_ref(repo, "feature/DEVFLOW-1-x", "abc123")

        gh_repo.create_git_ref.assert_called_once_with(ref="refs/heads/feature/DEVFLOW-1-x", sha="abc123")
        assert url == "https://github.com/DevBusinessHub/webapp/tree/feature/DEVFLOW-1-x"

    @pytest.mark.asyncio
    async def test_create_existing_ref_is_conflict(self, connected, gh_repo, repo):
        """A 422 'Reference already exists' should become a conflict."""
        gh_repo.create_git_ref.side_effect = GithubException(422, {"message": "Reference already exists"}, None)

        with pytest.raises(ExternalConflictError):
            await connected.create_ref(repo, "feature/DEVFLOW-1-x", "abc123")

    @pytest.mark.asyncio
    async def test_delete_ref(self, connected, gh_repo, repo):
        await connected.delete_ref(repo, "chore/sync-config")

        gh_repo.get_git_ref.assert_called_once_with("heads/chore/sync-config")
        gh_repo.get_git_ref.return_value.delete.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_delete_missing_ref_is_not_found(self, connected, gh_repo, repo):
        gh_repo.get_git_ref.side_effect = GithubException(404, {"message": "Not Found"}, None)

        with pytest.raises(ExternalNotFoundError):
            await connected.delete_ref(repo, "chore/gone")

    @pytest.mark.asyncio
    async def test_compare(self, connected, gh_repo, repo):
        changed = Mock(filename="package.json", status="modified", changes=3, additions=2, deletions=1)
        gh_repo.compare.return_value = Mock(ahead_by=2, behind_by=1, total_commits=2, files=[changed])

        comparison = await connected.compare(repo, base="main", head="feature/x")

        gh_repo.compare.assert_called_once_with("main", "feature/x")
        assert comparison.behind_by == 1
        assert comparison.files[0].filename == "package.json"

    @pytest.mark.asyncio
    async def test_create_pull_request(self, connected, gh_repo, repo):
        gh_repo.create_pull.return_value = make_gh_pr()

        pr = await connected.create_pull_request(repo, "title", "body", head="bugfix/x", base="main")

        gh_repo.create_pull.assert_called_once_with(title="title", body="body", head="bugfix/x", base="main", draft=False)
        assert pr.number == 101
        assert pr.head == "bugfix/DEVFLOW-42-fix-login-bug-in-production"
        assert pr.body == ""

    @pytest.mark.asyncio
    async def test_find_pull_requests_by_head(self, connected, gh_repo, repo):
        """Head filters should be qualified with the owner."""
        gh_repo.get_pulls.return_value = [make_gh_pr()]

        prs = await connected.find_pull_requests(repo, "bugfix/x")

        gh_repo.get_pulls.assert_called_once_with(state="open", head="DevBusinessHub:bugfix/x")
        assert len(prs) == 1

    @pytest.mark.asyncio
    async def test_close_pull_request(self, connected, gh_repo, repo):
        await connected.close_pull_request(repo, 101)

        gh_repo.get_pull.assert_called_once_with(101)
        gh_repo.get_pull.return_value.edit.assert_called_once_with(state="closed")

    @pytest.mark.asyncio
    async def test_request_auto_merge(self, connected, gh_repo, repo):
        await connected.request_auto_merge(repo, 101)

        gh_repo.get_pull.return_value.enable_automerge.assert_called_once_with(merge_method="SQUASH")

    @pytest.mark.asyncio
    async def test_trigger_workflow(self, connected, gh_repo, repo):
        gh_repo.get_workflow.return_value.create_dispatch.return_value = True

        accepted = await connected.trigger_workflow(repo, "deploy.yml", "main", {"env": "staging"})

        assert accepted is True
        gh_repo.get_workflow.assert_called_once_with("deploy.yml")
        gh_repo.get_workflow.return_value.create_dispatch.assert_called_once_with(ref="main", inputs={"env": "staging"})


class TestErrorHandling:
    """Tests for exception translation and retry."""

    @pytest.mark.parametrize(
        ("exception", "expected"),
        [
            (GithubException(404, {"message": "Not Found"}, None), ExternalNotFoundError),
            (GithubException(502, {"message": "Bad Gateway"}, None), ExternalTransientError),
            (GithubException(429, {"message": "Too many"}, None), ExternalTransientError),
            (GithubException(403, {"message": "API rate limit exceeded"}, None), ExternalTransientError),
            (GithubException(403, {"message": "Resource not accessible"}, None), ExternalServiceError),
            (GithubException(401, {"message": "Bad credentials"}, None), ExternalServiceError),
            (
                GithubException(422, {"message": "Validation Failed", "errors": ["Project already exists"]}, None),
                ExternalConflictError,
            ),
            (RateLimitExceededException(403, {"message": "slow down"}, None), ExternalTransientError),
        ],
    )
    def test_translate(self, exception, expected):
        error = translate_github_exception(exception, "action")

        assert type(error) is expected
        assert error.status_code == exception.status

    def test_retry_after_header(self):
        exception = GithubException(429, {"message": "slow down"}, {"Retry-After": "7"})

        error = translate_github_exception(exception, "action")

        assert error.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, connected, gh_repo, repo):
        """A 5xx followed by success should be retried transparently."""
        ref = Mock()
        ref.object.sha = "def456"
        gh_repo.get_git_ref.side_effect = [GithubException(503, {"message": "unavailable"}, None), ref]

        assert await connected.get_branch_sha(repo, "main") == "def456"
        assert gh_repo.get_git_ref.call_count == 2

    @pytest.mark.asyncio
    async def test_retry_exhausted(self, connected, gh_repo, repo):
        gh_repo.get_git_ref.side_effect = GithubException(503, {"message": "unavailable"}, None)

        with pytest.raises(ExternalTransientError):
            await connected.get_branch_sha(repo, "main")

        assert gh_repo.get_git_ref.call_count == 3

    @pytest.mark.asyncio
    async def test_permanent_errors_not_retried(self, connected, gh_repo, repo):
        gh_repo.get_git_ref.side_effect = GithubException(404, {"message": "Not Found"}, None)

        with pytest.raises(ExternalNotFoundError):
            await connected.get_branch_sha(repo, "missing")

        assert gh_repo.get_git_ref.call_count == 1

    @pytest.mark.asyncio
    async def test_network_errors_are_transient(self, connected, gh_repo):
        gh_repo.get_milestones.side_effect = ConnectionError("reset by peer")

        with pytest.raises(ExternalTransientError):
            await connected.list_milestones(RepositoryRef("DevBusinessHub", "webapp"))


class TestProjectsDelegation:
    """Project calls should go to the GraphQL client."""

    @pytest.mark.asyncio
    async def test_repository_node_id(self, provider, repo):
        provider.projects.get_repository_node_id = AsyncMock(return_value="R_1")

        assert await provider.get_repository_node_id(repo) == "R_1"
        provider.projects.get_repository_node_id.assert_awaited_once_with("DevBusinessHub", "webapp")

    @pytest.mark.asyncio
    async def test_view_drops_unsupported_options(self, provider):
        provider.projects.create_project_view = AsyncMock(return_value="PVTV_1")

        view_id = await provider.create_project_view("PVT_1", "Kanban Board", "BOARD_LAYOUT", group_by="Status")

        assert view_id == "PVTV_1"
        provider.projects.create_project_view.assert_awaited_once_with("PVT_1", "Kanban Board", "BOARD_LAYOUT")
