"""Tests for devflow/engine/projects.py - project provisioning and issue routing."""

from unittest.mock import AsyncMock, call

import pytest

from devflow.config.organizations import OrganizationConfigStore
from devflow.engine.events import EventType
from devflow.engine.projects import ProjectAutomationService, ProjectCreationOptions, initial_status
from devflow.enums import Complexity, IssueType, Priority
from devflow.exceptions import (
    ExternalConflictError,
    ExternalServiceError,
    TemplateError,
    ValidationError,
)
from devflow.models.domain import (
    Classification,
    IssueContext,
    Project,
    ProjectField,
    ProjectFieldOption,
    RepositoryRef,
)


def make_field(project_id, name, data_type, options=None):
    return ProjectField(
        id=f"F_{name.replace(' ', '_')}",
        name=name,
        data_type=data_type,
        options=[ProjectFieldOption(id=f"O_{o['name']}", name=o["name"]) for o in options or []],
    )


def board(fields=None, views=None):
    return Project(
        id="PVT_1",
        title="webapp - DevBusinessHub",
        number=7,
        url="https://github.com/orgs/DevBusinessHub/projects/7",
        fields=fields or [],
        views=views or [],
    )


def classification(issue_type=IssueType.BUG, priority=Priority.HIGH):
    return Classification(
        type=issue_type,
        priority=priority,
        complexity=Complexity.MODERATE,
        estimated_hours=6,
    )


@pytest.fixture
def service(mock_provider, config_store, catalog, event_bus):
    """Service over a provider that creates whatever it is asked for."""
    mock_provider.find_project.return_value = None
    mock_provider.get_owner_node_id.return_value = "O_owner"
    mock_provider.create_project.side_effect = lambda owner_id, title, **kwargs: Project(id="PVT_1", title=title)
    mock_provider.create_project_field.side_effect = make_field
    mock_provider.create_project_view.return_value = "PVTV_1"
    mock_provider.get_repository_node_id.return_value = "R_webapp"
    return ProjectAutomationService(mock_provider, config_store, catalog, event_bus)


def published_types(bus):
    return [c.args[0].type for c in bus.publish.await_args_list]


class TestInitialStatus:
    """Tests for the board column of a new item."""

    @pytest.mark.parametrize(
        ("issue_type", "priority", "status"),
        [
            (IssueType.BUG, Priority.MEDIUM, "In Progress"),
            (IssueType.FEATURE, Priority.CRITICAL, "In Progress"),
            (IssueType.FEATURE, Priority.HIGH, "Backlog"),
            (IssueType.DOCUMENTATION, Priority.LOW, "Backlog"),
        ],
    )
    def test_initial_status(self, issue_type, priority, status):
        """Critical or bug issues start in progress, everything else in the backlog."""
        assert initial_status(classification(issue_type, priority)) == status


class TestCreateProject:
    """Tests for provisioning a single repository."""

    @pytest.mark.asyncio
    async def test_creates_project_from_org_template(self, service, mock_provider, repo, catalog):
        """Should create the board with the organization's template fields and views."""
        result = await service.create_project_for_repository(repo)

        template = catalog.get("production-ready")
        assert result.template_id == "production-ready"
        assert result.reused is False
        assert result.project.title == "webapp - DevBusinessHub"
        assert result.created_fields == [f.name for f in template.fields]
        assert result.created_views == [v.name for v in template.views]
        assert result.warnings == []

        owner_id, title = mock_provider.create_project.await_args.args
        assert owner_id == "O_owner"
        assert title == "webapp - DevBusinessHub"
        kwargs = mock_provider.create_project.await_args.kwargs
        assert kwargs["description"].endswith("Managing webapp repository with DevFlow Orchestrator")
        assert "# webapp - DevBusinessHub" in kwargs["readme"]
        assert kwargs["public"] is False

    @pytest.mark.asyncio
    async def test_status_field_options_passed(self, service, mock_provider, repo):
        """Single-select fields should be created with their options and colors."""
        await service.create_project_for_repository(repo)

        first = mock_provider.create_project_field.await_args_list[0]
        assert first.args[1] == "Status"
        assert first.args[2] == "SINGLE_SELECT"
        assert {"name": "Backlog", "color": "GRAY"} in first.args[3]

    @pytest.mark.asyncio
    async def test_reuses_existing_project(self, service, mock_provider, repo, catalog):
        """An existing board with the conventional title should be reused and completed."""
        existing = board(
            fields=[make_field("PVT_1", "Status", "SINGLE_SELECT")],
            views=["Kanban Board"],
        )
        mock_provider.find_project.return_value = existing

        result = await service.create_project_for_repository(repo)

        assert result.reused is True
        mock_provider.create_project.assert_not_awaited()
        assert "Status" not in result.created_fields
        assert "Kanban Board" not in result.created_views
        assert len(result.created_fields) == len(catalog.get("production-ready").fields) - 1

    @pytest.mark.asyncio
    async def test_conflict_on_create_reuses(self, service, mock_provider, repo):
        """An 'already exists' conflict should resolve to the existing board."""
        existing = board()
        mock_provider.find_project.side_effect = [None, existing]
        mock_provider.create_project.side_effect = ExternalConflictError("Project already exists")

        result = await service.create_project_for_repository(repo)

        assert result.reused is True
        assert result.project is existing

    @pytest.mark.asyncio
    async def test_field_failure_is_warning(self, service, mock_provider, repo):
        """A failing field should be skipped and recorded, not raised."""

        def create_field(project_id, name, data_type, options=None):
            if name == "Sprint":
                raise ExternalServiceError("Unsupported field type")
            return make_field(project_id, name, data_type, options)

        mock_provider.create_project_field.side_effect = create_field

        result = await service.create_project_for_repository(repo)

        assert "Sprint" not in result.created_fields
        assert any("Sprint" in w for w in result.warnings)
        assert "Due Date" in result.created_fields

    @pytest.mark.asyncio
    async def test_view_failure_is_warning(self, service, mock_provider, repo):
        """A failing view should be skipped and recorded."""
        mock_provider.create_project_view.side_effect = ExternalServiceError("nope")

        result = await service.create_project_for_repository(repo)

        assert result.created_views == []
        assert len(result.warnings) == 4

    @pytest.mark.asyncio
    async def test_links_repository_when_requested(self, service, mock_provider, repo):
        """Linking should use the repository node id."""
        result = await service.create_project_for_repository(repo, ProjectCreationOptions(link_repository=True))

        assert result.linked is True
        mock_provider.link_repository_to_project.assert_awaited_once_with("PVT_1", "R_webapp")

    @pytest.mark.asyncio
    async def test_link_failure_is_warning(self, service, mock_provider, repo):
        """A failed link should not fail provisioning."""
        mock_provider.link_repository_to_project.side_effect = ExternalServiceError("forbidden")

        result = await service.create_project_for_repository(repo, ProjectCreationOptions(link_repository=True))

        assert result.linked is False
        assert any("not linked" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_unknown_org_uses_basic_template(self, service, mock_provider):
        """Unknown organizations should fall back to the basic template."""
        result = await service.create_project_for_repository(RepositoryRef("someone", "tool"))

        assert result.template_id == "basic"
        assert result.project.title == "tool - someone"

    @pytest.mark.asyncio
    async def test_publishes_created_event(self, service, event_bus, repo):
        """Successful provisioning should publish project.created."""
        await service.create_project_for_repository(repo)

        assert published_types(event_bus) == [EventType.PROJECT_CREATED]

    @pytest.mark.asyncio
    async def test_create_failure_raises_and_publishes(self, service, mock_provider, event_bus, repo):
        """Failure to create the project itself should raise."""
        mock_provider.create_project.side_effect = ExternalServiceError("Bad credentials", status_code=401)

        with pytest.raises(ExternalServiceError):
            await service.create_project_for_repository(repo)

        assert published_types(event_bus) == [EventType.PROJECT_CREATION_FAILED]
        assert service.failed == 1

    @pytest.mark.asyncio
    async def test_invalid_repository(self, service, mock_provider):
        """A repository without an owner should be rejected before any call."""
        with pytest.raises(ValidationError):
            await service.create_project_for_repository(RepositoryRef("", "webapp"))

        mock_provider.find_project.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_template(self, mock_provider, catalog, event_bus, repo):
        """An organization pointing at an unknown template should raise TemplateError."""
        store = OrganizationConfigStore.with_builtin_defaults({"DevBusinessHub": {"template_id": "missing"}})
        service = ProjectAutomationService(mock_provider, store, catalog, event_bus)

        with pytest.raises(TemplateError):
            await service.create_project_for_repository(repo)

        mock_provider.create_project.assert_not_awaited()


class TestBulkCreation:
    """Tests for provisioning several repositories."""

    @pytest.mark.asyncio
    async def test_failures_do_not_abort_batch(self, service, mock_provider, event_bus):
        """One failing repository should be collected while the rest succeed."""
        repos = [RepositoryRef("DevBusinessHub", "a"), RepositoryRef("DevBusinessHub", "b"), RepositoryRef("DevBusinessHub", "c")]

        def create(owner_id, title, **kwargs):
            if title.startswith("b "):
                raise ExternalServiceError("boom")
            return Project(id=f"PVT_{title[0]}", title=title)

        mock_provider.create_project.side_effect = create

        result = await service.create_projects_for_repositories(repos)

        assert result.summary.successful == 2
        assert result.summary.failed == 1
        assert result.summary.total == 3
        assert result.summary.success_rate == pytest.approx(2 / 3)
        assert result.errors[0]["repository"] == "DevBusinessHub/b"
        assert published_types(event_bus)[-1] == EventType.PROJECTS_BULK_COMPLETED

    @pytest.mark.asyncio
    async def test_empty_batch(self, service):
        """An empty batch should report a zero success rate."""
        result = await service.create_projects_for_repositories([])

        assert result.summary.total == 0
        assert result.summary.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_delay_between_creations(self, service, monkeypatch):
        """The configured delay should be awaited between repositories."""
        sleep = AsyncMock()
        monkeypatch.setattr("devflow.engine.projects.asyncio.sleep", sleep)
        repos = [RepositoryRef("DevBusinessHub", "a"), RepositoryRef("DevBusinessHub", "b")]

        await service.create_projects_for_repositories(repos, ProjectCreationOptions(delay_between_creations=1.5))

        sleep.assert_awaited_once_with(1.5)


class TestRouteIssue:
    """Tests for placing issues on boards."""

    @pytest.fixture
    def routed_board(self, service, mock_provider):
        project = board(
            fields=[
                make_field("PVT_1", "Status", "SINGLE_SELECT", [{"name": "Backlog"}, {"name": "In Progress"}]),
                make_field("PVT_1", "priority", "SINGLE_SELECT", [{"name": "High"}, {"name": "Low"}]),
            ]
        )
        mock_provider.find_project.return_value = project
        mock_provider.add_project_item.return_value = "PVTI_42"
        return project

    @pytest.mark.asyncio
    async def test_routes_bug_in_progress(self, service, mock_provider, routed_board, sample_issue, repo):
        """A bug should land in progress with its priority set."""
        routing = await service.route_issue(sample_issue, classification(), IssueContext(repository=repo))

        assert routing.project_id == "PVT_1"
        assert routing.item_id == "PVTI_42"
        assert routing.status == "In Progress"
        assert routing.priority == "high"
        mock_provider.add_project_item.assert_awaited_once_with("PVT_1", "I_kwDOA42")
        status_field, priority_field = routed_board.fields
        mock_provider.update_project_item_field.assert_has_awaits(
            [
                call("PVT_1", "PVTI_42", status_field, "O_In Progress"),
                call("PVT_1", "PVTI_42", priority_field, "O_High"),
            ]
        )

    @pytest.mark.asyncio
    async def test_item_reused_for_same_issue(self, service, mock_provider, routed_board, sample_issue, repo):
        """Routing the same issue twice should not add a second item."""
        context = IssueContext(repository=repo)
        await service.route_issue(sample_issue, classification(), context)
        await service.route_issue(sample_issue, classification(), context)

        mock_provider.add_project_item.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_project_is_null_routing(self, service, mock_provider, sample_issue, repo):
        """A repository without a board should yield a null routing."""
        routing = await service.route_issue(sample_issue, classification(), IssueContext(repository=repo))

        assert routing.project_id is None
        assert "No project found" in routing.reason
        mock_provider.add_project_item.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unmatched_option_skipped(self, service, mock_provider, routed_board, sample_issue, repo):
        """A priority with no matching option should be left unset."""
        routing = await service.route_issue(
            sample_issue, classification(priority=Priority.CRITICAL), IssueContext(repository=repo)
        )

        assert routing.priority is None
        assert mock_provider.update_project_item_field.await_count == 1

    @pytest.mark.asyncio
    async def test_update_failure_is_warning(self, service, mock_provider, routed_board, sample_issue, repo):
        """A failed field update should be recorded as a warning."""
        mock_provider.update_project_item_field.side_effect = ExternalServiceError("denied")

        routing = await service.route_issue(sample_issue, classification(), IssueContext(repository=repo))

        assert routing.status is None
        assert len(routing.warnings) == 2

    @pytest.mark.asyncio
    async def test_missing_repository(self, service, sample_issue):
        """Routing without any repository context should be rejected."""
        sample_issue.repository = None

        with pytest.raises(ValidationError):
            await service.route_issue(sample_issue, classification(), IssueContext())

    @pytest.mark.asyncio
    async def test_publishes_routed_event(self, service, routed_board, event_bus, sample_issue, repo):
        """Routing should publish issue.routed."""
        await service.route_issue(sample_issue, classification(), IssueContext(repository=repo))

        assert published_types(event_bus) == [EventType.ISSUE_ROUTED]

    @pytest.mark.asyncio
    async def test_project_cached_after_creation(self, service, mock_provider, sample_issue, repo):
        """A project created by the service should be found without a lookup."""
        await service.create_project_for_repository(repo)
        mock_provider.find_project.reset_mock()

        project = await service.find_project_for_repository(repo)

        assert project.id == "PVT_1"
        mock_provider.find_project.assert_not_awaited()
