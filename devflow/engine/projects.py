"""
Project Automation Service.

Provisions a Projects V2 board per repository from the organization's
template and routes classified issues onto those boards.

Provisioning steps:
    1. resolve the organization profile (template id)
    2. apply the template (title ``"<repository> - <organization>"``)
    3. reuse the project with that title if one exists, otherwise create it
    4. create template fields missing from the project (best-effort)
    5. create template views missing from the project (best-effort)
    6. link the repository to the project if requested (best-effort)

Only step 3 is fatal. Failures in steps 4-6 are logged as warnings and
recorded on the ``ProjectResult``. Re-running provisioning for the same
repository reuses the board and only fills in what is missing.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from devflow.config.organizations import OrganizationConfigStore
from devflow.config.templates import ProjectTemplate, ProjectTemplateCatalog, project_title
from devflow.engine.events import Event, EventBus, EventType
from devflow.enums import IssueType, Priority
from devflow.exceptions import DevFlowError, ExternalConflictError, ValidationError
from devflow.models.domain import (
    BulkProjectResult,
    BulkSummary,
    Classification,
    Issue,
    IssueContext,
    Project,
    ProjectItem,
    ProjectResult,
    RepositoryRef,
    Routing,
)
from devflow.providers.base import PlatformProvider
from devflow.rendering.engine import TemplateRenderer

log = structlog.get_logger(__name__)

STATUS_FIELD = "Status"
PRIORITY_FIELD = "Priority"
STATUS_IN_PROGRESS = "In Progress"
STATUS_BACKLOG = "Backlog"


@dataclass
class ProjectCreationOptions:
    """Options for provisioning."""

    organization: str | None = None
    """Organization profile to use; defaults to the repository owner."""

    link_repository: bool = False
    delay_between_creations: float = 0.0
    """Seconds to wait between repositories in bulk creation."""


def initial_status(classification: Classification) -> str:
    """Board column for a freshly routed issue."""
    if classification.priority == Priority.CRITICAL or classification.type == IssueType.BUG:
        return STATUS_IN_PROGRESS
    return STATUS_BACKLOG


class ProjectAutomationService:
    """Create project boards and route issues onto them."""

    def __init__(
        self,
        provider: PlatformProvider,
        config_store: OrganizationConfigStore,
        catalog: ProjectTemplateCatalog,
        bus: EventBus,
        renderer: TemplateRenderer | None = None,
        defaults: ProjectCreationOptions | None = None,
    ) -> None:
        self.provider = provider
        self.config_store = config_store
        self.catalog = catalog
        self.bus = bus
        self.renderer = renderer or TemplateRenderer()
        self.defaults = defaults or ProjectCreationOptions()
        self._projects: dict[str, Project] = {}
        self._items: dict[tuple[str, int], ProjectItem] = {}
        self.created = 0
        self.failed = 0

    # -- provisioning --------------------------------------------------------

    async def create_project_for_repository(
        self,
        repository: RepositoryRef,
        options: ProjectCreationOptions | None = None,
    ) -> ProjectResult:
        """Provision (or reuse) the project board for ``repository``.

        Raises:
            ValidationError: If the repository reference is incomplete
            TemplateError: If the organization's template does not exist
            ExternalServiceError: If the project cannot be found or created
        """
        if not repository or not repository.owner or not repository.name:
            raise ValidationError("Repository owner and name are required")

        options = options or self.defaults
        organization = options.organization or repository.owner
        org_config = self.config_store.get(organization)
        log.info(
            "project_creation_started",
            repository=repository.full_name,
            organization=organization,
            template=org_config.template_id,
        )

        try:
            template = self.catalog.apply(
                org_config.template_id,
                {
                    "repository": repository.name,
                    "organization": organization,
                    "organization_type": org_config.type,
                },
            )
            title = template.title or project_title(repository.name, organization)
            project, reused = await self._find_or_create(repository.owner, title, template)
            result = ProjectResult(
                repository=repository,
                project=project,
                organization=organization,
                template_id=template.id,
                reused=reused,
            )
            await self._ensure_fields(project, template, result)
            await self._ensure_views(project, template, result)
            if options.link_repository:
                await self._link_repository(project, repository, result)
        except DevFlowError as e:
            self.failed += 1
            log.error("project_creation_failed", repository=repository.full_name, error=str(e))
            await self.bus.publish(
                Event(
                    EventType.PROJECT_CREATION_FAILED,
                    {"repository": repository.full_name, "organization": organization, "error": str(e)},
                    source="projects",
                )
            )
            raise

        self._projects[repository.full_name] = project
        self.created += 1
        log.info(
            "project_creation_completed",
            repository=repository.full_name,
            project_id=project.id,
            reused=reused,
            warnings=len(result.warnings),
        )
        await self.bus.publish(
            Event(
                EventType.PROJECT_CREATED,
                {
                    "repository": repository.full_name,
                    "organization": organization,
                    "project_id": project.id,
                    "project_url": project.url,
                    "reused": reused,
                },
                source="projects",
            )
        )
        return result

    async def _find_or_create(self, owner: str, title: str, template: ProjectTemplate) -> tuple[Project, bool]:
        existing = await self.provider.find_project(owner, title)
        if existing is not None:
            log.info("project_reused", title=title, project_id=existing.id)
            return existing, True

        owner_id = await self.provider.get_owner_node_id(owner)
        readme = self.renderer.render("project_readme.md.j2", {"template": template})
        try:
            project = await self.provider.create_project(
                owner_id,
                title,
                description=template.description,
                readme=readme,
                public=template.settings.public,
            )
        except ExternalConflictError:
            existing = await self.provider.find_project(owner, title)
            if existing is None:
                raise
            log.info("project_reused_after_conflict", title=title, project_id=existing.id)
            return existing, True
        return project, False

    async def _ensure_fields(self, project: Project, template: ProjectTemplate, result: ProjectResult) -> None:
        for field_template in template.fields:
            if project.find_field(field_template.name) is not None:
                continue
            try:
                created = await self.provider.create_project_field(
                    project.id,
                    field_template.name,
                    field_template.type,
                    [{"name": o.name, "color": o.color} for o in field_template.options],
                )
            except DevFlowError as e:
                message = f"Field '{field_template.name}' not created: {e}"
                log.warning("project_field_failed", project_id=project.id, field=field_template.name, error=str(e))
                result.warnings.append(message)
                continue
            project.fields.append(created)
            result.created_fields.append(created.name)

    async def _ensure_views(self, project: Project, template: ProjectTemplate, result: ProjectResult) -> None:
        for view in template.views:
            if project.has_view(view.name):
                continue
            try:
                await self.provider.create_project_view(
                    project.id,
                    view.name,
                    view.layout,
                    group_by=view.group_by,
                    sort_by=view.sort_by,
                    filter_by=view.filter_by,
                )
            except DevFlowError as e:
                log.warning("project_view_failed", project_id=project.id, view=view.name, error=str(e))
                result.warnings.append(f"View '{view.name}' not created: {e}")
                continue
            project.views.append(view.name)
            result.created_views.append(view.name)

    async def _link_repository(self, project: Project, repository: RepositoryRef, result: ProjectResult) -> None:
        try:
            repository_id = await self.provider.get_repository_node_id(repository)
            await self.provider.link_repository_to_project(project.id, repository_id)
        except DevFlowError as e:
            log.warning("project_link_failed", project_id=project.id, repository=repository.full_name, error=str(e))
            result.warnings.append(f"Repository not linked: {e}")
            return
        result.linked = True

    async def create_projects_for_repositories(
        self,
        repositories: Sequence[RepositoryRef],
        options: ProjectCreationOptions | None = None,
    ) -> BulkProjectResult:
        """Provision projects one repository at a time.

        A failure for one repository is recorded and never aborts the batch.
        """
        options = options or self.defaults
        results: list[ProjectResult] = []
        errors: list[dict[str, str]] = []

        for index, repository in enumerate(repositories):
            if index and options.delay_between_creations > 0:
                await asyncio.sleep(options.delay_between_creations)
            try:
                results.append(await self.create_project_for_repository(repository, options))
            except DevFlowError as e:
                errors.append({"repository": str(repository), "error": str(e)})

        total = len(repositories)
        summary = BulkSummary(
            successful=len(results),
            failed=len(errors),
            total=total,
            success_rate=len(results) / total if total else 0.0,
        )
        log.info(
            "bulk_project_creation_completed",
            successful=summary.successful,
            failed=summary.failed,
            total=summary.total,
        )
        await self.bus.publish(
            Event(
                EventType.PROJECTS_BULK_COMPLETED,
                {"successful": summary.successful, "failed": summary.failed, "total": summary.total},
                source="projects",
            )
        )
        return BulkProjectResult(results=results, errors=errors, summary=summary)

    # -- routing -------------------------------------------------------------

    async def find_project_for_repository(self, repository: RepositoryRef, organization: str | None = None) -> Project | None:
        """Known project for ``repository``, looked up by title convention if needed."""
        cached = self._projects.get(repository.full_name)
        if cached is not None:
            return cached
        project = await self.provider.find_project(
            repository.owner, project_title(repository.name, organization or repository.owner)
        )
        if project is not None:
            self._projects[repository.full_name] = project
        return project

    async def route_issue(self, issue: Issue, classification: Classification, context: IssueContext) -> Routing:
        """Place an issue on its repository's project and set Status/Priority.

        Returns a null routing (``project_id=None``) when the repository has
        no project. Field update failures are warnings.

        Raises:
            ValidationError: If the context carries no repository
        """
        repository = context.repository or issue.repository
        if repository is None:
            raise ValidationError("Issue routing requires a repository")

        project = await self.find_project_for_repository(repository, context.organization)
        if project is None:
            log.info("issue_routing_skipped", repository=repository.full_name, issue=issue.number)
            return Routing(reason=f"No project found for {repository.full_name}")
        if not issue.node_id:
            raise ValidationError(f"Issue #{issue.number} has no node id; cannot add it to a project")

        key = (project.id, issue.number)
        item = self._items.get(key)
        if item is None:
            item_id = await self.provider.add_project_item(project.id, issue.node_id)
            item = ProjectItem(item_id=item_id, project_id=project.id, issue_number=issue.number)
            self._items[key] = item

        status = initial_status(classification)
        routing = Routing(project_id=project.id, item_id=item.item_id)
        if await self._set_field(project, item, STATUS_FIELD, status, routing):
            routing.status = status
        if await self._set_field(project, item, PRIORITY_FIELD, classification.priority.value, routing):
            routing.priority = classification.priority.value

        log.info(
            "issue_routed",
            repository=repository.full_name,
            issue=issue.number,
            project_id=project.id,
            status=routing.status,
            priority=routing.priority,
        )
        await self.bus.publish(
            Event(
                EventType.ISSUE_ROUTED,
                {
                    "repository": repository.full_name,
                    "issue": issue.number,
                    "project_id": project.id,
                    "item_id": item.item_id,
                    "status": routing.status,
                },
                source="projects",
            )
        )
        return routing

    async def _set_field(self, project: Project, item: ProjectItem, name: str, value: str, routing: Routing) -> bool:
        field = project.find_field(name)
        if field is None:
            return False

        raw_value = value
        if field.options:
            option = field.find_option(value)
            if option is None:
                log.debug("project_option_missing", field=field.name, value=value)
                return False
            raw_value = option.id

        try:
            await self.provider.update_project_item_field(project.id, item.item_id, field, raw_value)
        except DevFlowError as e:
            log.warning("project_field_update_failed", field=field.name, item_id=item.item_id, error=str(e))
            routing.warnings.append(f"{field.name} not set: {e}")
            return False
        item.field_values[field.name] = value
        return True

    def health(self) -> dict[str, Any]:
        return {
            "healthy": self.config_store.is_healthy() and self.catalog.is_healthy(),
            "projects_known": len(self._projects),
            "items_routed": len(self._items),
            "created": self.created,
            "failed": self.failed,
        }
