"""
Root orchestrator.

Wires the classifier, project automation, workflow orchestrator and milestone
tracker behind one API and connects them through the event bus:

- ``issue.closed`` events trigger a milestone completion check
- notable events are forwarded to the notification sink

Lifecycle::

    orchestrator = DevFlowOrchestrator(settings)
    await orchestrator.initialize()
    try:
        result = await orchestrator.process_issue(issue, IssueContext(repository=repo))
    finally:
        await orchestrator.shutdown()

Every entry point raises ``NotInitializedError`` until ``initialize`` has
completed.
"""

import re
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import pydantic
import structlog
import yaml

from devflow import __version__
from devflow.config.organizations import OrganizationConfigStore
from devflow.config.rules import ClassificationRules, default_classification_rules
from devflow.config.settings import DevFlowSettings
from devflow.config.templates import ProjectTemplateCatalog
from devflow.engine.analytics import CompletionRecordStore
from devflow.engine.classifier import IssueClassifier
from devflow.engine.events import Event, EventBus, EventType
from devflow.engine.milestones import MilestoneCompletionTracker
from devflow.engine.projects import ProjectAutomationService, ProjectCreationOptions
from devflow.engine.workflow import BranchOptions, CrossRepoOptions, WorkflowOrchestrator
from devflow.enums import IssueState
from devflow.exceptions import (
    ConfigurationError,
    DevFlowError,
    NotInitializedError,
    ValidationError,
    WorkflowError,
)
from devflow.models.domain import (
    BulkProjectResult,
    ConflictReport,
    CrossRepoResult,
    Issue,
    IssueContext,
    IssueProcessingResult,
    MilestoneBatchResult,
    MilestoneCheckResult,
    ProjectResult,
    RepositoryRef,
)
from devflow.models.workflow import WorkflowDefinition
from devflow.notifications import NOTABLE_EVENTS, LoggingNotificationSink, NotificationSink
from devflow.providers.base import PlatformProvider
from devflow.providers.github_rest import GitHubPlatformProvider
from devflow.rendering.engine import TemplateRenderer
from devflow.utils.rate_limiter import TokenBucket

log = structlog.get_logger(__name__)

_PARAMETER = re.compile(r"\{(\w+)\}")

_T = TypeVar("_T")

# Keys of ``execute_workflow`` parameters that control the run itself
_RUN_OPTIONS = {"repositories", "continue_on_error", "delay_between_repositories", "rollback_on_failure"}

_FLAG = pydantic.TypeAdapter(bool)
_DELAY = pydantic.TypeAdapter(pydantic.NonNegativeFloat)


def _run_option(parameters: dict[str, Any], name: str, adapter: pydantic.TypeAdapter[Any], default: Any) -> Any:
    """Parse run option ``name``; strings such as ``"false"`` or ``"0.5"`` are accepted.

    Raises:
        ValidationError: If the value does not parse
    """
    if name not in parameters:
        return default
    try:
        return adapter.validate_python(parameters[name])
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {name}: {parameters[name]!r}") from e


def _fill_parameters(value: Any, parameters: dict[str, Any]) -> Any:
    """Replace ``{name}`` placeholders that name a parameter; leave others alone."""
    if isinstance(value, str):
        return _PARAMETER.sub(lambda m: str(parameters[m.group(1)]) if m.group(1) in parameters else m.group(0), value)
    if isinstance(value, dict):
        return {k: _fill_parameters(v, parameters) for k, v in value.items()}
    if isinstance(value, list):
        return [_fill_parameters(v, parameters) for v in value]
    return value


def build_provider(settings: DevFlowSettings) -> GitHubPlatformProvider:
    """GitHub provider configured from ``settings``.

    Raises:
        ConfigurationError: If no API token is configured
    """
    if settings.github.api_token is None or not settings.github.api_token.get_secret_value():
        raise ConfigurationError("GitHub API token is not configured (set DEVFLOW_GITHUB__API_TOKEN)")
    return GitHubPlatformProvider(
        token=settings.github.api_token.get_secret_value(),
        base_url=settings.github.base_url,
        graphql_url=settings.github.graphql_url,
        timeout=settings.github.timeout,
        max_connections=settings.github.max_connections,
        retry_policy=settings.retry.to_policy(),
        limiter=TokenBucket(rate=settings.rate_limit.requests_per_second, capacity=settings.rate_limit.burst),
    )


def load_workflow_definitions(directory: str | Path) -> dict[str, WorkflowDefinition]:
    """Parse every ``*.yaml``/``*.yml`` workflow definition in ``directory``.

    Raises:
        ConfigurationError: If the directory is missing or a file is invalid
    """
    path = Path(directory)
    if not path.is_dir():
        raise ConfigurationError(f"Workflow directory not found: {path}")

    definitions: dict[str, WorkflowDefinition] = {}
    for file in sorted([*path.glob("*.yaml"), *path.glob("*.yml")]):
        try:
            data = yaml.safe_load(file.read_text(encoding="utf-8"))
            definition = WorkflowDefinition.model_validate(data)
        except Exception as e:
            raise ConfigurationError(f"Invalid workflow definition {file}: {e}") from e
        definitions[definition.id] = definition
    return definitions


class DevFlowOrchestrator:
    """Single entry point for issue processing, projects, workflows and milestones."""

    def __init__(
        self,
        settings: DevFlowSettings | None = None,
        provider: PlatformProvider | None = None,
        config_store: OrganizationConfigStore | None = None,
        catalog: ProjectTemplateCatalog | None = None,
        rules: ClassificationRules | None = None,
        notifier: NotificationSink | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Components are built by ``initialize``; anything passed here is used
        instead of the default built from ``settings``.

        Args:
            settings: Orchestrator settings; defaults read the environment
            provider: Platform provider; defaults to GitHub
            config_store: Organization profiles; defaults to the built-ins
                merged with ``settings.organizations``
            catalog: Project templates; defaults to the packaged catalog
            rules: Classification rule tables
            notifier: Notification sink; defaults to logging
        """
        self.settings = settings or DevFlowSettings()
        self.provider = provider
        self.config_store = config_store
        self.catalog = catalog
        self.rules = rules
        self.notifier = notifier or LoggingNotificationSink()
        self.bus = EventBus(max_queue_size=self.settings.events.max_queue_size)
        self.renderer = TemplateRenderer()

        self.classifier: IssueClassifier | None = None
        self.projects: ProjectAutomationService | None = None
        self.workflow: WorkflowOrchestrator | None = None
        self.milestones: MilestoneCompletionTracker | None = None
        self.workflows: dict[str, WorkflowDefinition] = {}

        self.initialized = False
        self.started_at: datetime | None = None
        self.issues_processed = 0
        self.notification_failures = 0

    # -- lifecycle -----------------------------------------------------------

    async def initialize(self) -> None:
        """Load configuration, connect the provider and start the event bus.

        Raises:
            ConfigurationError: If configuration is missing or inconsistent
            ExternalServiceError: If the platform cannot be reached
        """
        if self.initialized:
            return
        log.info("orchestrator_initializing", version=__version__)

        if self.config_store is None:
            self.config_store = OrganizationConfigStore.with_builtin_defaults(self.settings.organizations)
        if self.catalog is None:
            self.catalog = ProjectTemplateCatalog.load(self.settings.projects.templates_path)
        self._validate_templates(self.config_store, self.catalog)
        if self.rules is None:
            self.rules = default_classification_rules(self.settings.classifier.product_keyword)
        if self.settings.workflows_directory:
            self.workflows.update(load_workflow_definitions(self.settings.workflows_directory))

        if self.provider is None:
            self.provider = build_provider(self.settings)
        await self.provider.connect()

        self.classifier = IssueClassifier(self.rules)
        self.projects = ProjectAutomationService(
            self.provider,
            self.config_store,
            self.catalog,
            self.bus,
            renderer=self.renderer,
            defaults=ProjectCreationOptions(
                link_repository=self.settings.projects.link_repository,
                delay_between_creations=self.settings.projects.delay_between_creations,
            ),
        )
        self.workflow = WorkflowOrchestrator(
            self.provider,
            self.bus,
            strategies=self.settings.workflow.strategy_table(),
            renderer=self.renderer,
            issue_prefix=self.settings.workflow.issue_prefix,
            slug_max_length=self.settings.workflow.slug_max_length,
        )
        store = None
        if self.settings.milestones.enable_analytics:
            store = CompletionRecordStore(self.settings.analytics_dir, self.settings.milestones.retention_days)
        self.milestones = MilestoneCompletionTracker(
            self.provider,
            self.bus,
            store=store,
            config=self.settings.milestones,
            renderer=self.renderer,
        )

        self.bus.subscribe(EventType.ISSUE_CLOSED, self._on_issue_closed)
        self.bus.subscribe(None, self._notify)
        await self.bus.start()

        self.initialized = True
        self.started_at = datetime.now(UTC)
        log.info(
            "orchestrator_initialized",
            organizations=len(self.config_store.organization_ids),
            templates=len(self.catalog.template_ids),
            workflows=len(self.workflows),
        )

    @staticmethod
    def _validate_templates(config_store: OrganizationConfigStore, catalog: ProjectTemplateCatalog) -> None:
        for org_id in config_store.organization_ids:
            template_id = config_store.get(org_id).template_id
            if catalog.get(template_id) is None:
                raise ConfigurationError(f"Organization {org_id} references unknown project template: {template_id}")

    async def shutdown(self) -> None:
        """Deliver pending events, stop the bus and disconnect the provider."""
        if not self.initialized:
            return
        log.info("orchestrator_shutting_down")
        await self.bus.stop()
        self.bus.unsubscribe(EventType.ISSUE_CLOSED, self._on_issue_closed)
        self.bus.unsubscribe(None, self._notify)
        if self.provider is not None:
            await self.provider.disconnect()
        self.initialized = False
        log.info("orchestrator_shutdown_complete", issues_processed=self.issues_processed)

    async def __aenter__(self) -> "DevFlowOrchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()

    def _ensure_initialized(self) -> None:
        if not self.initialized:
            raise NotInitializedError("DevFlowOrchestrator", "Orchestrator is not initialized; call initialize() first")

    def _ready(self, component: _T | None) -> _T:
        """``component`` once ``initialize`` has built it."""
        self._ensure_initialized()
        if component is None:
            raise NotInitializedError("DevFlowOrchestrator", "Orchestrator component is not initialized")
        return component

    # -- event handlers ------------------------------------------------------

    async def _on_issue_closed(self, event: Event) -> None:
        milestones = self._ready(self.milestones)
        repo = RepositoryRef.parse(event.payload["repository"])
        milestone = event.payload.get("milestone")
        if milestone is None:
            return
        await milestones.check_milestone_completion(repo, int(milestone))

    async def _notify(self, event: Event) -> None:
        if event.type not in NOTABLE_EVENTS:
            return
        try:
            await self.notifier.send(event)
        except Exception as e:
            self.notification_failures += 1
            log.warning("notification_failed", event_type=event.type.value, error=str(e))

    # -- issues --------------------------------------------------------------

    async def process_issue(self, issue: Issue, context: IssueContext | None = None) -> IssueProcessingResult:
        """Classify an issue, label it, route it and optionally branch for it.

        Labeling, routing and the branch/PR workflow are governed by the
        organization's automation flags unless ``context`` overrides them.
        Failures after classification are recorded as warnings.

        Raises:
            NotInitializedError: Before ``initialize``
            ValidationError: If no repository is known for the issue
        """
        classifier = self._ready(self.classifier)
        projects = self._ready(self.projects)
        workflow = self._ready(self.workflow)
        config_store = self._ready(self.config_store)
        provider = self._ready(self.provider)

        context = context or IssueContext()
        repository = context.repository or issue.repository
        if repository is None:
            raise ValidationError(f"Issue #{issue.number} has no repository context")
        organization = context.organization or repository.owner
        flags = config_store.get(organization).automation_flags

        log.info("issue_processing_started", repository=repository.full_name, issue=issue.number)
        await self.bus.publish(
            Event(EventType.ISSUE_RECEIVED, {"repository": repository.full_name, "issue": issue.number}, source="orchestrator")
        )

        classification = classifier.classify(issue, organization)
        result = IssueProcessingResult(
            issue_number=issue.number,
            repository=repository.full_name,
            classification=classification,
        )
        await self.bus.publish(
            Event(
                EventType.ISSUE_CLASSIFIED,
                {
                    "repository": repository.full_name,
                    "issue": issue.number,
                    "type": classification.type.value,
                    "priority": classification.priority.value,
                    "complexity": classification.complexity.value,
                    "confidence": classification.confidence,
                },
                source="classifier",
            )
        )

        new_labels = [label for label in classification.labels if label not in issue.labels]
        if flags.issue_labeling and new_labels:
            try:
                await provider.add_labels(repository, issue.number, new_labels)
            except DevFlowError as e:
                log.warning("issue_labeling_failed", issue=issue.number, error=str(e))
                result.warnings.append(f"Labels not applied: {e}")

        route = flags.project_routing if context.route_to_project is None else context.route_to_project
        if route:
            routing_context = IssueContext(repository=repository, organization=organization)
            try:
                result.routing = await projects.route_issue(issue, classification, routing_context)
                result.warnings.extend(result.routing.warnings)
            except DevFlowError as e:
                log.warning("issue_routing_failed", issue=issue.number, error=str(e))
                result.warnings.append(f"Issue not routed: {e}")

        create_branch = flags.auto_branching if context.create_branch is None else context.create_branch
        if create_branch:
            options = BranchOptions(
                create_pull_request=self.settings.workflow.enable_auto_pr and flags.auto_pull_requests,
                enable_auto_merge=self.settings.workflow.enable_auto_merge,
                check_conflicts=self.settings.workflow.enable_conflict_detection,
            )
            try:
                result.workflow = await workflow.create_smart_branch(repository, issue, options)
                result.warnings.extend(result.workflow.warnings)
            except DevFlowError as e:
                log.error("issue_workflow_failed", issue=issue.number, error=str(e))
                result.warnings.append(f"Branch workflow failed: {e}")
                await self._publish_error("process_issue", e, repository=repository.full_name, issue=issue.number)

        self.issues_processed += 1
        log.info(
            "issue_processing_completed",
            repository=repository.full_name,
            issue=issue.number,
            type=classification.type.value,
            priority=classification.priority.value,
            warnings=len(result.warnings),
        )
        return result

    async def handle_issue_closed(self, issue: Issue, repository: RepositoryRef | None = None) -> None:
        """Publish ``issue.closed``; the milestone check runs from the bus."""
        self._ensure_initialized()
        repository = repository or issue.repository
        if repository is None:
            raise ValidationError(f"Issue #{issue.number} has no repository context")
        if issue.state != IssueState.CLOSED:
            log.debug("issue_not_closed", issue=issue.number, state=issue.state.value)
        await self.bus.publish(
            Event(
                EventType.ISSUE_CLOSED,
                {"repository": repository.full_name, "issue": issue.number, "milestone": issue.milestone},
                source="orchestrator",
            )
        )

    # -- projects ------------------------------------------------------------

    async def create_project(self, repository: RepositoryRef, organization: str | None = None) -> ProjectResult:
        projects = self._ready(self.projects)
        options = ProjectCreationOptions(
            organization=organization,
            link_repository=self.settings.projects.link_repository,
            delay_between_creations=self.settings.projects.delay_between_creations,
        )
        return await projects.create_project_for_repository(repository, options)

    async def create_projects(
        self, repositories: Sequence[RepositoryRef], organization: str | None = None
    ) -> BulkProjectResult:
        projects = self._ready(self.projects)
        options = ProjectCreationOptions(
            organization=organization,
            link_repository=self.settings.projects.link_repository,
            delay_between_creations=self.settings.projects.delay_between_creations,
        )
        return await projects.create_projects_for_repositories(repositories, options)

    # -- workflows -----------------------------------------------------------

    def register_workflow(self, definition: WorkflowDefinition | dict[str, Any]) -> WorkflowDefinition:
        """Register a cross-repository workflow, replacing one with the same id.

        Raises:
            ValidationError: If a mapping does not describe a valid workflow
        """
        if not isinstance(definition, WorkflowDefinition):
            try:
                definition = WorkflowDefinition.model_validate(definition)
            except Exception as e:
                raise ValidationError(f"Invalid workflow definition: {e}") from e
        self.workflows[definition.id] = definition
        log.info("workflow_registered", workflow=definition.id, repositories=len(definition.repositories))
        return definition

    async def execute_workflow(self, workflow_id: str, parameters: dict[str, Any] | None = None) -> CrossRepoResult:
        """Run a registered workflow.

        ``parameters`` may override ``repositories``, ``continue_on_error``,
        ``delay_between_repositories`` and ``rollback_on_failure``; other keys
        fill ``{name}`` placeholders in step configuration.

        Raises:
            NotInitializedError: Before ``initialize``
            WorkflowError: If no workflow is registered under ``workflow_id``
            ValidationError: If the overrides are invalid
        """
        workflow = self._ready(self.workflow)

        definition = self.workflows.get(workflow_id)
        if definition is None:
            raise WorkflowError(f"Workflow not found: {workflow_id}")

        parameters = dict(parameters or {})
        values = {k: v for k, v in parameters.items() if k not in _RUN_OPTIONS}
        update: dict[str, Any] = {
            "steps": [
                step.model_copy(update={"config": _fill_parameters(step.config, values)}) for step in definition.steps
            ]
        }
        if "repositories" in parameters:
            try:
                update["repositories"] = WorkflowDefinition.model_validate(
                    {"id": definition.id, "repositories": parameters["repositories"], "steps": definition.steps}
                ).repositories
            except Exception as e:
                raise ValidationError(f"Invalid repositories override: {e}") from e
        run = definition.model_copy(update=update)

        options = CrossRepoOptions(
            continue_on_error=_run_option(parameters, "continue_on_error", _FLAG, False),
            delay_between_repositories=_run_option(
                parameters, "delay_between_repositories", _DELAY, self.settings.workflow.delay_between_repositories
            ),
            rollback_on_failure=_run_option(
                parameters, "rollback_on_failure", _FLAG, self.settings.workflow.rollback_on_failure
            ),
        )
        log.info("workflow_execution_started", workflow=workflow_id, parameters=sorted(values))
        return await workflow.orchestrate_cross_repo_workflow(run, options)

    async def detect_conflicts(self, repository: RepositoryRef, branch: str, target_branch: str = "main") -> ConflictReport:
        return await self._ready(self.workflow).detect_conflicts(repository, branch, target_branch)

    # -- milestones ----------------------------------------------------------

    async def check_milestones(self, repository: RepositoryRef) -> MilestoneBatchResult:
        return await self._ready(self.milestones).check_all_milestones(repository)

    async def check_milestone(self, repository: RepositoryRef, number: int) -> MilestoneCheckResult:
        return await self._ready(self.milestones).check_milestone_completion(repository, number)

    # -- health --------------------------------------------------------------

    async def get_system_health(self) -> dict[str, Any]:
        """Structured status per component; never raises."""
        components: dict[str, Any] = {"event_bus": self.bus.health()}
        if self.initialized:
            for name, component in (
                ("classifier", self.classifier),
                ("projects", self.projects),
                ("workflow", self.workflow),
                ("milestones", self.milestones),
            ):
                if component is not None:
                    components[name] = component.health()
        if self.initialized and self.provider is not None:
            try:
                components["provider"] = await self.provider.health_check()
            except Exception as e:
                log.warning("provider_health_check_failed", error=str(e))
                components["provider"] = {"healthy": False, "error": str(e)}

        healthy = self.initialized and all(c.get("healthy", False) for c in components.values())
        status = "healthy" if healthy else ("degraded" if self.initialized else "stopped")
        return {
            "status": status,
            "version": __version__,
            "initialized": self.initialized,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "issues_processed": self.issues_processed,
            "notification_failures": self.notification_failures,
            "workflows": sorted(self.workflows),
            "components": components,
            "checked_at": datetime.now(UTC).isoformat(),
        }

    async def _publish_error(self, operation: str, error: Exception, **context: Any) -> None:
        await self.bus.publish(
            Event(EventType.ERROR, {"operation": operation, "error": str(error), **context}, source="orchestrator")
        )
