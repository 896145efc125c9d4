"""
Workflow Orchestrator: branches, pull requests, conflict checks and
cross-repository workflows.

Per-issue state machine::

    NO_BRANCH -> BRANCH_CREATED -> PR_CREATED -> AUTO_MERGE
                                             \\-> MANUAL_REVIEW

Branch names are derived deterministically from the issue:
``<prefix><ISSUE_PREFIX>-<number>-<slug>``, e.g.
``bugfix/DEVFLOW-42-fix-login-bug-in-production``. Creating a branch that
already exists is not an error (``exists=True``), and an open pull request for
the branch is reused instead of opening a second one, so re-running the
workflow for an issue is safe.

Within one repository branch creation happens before pull request creation,
which happens before the auto-merge request.

Cross-repository workflows run repositories and their steps sequentially. A
failing ``required`` step aborts that repository; unless ``continue_on_error``
is set the remaining repositories are skipped. With ``rollback_on_failure``
a failed or cancelled run closes the pull requests and deletes the branches
it created, newest first.
"""

import asyncio
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from devflow.config.rules import (
    BRANCH_TYPE_LABELS,
    CRITICAL_FILE_PATTERNS,
    DEFAULT_BRANCH_STRATEGIES,
    HIGH_CHANGE_THRESHOLD,
    BranchStrategy,
)
from devflow.engine.events import Event, EventBus, EventType
from devflow.enums import BranchType, RepositoryStatus, RiskLevel, StepType, WorkflowState
from devflow.exceptions import (
    DevFlowError,
    ExternalConflictError,
    StepFailureError,
    ValidationError,
)
from devflow.models.domain import (
    BranchPlan,
    BranchResult,
    ConflictReport,
    CrossRepoResult,
    FileConflict,
    Issue,
    IssueWorkflowResult,
    PullRequest,
    PullRequestResult,
    RepositoryRef,
    RepositoryWorkflowResult,
    StepResult,
)
from devflow.models.workflow import WorkflowDefinition, WorkflowStep
from devflow.providers.base import PlatformProvider
from devflow.rendering.engine import TemplateRenderer

log = structlog.get_logger(__name__)

FACTOR_HIGH_CHANGE_VOLUME = "high_change_volume"
FACTOR_CRITICAL_FILE = "critical_file"
FACTOR_RECENT_CHANGES = "recent_changes"


@dataclass
class BranchOptions:
    """Overrides for ``create_smart_branch``."""

    base_ref: str | None = None
    create_pull_request: bool = True
    enable_auto_merge: bool = True
    check_conflicts: bool = True
    draft: bool = False


@dataclass
class CrossRepoOptions:
    continue_on_error: bool = False
    delay_between_repositories: float = 0.0
    rollback_on_failure: bool = False


@dataclass
class WorkflowMetrics:
    workflows_executed: int = 0
    branches_created: int = 0
    pull_requests_created: int = 0
    conflict_reports: int = 0
    cross_repo_operations: int = 0


def slugify(title: str, max_length: int = 50) -> str:
    """Lowercase, drop punctuation, hyphenate whitespace, truncate."""
    slug = re.sub(r"[^a-z0-9\s-]", "", (title or "").lower())
    slug = re.sub(r"\s+", "-", slug.strip())
    return slug[:max_length].rstrip("-")


def determine_branch_type(labels: list[str] | tuple[str, ...]) -> BranchType:
    """Branch type from issue labels; feature when nothing matches."""
    names = {label.lower() for label in labels or ()}
    for branch_type, triggers in BRANCH_TYPE_LABELS:
        if names & triggers:
            return branch_type
    return BranchType.FEATURE


def risk_level(factor_count: int) -> RiskLevel:
    if factor_count > 3:
        return RiskLevel.CRITICAL
    if factor_count > 1:
        return RiskLevel.HIGH
    return RiskLevel.MEDIUM


def is_critical_file(filename: str) -> bool:
    return any(p.search(filename) for p in CRITICAL_FILE_PATTERNS)


class WorkflowOrchestrator:
    """Branch/PR automation and cross-repository workflow execution."""

    def __init__(
        self,
        provider: PlatformProvider,
        bus: EventBus,
        strategies: Mapping[BranchType, BranchStrategy] | None = None,
        renderer: TemplateRenderer | None = None,
        issue_prefix: str = "DEVFLOW",
        slug_max_length: int = 50,
    ) -> None:
        self.provider = provider
        self.bus = bus
        self.strategies = dict(strategies or DEFAULT_BRANCH_STRATEGIES)
        self.renderer = renderer or TemplateRenderer()
        self.issue_prefix = issue_prefix
        self.slug_max_length = slug_max_length
        self.metrics = WorkflowMetrics()

    # -- branches ------------------------------------------------------------

    def plan_branch(self, issue: Issue, base_ref: str | None = None) -> BranchPlan:
        """Branch plan for ``issue``; pure and deterministic."""
        branch_type = determine_branch_type(issue.labels)
        strategy = self.strategies[branch_type]
        slug = slugify(issue.title, self.slug_max_length)
        name = f"{strategy.prefix}{self.issue_prefix}-{issue.number}"
        if slug:
            name = f"{name}-{slug}"
        return BranchPlan(
            name=name,
            type=branch_type,
            base_ref=base_ref or strategy.base_ref,
            protection_rules=strategy.protection_rules,
            auto_merge=strategy.auto_merge,
        )

    async def create_branch(self, repo: RepositoryRef, name: str, base_ref: str) -> BranchResult:
        """Create ``name`` from ``base_ref``; an existing branch is reported, not raised."""
        sha = await self.provider.get_branch_sha(repo, base_ref)
        try:
            url = await self.provider.create_ref(repo, name, sha)
        except ExternalConflictError:
            log.info("branch_exists", repository=repo.full_name, branch=name)
            return BranchResult(name=name, base_ref=base_ref, sha=sha, exists=True)

        self.metrics.branches_created += 1
        log.info("branch_created", repository=repo.full_name, branch=name, base=base_ref, sha=sha)
        await self.bus.publish(
            Event(
                EventType.BRANCH_CREATED,
                {"repository": repo.full_name, "branch": name, "base": base_ref, "sha": sha},
                source="workflow",
            )
        )
        return BranchResult(name=name, base_ref=base_ref, sha=sha, url=url)

    async def create_smart_branch(
        self,
        repo: RepositoryRef,
        issue: Issue,
        options: BranchOptions | None = None,
    ) -> IssueWorkflowResult:
        """Run the branch/PR state machine for one issue."""
        options = options or BranchOptions()
        plan = self.plan_branch(issue, options.base_ref)
        result = IssueWorkflowResult(plan=plan, state=WorkflowState.NO_BRANCH)

        result.branch = await self.create_branch(repo, plan.name, plan.base_ref)
        result.state = WorkflowState.BRANCH_CREATED

        if options.check_conflicts and result.branch.exists:
            # A new branch points at its base head and has nothing to compare
            try:
                result.conflicts = await self.detect_conflicts(repo, plan.name, plan.base_ref)
            except DevFlowError as e:
                log.warning("conflict_check_failed", repository=repo.full_name, branch=plan.name, error=str(e))
                result.warnings.append(f"Conflict check failed: {e}")

        if options.create_pull_request:
            result.pull_request = await self.create_automated_pr(repo, issue, plan, options)
            result.warnings.extend(result.pull_request.warnings)
            result.state = WorkflowState.AUTO_MERGE if result.pull_request.auto_merge else WorkflowState.MANUAL_REVIEW

        self.metrics.workflows_executed += 1
        log.info(
            "issue_workflow_completed",
            repository=repo.full_name,
            issue=issue.number,
            branch=plan.name,
            state=result.state.value,
        )
        return result

    # -- pull requests -------------------------------------------------------

    async def create_automated_pr(
        self,
        repo: RepositoryRef,
        issue: Issue,
        plan: BranchPlan,
        options: BranchOptions | None = None,
    ) -> PullRequestResult:
        """Open (or reuse) the pull request for ``plan`` and link it to ``issue``.

        Label copying, the issue back-link comment and the auto-merge request
        are best-effort and recorded as warnings on failure.
        """
        options = options or BranchOptions()
        existing = await self.provider.find_pull_requests(repo, plan.name)
        if existing:
            log.info("pull_request_reused", repository=repo.full_name, pr=existing[0].number, branch=plan.name)
            return PullRequestResult(pull_request=existing[0], linked_issue=issue.number, existing=True)

        body = self.renderer.render("pr_body.md.j2", {"issue": issue, "plan": plan})
        pull_request = await self.provider.create_pull_request(
            repo,
            title=f"{issue.title} (#{issue.number})",
            body=body,
            head=plan.name,
            base=plan.base_ref,
            draft=options.draft,
        )
        result = PullRequestResult(pull_request=pull_request, linked_issue=issue.number)
        self.metrics.pull_requests_created += 1

        if issue.labels:
            try:
                await self.provider.add_labels(repo, pull_request.number, list(issue.labels))
            except DevFlowError as e:
                log.warning("pull_request_labels_failed", pr=pull_request.number, error=str(e))
                result.warnings.append(f"Labels not copied: {e}")

        try:
            comment = self.renderer.render("pr_link_comment.md.j2", {"pull_request": pull_request})
            await self.provider.add_comment(repo, issue.number, comment)
        except DevFlowError as e:
            log.warning("issue_link_comment_failed", issue=issue.number, error=str(e))
            result.warnings.append(f"Issue not linked: {e}")

        if plan.auto_merge and options.enable_auto_merge:
            try:
                await self.provider.request_auto_merge(repo, pull_request.number)
                result.auto_merge = True
            except DevFlowError as e:
                log.warning("auto_merge_request_failed", pr=pull_request.number, error=str(e))
                result.warnings.append(f"Auto-merge not enabled: {e}")

        log.info(
            "pull_request_opened",
            repository=repo.full_name,
            pr=pull_request.number,
            issue=issue.number,
            auto_merge=result.auto_merge,
        )
        await self.bus.publish(
            Event(
                EventType.PR_CREATED,
                {
                    "repository": repo.full_name,
                    "pr": pull_request.number,
                    "url": pull_request.url,
                    "issue": issue.number,
                    "auto_merge": result.auto_merge,
                },
                source="workflow",
            )
        )
        return result

    # -- conflicts -----------------------------------------------------------

    async def detect_conflicts(self, repo: RepositoryRef, branch: str, target_branch: str = "main") -> ConflictReport:
        """Advisory merge-risk report for ``branch`` against ``target_branch``.

        Each file modified on the branch is scored on three factors: change
        volume above the threshold, a critical-file path, and recent changes.
        Every modified file carries the recent-changes factor, so a file is
        flagged when it is either large or critical; at most three factors
        hold, which caps the level at ``high``.
        """
        comparison = await self.provider.compare(repo, base=target_branch, head=branch)
        conflicts: list[FileConflict] = []
        for changed in comparison.files:
            if changed.status != "modified":
                continue
            factors = [FACTOR_RECENT_CHANGES]
            if changed.changes > HIGH_CHANGE_THRESHOLD:
                factors.append(FACTOR_HIGH_CHANGE_VOLUME)
            if is_critical_file(changed.filename):
                factors.append(FACTOR_CRITICAL_FILE)
            if len(factors) >= 2:
                conflicts.append(
                    FileConflict(
                        file=changed.filename,
                        risk_level=risk_level(len(factors)),
                        factors=factors,
                        changes=changed.changes,
                    )
                )

        report = ConflictReport(
            branch=branch,
            target_branch=target_branch,
            has_conflicts=bool(conflicts),
            conflicts=conflicts,
            ahead_by=comparison.ahead_by,
            behind_by=comparison.behind_by,
            total_commits=comparison.total_commits,
        )
        self.metrics.conflict_reports += 1
        log.info(
            "conflict_check_completed",
            repository=repo.full_name,
            branch=branch,
            target=target_branch,
            conflicts=len(conflicts),
        )
        if report.has_conflicts:
            await self.bus.publish(
                Event(
                    EventType.CONFLICTS_DETECTED,
                    {
                        "repository": repo.full_name,
                        "branch": branch,
                        "target": target_branch,
                        "files": [c.file for c in conflicts],
                    },
                    source="workflow",
                )
            )
        return report

    # -- cross-repository workflows -----------------------------------------

    async def orchestrate_cross_repo_workflow(
        self,
        workflow: WorkflowDefinition,
        options: CrossRepoOptions | None = None,
    ) -> CrossRepoResult:
        """Run ``workflow`` against each of its repositories in order."""
        options = options or CrossRepoOptions()
        result = CrossRepoResult(workflow_id=workflow.id, started_at=datetime.now(UTC))
        started = time.monotonic()
        self.metrics.cross_repo_operations += 1
        log.info("cross_repo_workflow_started", workflow=workflow.id, repositories=len(workflow.repositories))

        try:
            for index, repo in enumerate(workflow.repositories):
                if result.aborted:
                    result.repositories[repo.full_name] = RepositoryWorkflowResult(
                        repository=repo.full_name, status=RepositoryStatus.SKIPPED
                    )
                    continue
                if index and options.delay_between_repositories > 0:
                    await asyncio.sleep(options.delay_between_repositories)

                repo_result = await self._run_repository(workflow, repo, result)
                result.repositories[repo.full_name] = repo_result
                if repo_result.status == RepositoryStatus.FAILED:
                    result.success = False
                    if not options.continue_on_error:
                        result.aborted = True
                        log.warning("cross_repo_workflow_aborted", workflow=workflow.id, repository=repo.full_name)
        except asyncio.CancelledError:
            log.warning(
                "cross_repo_workflow_cancelled",
                workflow=workflow.id,
                created_artifacts=result.created_artifacts,
            )
            if options.rollback_on_failure:
                await self.rollback_artifacts(result)
            raise

        if options.rollback_on_failure and not result.success:
            await self.rollback_artifacts(result)

        result.finished_at = datetime.now(UTC)
        result.duration_seconds = round(time.monotonic() - started, 3)
        log.info(
            "cross_repo_workflow_completed",
            workflow=workflow.id,
            success=result.success,
            aborted=result.aborted,
            duration=result.duration_seconds,
        )
        await self.bus.publish(
            Event(
                EventType.WORKFLOW_COMPLETED,
                {
                    "workflow": workflow.id,
                    "success": result.success,
                    "rolled_back": len(result.rollback),
                    "repositories": {name: r.status.value for name, r in result.repositories.items()},
                },
                source="workflow",
            )
        )
        return result

    async def rollback_artifacts(self, run: CrossRepoResult) -> list[dict[str, Any]]:
        """Undo what ``run`` created, newest first.

        Pull requests are closed and branches deleted. An artifact that cannot
        be undone is recorded as ``failed`` and the rest are still attempted.
        """
        log.warning("cross_repo_rollback_started", workflow=run.workflow_id, artifacts=len(run.created_artifacts))
        for artifact in reversed(run.created_artifacts):
            repository, kind, name = artifact.split(":", 2)
            repo = RepositoryRef.parse(repository)
            entry: dict[str, Any] = {"artifact": artifact}
            try:
                if kind == "pr":
                    await self.provider.close_pull_request(repo, int(name))
                    entry["status"] = "closed"
                else:
                    await self.provider.delete_ref(repo, name)
                    entry["status"] = "deleted"
            except DevFlowError as e:
                log.warning("rollback_failed", workflow=run.workflow_id, artifact=artifact, error=str(e))
                entry.update(status="failed", error=str(e))
            run.rollback.append(entry)
        log.info(
            "cross_repo_rollback_completed",
            workflow=run.workflow_id,
            undone=sum(1 for e in run.rollback if e["status"] != "failed"),
            failed=sum(1 for e in run.rollback if e["status"] == "failed"),
        )
        return run.rollback

    async def _run_repository(
        self,
        workflow: WorkflowDefinition,
        repo: RepositoryRef,
        run: CrossRepoResult,
    ) -> RepositoryWorkflowResult:
        repo_result = RepositoryWorkflowResult(repository=repo.full_name, started_at=datetime.now(UTC))
        try:
            for step in workflow.steps:
                step_result = await self._run_step(repo, step, run)
                repo_result.steps.append(step_result)
                if not step_result.success and step.required:
                    raise StepFailureError(
                        step_result.error or "Required step failed",
                        step=step.name,
                        repository=repo.full_name,
                    )
        except StepFailureError as e:
            repo_result.status = RepositoryStatus.FAILED
            repo_result.error = str(e)
            log.error("repository_workflow_failed", workflow=workflow.id, repository=repo.full_name, error=str(e))
        else:
            repo_result.status = RepositoryStatus.COMPLETED
        repo_result.finished_at = datetime.now(UTC)
        return repo_result

    async def _run_step(self, repo: RepositoryRef, step: WorkflowStep, run: CrossRepoResult) -> StepResult:
        log.debug("workflow_step_started", repository=repo.full_name, step=step.name, type=step.type.value)
        try:
            if step.type == StepType.CREATE_BRANCH:
                output = await self._step_create_branch(repo, step.config, run)
            elif step.type == StepType.CREATE_PR:
                output = await self._step_create_pr(repo, step.config, run)
            elif step.type == StepType.RUN_ACTION:
                output = await self._step_run_action(repo, step.config)
            else:
                raise ValidationError(f"Unsupported step type: {step.type}")
        except DevFlowError as e:
            log.warning("workflow_step_failed", repository=repo.full_name, step=step.name, error=str(e))
            return StepResult(name=step.name, type=step.type, success=False, required=step.required, error=str(e))
        return StepResult(name=step.name, type=step.type, success=True, required=step.required, output=output)

    async def _step_create_branch(self, repo: RepositoryRef, config: dict[str, Any], run: CrossRepoResult) -> dict[str, Any]:
        name = config.get("branch_name")
        if not name:
            raise ValidationError("create-branch step requires branch_name")
        branch = await self.create_branch(repo, name, config.get("base_branch", "main"))
        if not branch.exists:
            run.created_artifacts.append(f"{repo.full_name}:branch:{branch.name}")
        return {"branch": branch.name, "sha": branch.sha, "exists": branch.exists}

    async def _step_create_pr(self, repo: RepositoryRef, config: dict[str, Any], run: CrossRepoResult) -> dict[str, Any]:
        head = config.get("head")
        title = config.get("title")
        if not head or not title:
            raise ValidationError("create-pr step requires head and title")

        existing = await self.provider.find_pull_requests(repo, head)
        if existing:
            return {"pr": existing[0].number, "url": existing[0].url, "existing": True}

        pull_request: PullRequest = await self.provider.create_pull_request(
            repo,
            title=title,
            body=config.get("body", ""),
            head=head,
            base=config.get("base", "main"),
            draft=bool(config.get("draft", False)),
        )
        self.metrics.pull_requests_created += 1
        run.created_artifacts.append(f"{repo.full_name}:pr:{pull_request.number}")
        if config.get("labels"):
            await self.provider.add_labels(repo, pull_request.number, list(config["labels"]))
        return {"pr": pull_request.number, "url": pull_request.url, "existing": False}

    async def _step_run_action(self, repo: RepositoryRef, config: dict[str, Any]) -> dict[str, Any]:
        workflow_id = config.get("workflow_id")
        if not workflow_id:
            raise ValidationError("run-action step requires workflow_id")
        ref = config.get("ref", "main")
        accepted = await self.provider.trigger_workflow(repo, str(workflow_id), ref, config.get("inputs") or {})
        if not accepted:
            raise StepFailureError(f"Workflow {workflow_id} dispatch was rejected", repository=repo.full_name)
        return {"workflow_id": workflow_id, "ref": ref, "dispatched": True}

    def health(self) -> dict[str, Any]:
        return {
            "healthy": True,
            "strategies": sorted(t.value for t in self.strategies),
            "metrics": {
                "workflows_executed": self.metrics.workflows_executed,
                "branches_created": self.metrics.branches_created,
                "pull_requests_created": self.metrics.pull_requests_created,
                "conflict_reports": self.metrics.conflict_reports,
                "cross_repo_operations": self.metrics.cross_repo_operations,
            },
        }
