"""
Milestone Completion Tracker.

Computes completion for a repository's milestones and closes the ones whose
issues are all resolved, posting a completion report issue. Every check is
appended to the analytics store when analytics are enabled.

A milestone is complete when it has no open issues and at least one issue in
total. Closing is guarded by the milestone's state, so re-checking a closed
milestone never closes it again.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

import structlog

from devflow.config.settings import MilestonesConfig
from devflow.engine.analytics import CompletionRecordStore
from devflow.engine.events import Event, EventBus, EventType
from devflow.enums import MilestoneState
from devflow.exceptions import DevFlowError
from devflow.models.domain import (
    ClosureInfo,
    CompletionMetrics,
    Issue,
    Milestone,
    MilestoneBatchResult,
    MilestoneBatchSummary,
    MilestoneCheckResult,
    RepositoryRef,
)
from devflow.providers.base import PlatformProvider
from devflow.rendering.engine import TemplateRenderer

log = structlog.get_logger(__name__)


def completion_metrics(open_issues: int, closed_issues: int) -> CompletionMetrics:
    """Completion percentage (2 decimals) and completed flag for the counts."""
    total = open_issues + closed_issues
    percentage = round(closed_issues / total * 100, 2) if total else 0.0
    return CompletionMetrics(
        total_issues=total,
        open_issues=open_issues,
        closed_issues=closed_issues,
        completion_percentage=percentage,
        is_completed=open_issues == 0 and total > 0,
    )


def average_velocity(closed_issues: int, duration_days: int) -> float:
    """Closed issues per day; a milestone closed the day it opened counts as one day."""
    return round(closed_issues / max(duration_days, 1), 2)


class MilestoneCompletionTracker:
    """Check milestone completion and auto-close finished milestones."""

    def __init__(
        self,
        provider: PlatformProvider,
        bus: EventBus,
        store: CompletionRecordStore | None = None,
        config: MilestonesConfig | None = None,
        renderer: TemplateRenderer | None = None,
    ) -> None:
        self.provider = provider
        self.bus = bus
        self.config = config or MilestonesConfig()
        self.store = store
        self.renderer = renderer or TemplateRenderer()
        self.checks = 0
        self.closed = 0

    async def check_all_milestones(self, repo: RepositoryRef) -> MilestoneBatchResult:
        """Check every open milestone of ``repo`` concurrently.

        Failures for individual milestones are collected in ``errors``;
        the batch itself only raises when the milestone list cannot be read.
        """
        milestones = await self.provider.list_milestones(repo, state="open")
        semaphore = asyncio.Semaphore(self.config.max_concurrent_checks)

        async def check(milestone: Milestone) -> MilestoneCheckResult:
            async with semaphore:
                return await self.check_milestone_completion(repo, milestone.number, milestone=milestone)

        outcomes = await asyncio.gather(*(check(m) for m in milestones), return_exceptions=True)

        results: list[MilestoneCheckResult] = []
        errors: list[dict[str, Any]] = []
        for milestone, outcome in zip(milestones, outcomes, strict=True):
            if isinstance(outcome, MilestoneCheckResult):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                if not isinstance(outcome, DevFlowError):
                    log.error(
                        "milestone_check_crashed",
                        milestone=milestone.number,
                        error=repr(outcome),
                        exc_info=outcome,
                    )
                errors.append({"milestone": milestone.number, "title": milestone.title, "error": str(outcome)})
            else:
                raise outcome

        summary = MilestoneBatchSummary(
            total_checked=len(results),
            auto_closed=sum(1 for r in results if r.auto_closed),
            eligible=sum(1 for r in results if r.auto_close_eligible),
        )
        log.info(
            "milestone_batch_checked",
            repository=repo.full_name,
            checked=summary.total_checked,
            auto_closed=summary.auto_closed,
            errors=len(errors),
        )
        if self.store is not None and self.config.enable_analytics:
            try:
                await self.store.purge_expired()
            except OSError as e:
                log.warning("analytics_purge_failed", error=str(e))
        return MilestoneBatchResult(results=results, errors=errors, summary=summary)

    async def check_milestone_completion(
        self,
        repo: RepositoryRef,
        number: int,
        milestone: Milestone | None = None,
    ) -> MilestoneCheckResult:
        """Compute completion for one milestone and auto-close it if eligible."""
        if milestone is None:
            milestone = await self.provider.get_milestone(repo, number)

        metrics = completion_metrics(milestone.open_issues, milestone.closed_issues)
        eligible = self.config.enable_auto_close and milestone.state == MilestoneState.OPEN and metrics.is_completed
        result = MilestoneCheckResult(
            repository=repo.full_name,
            milestone=milestone,
            metrics=metrics,
            auto_close_eligible=eligible,
            checked_at=datetime.now(UTC),
        )
        self.checks += 1
        log.info(
            "milestone_checked",
            repository=repo.full_name,
            milestone=milestone.number,
            completion=metrics.completion_percentage,
            eligible=eligible,
        )

        if eligible:
            await self.close_milestone(repo, result)

        if self.store is not None and self.config.enable_analytics:
            try:
                await self.store.append(result)
            except (OSError, ValueError) as e:
                log.warning("analytics_write_failed", milestone=milestone.number, error=str(e))
                result.warnings.append(f"Analytics record not written: {e}")

        await self.bus.publish(
            Event(
                EventType.MILESTONE_CHECKED,
                {
                    "repository": repo.full_name,
                    "milestone": milestone.number,
                    "completion_percentage": metrics.completion_percentage,
                    "auto_closed": result.auto_closed,
                },
                source="milestones",
            )
        )
        return result

    async def close_milestone(self, repo: RepositoryRef, check: MilestoneCheckResult) -> ClosureInfo | None:
        """Close the checked milestone and post its completion report.

        Does nothing when the milestone is not open. The report is
        best-effort; a failure is recorded as a warning on ``check``.
        """
        milestone = check.milestone
        if milestone.state != MilestoneState.OPEN:
            log.debug("milestone_close_skipped", milestone=milestone.number, state=milestone.state.value)
            return None

        updated = await self.provider.update_milestone_state(repo, milestone.number, MilestoneState.CLOSED.value)
        milestone.state = updated.state

        completed_at = datetime.now(UTC)
        duration_days = 0
        if milestone.created_at is not None:
            created_at = milestone.created_at
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=UTC)
            duration_days = max((completed_at - created_at).days, 0)
        closure = ClosureInfo(
            completed_at=completed_at,
            duration_days=duration_days,
            total_issues_completed=milestone.closed_issues,
            average_velocity=average_velocity(milestone.closed_issues, duration_days),
        )
        check.closure = closure
        check.auto_closed = True
        self.closed += 1

        try:
            await self._post_report(repo, check, closure)
        except DevFlowError as e:
            log.warning("milestone_report_failed", milestone=milestone.number, error=str(e))
            check.warnings.append(f"Completion report not posted: {e}")

        log.info(
            "milestone_closed",
            repository=repo.full_name,
            milestone=milestone.number,
            duration_days=duration_days,
            velocity=closure.average_velocity,
        )
        await self.bus.publish(
            Event(
                EventType.MILESTONE_CLOSED,
                {
                    "repository": repo.full_name,
                    "milestone": milestone.number,
                    "title": milestone.title,
                    "duration_days": duration_days,
                    "average_velocity": closure.average_velocity,
                    "report_url": closure.report_url,
                },
                source="milestones",
            )
        )
        return closure

    async def _post_report(self, repo: RepositoryRef, check: MilestoneCheckResult, closure: ClosureInfo) -> None:
        issues: list[Issue] = await self.provider.get_issues(repo, state="closed", milestone=check.milestone.number)
        body = self.renderer.render(
            "milestone_report.md.j2",
            {
                "milestone": check.milestone,
                "repository": repo.full_name,
                "metrics": check.metrics,
                "closure": closure,
                "issues": issues,
            },
        )
        report = await self.provider.create_issue(
            repo,
            title=f"Milestone Completed: {check.milestone.title}",
            body=body,
            labels=list(self.config.report_labels),
        )
        closure.report_number = report.number
        closure.report_url = report.url

    async def handle_issue_closed(self, repo: RepositoryRef, issue: Issue) -> MilestoneCheckResult | None:
        """Re-check the milestone of a closed issue; None when it has none."""
        if issue.milestone is None:
            return None
        return await self.check_milestone_completion(repo, issue.milestone)

    def health(self) -> dict[str, Any]:
        return {
            "healthy": True,
            "auto_close": self.config.enable_auto_close,
            "analytics": self.config.enable_analytics and self.store is not None,
            "checks": self.checks,
            "closed": self.closed,
        }
