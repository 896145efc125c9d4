"""Tests for devflow/engine/milestones.py - milestone completion and auto-close."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from devflow.config.settings import MilestonesConfig
from devflow.engine.analytics import CompletionRecordStore
from devflow.engine.events import EventType
from devflow.engine.milestones import MilestoneCompletionTracker, average_velocity, completion_metrics
from devflow.enums import IssueState, MilestoneState
from devflow.exceptions import ExternalNotFoundError, ExternalServiceError
from devflow.models.domain import Issue, Milestone


def make_milestone(number=3, open_issues=0, closed_issues=12, state=MilestoneState.OPEN, age_days=6):
    return Milestone(
        number=number,
        title=f"Sprint {number}",
        state=state,
        open_issues=open_issues,
        closed_issues=closed_issues,
        created_at=datetime.now(UTC) - timedelta(days=age_days, hours=1),
    )


def published_types(bus):
    return [c.args[0].type for c in bus.publish.await_args_list]


@pytest.fixture
def tracker(mock_provider, event_bus):
    mock_provider.update_milestone_state.side_effect = lambda repo, number, state: Milestone(
        number=number, title="closed", state=MilestoneState(state)
    )
    mock_provider.get_issues.return_value = [
        Issue(number=11, title="Fix login", state=IssueState.CLOSED),
        Issue(number=12, title="Add audit log", state=IssueState.CLOSED),
    ]
    mock_provider.create_issue.return_value = Issue(
        number=90, title="Milestone Completed: Sprint 3", url="https://github.com/DevBusinessHub/webapp/issues/90"
    )
    return MilestoneCompletionTracker(mock_provider, event_bus)


class TestMetrics:
    """Tests for the pure completion helpers."""

    @pytest.mark.parametrize(
        ("open_issues", "closed_issues", "percentage", "completed"),
        [
            (0, 12, 100.0, True),
            (1, 2, 66.67, False),
            (5, 0, 0.0, False),
            (0, 0, 0.0, False),
        ],
    )
    def test_completion_metrics(self, open_issues, closed_issues, percentage, completed):
        """An empty milestone is never complete."""
        metrics = completion_metrics(open_issues, closed_issues)

        assert metrics.total_issues == open_issues + closed_issues
        assert metrics.completion_percentage == percentage
        assert metrics.is_completed is completed

    @pytest.mark.parametrize(
        ("closed", "days", "velocity"),
        [(12, 6, 2.0), (10, 3, 3.33), (12, 0, 12.0), (0, 5, 0.0)],
    )
    def test_average_velocity(self, closed, days, velocity):
        """Velocity divides by at least one day."""
        assert average_velocity(closed, days) == velocity


class TestCheckMilestone:
    """Tests for checking and auto-closing a single milestone."""

    @pytest.mark.asyncio
    async def test_completed_milestone_is_closed(self, tracker, mock_provider, event_bus, repo):
        """A fully resolved open milestone should be closed with a report."""
        milestone = make_milestone()
        mock_provider.get_milestone.return_value = milestone

        result = await tracker.check_milestone_completion(repo, 3)

        assert result.metrics.completion_percentage == 100.0
        assert result.metrics.is_completed is True
        assert result.auto_close_eligible is True
        assert result.auto_closed is True
        assert result.milestone.state == MilestoneState.CLOSED
        assert result.closure.duration_days == 6
        assert result.closure.average_velocity == 2.0
        assert result.closure.total_issues_completed == 12
        assert result.closure.report_number == 90
        mock_provider.update_milestone_state.assert_awaited_once_with(repo, 3, "closed")
        assert published_types(event_bus) == [EventType.MILESTONE_CLOSED, EventType.MILESTONE_CHECKED]

    @pytest.mark.asyncio
    async def test_report_issue_contents(self, tracker, mock_provider, repo):
        """The report should list closed issues and carry the configured labels."""
        mock_provider.get_milestone.return_value = make_milestone()

        await tracker.check_milestone_completion(repo, 3)

        mock_provider.get_issues.assert_awaited_once_with(repo, state="closed", milestone=3)
        kwargs = mock_provider.create_issue.await_args.kwargs
        assert kwargs["title"] == "Milestone Completed: Sprint 3"
        assert kwargs["labels"] == ["automation", "analytics"]
        assert "#11 Fix login" in kwargs["body"]
        assert "| Issues completed | 12 |" in kwargs["body"]
        assert "2.00 issues/day" in kwargs["body"]

    @pytest.mark.asyncio
    async def test_incomplete_milestone_stays_open(self, tracker, mock_provider, event_bus, repo):
        mock_provider.get_milestone.return_value = make_milestone(open_issues=2, closed_issues=6)

        result = await tracker.check_milestone_completion(repo, 3)

        assert result.metrics.completion_percentage == 75.0
        assert result.auto_close_eligible is False
        assert result.auto_closed is False
        assert result.closure is None
        mock_provider.update_milestone_state.assert_not_awaited()
        assert published_types(event_bus) == [EventType.MILESTONE_CHECKED]

    @pytest.mark.asyncio
    async def test_closed_milestone_not_closed_again(self, tracker, mock_provider, repo):
        """Re-checking an already closed milestone should not close it twice."""
        mock_provider.get_milestone.return_value = make_milestone(state=MilestoneState.CLOSED)

        result = await tracker.check_milestone_completion(repo, 3)

        assert result.metrics.is_completed is True
        assert result.auto_close_eligible is False
        mock_provider.update_milestone_state.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_auto_close_disabled(self, mock_provider, event_bus, repo):
        tracker = MilestoneCompletionTracker(mock_provider, event_bus, config=MilestonesConfig(enable_auto_close=False))
        mock_provider.get_milestone.return_value = make_milestone()

        result = await tracker.check_milestone_completion(repo, 3)

        assert result.auto_close_eligible is False
        mock_provider.update_milestone_state.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_report_failure_is_warning(self, tracker, mock_provider, repo):
        """The milestone should stay closed when the report cannot be posted."""
        mock_provider.get_milestone.return_value = make_milestone()
        mock_provider.create_issue.side_effect = ExternalServiceError("Issues are disabled")

        result = await tracker.check_milestone_completion(repo, 3)

        assert result.auto_closed is True
        assert result.closure.report_url is None
        assert any("report not posted" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_close_failure_propagates(self, tracker, mock_provider, repo):
        mock_provider.get_milestone.return_value = make_milestone()
        mock_provider.update_milestone_state.side_effect = ExternalServiceError("Forbidden", status_code=403)

        with pytest.raises(ExternalServiceError):
            await tracker.check_milestone_completion(repo, 3)

    @pytest.mark.asyncio
    async def test_same_day_closure_counts_one_day(self, tracker, mock_provider, repo):
        mock_provider.get_milestone.return_value = make_milestone(age_days=0)

        result = await tracker.check_milestone_completion(repo, 3)

        assert result.closure.duration_days == 0
        assert result.closure.average_velocity == 12.0

    @pytest.mark.asyncio
    async def test_naive_created_at_treated_as_utc(self, tracker, mock_provider, repo):
        milestone = make_milestone()
        milestone.created_at = (datetime.now(UTC) - timedelta(days=4, hours=1)).replace(tzinfo=None)
        mock_provider.get_milestone.return_value = milestone

        result = await tracker.check_milestone_completion(repo, 3)

        assert result.closure.duration_days == 4
        assert result.closure.average_velocity == 3.0

    @pytest.mark.asyncio
    async def test_record_appended_to_store(self, mock_provider, event_bus, repo, tmp_path):
        """Each check should be persisted when analytics are enabled."""
        store = CompletionRecordStore(tmp_path)
        tracker = MilestoneCompletionTracker(mock_provider, event_bus, store=store)
        mock_provider.get_milestone.return_value = make_milestone(open_issues=1)

        result = await tracker.check_milestone_completion(repo, 3)

        records = await store.load(result.checked_at.date())
        assert len(records) == 1
        assert records[0]["milestone"]["number"] == 3
        assert records[0]["metrics"]["open_issues"] == 1

    @pytest.mark.asyncio
    async def test_analytics_value_error_is_warning(self, mock_provider, event_bus, repo, tracker):
        """A record that cannot be written should not undo or fail the closure."""
        store = MagicMock(spec=CompletionRecordStore)
        store.append = AsyncMock(side_effect=UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"))
        tracker.store = store
        mock_provider.get_milestone.return_value = make_milestone()

        result = await tracker.check_milestone_completion(repo, 3)

        assert result.auto_closed is True
        assert any("Analytics record not written" in w for w in result.warnings)
        assert published_types(event_bus)[-1] == EventType.MILESTONE_CHECKED


class TestCheckAllMilestones:
    """Tests for batch checks."""

    @pytest.mark.asyncio
    async def test_batch_summary(self, tracker, mock_provider, repo):
        """The summary should count checked, eligible and closed milestones."""
        mock_provider.list_milestones.return_value = [
            make_milestone(number=1),
            make_milestone(number=2, open_issues=3, closed_issues=1),
            make_milestone(number=3, open_issues=0, closed_issues=0),
        ]

        result = await tracker.check_all_milestones(repo)

        mock_provider.list_milestones.assert_awaited_once_with(repo, state="open")
        mock_provider.get_milestone.assert_not_awaited()
        assert result.summary.total_checked == 3
        assert result.summary.eligible == 1
        assert result.summary.auto_closed == 1
        assert result.errors == []
        assert [r.milestone.number for r in result.results] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_errors_collected_per_milestone(self, tracker, mock_provider, repo):
        """One failing milestone should not stop the others."""
        mock_provider.list_milestones.return_value = [make_milestone(number=1), make_milestone(number=2)]

        def close(repo, number, state):
            if number == 1:
                raise ExternalNotFoundError("Milestone not found")
            return Milestone(number=number, title="closed", state=MilestoneState.CLOSED)

        mock_provider.update_milestone_state.side_effect = close

        result = await tracker.check_all_milestones(repo)

        assert result.summary.total_checked == 1
        assert result.errors == [{"milestone": 1, "title": "Sprint 1", "error": "Milestone not found"}]

    @pytest.mark.asyncio
    async def test_unexpected_error_collected(self, tracker, mock_provider, repo):
        """A non-DevFlow exception for one milestone should become an error entry."""
        mock_provider.list_milestones.return_value = [make_milestone(number=1), make_milestone(number=2)]

        def close(repo, number, state):
            if number == 1:
                raise RuntimeError("socket closed")
            return Milestone(number=number, title="closed", state=MilestoneState.CLOSED)

        mock_provider.update_milestone_state.side_effect = close

        result = await tracker.check_all_milestones(repo)

        assert result.summary.auto_closed == 1
        assert result.errors == [{"milestone": 1, "title": "Sprint 1", "error": "socket closed"}]

    @pytest.mark.asyncio
    async def test_undecodable_analytics_file_does_not_fail_batch(self, tracker, mock_provider, repo, tmp_path):
        """An unreadable daily analytics file should not turn a closed milestone into an exception."""
        store = CompletionRecordStore(tmp_path)
        tracker.store = store
        today = datetime.now(UTC).date()
        store.path_for(today).write_bytes(b"\xff\xfe[")
        mock_provider.list_milestones.return_value = [make_milestone(number=1)]

        result = await tracker.check_all_milestones(repo)

        assert result.errors == []
        assert result.summary.auto_closed == 1
        mock_provider.update_milestone_state.assert_awaited_once()
        assert len(await store.load(today)) == 1

    @pytest.mark.asyncio
    async def test_no_milestones(self, tracker, mock_provider, repo):
        mock_provider.list_milestones.return_value = []

        result = await tracker.check_all_milestones(repo)

        assert result.summary.total_checked == 0
        assert result.results == []


class TestIssueClosed:
    """Tests for re-checking on issue close."""

    @pytest.mark.asyncio
    async def test_issue_without_milestone(self, tracker, mock_provider, repo, sample_issue):
        assert await tracker.handle_issue_closed(repo, sample_issue) is None
        mock_provider.get_milestone.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_issue_with_milestone(self, tracker, mock_provider, repo, sample_issue):
        """Closing the last issue should close its milestone."""
        sample_issue.milestone = 3
        mock_provider.get_milestone.return_value = make_milestone()

        result = await tracker.handle_issue_closed(repo, sample_issue)

        mock_provider.get_milestone.assert_awaited_once_with(repo, 3)
        assert result.auto_closed is True

    def test_health(self, tracker):
        health = tracker.health()

        assert health["healthy"] is True
        assert health["analytics"] is False
        assert health["checks"] == 0
