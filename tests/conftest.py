"""Pytest configuration and shared fixtures."""

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from devflow.config.organizations import OrganizationConfigStore
from devflow.config.settings import DevFlowSettings
from devflow.config.templates import ProjectTemplateCatalog
from devflow.engine.events import EventBus
from devflow.models.domain import Issue, RepositoryRef
from devflow.providers.base import PlatformProvider


@pytest.fixture
def repo() -> RepositoryRef:
    """Repository used across tests."""
    return RepositoryRef("DevBusinessHub", "webapp")


@pytest.fixture
def sample_issue(repo: RepositoryRef) -> Issue:
    """Scenario issue: a production login bug."""
    return Issue(
        id=1001,
        number=42,
        title="Fix login bug in production",
        body=(
            "Users report that signing in fails with a 500 response since the last deploy. "
            "The session cookie is set, but the redirect after authentication loops back to the "
            "login page. Steps to reproduce: open the login page, enter valid credentials, submit "
            "the form and observe the redirect loop."
        ),
        labels=["bug"],
        node_id="I_kwDOA42",
        repository=repo,
        url="https://github.com/DevBusinessHub/webapp/issues/42",
        author="octocat",
        created_at=datetime(2026, 10, 1, 9, 0, tzinfo=UTC),
        updated_at=datetime(2026, 10, 1, 9, 0, tzinfo=UTC),
    )


@pytest.fixture
def mock_provider() -> AsyncMock:
    """Platform provider whose every method is an AsyncMock."""
    provider = AsyncMock(spec=PlatformProvider)
    provider.find_pull_requests.return_value = []
    provider.health_check.return_value = {"healthy": True, "connected": True}
    return provider


@pytest.fixture
def event_bus() -> MagicMock:
    """Event bus that records published events."""
    bus = MagicMock(spec=EventBus)
    bus.publish = AsyncMock()
    return bus


@pytest.fixture
def config_store() -> OrganizationConfigStore:
    """Built-in organization profiles."""
    return OrganizationConfigStore.with_builtin_defaults()


@pytest.fixture
def catalog() -> ProjectTemplateCatalog:
    """Built-in project templates."""
    return ProjectTemplateCatalog.load()


@pytest.fixture
def settings(tmp_path: Path) -> DevFlowSettings:
    """Settings with a temporary analytics directory and no retry delay."""
    return DevFlowSettings(
        github={"api_token": "ghp_test_token"},
        milestones={"analytics_directory": str(tmp_path / "analytics")},
        retry={"base_delay": 0.0, "jitter": False},
        rate_limit={"requests_per_second": 0},
    )

