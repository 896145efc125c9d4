"""Tests for devflow/exceptions.py - the exception hierarchy."""

import pytest

from devflow.exceptions import (
    ConfigurationError,
    DevFlowError,
    ExternalConflictError,
    ExternalNotFoundError,
    ExternalServiceError,
    ExternalTransientError,
    NotInitializedError,
    StepFailureError,
    TemplateError,
    ValidationError,
    WorkflowError,
)


class TestExceptionHierarchy:
    """Tests for the exception classes."""

    @pytest.mark.parametrize(
        "exc_class",
        [
            ConfigurationError,
            ValidationError,
            TemplateError,
            WorkflowError,
            ExternalServiceError,
            ExternalConflictError,
            ExternalTransientError,
            ExternalNotFoundError,
        ],
    )
    def test_all_inherit_from_base(self, exc_class):
        """A single except clause should catch every orchestrator error."""
        error = exc_class("boom")

        assert isinstance(error, DevFlowError)
        assert error.message == "boom"

    def test_platform_errors_share_parent(self):
        for exc_class in (ExternalConflictError, ExternalTransientError, ExternalNotFoundError):
            assert issubclass(exc_class, ExternalServiceError)

    def test_external_error_includes_status(self):
        error = ExternalServiceError("Forbidden", status_code=403, response_text="{}")

        assert str(error) == "Forbidden (HTTP 403)"
        assert error.message == "Forbidden"
        assert error.response_text == "{}"

    def test_transient_retry_after(self):
        error = ExternalTransientError("rate limited", status_code=429, retry_after=12.5)

        assert error.retry_after == 12.5
        assert error.status_code == 429

    def test_not_initialized_default_message(self):
        error = NotInitializedError("DevFlowOrchestrator")

        assert error.component == "DevFlowOrchestrator"
        assert error.message == "DevFlowOrchestrator is not initialized"

    def test_step_failure_context(self):
        """Step failures should carry the step and repository."""
        error = StepFailureError("Tests failed", step="run-tests", repository="DevBusinessHub/webapp")

        assert isinstance(error, WorkflowError)
        assert error.message == "Tests failed"
        assert str(error) == "Tests failed (step: run-tests, repository: DevBusinessHub/webapp)"

    def test_step_failure_without_context(self):
        assert str(StepFailureError("Tests failed")) == "Tests failed"

