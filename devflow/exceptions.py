"""Custom exception hierarchy for the DevFlow orchestrator.

Every public operation raises a subclass of ``DevFlowError`` so callers can
handle orchestrator failures with a single except clause, while still
distinguishing the cases that need different treatment (retry, reuse an
existing resource, abort a repository).

Exception Hierarchy:
    DevFlowError (base)
    ├── ConfigurationError
    ├── ValidationError
    ├── NotInitializedError
    ├── TemplateError
    ├── ExternalServiceError
    │   ├── ExternalConflictError
    │   ├── ExternalTransientError
    │   └── ExternalNotFoundError
    └── WorkflowError
        └── StepFailureError

Non-critical sub-step failures (a project field that could not be created, an
auto-merge request the platform refused, a notification that was not
delivered) are not exceptions: they are logged as warnings and recorded in the
``warnings`` list of the operation result.

Example Usage:
    >>> from devflow.exceptions import ExternalConflictError
    >>> try:
    ...     await provider.create_ref(repo, "feature/DEVFLOW-7-x", sha)
    ... except ExternalConflictError:
    ...     exists = True
"""


class DevFlowError(Exception):
    """Base exception for all DevFlow errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(DevFlowError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Unknown project template referenced by an organization
    """

    pass


class ValidationError(DevFlowError):
    """Caller supplied an invalid argument.

    Raised before any side effect happens, for example a repository reference
    without an owner or a workflow definition with no repositories.
    """

    pass


class NotInitializedError(DevFlowError):
    """A component was used before its startup sequence completed.

    Attributes:
        component: Name of the component that is not ready
    """

    def __init__(self, component: str, message: str | None = None) -> None:
        """Initialize exception.

        Args:
            component: Name of the component that is not ready
            message: Optional override for the default message
        """
        self.component = component
        super().__init__(message or f"{component} is not initialized")


class TemplateError(DevFlowError):
    """Template lookup, substitution or rendering failed."""

    pass


class ExternalServiceError(DevFlowError):
    """Development platform communication errors.

    Raised when a platform call fails for a reason that is neither a conflict
    nor transient (authentication failure, malformed request, etc.).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.message = message
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class ExternalConflictError(ExternalServiceError):
    """The resource already exists on the platform.

    Call sites treat this as success with an ``exists`` flag rather than a
    failure (branch already created, project already provisioned).
    """

    pass


class ExternalTransientError(ExternalServiceError):
    """Rate limiting, timeouts or 5xx responses.

    Retried by ``devflow.utils.retry.async_retry`` with exponential backoff
    and jitter before being surfaced.

    Attributes:
        retry_after: Seconds the platform asked us to wait, if it said so
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code=status_code, response_text=response_text)


class ExternalNotFoundError(ExternalServiceError):
    """The requested platform resource does not exist."""

    pass


class WorkflowError(DevFlowError):
    """Workflow execution errors."""

    pass


class StepFailureError(WorkflowError):
    """A required step of a cross-repository workflow failed.

    Aborts the remaining steps for that repository.

    Attributes:
        step: Name of the failed step
        repository: Full name of the repository the step ran against
    """

    def __init__(
        self,
        message: str,
        step: str | None = None,
        repository: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            step: Name of the failed step
            repository: Repository the step ran against
        """
        self.step = step
        self.repository = repository

        parts = [message]
        if step:
            parts.append(f"step: {step}")
        if repository:
            parts.append(f"repository: {repository}")

        full_message = message if len(parts) == 1 else f"{message} ({', '.join(parts[1:])})"
        super().__init__(full_message)
        # Preserve original message
        self.message = message
