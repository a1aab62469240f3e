"""Custom exception hierarchy for the issue-forge orchestration engine.

This module defines the structured exception hierarchy used throughout the
engine. Each error type maps to one recovery policy, so callers can decide
whether an error is local (recovered in place) or fatal to the session.

Exception Hierarchy:
    IssueForgeError (base)
    ├── ConfigurationError
    ├── ContentStoreError
    │   └── RevisionConflictError
    ├── PlanValidationError
    ├── ExecutionDispatchError
    ├── ParseError
    ├── PhaseFailure
    └── AgentError
        └── ResponseTimeoutError

Recovery Policy:
    - ExecutionDispatchError: recovered inside the execution strategy by
      falling back to sequential execution.
    - ParseError: recovered inside the quality gate by degrading the score
      to zero.
    - Everything else escaping a phase is wrapped in PhaseFailure and moves
      the session to the failed state.

Example Usage:
    >>> from issue_forge.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""


class IssueForgeError(Exception):
    """Base exception for all issue-forge errors.

    All custom exceptions in the engine inherit from this base class,
    allowing callers to catch every engine-specific error with a single
    except clause.

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


class ConfigurationError(IssueForgeError):
    """Configuration-related errors.

    Raised when configuration files are invalid, missing, or contain
    incompatible settings.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing required configuration fields
        - Unset environment variable referenced by the config
    """

    pass


class ContentStoreError(IssueForgeError):
    """Versioned content store errors.

    Raised when a store operation fails in a way callers need to handle
    explicitly, such as a revision conflict that survived all retries.

    Attributes:
        path: Repository path involved in the failed operation, if any
        status_code: HTTP status code reported by the store, if any
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        status_code: int | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            path: Repository path involved in the failure
            status_code: HTTP status code (if applicable)
        """
        self.path = path
        self.status_code = status_code

        full_message = message
        if path:
            full_message = f"{full_message} (path: {path})"
        if status_code:
            full_message = f"{full_message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class RevisionConflictError(ContentStoreError):
    """A write was rejected because its revision token was stale.

    Raised by store adapters when another writer updated the file between
    the read and the write. Writes retry on this error with backoff.
    """

    pass


class PlanValidationError(IssueForgeError):
    """A plan violates a structural invariant.

    Raised before any work starts, for example when a development plan
    declares a component that depends on a later, unknown, or cyclic
    component, or when two components share a name.

    Attributes:
        component: Name of the offending component, if known
    """

    def __init__(self, message: str, component: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            component: Name of the offending component
        """
        self.component = component
        super().__init__(message)


class ExecutionDispatchError(IssueForgeError):
    """The external parallel job runner is unavailable or failed.

    Raised when a job cannot be dispatched, concludes unsuccessfully, or
    does not reach a terminal state within its wait budget. The delegated
    execution strategy catches this and falls back to sequential execution.

    Attributes:
        workflow_id: Identifier of the job workflow
        conclusion: Terminal conclusion reported by the runner, if any
    """

    def __init__(
        self,
        message: str,
        workflow_id: str | None = None,
        conclusion: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            workflow_id: Identifier of the job workflow
            conclusion: Terminal conclusion reported by the runner
        """
        self.workflow_id = workflow_id
        self.conclusion = conclusion

        parts = []
        if workflow_id:
            parts.append(f"workflow: {workflow_id}")
        if conclusion:
            parts.append(f"conclusion: {conclusion}")

        full_message = f"{message} ({', '.join(parts)})" if parts else message
        super().__init__(full_message)
        self.message = message


class ParseError(IssueForgeError):
    """Agent output could not be read into a typed value.

    Raised by the parsing adapter. The quality gate never lets this escape;
    an unreadable verdict degrades to a score of zero.
    """

    pass


class PhaseFailure(IssueForgeError):
    """An exception escaped a phase and the session has failed.

    The original exception is chained as ``__cause__`` and kept in
    ``cause``. The message is the raw message of the original error so
    that it can be surfaced to users unchanged.

    Attributes:
        phase: Name of the phase that failed
        session_id: Session (issue number) that failed
        cause: The original exception
    """

    def __init__(
        self,
        message: str,
        phase: str | None = None,
        session_id: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Raw error message of the original exception
            phase: Name of the phase that failed
            session_id: Session that failed
            cause: The original exception
        """
        self.phase = phase
        self.session_id = session_id
        self.cause = cause
        super().__init__(message)


# =============================================================================
# Agent Errors
# =============================================================================


class AgentError(IssueForgeError):
    """Base exception for agent request errors.

    Attributes:
        message: Human-readable error description
        session_id: Session the request belonged to, if known
    """

    def __init__(self, message: str, session_id: int | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            session_id: Session the request belonged to
        """
        self.session_id = session_id
        full_message = message if session_id is None else f"{message} (session: {session_id})"
        super().__init__(full_message)
        self.message = message


class ResponseTimeoutError(AgentError):
    """The agent did not reply within the polling budget.

    Attributes:
        attempts: Number of poll attempts made
        waited_seconds: Approximate total time spent waiting
        correlation_id: Correlation id of the unanswered request
    """

    def __init__(
        self,
        message: str,
        attempts: int | None = None,
        waited_seconds: float | None = None,
        correlation_id: str | None = None,
        session_id: int | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            attempts: Number of poll attempts made
            waited_seconds: Total time spent waiting
            correlation_id: Correlation id of the unanswered request
            session_id: Session the request belonged to
        """
        self.attempts = attempts
        self.waited_seconds = waited_seconds
        self.correlation_id = correlation_id
        if waited_seconds is not None and "within" not in message:
            message = f"{message} within {waited_seconds:g} seconds"
        super().__init__(message, session_id=session_id)
