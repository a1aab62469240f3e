"""
Abstract base classes for providers.

This module defines the narrow interfaces the orchestration engine needs
from its external collaborators:

- ContentStore: versioned files, branches, pull requests and external jobs
- NotificationChannel: the append-only, user-visible progress log
- MessageChannel: the raw message stream used as the agent transport
- AgentCapability: send a request, get the correlated textual response

NotificationChannel and MessageChannel are separate contracts even when one
physical transport (issue comments) backs both.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from issue_forge.models.domain import Branch, Comment, JobStatus, PullRequest

# Hidden tag carried by notices so the tool never reads its own comments as commands.
NOTICE_MARKER = "<!-- forge-notice -->"


class NotificationChannel(ABC):
    """Append-only, user-visible progress log for a session."""

    @abstractmethod
    async def notify(self, session_id: int, message: str) -> None:
        """Append a status message.

        Args:
            session_id: Session (issue number) the message belongs to.
            message: Markdown text shown to users.
        """
        pass


class MessageChannel(ABC):
    """Raw message stream used to exchange requests and replies with agents."""

    @abstractmethod
    async def post_message(self, session_id: int, body: str) -> Comment:
        """Post a message and return it with its server-assigned timestamp.

        Args:
            session_id: Session (issue number) whose channel to post to.
            body: Message body.

        Returns:
            The created Comment, including ``id`` and ``created_at``.
        """
        pass

    @abstractmethod
    async def list_messages(self, session_id: int, since: datetime | None = None) -> list[Comment]:
        """List messages on the session channel.

        Args:
            session_id: Session (issue number) whose channel to read.
            since: When given, implementations may omit messages created
                before this time. Callers must still filter themselves.

        Returns:
            Messages in any order.
        """
        pass


class ContentStore(NotificationChannel):
    """Versioned storage, branch, pull request and job-runner operations.

    An instance is bound to one repository and one session branch. All
    file operations target that branch.

    Attributes:
        branch: The session branch file operations apply to.
    """

    branch: str

    @abstractmethod
    async def save(self, path: str, content: str, commit_message: str) -> str:
        """Create or update a file on the session branch.

        Read-then-write: when a prior revision exists at ``path`` its
        revision token is supplied with the write. A missing prior revision
        is not an error.

        Args:
            path: File path relative to the repository root.
            content: New file contents.
            commit_message: Commit message.

        Returns:
            Revision identifier (commit SHA) of the write.

        Raises:
            ContentStoreError: If the write keeps conflicting after retries.
        """
        pass

    @abstractmethod
    async def read(self, path: str) -> str | None:
        """Read a file from the session branch.

        Returns:
            The decoded contents, or None if the file does not exist.
        """
        pass

    @abstractmethod
    async def create_branch(self, name: str) -> Branch:
        """Create a branch from the default branch.

        Idempotent: an already existing branch is returned, not an error.
        """
        pass

    @abstractmethod
    async def dispatch_job(self, workflow_id: str, branch: str, inputs: dict[str, str]) -> None:
        """Start a named external job on a branch.

        Raises:
            ExecutionDispatchError: If the job could not be started.
        """
        pass

    @abstractmethod
    async def poll_job_status(self, workflow_id: str, branch: str) -> JobStatus | None:
        """Return the status of the most recent run of a job on a branch.

        Returns:
            The latest run, or None if the job has no runs on the branch.
        """
        pass

    @abstractmethod
    async def fetch_job_artifacts(self, run_id: int) -> dict[str, str]:
        """Download all artifacts produced by a job run.

        Returns:
            Mapping of artifact file name (without directories) to content.
        """
        pass

    async def job_runner_available(self, workflow_id: str) -> bool:
        """Probe whether a job workflow can be dispatched.

        Default implementation assumes availability; adapters override it
        with a real check.
        """
        return True

    @abstractmethod
    async def open_pull_request(self, branch: str, title: str, body: str) -> PullRequest:
        """Open a pull request from ``branch`` into the default branch.

        If one is already open for the branch it is returned unchanged.
        """
        pass

    @abstractmethod
    async def get_issue_body(self, session_id: int) -> str:
        """Return the body of the issue that created the session."""
        pass

    @abstractmethod
    async def close_issue(self, session_id: int) -> None:
        """Close the issue that created the session."""
        pass


class AgentCapability(ABC):
    """Send a natural-language request to an agent and obtain its reply."""

    @abstractmethod
    async def ask(self, request_text: str) -> str:
        """Send a request and wait for the correlated response.

        Args:
            request_text: Natural-language request.

        Returns:
            The agent's textual response.

        Raises:
            ResponseTimeoutError: If no response arrives within budget.
        """
        pass
