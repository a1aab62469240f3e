"""Pytest configuration and shared fixtures."""

import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from issue_forge.config.settings import ForgeSettings
from issue_forge.engine.context import SessionContext
from issue_forge.engine.state_manager import SessionStateStore
from issue_forge.exceptions import ExecutionDispatchError
from issue_forge.models.domain import Branch, Comment, JobStatus, PullRequest, Session
from issue_forge.providers.base import AgentCapability, ContentStore, MessageChannel


class FakeContentStore(ContentStore, MessageChannel):
    """In-memory content store and issue comment channel.

    Attributes:
        files: Current file contents by path
        saves: Every save as (path, content, commit_message)
        notifications: Every notify call as (session_id, message)
        messages: All comments, including notifications and agent traffic
        job_statuses: Statuses returned by successive poll_job_status calls;
            the last one repeats
        job_writes: Files the dispatched job commits to the branch
    """

    def __init__(self, branch: str = "project-42") -> None:
        self.branch = branch
        self.files: dict[str, str] = {}
        self.saves: list[tuple[str, str, str]] = []
        self.branches: dict[str, Branch] = {}
        self.create_branch_calls = 0
        self.notifications: list[tuple[int, str]] = []
        self.messages: list[Comment] = []
        self.dispatches: list[tuple[str, str, dict[str, str]]] = []
        self.dispatch_error: Exception | None = None
        self.job_statuses: list[JobStatus | None] = []
        self.artifacts: dict[str, str] = {}
        self.job_writes: dict[str, str] = {}
        self.runner_available = True
        self.pull_requests: list[PullRequest] = []
        self.closed_issues: list[int] = []
        self.issue_bodies: dict[int, str] = {}
        self.agent_login = "claude[bot]"
        self.responder: Callable[[str], str | None] | None = None
        self._next_id = 1000

    def _comment(self, body: str, author: str, created_at: datetime | None = None) -> Comment:
        self._next_id += 1
        comment = Comment(
            id=self._next_id,
            body=body,
            author=author,
            created_at=created_at or datetime.now(UTC),
        )
        self.messages.append(comment)
        return comment

    def add_message(self, body: str, author: str = "someone", created_at: datetime | None = None) -> Comment:
        return self._comment(body, author, created_at)

    async def notify(self, session_id: int, message: str) -> None:
        self.notifications.append((session_id, message))
        self._comment(message, "forge-bot")

    async def post_message(self, session_id: int, body: str) -> Comment:
        request = self._comment(body, "forge-bot")
        if self.responder is not None:
            match = re.search(r"forge-request:([0-9a-f]+)", body)
            reply = self.responder(body)
            if match and reply is not None:
                self._comment(
                    f"forge-reply:{match.group(1)}\n{reply}",
                    self.agent_login,
                    request.created_at + timedelta(seconds=1),
                )
        return request

    async def list_messages(self, session_id: int, since: datetime | None = None) -> list[Comment]:
        return list(self.messages)

    async def save(self, path: str, content: str, commit_message: str) -> str:
        self.files[path] = content
        self.saves.append((path, content, commit_message))
        return f"sha-{len(self.saves)}"

    async def read(self, path: str) -> str | None:
        return self.files.get(path)

    async def create_branch(self, name: str) -> Branch:
        self.create_branch_calls += 1
        return self.branches.setdefault(name, Branch(name=name, sha="base-sha"))

    async def dispatch_job(self, workflow_id: str, branch: str, inputs: dict[str, str]) -> None:
        self.dispatches.append((workflow_id, branch, inputs))
        if self.dispatch_error is not None:
            raise self.dispatch_error
        for path, content in self.job_writes.items():
            await self.save(path, content, f"Job {workflow_id} output")

    async def poll_job_status(self, workflow_id: str, branch: str) -> JobStatus | None:
        if not self.job_statuses:
            return None
        if len(self.job_statuses) > 1:
            return self.job_statuses.pop(0)
        return self.job_statuses[0]

    async def fetch_job_artifacts(self, run_id: int) -> dict[str, str]:
        return dict(self.artifacts)

    async def job_runner_available(self, workflow_id: str) -> bool:
        return self.runner_available

    async def open_pull_request(self, branch: str, title: str, body: str) -> PullRequest:
        pr = PullRequest(
            number=len(self.pull_requests) + 1,
            title=title,
            head=branch,
            base="main",
            url=f"https://github.com/acme/webshop/pull/{len(self.pull_requests) + 1}",
        )
        self.pull_requests.append(pr)
        self._last_pr_body = body
        return pr

    async def get_issue_body(self, session_id: int) -> str:
        return self.issue_bodies.get(session_id, "")

    async def close_issue(self, session_id: int) -> None:
        self.closed_issues.append(session_id)

    def saved_paths(self) -> list[str]:
        return [path for path, _, _ in self.saves]


class ScriptedAgent(AgentCapability):
    """Agent that answers from a routing function and records requests."""

    def __init__(self, handler: Callable[[str], str]) -> None:
        self.handler = handler
        self.requests: list[str] = []

    async def ask(self, request_text: str) -> str:
        self.requests.append(request_text)
        return self.handler(request_text)


class AlwaysFailingDispatchStore(FakeContentStore):
    """Store whose job runner never starts a job."""

    def __init__(self, branch: str = "project-42") -> None:
        super().__init__(branch)
        self.dispatch_error = ExecutionDispatchError("Workflow not found", workflow_id="research.yml")


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def state_store(temp_state_dir: Path) -> SessionStateStore:
    """SessionStateStore instance with temp directory."""
    return SessionStateStore(temp_state_dir)


@pytest.fixture
def settings(temp_state_dir: Path) -> ForgeSettings:
    """Settings with instant polling and sequential execution."""
    return ForgeSettings(
        github={"api_token": "test-token"},
        agent={"poll_interval": 0, "max_attempts": 3, "request_timeout": 5},
        execution={"mode": "sequential", "job_poll_interval": 0, "job_max_wait": 1},
        pipeline={"state_directory": str(temp_state_dir)},
    )


@pytest.fixture
def sample_session() -> Session:
    """Session for issue #42."""
    return Session(
        session_id=42,
        owner="acme",
        repo_name="webshop",
        requirements_text="Build a todo app with user accounts",
    )


@pytest.fixture
def fake_store() -> FakeContentStore:
    return FakeContentStore()


@pytest.fixture
def fake_store_class() -> type[FakeContentStore]:
    """Factory fixture for creating extra stores."""
    return FakeContentStore


@pytest.fixture
def failing_dispatch_store() -> FakeContentStore:
    return AlwaysFailingDispatchStore()


@pytest.fixture
def scripted_agent() -> type[ScriptedAgent]:
    """Factory fixture for creating scripted agents."""
    return ScriptedAgent


@pytest.fixture
def make_context(settings: ForgeSettings, state_store: SessionStateStore):
    """Build a SessionContext from a store and an agent."""

    def _make(store: FakeContentStore, agent: AgentCapability, context_settings: ForgeSettings | None = None):
        return SessionContext(
            settings=context_settings or settings,
            store=store,
            channel=store,
            agent=agent,
            state=state_store,
        )

    return _make
