"""Per-session execution context.

Each session gets its own SessionContext: a settings snapshot, its own store
client bound to the session branch, its own agent correlator, and the state
store. Nothing in a context is shared with another session's context except
the state store, which locks per session.
"""

from dataclasses import dataclass

import structlog

from issue_forge.config.settings import ForgeSettings
from issue_forge.engine.correlator import ResponseCorrelator
from issue_forge.engine.state_manager import SessionStateStore
from issue_forge.models.domain import Session
from issue_forge.providers.base import AgentCapability, ContentStore, MessageChannel
from issue_forge.providers.github_rest import GitHubContentStore

log = structlog.get_logger(__name__)


@dataclass
class SessionContext:
    """Collaborators used by one session's phase controller.

    Attributes:
        settings: Settings snapshot taken when the session started
        store: Content store bound to the session branch
        channel: Message channel used as the agent transport
        agent: Agent capability for the session
        state: Session state store
    """

    settings: ForgeSettings
    store: ContentStore
    channel: MessageChannel
    agent: AgentCapability
    state: SessionStateStore

    @classmethod
    async def create(
        cls,
        settings: ForgeSettings,
        session: Session,
        state: SessionStateStore,
    ) -> "SessionContext":
        """Connect a GitHub-backed context for a session."""
        snapshot = settings.model_copy(deep=True)
        store = GitHubContentStore(
            token=snapshot.github.api_token,
            owner=session.owner,
            repo=session.repo_name,
            branch=session.branch_name,
            base_url=snapshot.github.base_url,
            default_branch=snapshot.github.default_branch,
            request_timeout=snapshot.github.request_timeout,
        )
        await store.connect()
        agent = ResponseCorrelator(store, session.session_id, snapshot.agent)
        log.debug("session_context_created", session_id=session.session_id)
        return cls(settings=snapshot, store=store, channel=store, agent=agent, state=state)

    async def close(self) -> None:
        """Release the store client if it holds one."""
        if isinstance(self.store, GitHubContentStore):
            await self.store.disconnect()
