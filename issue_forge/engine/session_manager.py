"""Routing of classified events to session tasks.

Each session runs as its own asyncio task with its own SessionContext. The
manager keeps a registry of running tasks so a restart command can cancel
the session it replaces.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from issue_forge.config.settings import ForgeSettings
from issue_forge.engine.context import SessionContext
from issue_forge.engine.controller import PhaseController, SessionOutcome
from issue_forge.engine.event_classifier import EventKind, ForgeEvent
from issue_forge.engine.state_manager import LEDGER_PATH, SessionStateStore, parse_ledger
from issue_forge.models.domain import Phase, Session

log = structlog.get_logger(__name__)

ContextFactory = Callable[[ForgeSettings, Session, SessionStateStore], Awaitable[SessionContext]]

APPROVAL_MESSAGE = "✅ Project approved! Ready for deployment."


class SessionManager:
    """Starts, restarts and approves sessions."""

    def __init__(
        self,
        settings: ForgeSettings,
        state: SessionStateStore | None = None,
        context_factory: ContextFactory = SessionContext.create,
    ) -> None:
        self.settings = settings
        self.state = state or SessionStateStore(settings.state_dir)
        self.context_factory = context_factory
        self._tasks: dict[str, asyncio.Task[SessionOutcome]] = {}
        self._sessions: dict[str, Session] = {}

    async def handle_event(self, event: ForgeEvent) -> asyncio.Task[SessionOutcome] | None:
        """Act on a classified event.

        Returns:
            The session task for start and restart events, otherwise None.
        """
        if not event.should_process:
            return None

        assert event.owner and event.repo_name and event.issue_number
        if event.kind is EventKind.START:
            return self.start_session(event.owner, event.repo_name, event.issue_number, event.issue_body)
        if event.kind is EventKind.RESTART:
            return await self.restart_session(event.owner, event.repo_name, event.issue_number, event.issue_body)
        if event.kind is EventKind.APPROVE:
            await self.approve(event.owner, event.repo_name, event.issue_number)
        return None

    def start_session(self, owner: str, repo_name: str, issue_number: int, requirements: str) -> asyncio.Task[SessionOutcome]:
        """Start a session task, or return the one already running for the issue."""
        key = SessionStateStore.make_key(owner, repo_name, issue_number)
        running = self._tasks.get(key)
        if running is not None and not running.done():
            log.info("session_already_running", key=key)
            return running

        session = Session(session_id=issue_number, owner=owner, repo_name=repo_name, requirements_text=requirements)
        return self._spawn(key, session, restart=False)

    async def restart_session(
        self,
        owner: str,
        repo_name: str,
        issue_number: int,
        requirements: str | None = None,
    ) -> asyncio.Task[SessionOutcome]:
        """Cancel any running task for the issue and start again at planning.

        The requirements recorded when the session first started take
        precedence over ``requirements``.
        """
        key = SessionStateStore.make_key(owner, repo_name, issue_number)
        running = self._tasks.get(key)
        if running is not None and not running.done():
            log.info("session_cancelling", key=key)
            running.cancel()
            await asyncio.wait([running])

        recorded = await self.state.load_state(key)
        if recorded is not None and recorded["requirements_text"]:
            requirements = recorded["requirements_text"]

        session = Session(
            session_id=issue_number,
            owner=owner,
            repo_name=repo_name,
            requirements_text=requirements or "",
        )
        return self._spawn(key, session, restart=True)

    async def approve(self, owner: str, repo_name: str, issue_number: int) -> bool:
        """Post the approval notice and close the issue.

        Only recognized while the session is verifying or completed. Without
        a live session or local state, the phase comes from the ledger on the
        session branch.

        Returns:
            True if the approval was applied.
        """
        key = SessionStateStore.make_key(owner, repo_name, issue_number)
        session = self._sessions.get(key) or Session(
            session_id=issue_number, owner=owner, repo_name=repo_name, requirements_text=""
        )
        phase = await self.current_phase(key)

        context = await self.context_factory(self.settings, session, self.state)
        try:
            if phase is None:
                ledger = parse_ledger(await context.store.read(LEDGER_PATH))
                phase = Phase(ledger["current_phase"]) if ledger is not None else None
            if phase is None or not phase.accepts_approval:
                log.info("approval_ignored", key=key, phase=str(phase) if phase else None)
                return False

            await context.store.notify(issue_number, APPROVAL_MESSAGE)
            await context.store.close_issue(issue_number)
        finally:
            await context.close()
        log.info("session_approved", key=key, phase=str(phase))
        return True

    async def current_phase(self, key: str) -> Phase | None:
        """Phase of a live session, else the last recorded phase."""
        session = self._sessions.get(key)
        if session is not None:
            return session.current_phase
        recorded = await self.state.load_state(key)
        if recorded is None:
            return None
        return Phase(recorded["current_phase"])

    def get_task(self, owner: str, repo_name: str, issue_number: int) -> asyncio.Task[SessionOutcome] | None:
        return self._tasks.get(SessionStateStore.make_key(owner, repo_name, issue_number))

    def _spawn(self, key: str, session: Session, restart: bool) -> asyncio.Task[SessionOutcome]:
        self._sessions[key] = session
        task = asyncio.create_task(self._run(session, restart), name=f"forge-session-{key}")
        self._tasks[key] = task
        log.info("session_task_started", key=key, restart=restart)
        return task

    async def _run(self, session: Session, restart: bool) -> SessionOutcome:
        context = await self.context_factory(self.settings, session, self.state)
        try:
            controller = PhaseController(session, context)
            if restart:
                return await controller.restart()
            return await controller.run()
        finally:
            await context.close()
