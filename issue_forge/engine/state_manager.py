"""
Session state persistence with atomic file writes.

This module provides the SessionStateStore class which keeps one JSON document
per session: the current phase, per-phase status, the original requirements,
how many times the session has been started, and the ledger of every quality
gate pass. The ledger is the source of iteration indices, which must never be
reused within a session, including across restarts.

State File Structure:
    One file per session, named ``{owner}__{repo}__{issue}.json``. See
    ``issue_forge.engine.types.SessionState`` for the schema.

Branch Ledger:
    The local directory does not outlive a CI job, so the same document is
    mirrored to ``LEDGER_PATH`` on the session branch with ``publish()``. A
    new run merges that copy in ``begin_run()``, taking the highest run
    count and iteration counters of either side and the union of histories.

Concurrency Model:
    Each session has its own asyncio lock. Different sessions are accessed
    concurrently; one session's document is accessed serially. Sessions never
    share a document.

Example:
    >>> store = SessionStateStore(".forge/state")
    >>> run = await store.begin_run(session)
    >>> index = await store.next_iteration_index(store.key_for(session), "planning")
"""

import asyncio
import copy
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

import aiofiles
import structlog

from issue_forge.engine.types import IterationEntry, SessionState
from issue_forge.exceptions import IssueForgeError
from issue_forge.models.domain import IterationRecord, Phase, Session
from issue_forge.providers.base import ContentStore

log = structlog.get_logger(__name__)

LEDGER_PATH = ".forge/session.json"

LEDGER_KEYS = (
    "session_id",
    "repo",
    "current_phase",
    "requirements_text",
    "run_count",
    "created_at",
    "phases",
    "next_iteration",
    "history",
)


def parse_ledger(text: str | None) -> SessionState | None:
    """Parse a branch ledger; unreadable ledgers are logged and ignored."""
    if not text:
        return None
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as e:
        log.warning("ledger_unreadable", error=str(e))
        return None
    if not isinstance(data, dict) or not all(key in data for key in LEDGER_KEYS):
        log.warning("ledger_incomplete")
        return None
    return cast(SessionState, data)


class SessionStateStore:
    """Manage session state with atomic file operations.

    Attributes:
        state_dir: Directory where state files are stored.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the store, creating the state directory if needed.

        Args:
            state_dir: Directory for state files.
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    @staticmethod
    def key_for(session: Session) -> str:
        """State key of a session."""
        return SessionStateStore.make_key(session.owner, session.repo_name, session.session_id)

    @staticmethod
    def make_key(owner: str, repo_name: str, session_id: int) -> str:
        return f"{owner}__{repo_name}__{session_id}"

    async def _get_lock(self, key: str) -> asyncio.Lock:
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    def _get_state_path(self, key: str) -> Path:
        return self.state_dir / f"{key}.json"

    async def _load_state_internal(self, key: str) -> SessionState | None:
        """Load state from disk. Caller must hold the session lock."""
        state_path = self._get_state_path(key)
        if not state_path.exists():
            return None

        async with aiofiles.open(state_path) as f:
            content = await f.read()
            return cast(SessionState, json.loads(content))

    async def _save_state_internal(self, key: str, state: SessionState) -> None:
        """Save state to disk. Caller must hold the session lock."""
        state["updated_at"] = datetime.now(UTC).isoformat()
        await self._write_state(self._get_state_path(key), state)

    async def _write_state(self, path: Path, state: SessionState) -> None:
        """Write state to disk atomically using a temporary file."""
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(state, indent=2))

        # Atomic rename - safe on POSIX when same filesystem
        tmp_path.replace(path)

    async def load_state(self, key: str) -> SessionState | None:
        """Load a session's state.

        Returns:
            The state document, or None if the session was never started.
        """
        lock = await self._get_lock(key)
        async with lock:
            return await self._load_state_internal(key)

    @asynccontextmanager
    async def transaction(self, key: str) -> AsyncIterator[SessionState]:
        """Context manager for atomic state updates.

        Changes made to the yielded state are saved on successful exit. On
        an exception the state is not saved and the exception propagates.

        Raises:
            IssueForgeError: If the session has no state yet.
        """
        lock = await self._get_lock(key)
        async with lock:
            state = await self._load_state_internal(key)
            if state is None:
                raise IssueForgeError(f"No state recorded for session {key}")
            try:
                yield state
                await self._save_state_internal(key, state)
            except Exception:
                log.error("state_transaction_failed", key=key)
                raise

    async def begin_run(self, session: Session, remote: SessionState | None = None) -> int:
        """Record a new start of a session and return its run number.

        The first start creates the document. A restart keeps the history
        and iteration counters, clears phase statuses, and increments the
        run count.

        Args:
            session: The session being started.
            remote: The branch ledger, if one exists. Merged before the run
                count is incremented.
        """
        key = self.key_for(session)
        lock = await self._get_lock(key)
        async with lock:
            state = await self._load_state_internal(key)
            if remote is not None:
                state = self._merge_remote(state, remote)
            if state is None:
                state = self._create_initial_state(session)
            else:
                state["phases"] = {}
                state["current_phase"] = Phase.INIT.value
                state["requirements_text"] = session.requirements_text

            state["run_count"] += 1
            await self._save_state_internal(key, state)
            log.info("session_run_started", key=key, run=state["run_count"])
            return state["run_count"]

    async def mark_phase(self, key: str, phase: Phase, status: str, error: str | None = None) -> None:
        """Record a phase status change and, when entering, the current phase.

        Args:
            key: Session state key.
            phase: Phase whose status changed.
            status: "in_progress", "completed" or "failed".
            error: Raw error message for failed phases.
        """
        now = datetime.now(UTC).isoformat()
        async with self.transaction(key) as state:
            entry = state["phases"].setdefault(phase.value, {"status": status})
            entry["status"] = status
            if status == "in_progress":
                entry["started_at"] = now
                state["current_phase"] = phase.value
            else:
                entry["completed_at"] = now
            if error is not None:
                entry["error"] = error
                state["current_phase"] = Phase.FAILED.value
            elif phase.is_terminal:
                state["current_phase"] = phase.value

    async def next_iteration_index(self, key: str, phase: str) -> int:
        """Reserve and return the next iteration index for a phase.

        Indices start at 1, increase by one per call, and are never handed
        out twice for the same session and phase.
        """
        async with self.transaction(key) as state:
            index = state["next_iteration"].get(phase, 1)
            state["next_iteration"][phase] = index + 1
            return index

    async def record_iteration(self, key: str, record: IterationRecord) -> None:
        """Append a quality gate pass to the session history."""
        entry: IterationEntry = {
            "phase": record.phase,
            "index": record.iteration_index,
            "path": record.candidate_path,
            "score": record.score,
            "run": record.run,
        }
        async with self.transaction(key) as state:
            state["history"].append(entry)

    async def get_history(self, key: str, phase: str | None = None) -> list[IterationEntry]:
        """Return the recorded gate passes, optionally for one phase."""
        state = await self.load_state(key)
        if state is None:
            return []
        history = state["history"]
        if phase is None:
            return list(history)
        return [entry for entry in history if entry["phase"] == phase]

    async def publish(self, key: str, store: ContentStore) -> None:
        """Mirror a session's document to the ledger file on its branch."""
        state = await self.load_state(key)
        if state is None:
            raise IssueForgeError(f"No state recorded for session {key}")
        await store.save(
            LEDGER_PATH,
            json.dumps(state, indent=2),
            f"Session ledger: {state['current_phase']} (run {state['run_count']})",
        )

    @staticmethod
    def _merge_remote(local: SessionState | None, remote: SessionState) -> SessionState:
        if local is None:
            merged = copy.deepcopy(remote)
        else:
            merged = local
            merged["run_count"] = max(local["run_count"], remote["run_count"])
            for phase, index in remote["next_iteration"].items():
                merged["next_iteration"][phase] = max(merged["next_iteration"].get(phase, 1), index)
            known = {(entry["phase"], entry["index"]) for entry in merged["history"]}
            merged["history"].extend(
                entry for entry in remote["history"] if (entry["phase"], entry["index"]) not in known
            )

        # Counters never fall behind a recorded index.
        for entry in merged["history"]:
            counters = merged["next_iteration"]
            counters[entry["phase"]] = max(counters.get(entry["phase"], 1), entry["index"] + 1)
        return merged

    def _create_initial_state(self, session: Session) -> SessionState:
        now = datetime.now(UTC).isoformat()
        return {
            "session_id": session.session_id,
            "repo": session.repo_full_name,
            "current_phase": Phase.INIT.value,
            "requirements_text": session.requirements_text,
            "run_count": 0,
            "created_at": session.created_at.isoformat(),
            "updated_at": now,
            "phases": {},
            "next_iteration": {},
            "history": [],
        }
