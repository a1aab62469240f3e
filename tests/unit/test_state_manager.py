"""Tests for issue_forge/engine/state_manager.py."""

import asyncio
import json
from pathlib import Path

import pytest

from issue_forge.engine.state_manager import LEDGER_PATH, SessionStateStore, parse_ledger
from issue_forge.exceptions import IssueForgeError
from issue_forge.models.domain import IterationRecord, Phase, Session


class TestSessionStateStoreInit:
    """Tests for SessionStateStore initialization."""

    def test_initialization_creates_directory(self, tmp_path: Path):
        state_dir = tmp_path / "nested" / "state"
        store = SessionStateStore(state_dir)

        assert state_dir.exists()
        assert store.state_dir == state_dir

    def test_keys_include_repository(self, sample_session: Session):
        assert SessionStateStore.key_for(sample_session) == "acme__webshop__42"
        assert SessionStateStore.make_key("acme", "webshop", 42) == "acme__webshop__42"


class TestBeginRun:
    """Tests for session creation and restart bookkeeping."""

    @pytest.mark.asyncio
    async def test_first_run_creates_state_file(self, state_store: SessionStateStore, sample_session: Session):
        run = await state_store.begin_run(sample_session)

        assert run == 1
        path = state_store.state_dir / "acme__webshop__42.json"
        assert path.exists()
        data = json.loads(path.read_text())
        assert data["session_id"] == 42
        assert data["repo"] == "acme/webshop"
        assert data["current_phase"] == "init"
        assert data["requirements_text"] == "Build a todo app with user accounts"

    @pytest.mark.asyncio
    async def test_restart_resets_phases_and_keeps_history(
        self, state_store: SessionStateStore, sample_session: Session
    ):
        key = SessionStateStore.key_for(sample_session)
        await state_store.begin_run(sample_session)
        await state_store.mark_phase(key, Phase.PLANNING, "in_progress")
        index = await state_store.next_iteration_index(key, "planning")
        await state_store.record_iteration(key, IterationRecord("planning", index, "plans/planning/iteration-1.md", 40))

        run = await state_store.begin_run(sample_session)

        state = await state_store.load_state(key)
        assert run == 2
        assert state["phases"] == {}
        assert state["current_phase"] == "init"
        assert len(state["history"]) == 1
        assert await state_store.next_iteration_index(key, "planning") == 2

    @pytest.mark.asyncio
    async def test_load_missing_session_returns_none(self, state_store: SessionStateStore):
        assert await state_store.load_state("nobody__nothing__1") is None


class TestMarkPhase:
    """Tests for phase status tracking."""

    @pytest.mark.asyncio
    async def test_in_progress_sets_current_phase(self, state_store: SessionStateStore, sample_session: Session):
        key = SessionStateStore.key_for(sample_session)
        await state_store.begin_run(sample_session)

        await state_store.mark_phase(key, Phase.RESEARCHING, "in_progress")

        state = await state_store.load_state(key)
        assert state["current_phase"] == "researching"
        assert state["phases"]["researching"]["status"] == "in_progress"
        assert "started_at" in state["phases"]["researching"]

    @pytest.mark.asyncio
    async def test_error_marks_session_failed(self, state_store: SessionStateStore, sample_session: Session):
        key = SessionStateStore.key_for(sample_session)
        await state_store.begin_run(sample_session)
        await state_store.mark_phase(key, Phase.DEVELOPING, "in_progress")

        await state_store.mark_phase(key, Phase.DEVELOPING, "failed", error="boom")

        state = await state_store.load_state(key)
        assert state["current_phase"] == "failed"
        assert state["phases"]["developing"] == {
            "status": "failed",
            "started_at": state["phases"]["developing"]["started_at"],
            "completed_at": state["phases"]["developing"]["completed_at"],
            "error": "boom",
        }

    @pytest.mark.asyncio
    async def test_requires_existing_session(self, state_store: SessionStateStore):
        with pytest.raises(IssueForgeError, match="No state recorded"):
            await state_store.mark_phase("acme__webshop__7", Phase.PLANNING, "in_progress")


class TestIterationLedger:
    """Tests for iteration indices and history."""

    @pytest.mark.asyncio
    async def test_indices_start_at_one_and_increase(self, state_store: SessionStateStore, sample_session: Session):
        key = SessionStateStore.key_for(sample_session)
        await state_store.begin_run(sample_session)

        indices = [await state_store.next_iteration_index(key, "verifying") for _ in range(3)]

        assert indices == [1, 2, 3]
        assert await state_store.next_iteration_index(key, "planning") == 1

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_collide(self, state_store: SessionStateStore, sample_session: Session):
        key = SessionStateStore.key_for(sample_session)
        await state_store.begin_run(sample_session)

        indices = await asyncio.gather(*(state_store.next_iteration_index(key, "planning") for _ in range(10)))

        assert sorted(indices) == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_history_filters_by_phase(self, state_store: SessionStateStore, sample_session: Session):
        key = SessionStateStore.key_for(sample_session)
        await state_store.begin_run(sample_session)
        await state_store.record_iteration(key, IterationRecord("planning", 1, "plans/planning/iteration-1.md", 80))
        await state_store.record_iteration(key, IterationRecord("verifying", 1, "plans/verifying/iteration-1.md", 90))

        history = await state_store.get_history(key, "verifying")

        assert history == [
            {"phase": "verifying", "index": 1, "path": "plans/verifying/iteration-1.md", "score": 90, "run": 1}
        ]
        assert len(await state_store.get_history(key)) == 2

    @pytest.mark.asyncio
    async def test_history_of_unknown_session_is_empty(self, state_store: SessionStateStore):
        assert await state_store.get_history("acme__webshop__99") == []


class TestTransaction:
    @pytest.mark.asyncio
    async def test_failed_transaction_is_not_saved(self, state_store: SessionStateStore, sample_session: Session):
        key = SessionStateStore.key_for(sample_session)
        await state_store.begin_run(sample_session)

        with pytest.raises(RuntimeError):
            async with state_store.transaction(key) as state:
                state["current_phase"] = "developing"
                raise RuntimeError("abort")

        state = await state_store.load_state(key)
        assert state["current_phase"] == "init"

    @pytest.mark.asyncio
    async def test_no_temporary_file_left_behind(self, state_store: SessionStateStore, sample_session: Session):
        await state_store.begin_run(sample_session)

        assert list(state_store.state_dir.glob("*.tmp")) == []


class TestBranchLedger:
    """Tests for mirroring state to the session branch."""

    @pytest.mark.asyncio
    async def test_publish_writes_full_document(self, state_store: SessionStateStore, sample_session: Session, fake_store):
        key = SessionStateStore.key_for(sample_session)
        await state_store.begin_run(sample_session)
        await state_store.mark_phase(key, Phase.PLANNING, "in_progress")

        await state_store.publish(key, fake_store)

        ledger = parse_ledger(fake_store.files[LEDGER_PATH])
        assert ledger is not None
        assert ledger["current_phase"] == "planning"
        assert ledger["run_count"] == 1

    @pytest.mark.asyncio
    async def test_begin_run_continues_from_remote_ledger(self, tmp_path: Path, sample_session: Session, fake_store):
        key = SessionStateStore.key_for(sample_session)
        first_job = SessionStateStore(tmp_path / "job-1")
        await first_job.begin_run(sample_session)
        for _ in range(3):
            index = await first_job.next_iteration_index(key, "planning")
            await first_job.record_iteration(key, IterationRecord("planning", index, f"plans/planning/iteration-{index}.md", 50))
        await first_job.publish(key, fake_store)

        second_job = SessionStateStore(tmp_path / "job-2")
        run = await second_job.begin_run(sample_session, parse_ledger(fake_store.files[LEDGER_PATH]))

        assert run == 2
        assert await second_job.next_iteration_index(key, "planning") == 4
        assert len(await second_job.get_history(key, "planning")) == 3

    @pytest.mark.asyncio
    async def test_merge_keeps_highest_counters_and_unions_history(
        self, state_store: SessionStateStore, sample_session: Session
    ):
        key = SessionStateStore.key_for(sample_session)
        await state_store.begin_run(sample_session)
        await state_store.record_iteration(key, IterationRecord("planning", 1, "plans/planning/iteration-1.md", 40))
        remote = await state_store.load_state(key)
        assert remote is not None
        remote["run_count"] = 5
        remote["next_iteration"] = {}
        remote["history"].append({"phase": "verifying", "index": 7, "path": "p", "score": 90, "run": 5})

        run = await state_store.begin_run(sample_session, remote)

        assert run == 6
        assert await state_store.next_iteration_index(key, "verifying") == 8
        history = await state_store.get_history(key)
        assert [(e["phase"], e["index"]) for e in history] == [("planning", 1), ("verifying", 7)]

    @pytest.mark.parametrize("text", [None, "", "not json", "[1, 2]", json.dumps({"current_phase": "planning"})])
    def test_unusable_ledgers_are_ignored(self, text):
        assert parse_ledger(text) is None
