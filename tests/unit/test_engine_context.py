"""Tests for issue_forge/engine/context.py."""

from unittest.mock import AsyncMock, patch

import pytest

from issue_forge.engine.context import SessionContext
from issue_forge.engine.correlator import ResponseCorrelator
from issue_forge.providers.github_rest import GitHubContentStore


class TestSessionContextCreate:
    @pytest.mark.asyncio
    async def test_builds_store_bound_to_session_branch(self, settings, sample_session, state_store):
        with patch.object(GitHubContentStore, "connect", new=AsyncMock()) as connect:
            context = await SessionContext.create(settings, sample_session, state_store)

        connect.assert_awaited_once()
        assert isinstance(context.store, GitHubContentStore)
        assert context.store.branch == "project-42"
        assert (context.store.owner, context.store.repo) == ("acme", "webshop")
        assert context.channel is context.store
        assert context.state is state_store

    @pytest.mark.asyncio
    async def test_agent_is_correlator_over_store(self, settings, sample_session, state_store):
        with patch.object(GitHubContentStore, "connect", new=AsyncMock()):
            context = await SessionContext.create(settings, sample_session, state_store)

        assert isinstance(context.agent, ResponseCorrelator)
        assert context.agent.channel is context.store
        assert context.agent.session_id == 42

    @pytest.mark.asyncio
    async def test_settings_are_snapshotted(self, settings, sample_session, state_store):
        with patch.object(GitHubContentStore, "connect", new=AsyncMock()):
            context = await SessionContext.create(settings, sample_session, state_store)

        settings.quality.threshold = 10

        assert context.settings is not settings
        assert context.settings.quality.threshold == 95

    @pytest.mark.asyncio
    async def test_contexts_share_nothing_but_state(self, settings, sample_session, state_store):
        with patch.object(GitHubContentStore, "connect", new=AsyncMock()):
            first = await SessionContext.create(settings, sample_session, state_store)
            second = await SessionContext.create(settings, sample_session, state_store)

        assert first.store is not second.store
        assert first.agent is not second.agent
        assert first.state is second.state

    @pytest.mark.asyncio
    async def test_close_disconnects_store(self, settings, sample_session, state_store):
        with (
            patch.object(GitHubContentStore, "connect", new=AsyncMock()),
            patch.object(GitHubContentStore, "disconnect", new=AsyncMock()) as disconnect,
        ):
            context = await SessionContext.create(settings, sample_session, state_store)
            await context.close()

        disconnect.assert_awaited_once()
