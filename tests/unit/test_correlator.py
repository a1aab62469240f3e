"""Tests for issue_forge/engine/correlator.py."""

import asyncio
import re
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from issue_forge.config.settings import AgentConfig
from issue_forge.engine.correlator import ResponseCorrelator, reply_marker, strip_reply_marker
from issue_forge.exceptions import ResponseTimeoutError
from issue_forge.models.domain import Comment


def fast_config(**overrides) -> AgentConfig:
    values = {"poll_interval": 0, "max_attempts": 3, "request_timeout": 5}
    values.update(overrides)
    return AgentConfig(**values)


def correlation_id_of(comment: Comment) -> str:
    return re.search(r"forge-request:([0-9a-f]+)", comment.body).group(1)


class TestResponseCorrelatorAsk:
    """Tests for matching replies to requests."""

    @pytest.mark.asyncio
    async def test_returns_matching_reply_and_ignores_old_message(self, fake_store):
        """An old message is skipped; the post-request reply is returned."""
        fake_store.add_message(
            "forge-reply:deadbeef\nStale answer",
            author="claude[bot]",
            created_at=datetime.now(UTC) - timedelta(hours=1),
        )
        fake_store.responder = lambda body: "Fresh answer"
        correlator = ResponseCorrelator(fake_store, 42, fast_config())

        response = await correlator.ask("Create a plan")

        assert response == "Fresh answer"

    @pytest.mark.asyncio
    async def test_request_mentions_agent_and_embeds_id(self, fake_store):
        fake_store.responder = lambda body: "ok"
        correlator = ResponseCorrelator(fake_store, 42, fast_config(mention="@helper"))

        await correlator.ask("Do the thing")

        request = fake_store.messages[0]
        assert request.body.startswith("@helper Do the thing")
        correlation_id = correlation_id_of(request)
        assert reply_marker(correlation_id) in request.body

    @pytest.mark.asyncio
    async def test_request_message_itself_is_never_the_reply(self, fake_store):
        """The request echoes the reply marker in its instructions but is excluded."""
        correlator = ResponseCorrelator(fake_store, 42, fast_config(max_attempts=2))

        with pytest.raises(ResponseTimeoutError):
            await correlator.ask("Anything")

        assert len(fake_store.messages) == 1

    @pytest.mark.asyncio
    async def test_reply_for_other_request_is_ignored(self, fake_store):
        correlator = ResponseCorrelator(fake_store, 42, fast_config(max_attempts=2))
        fake_store.responder = None

        original_post = fake_store.post_message

        async def post_and_answer_wrong_id(session_id, body):
            request = await original_post(session_id, body)
            fake_store.add_message(
                "forge-reply:0000\nnot yours",
                author="claude[bot]",
                created_at=request.created_at + timedelta(seconds=1),
            )
            return request

        fake_store.post_message = post_and_answer_wrong_id

        with pytest.raises(ResponseTimeoutError):
            await correlator.ask("Anything")

    @pytest.mark.asyncio
    async def test_earliest_matching_reply_wins(self, fake_store):
        correlator = ResponseCorrelator(fake_store, 42, fast_config())
        original_post = fake_store.post_message

        async def post_with_two_replies(session_id, body):
            request = await original_post(session_id, body)
            marker = reply_marker(correlation_id_of(request))
            fake_store.add_message(f"{marker}\nsecond", "claude[bot]", request.created_at + timedelta(seconds=5))
            fake_store.add_message(f"{marker}\nfirst", "claude[bot]", request.created_at + timedelta(seconds=2))
            return request

        fake_store.post_message = post_with_two_replies

        assert await correlator.ask("Anything") == "first"

    @pytest.mark.asyncio
    async def test_allow_list_filters_authors(self, fake_store):
        correlator = ResponseCorrelator(fake_store, 42, fast_config(agent_logins=["claude[bot]"], max_attempts=2))
        fake_store.agent_login = "mallory"
        fake_store.responder = lambda body: "spoofed"

        with pytest.raises(ResponseTimeoutError):
            await correlator.ask("Anything")

    @pytest.mark.asyncio
    async def test_allow_list_accepts_listed_agent(self, fake_store):
        correlator = ResponseCorrelator(fake_store, 42, fast_config(agent_logins=["claude[bot]"]))
        fake_store.responder = lambda body: "genuine"

        assert await correlator.ask("Anything") == "genuine"


class TestResponseCorrelatorTimeout:
    """Tests for budget exhaustion."""

    @pytest.mark.asyncio
    async def test_raises_when_nothing_qualifies(self, fake_store):
        correlator = ResponseCorrelator(fake_store, 42, fast_config(max_attempts=4, poll_interval=10))

        with patch("issue_forge.engine.correlator.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            with pytest.raises(ResponseTimeoutError) as exc_info:
                await correlator.ask("Anything")

        assert mock_sleep.await_count == 4
        mock_sleep.assert_awaited_with(10)
        assert exc_info.value.attempts == 4
        assert exc_info.value.waited_seconds == 40
        assert "within 40 seconds" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_slow_channel_call_times_out(self, fake_store):
        correlator = ResponseCorrelator(fake_store, 42, fast_config(request_timeout=0.01))

        async def hang(session_id, since=None):
            await asyncio.sleep(1)
            return []

        fake_store.list_messages = hang

        with pytest.raises(TimeoutError):
            await correlator.ask("Anything")


class TestStripReplyMarker:
    def test_removes_marker_line(self):
        assert strip_reply_marker("forge-reply:abc\nThe answer", "abc") == "The answer"

    def test_removes_backticked_marker(self):
        assert strip_reply_marker("`forge-reply:abc` The answer", "abc") == "The answer"
