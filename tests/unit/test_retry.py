"""Tests for issue_forge/utils/retry.py."""

from unittest.mock import AsyncMock, patch

import pytest

from issue_forge.exceptions import RevisionConflictError
from issue_forge.utils.retry import async_retry


class TestAsyncRetry:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        calls = []

        @async_retry(max_attempts=3)
        async def operation():
            calls.append(1)
            return "ok"

        assert await operation() == "ok"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retries_listed_exceptions_with_backoff(self):
        attempts = []

        @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(RevisionConflictError,))
        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise RevisionConflictError("stale")
            return "saved"

        with patch("issue_forge.utils.retry.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            assert await operation() == "saved"

        assert [call.args[0] for call in mock_sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_raises_after_last_attempt(self):
        @async_retry(max_attempts=2, backoff_factor=0, exceptions=(RevisionConflictError,))
        async def operation():
            raise RevisionConflictError("stale")

        with patch("issue_forge.utils.retry.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            with pytest.raises(RevisionConflictError):
                await operation()

        mock_sleep.assert_awaited_once_with(0)

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate_immediately(self):
        calls = []

        @async_retry(max_attempts=5, exceptions=(RevisionConflictError,))
        async def operation():
            calls.append(1)
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await operation()

        assert len(calls) == 1

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            async_retry(max_attempts=0)
