"""Request/response correlation over an asynchronous message stream.

Agents are reached by posting a message that mentions them on the session
issue and waiting for their reply comment. The correlator turns that into a
single awaitable call.

Each request carries a fresh correlation id::

    @claude <request text>

    <!-- forge-request:3f2a... -->
    Begin your reply with `forge-reply:3f2a...`.

A message is accepted as the reply only if it echoes ``forge-reply:<id>``,
is not the request message, was created strictly after the request was
sent, and (when an allow list is configured) was written by a known agent.
"""

import asyncio
import re
import uuid
from datetime import UTC, datetime

import structlog

from issue_forge.config.settings import AgentConfig
from issue_forge.exceptions import ResponseTimeoutError
from issue_forge.models.domain import Comment
from issue_forge.providers.base import AgentCapability, MessageChannel

log = structlog.get_logger(__name__)

REQUEST_MARKER = "forge-request"
REPLY_MARKER = "forge-reply"


def reply_marker(correlation_id: str) -> str:
    return f"{REPLY_MARKER}:{correlation_id}"


class ResponseCorrelator(AgentCapability):
    """Agent capability implemented on top of a message channel.

    Polling uses ``asyncio.sleep`` so only the calling session's task waits.
    Every channel call is bounded by ``config.request_timeout``.
    """

    def __init__(self, channel: MessageChannel, session_id: int, config: AgentConfig) -> None:
        self.channel = channel
        self.session_id = session_id
        self.config = config

    def build_request(self, request_text: str, correlation_id: str) -> str:
        return (
            f"{self.config.mention} {request_text.strip()}\n\n"
            f"<!-- {REQUEST_MARKER}:{correlation_id} -->\n"
            f"Begin your reply with `{reply_marker(correlation_id)}`."
        )

    def matches(self, message: Comment, request: Comment, correlation_id: str, t0: datetime) -> bool:
        """Whether a message is the reply to the given request."""
        if message.id == request.id:
            return False
        if _as_utc(message.created_at) <= t0:
            return False
        if reply_marker(correlation_id) not in message.body:
            return False
        if self.config.agent_logins and message.author not in self.config.agent_logins:
            return False
        return True

    async def ask(self, request_text: str) -> str:
        """Post a request and wait for its correlated reply.

        Raises:
            ResponseTimeoutError: If no reply qualifies within
                ``max_attempts`` polls.
        """
        correlation_id = uuid.uuid4().hex
        body = self.build_request(request_text, correlation_id)

        t0 = datetime.now(UTC)
        request = await asyncio.wait_for(
            self.channel.post_message(self.session_id, body),
            timeout=self.config.request_timeout,
        )
        log.info("agent_request_posted", correlation_id=correlation_id, message_id=request.id)

        for attempt in range(1, self.config.max_attempts + 1):
            await asyncio.sleep(self.config.poll_interval)

            messages = await asyncio.wait_for(
                self.channel.list_messages(self.session_id, since=t0),
                timeout=self.config.request_timeout,
            )
            candidates = sorted(
                (m for m in messages if self.matches(m, request, correlation_id, t0)),
                key=lambda m: _as_utc(m.created_at),
            )
            if candidates:
                reply = candidates[0]
                log.info(
                    "agent_reply_received",
                    correlation_id=correlation_id,
                    attempt=attempt,
                    author=reply.author,
                )
                return strip_reply_marker(reply.body, correlation_id)

            log.debug("agent_reply_pending", correlation_id=correlation_id, attempt=attempt)

        waited = self.config.poll_interval * self.config.max_attempts
        log.error("agent_reply_timeout", correlation_id=correlation_id, attempts=self.config.max_attempts)
        raise ResponseTimeoutError(
            "No response from agent",
            attempts=self.config.max_attempts,
            waited_seconds=waited,
            correlation_id=correlation_id,
            session_id=self.session_id,
        )


def strip_reply_marker(body: str, correlation_id: str) -> str:
    """Remove the reply marker (and surrounding code ticks) from a reply."""
    pattern = re.compile(rf"`?{re.escape(reply_marker(correlation_id))}`?[ \t]*\n?")
    return pattern.sub("", body, count=1).strip()


def _as_utc(value: datetime) -> datetime:
    # PyGithub returns aware datetimes; tests and older servers may not.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
