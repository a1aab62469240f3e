"""
Event classification for issue and comment triggers.

Normalizes GitHub webhook payloads (``issues`` and ``issue_comment``) into
ForgeEvent values the session manager can route without looking at raw
payloads.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from issue_forge.config.settings import ForgeSettings
from issue_forge.engine.correlator import REPLY_MARKER, REQUEST_MARKER
from issue_forge.providers.base import NOTICE_MARKER

log = structlog.get_logger(__name__)


class EventKind(str, Enum):
    """What an event asks the engine to do."""

    START = "start"
    RESTART = "restart"
    APPROVE = "approve"
    IGNORE = "ignore"


@dataclass
class ForgeEvent:
    """Result of event classification."""

    kind: EventKind
    owner: str | None
    repo_name: str | None
    issue_number: int | None
    issue_body: str
    comment_body: str | None
    author: str | None
    raw_event: dict[str, Any]
    skip_reason: str | None = None

    @property
    def should_process(self) -> bool:
        return self.kind is not EventKind.IGNORE


class EventClassifier:
    """Classifies incoming issue and comment events."""

    def __init__(self, settings: ForgeSettings):
        self.triggers = settings.triggers
        self.agent_logins = {login.lower() for login in settings.agent.agent_logins}

    def classify(self, event_type: str, event_data: dict[str, Any]) -> ForgeEvent:
        """Classify an incoming event.

        Args:
            event_type: ``issues.opened`` style string, or the bare event name
                with the action taken from the payload.
            event_data: Raw webhook payload.
        """
        event_name = event_type.lower().strip()
        if "." not in event_name and event_data.get("action"):
            event_name = f"{event_name}.{event_data['action']}"

        log.info("classifying_event", event_type=event_name)

        issue = event_data.get("issue") or {}
        repository = event_data.get("repository") or {}
        owner = (repository.get("owner") or {}).get("login")
        comment = event_data.get("comment") or {}
        user = comment.get("user") or {}

        def result(kind: EventKind, skip_reason: str | None = None) -> ForgeEvent:
            if skip_reason:
                log.info("event_skipped", event_type=event_name, reason=skip_reason)
            return ForgeEvent(
                kind=kind,
                owner=owner,
                repo_name=repository.get("name"),
                issue_number=issue.get("number"),
                issue_body=issue.get("body") or "",
                comment_body=comment.get("body"),
                author=user.get("login"),
                raw_event=event_data,
                skip_reason=skip_reason,
            )

        if event_name not in ("issues.opened", "issue_comment.created"):
            return result(EventKind.IGNORE, f"Unhandled event type: {event_name}")

        if not issue.get("number") or not owner or not repository.get("name"):
            return result(EventKind.IGNORE, "Payload lacks issue or repository")

        if "pull_request" in issue:
            return result(EventKind.IGNORE, "Comment is on a pull request")

        if not self._has_marker_label(issue):
            return result(EventKind.IGNORE, f"Issue lacks label: {self.triggers.marker_label}")

        if event_name == "issues.opened":
            return result(EventKind.START)

        if self._is_automation_comment(comment):
            return result(EventKind.IGNORE, "Comment authored by automation")

        text = (comment.get("body") or "").lower()
        if any(keyword in text for keyword in self.triggers.approval_keywords):
            return result(EventKind.APPROVE)
        if any(keyword in text for keyword in self.triggers.restart_keywords):
            return result(EventKind.RESTART)

        return result(EventKind.IGNORE, "Comment contains no command")

    def _has_marker_label(self, issue: dict[str, Any]) -> bool:
        labels = issue.get("labels") or []
        names = {label.get("name") if isinstance(label, dict) else label for label in labels}
        return self.triggers.marker_label in names

    def _is_automation_comment(self, comment: dict[str, Any]) -> bool:
        user = comment.get("user") or {}
        if user.get("type") == "Bot":
            return True
        if (user.get("login") or "").lower() in self.agent_logins:
            return True
        body = comment.get("body") or ""
        if NOTICE_MARKER in body:
            return True
        return f"{REQUEST_MARKER}:" in body or f"{REPLY_MARKER}:" in body
