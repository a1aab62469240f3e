"""Type definitions for session state persistence.

This module provides TypedDict definitions for the JSON documents written by
``SessionStateStore``, enabling static type checking for state access.

Example:
    A session state document after one restart::

        state: SessionState = {
            "session_id": 42,
            "repo": "acme/webshop",
            "current_phase": "planning",
            "requirements_text": "Build a todo app",
            "run_count": 2,
            "created_at": "2024-01-15T10:30:00+00:00",
            "updated_at": "2024-01-15T11:45:00+00:00",
            "phases": {"planning": {"status": "in_progress", "started_at": "..."}},
            "next_iteration": {"planning": 4, "verifying": 3},
            "history": [
                {"phase": "planning", "index": 1, "path": "plans/planning/iteration-1.md",
                 "score": 96, "run": 1},
            ],
        }
"""

from typing import NotRequired, TypedDict


class PhaseState(TypedDict):
    """Status and timing of one phase in the current run."""

    status: str
    """One of "in_progress", "completed" or "failed"."""

    started_at: NotRequired[str]
    """ISO 8601 timestamp when the phase was entered."""

    completed_at: NotRequired[str]
    """ISO 8601 timestamp when the phase completed or failed."""

    error: NotRequired[str]
    """Raw error message when status is "failed"."""


class IterationEntry(TypedDict):
    """One persisted quality gate pass."""

    phase: str
    index: int
    path: str
    score: int
    run: int


class SessionState(TypedDict):
    """Complete persisted state of one session."""

    session_id: int
    repo: str
    current_phase: str
    requirements_text: str
    run_count: int
    """Number of starts, incremented on each restart."""

    created_at: str
    updated_at: str
    phases: dict[str, PhaseState]
    """Phase statuses for the current run only; reset by a restart."""

    next_iteration: dict[str, int]
    """Next free iteration index per phase. Never reset."""

    history: list[IterationEntry]
    """Every gate pass across all runs, in order. Never truncated."""
