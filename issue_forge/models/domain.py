"""
Domain models for the orchestration engine.

This module contains the data classes and enums representing the entities
the engine reasons about: sessions and their phases, the plans each phase
produces, typed verdicts consumed by the quality gate, and the normalized
channel/store records returned by content store adapters.

Agent output is free text. It is converted into these typed models only by
``issue_forge.engine.parsing``; the gate and the controller never look at
raw text.

Example:
    Creating a session for an issue::

        session = Session(
            session_id=42,
            owner="acme",
            repo_name="webshop",
            requirements_text="Build a todo app",
        )
        session.branch_name  # "project-42"
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from issue_forge.exceptions import PlanValidationError


def branch_name_for(issue_number: int) -> str:
    """Return the project branch name for an issue.

    The name is a pure function of the issue number so a restarted session
    reuses the same branch.
    """
    return f"project-{issue_number}"


class Phase(str, Enum):
    """Session lifecycle states.

    Sessions move strictly forward through the sequence below. FAILED is
    reachable from any non-terminal state.

    INIT -> PLANNING -> RESEARCHING -> DEV_PLANNING -> DEVELOPING
         -> VERIFYING -> REPORTING -> COMPLETED
    """

    INIT = "init"
    PLANNING = "planning"
    RESEARCHING = "researching"
    DEV_PLANNING = "dev_planning"
    DEVELOPING = "developing"
    VERIFYING = "verifying"
    REPORTING = "reporting"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition can happen from this state."""
        return self in (Phase.COMPLETED, Phase.FAILED)

    @property
    def accepts_approval(self) -> bool:
        """Whether an approval command is recognized in this state."""
        return self in (Phase.COMPLETED, Phase.VERIFYING)


PHASE_SEQUENCE: tuple[Phase, ...] = (
    Phase.INIT,
    Phase.PLANNING,
    Phase.RESEARCHING,
    Phase.DEV_PLANNING,
    Phase.DEVELOPING,
    Phase.VERIFYING,
    Phase.REPORTING,
    Phase.COMPLETED,
)


@dataclass
class Session:
    """One end-to-end orchestration run tied to a single issue.

    Only the phase controller mutates ``current_phase``. The core never
    deletes a session; its branch and pull request persist externally.
    """

    session_id: int
    """Issue number that created the session."""

    owner: str
    """Repository owner (user or organization)."""

    repo_name: str
    """Repository name."""

    requirements_text: str
    """Natural-language requirements, taken from the issue body."""

    current_phase: Phase = Phase.INIT
    """Current lifecycle state."""

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    """When the session was first created."""

    @property
    def branch_name(self) -> str:
        """Project branch, always ``project-<issue number>``."""
        return branch_name_for(self.session_id)

    @property
    def repo_full_name(self) -> str:
        """``owner/name`` form of the repository."""
        return f"{self.owner}/{self.repo_name}"


@dataclass
class Comment:
    """A message on the shared issue channel.

    Used both for progress notifications and as the agent transport.
    """

    id: int
    body: str
    author: str
    created_at: datetime


@dataclass
class Branch:
    """A Git branch."""

    name: str
    sha: str


@dataclass
class PullRequest:
    """A pull request opened for a session branch."""

    number: int
    title: str
    head: str
    base: str
    url: str


@dataclass
class JobStatus:
    """Status of the most recent external job run on a branch."""

    run_id: int
    """Runner-assigned run identifier, used to fetch artifacts."""

    status: str
    """Runner status (``queued``, ``in_progress``, ``completed``)."""

    conclusion: str | None = None
    """Terminal conclusion (``success``, ``failure``, ...), None while running."""

    created_at: datetime | None = None
    """When the run was created; used to ignore runs older than a dispatch."""

    @property
    def is_terminal(self) -> bool:
        return self.status == "completed"

    @property
    def succeeded(self) -> bool:
        return self.is_terminal and self.conclusion == "success"


@dataclass(frozen=True)
class Plan:
    """Project plan produced by the planning phase.

    Frozen: once research begins the plan cannot change. A restart produces
    a new plan rather than editing this one.
    """

    requirements_text: str
    researcher_ids: tuple[str, ...]
    developer_ids: tuple[str, ...]
    verifier_ids: tuple[str, ...]
    complexity_tier: str = "medium"
    raw: str = ""
    """The agent's plan text, kept for prompts and the final report."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "requirements": self.requirements_text,
            "researchers": list(self.researcher_ids),
            "developers": list(self.developer_ids),
            "verifiers": list(self.verifier_ids),
            "complexity": self.complexity_tier,
        }


ResearchResult = dict[str, str]
"""Researcher id -> findings text.

A researcher whose execution failed is absent from the mapping; it is never
present with an empty value.
"""


@dataclass(frozen=True)
class Component:
    """One unit of development work in a development plan."""

    name: str
    developer_id: str
    dependencies: tuple[str, ...] = ()
    spec: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "developer": self.developer_id,
            "dependencies": list(self.dependencies),
            "spec": self.spec,
        }


@dataclass(frozen=True)
class DevelopmentPlan:
    """Ordered list of components to implement.

    Invariant: each component depends only on components declared before
    it. This rules out forward, unknown, self and cyclic references.
    """

    components: tuple[Component, ...]
    raw: str = ""

    @property
    def developer_ids(self) -> list[str]:
        """Distinct developer ids in declaration order."""
        seen: list[str] = []
        for component in self.components:
            if component.developer_id not in seen:
                seen.append(component.developer_id)
        return seen

    def validate(self) -> None:
        """Check the declaration-order invariant.

        Raises:
            PlanValidationError: If the plan is empty, a name repeats, or a
                dependency does not refer to an earlier component.
        """
        if not self.components:
            raise PlanValidationError("Development plan declares no components")

        declared: set[str] = set()
        for component in self.components:
            if component.name in declared:
                raise PlanValidationError(
                    f"Component '{component.name}' is declared more than once",
                    component=component.name,
                )
            for dependency in component.dependencies:
                if dependency not in declared:
                    raise PlanValidationError(
                        f"Component '{component.name}' depends on '{dependency}', "
                        "which is not declared before it",
                        component=component.name,
                    )
            declared.add(component.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "components": [c.to_dict() for c in self.components],
            "developers": self.developer_ids,
        }


@dataclass(frozen=True)
class Improvement:
    """A verifier's suggestion targeted at one unit (e.g. a researcher)."""

    unit: str
    suggestion: str


@dataclass
class Verdict:
    """Typed result of verifying a candidate.

    The score is clamped into 0..100 on construction; anything that is not a
    number becomes 0.
    """

    score: int
    issues: list[str] = field(default_factory=list)
    fixes: list[str] = field(default_factory=list)
    improvements: list[Improvement] = field(default_factory=list)
    raw: str = ""

    def __post_init__(self) -> None:
        self.score = clamp_score(self.score)


def clamp_score(value: Any) -> int:
    """Coerce a score into an integer in 0..100, degrading to 0."""
    if isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number):
        return 0
    return int(min(100, max(0, number)))


@dataclass
class VerifierFinding:
    """One verifier's part of a verification report."""

    score: int
    issues: list[str] = field(default_factory=list)
    fixes: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.score = clamp_score(self.score)


@dataclass
class VerificationReport:
    """Verifier id -> finding for one verification pass."""

    findings: dict[str, VerifierFinding] = field(default_factory=dict)

    @property
    def overall_score(self) -> int:
        """Floored mean of all verifier scores (0 when empty)."""
        if not self.findings:
            return 0
        total = sum(f.score for f in self.findings.values())
        return total // len(self.findings)

    def to_verdict(self, threshold: int) -> Verdict:
        """Collapse the report into a verdict for the quality gate.

        Issues and fixes come only from verifiers scoring below the threshold.
        """
        issues: list[str] = []
        fixes: list[str] = []
        for verifier_id, finding in self.findings.items():
            if finding.score >= threshold:
                continue
            issues.extend(f"[{verifier_id}] {issue}" for issue in finding.issues)
            fixes.extend(finding.fixes)
        return Verdict(score=self.overall_score, issues=issues, fixes=fixes)

    def to_dict(self) -> dict[str, Any]:
        return {verifier_id: asdict(finding) for verifier_id, finding in self.findings.items()}


@dataclass
class IterationRecord:
    """Audit record of one quality gate pass."""

    phase: str
    iteration_index: int
    candidate_path: str
    score: int
    run: int = 1
    """Session run number (1 for the first start, +1 per restart)."""


@dataclass
class ExecutionUnit:
    """One independent item of work in a multi-unit phase."""

    name: str
    """Unit key in the result mapping (researcher id or component name)."""

    actor_id: str
    """Agent role that performs the unit."""

    payload: dict[str, Any] = field(default_factory=dict)
    """Phase-specific data used to build the unit's task."""
