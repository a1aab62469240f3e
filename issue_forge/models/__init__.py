"""Core domain models for the orchestration engine.

Key Models:
    - Session: One orchestration run tied to an issue
    - Plan: Roles and complexity chosen in the planning phase
    - DevelopmentPlan / Component: Ordered components to implement
    - Verdict: Typed score and feedback consumed by the quality gate
    - VerificationReport / VerifierFinding: Per-verifier results
    - IterationRecord: Audit record of one quality gate pass
    - ExecutionUnit: One unit of work in a multi-unit phase

Enums:
    - Phase: Session lifecycle states
"""

from issue_forge.models.domain import (
    PHASE_SEQUENCE,
    Branch,
    Comment,
    Component,
    DevelopmentPlan,
    ExecutionUnit,
    Improvement,
    IterationRecord,
    JobStatus,
    Phase,
    Plan,
    PullRequest,
    ResearchResult,
    Session,
    Verdict,
    VerificationReport,
    VerifierFinding,
    branch_name_for,
    clamp_score,
)

__all__ = [
    "PHASE_SEQUENCE",
    "Branch",
    "Comment",
    "Component",
    "DevelopmentPlan",
    "ExecutionUnit",
    "Improvement",
    "IterationRecord",
    "JobStatus",
    "Phase",
    "Plan",
    "PullRequest",
    "ResearchResult",
    "Session",
    "Verdict",
    "VerificationReport",
    "VerifierFinding",
    "branch_name_for",
    "clamp_score",
]
