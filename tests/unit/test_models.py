"""Tests for domain models."""

from datetime import UTC, datetime

import pytest

from issue_forge.exceptions import PlanValidationError
from issue_forge.models.domain import (
    PHASE_SEQUENCE,
    Component,
    DevelopmentPlan,
    JobStatus,
    Phase,
    Plan,
    Session,
    Verdict,
    VerificationReport,
    VerifierFinding,
    branch_name_for,
    clamp_score,
)


def test_branch_name_is_derived_from_issue():
    """The branch for issue 42 is always project-42."""
    session = Session(session_id=42, owner="acme", repo_name="webshop", requirements_text="x")

    assert session.branch_name == "project-42"
    assert branch_name_for(42) == session.branch_name
    assert session.repo_full_name == "acme/webshop"
    assert session.current_phase is Phase.INIT


def test_phase_sequence_is_strictly_ordered():
    assert PHASE_SEQUENCE[0] is Phase.INIT
    assert PHASE_SEQUENCE[-1] is Phase.COMPLETED
    assert Phase.FAILED not in PHASE_SEQUENCE
    assert len(set(PHASE_SEQUENCE)) == len(PHASE_SEQUENCE)


def test_terminal_phases():
    assert Phase.COMPLETED.is_terminal
    assert Phase.FAILED.is_terminal
    assert not Phase.VERIFYING.is_terminal


def test_approval_only_in_verifying_or_completed():
    accepting = {phase for phase in Phase if phase.accepts_approval}

    assert accepting == {Phase.VERIFYING, Phase.COMPLETED}


def test_phase_str_is_value():
    assert str(Phase.DEV_PLANNING) == "dev_planning"


@pytest.mark.parametrize(
    ("value", "expected"),
    [(87, 87), (-5, 0), (130, 100), ("64", 64), (72.9, 72), ("high", 0), (None, 0), (True, 0), (float("nan"), 0)],
)
def test_clamp_score(value, expected):
    assert clamp_score(value) == expected


def test_verdict_clamps_on_construction():
    assert Verdict(score=250).score == 100


def test_job_status_terminal_states():
    running = JobStatus(run_id=1, status="in_progress")
    failed = JobStatus(run_id=1, status="completed", conclusion="failure", created_at=datetime.now(UTC))
    passed = JobStatus(run_id=1, status="completed", conclusion="success")

    assert not running.is_terminal
    assert failed.is_terminal and not failed.succeeded
    assert passed.succeeded


def test_plan_is_frozen():
    plan = Plan(requirements_text="x", researcher_ids=("r",), developer_ids=("d",), verifier_ids=("v",))

    with pytest.raises(AttributeError):
        plan.complexity_tier = "complex"  # type: ignore[misc]

    assert plan.to_dict() == {
        "requirements": "x",
        "researchers": ["r"],
        "developers": ["d"],
        "verifiers": ["v"],
        "complexity": "medium",
    }


class TestDevelopmentPlan:
    """Tests for the declaration-order invariant."""

    def test_valid_chain(self):
        plan = DevelopmentPlan(
            components=(
                Component("schema", "database-administrator"),
                Component("api", "backend-developer", ("schema",)),
                Component("ui", "frontend-developer", ("api", "schema")),
            )
        )

        plan.validate()

        assert plan.developer_ids == ["database-administrator", "backend-developer", "frontend-developer"]

    def test_unknown_dependency(self):
        plan = DevelopmentPlan(components=(Component("api", "d", ("auth",)),))

        with pytest.raises(PlanValidationError, match="'auth'"):
            plan.validate()

    def test_cycle_is_rejected(self):
        plan = DevelopmentPlan(components=(Component("a", "d", ("b",)), Component("b", "d", ("a",))))

        with pytest.raises(PlanValidationError):
            plan.validate()

    def test_empty_plan(self):
        with pytest.raises(PlanValidationError):
            DevelopmentPlan(components=()).validate()


class TestVerificationReport:
    """Tests for aggregated verifier scores."""

    def test_overall_score_is_floored_mean(self):
        report = VerificationReport(
            findings={
                "code-quality-verifier": VerifierFinding(score=90),
                "security-verifier": VerifierFinding(score=95),
                "performance-verifier": VerifierFinding(score=96),
            }
        )

        assert report.overall_score == 93

    def test_empty_report_scores_zero(self):
        assert VerificationReport().overall_score == 0

    def test_verdict_collects_findings_below_threshold(self):
        report = VerificationReport(
            findings={
                "security-verifier": VerifierFinding(score=70, issues=["XSS"], fixes=["Escape output"]),
                "code-quality-verifier": VerifierFinding(score=99, issues=["nit"], fixes=["rename"]),
            }
        )

        verdict = report.to_verdict(threshold=95)

        assert verdict.score == 84
        assert verdict.issues == ["[security-verifier] XSS"]
        assert verdict.fixes == ["Escape output"]
        assert report.to_dict()["security-verifier"]["score"] == 70
