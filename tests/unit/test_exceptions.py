"""Tests for issue_forge.exceptions module."""

import pytest

from issue_forge.exceptions import (
    AgentError,
    ConfigurationError,
    ContentStoreError,
    ExecutionDispatchError,
    IssueForgeError,
    ParseError,
    PhaseFailure,
    PlanValidationError,
    ResponseTimeoutError,
    RevisionConflictError,
)


class TestIssueForgeError:
    """Test base IssueForgeError class."""

    def test_init_with_message(self):
        error = IssueForgeError("Test error message")

        assert error.message == "Test error message"
        assert str(error) == "Test error message"

    @pytest.mark.parametrize(
        "error_class",
        [ConfigurationError, ContentStoreError, PlanValidationError, ExecutionDispatchError, ParseError, AgentError],
    )
    def test_subclasses_catchable_as_base(self, error_class):
        with pytest.raises(IssueForgeError):
            raise error_class("boom")


class TestContentStoreErrors:
    def test_revision_conflict_is_store_error(self):
        error = RevisionConflictError("Revision conflict while saving", path="plans/x.md", status_code=409)

        assert isinstance(error, ContentStoreError)
        assert error.path == "plans/x.md"
        assert error.status_code == 409


class TestExecutionDispatchError:
    def test_message_includes_workflow_and_conclusion(self):
        error = ExecutionDispatchError("Job finished unsuccessfully", workflow_id="research.yml", conclusion="failure")

        assert error.message == "Job finished unsuccessfully"
        assert "workflow: research.yml" in str(error)
        assert "conclusion: failure" in str(error)

    def test_plain_message(self):
        assert str(ExecutionDispatchError("Runner offline")) == "Runner offline"


class TestPhaseFailure:
    def test_keeps_raw_message_and_cause(self):
        cause = RuntimeError("agent exploded")
        error = PhaseFailure("agent exploded", phase="developing", session_id=42, cause=cause)

        assert str(error) == "agent exploded"
        assert error.phase == "developing"
        assert error.session_id == 42
        assert error.cause is cause


class TestResponseTimeoutError:
    def test_reports_waited_time(self):
        error = ResponseTimeoutError(
            "No response from agent", attempts=30, waited_seconds=300.0, correlation_id="abc", session_id=42
        )

        assert isinstance(error, AgentError)
        assert error.attempts == 30
        assert error.correlation_id == "abc"
        assert "within 300 seconds" in str(error)
