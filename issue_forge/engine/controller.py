"""Phase state machine for one orchestration session.

The controller drives a session through its phases::

    init -> planning -> researching -> dev_planning -> developing
         -> verifying -> reporting -> completed

Planning, development planning and verification are quality-gated.
Research and development run through an execution strategy; research is then
confirmed by its own quality gate. Reporting writes the final report and
opens the pull request.

Any exception escaping a phase moves the session to ``failed``, posts the raw
error message on the notification channel, and is raised to the caller as
PhaseFailure. There is no retry across phase boundaries; a restart always
begins again at planning.
"""

import json
from dataclasses import dataclass, field

import structlog

from issue_forge.engine import prompts
from issue_forge.engine.context import SessionContext
from issue_forge.engine.execution import ExecutionStrategy, JobSpec, encode_list, select_strategy
from issue_forge.engine.parsing import parse_dev_plan, parse_plan, parse_verdict
from issue_forge.engine.quality_gate import GateResult, QualityGate
from issue_forge.engine.state_manager import LEDGER_PATH, SessionStateStore, parse_ledger
from issue_forge.exceptions import IssueForgeError, ParseError, PhaseFailure, PlanValidationError
from issue_forge.models.domain import (
    PHASE_SEQUENCE,
    DevelopmentPlan,
    ExecutionUnit,
    Phase,
    Plan,
    PullRequest,
    ResearchResult,
    Session,
    Verdict,
    VerificationReport,
    VerifierFinding,
)
from issue_forge.utils.logging_config import bind_session

log = structlog.get_logger(__name__)

FINAL_PLAN_PATH = "plans/final-plan.json"
DEVELOPMENT_PLAN_PATH = "plans/development-plan.json"

PHASE_ANNOUNCEMENTS = {
    Phase.PLANNING: "📋 Phase 1: Project Analysis",
    Phase.RESEARCHING: "🔍 Phase 2: Research Phase",
    Phase.DEV_PLANNING: "📝 Phase 3: Creating Development Plan",
    Phase.DEVELOPING: "🛠️ Phase 4: Development",
    Phase.VERIFYING: "✅ Phase 5: Verification",
    Phase.REPORTING: "📊 Phase 6: Final Report",
}


@dataclass
class SessionOutcome:
    """Everything a completed session produced."""

    plan: Plan
    research: ResearchResult
    dev_plan: DevelopmentPlan
    development: dict[str, str]
    verification: GateResult
    report_path: str
    pull_request: PullRequest
    gate_results: dict[str, GateResult] = field(default_factory=dict)


class PhaseController:
    """Runs one session end to end.

    Only the controller mutates ``session.current_phase``.
    """

    def __init__(self, session: Session, context: SessionContext) -> None:
        self.session = session
        self.context = context
        self.settings = context.settings
        self.store = context.store
        self.agent = context.agent
        self.state = context.state
        self.state_key = SessionStateStore.key_for(session)
        self.gate: QualityGate | None = None
        self._gate_results: dict[str, GateResult] = {}
        self._last_report: VerificationReport | None = None
        self._restarting = False

    async def run(self) -> SessionOutcome:
        """Run every phase in order.

        Raises:
            PhaseFailure: If any phase raised. The session is left failed.
        """
        bind_session(self.session.session_id, self.session.repo_full_name)
        if self.session.current_phase is not Phase.INIT:
            raise IssueForgeError(f"Session already ran (phase: {self.session.current_phase}); use restart()")

        self._gate_results = {}

        try:
            await self.store.create_branch(self.session.branch_name)
            await self._begin_run()

            await self._advance(Phase.PLANNING)
            plan = await self.planning_phase()

            await self._advance(Phase.RESEARCHING)
            research = await self.research_phase(plan)

            await self._advance(Phase.DEV_PLANNING)
            dev_plan = await self.dev_planning_phase(plan, research)

            await self._advance(Phase.DEVELOPING)
            development = await self.development_phase(dev_plan)

            await self._advance(Phase.VERIFYING)
            verification = await self.verification_phase(plan)

            await self._advance(Phase.REPORTING)
            report_path, pull_request = await self.reporting_phase(plan, research, dev_plan, verification)

            await self._advance(Phase.COMPLETED)
            await self._notify_completion(pull_request, verification)

        except Exception as e:
            raise await self._fail(e) from e

        return SessionOutcome(
            plan=plan,
            research=research,
            dev_plan=dev_plan,
            development=development,
            verification=verification,
            report_path=report_path,
            pull_request=pull_request,
            gate_results=dict(self._gate_results),
        )

    async def restart(self) -> SessionOutcome:
        """Start the session again at planning with the same requirements.

        Nothing from the previous run is reused. Earlier artifacts and
        iteration records stay in place; new iterations get new indices.
        """
        log.info("session_restarted", session_id=self.session.session_id, from_phase=str(self.session.current_phase))
        self.session.current_phase = Phase.INIT
        self._restarting = True
        try:
            return await self.run()
        finally:
            self._restarting = False

    # -- Transitions -------------------------------------------------------

    async def _begin_run(self) -> None:
        """Merge the branch ledger into local state and start a new run.

        On a restart the requirements recorded on the branch win over the
        ones this process was given.
        """
        remote = parse_ledger(await self.store.read(LEDGER_PATH))
        if self._restarting and remote is not None and remote["requirements_text"]:
            self.session.requirements_text = remote["requirements_text"]

        run_number = await self.state.begin_run(self.session, remote)
        self.gate = QualityGate(
            self.session,
            self.store,
            self.state,
            run_number=run_number,
            threshold=self.settings.quality.threshold,
        )
        await self.state.publish(self.state_key, self.store)
        log.info("session_started", run=run_number, branch=self.session.branch_name)

    async def _advance(self, phase: Phase) -> None:
        """Move forward exactly one phase."""
        current = self.session.current_phase
        if current.is_terminal or PHASE_SEQUENCE.index(phase) != PHASE_SEQUENCE.index(current) + 1:
            raise IssueForgeError(f"Illegal phase transition: {current} -> {phase}")

        if current is not Phase.INIT:
            await self.state.mark_phase(self.state_key, current, "completed")

        self.session.current_phase = phase
        if phase is Phase.COMPLETED:
            await self.state.mark_phase(self.state_key, phase, "completed")
            await self.state.publish(self.state_key, self.store)
        else:
            await self.state.mark_phase(self.state_key, phase, "in_progress")
            await self.state.publish(self.state_key, self.store)
            await self.store.notify(self.session.session_id, PHASE_ANNOUNCEMENTS[phase])
        log.info("phase_transition", from_phase=str(current), to_phase=str(phase))

    async def _fail(self, error: Exception) -> PhaseFailure:
        failed_phase = self.session.current_phase
        self.session.current_phase = Phase.FAILED
        message = str(error) or type(error).__name__
        log.error("phase_failed", phase=str(failed_phase), error=message, exc_info=True)

        try:
            await self.state.mark_phase(self.state_key, failed_phase, "failed", error=message)
            await self.state.publish(self.state_key, self.store)
        except Exception as state_error:
            log.error("failure_state_not_recorded", error=str(state_error))

        try:
            await self.store.notify(
                self.session.session_id,
                f"❌ **Error during processing:**\n\n```\n{message}\n```\n\nPlease check the logs for more details.",
            )
        except Exception as notify_error:
            log.error("failure_notification_failed", error=str(notify_error))

        return PhaseFailure(message, phase=str(failed_phase), session_id=self.session.session_id, cause=error)

    # -- Phases ------------------------------------------------------------

    async def planning_phase(self) -> Plan:
        requirements = self.session.requirements_text
        previous: list[str] = []

        async def produce(verdict: Verdict | None) -> str:
            plan_text = await self.agent.ask(
                prompts.planning_request(requirements, previous[-1] if previous else None, verdict)
            )
            previous.append(plan_text)
            return plan_text

        async def verify(plan_text: str) -> Verdict:
            reply = await self.agent.ask(prompts.plan_verification_request(plan_text, requirements))
            return parse_verdict(reply)

        result = await self._gate(Phase.PLANNING, produce, verify, self.settings.quality.plan_max_iterations)

        pipeline = self.settings.pipeline
        plan = parse_plan(
            result.candidate,
            requirements,
            pipeline.default_researchers,
            pipeline.default_developers,
            pipeline.default_verifiers,
        )
        await self.store.save(FINAL_PLAN_PATH, json.dumps(plan.to_dict(), indent=2), "Final approved plan")
        return plan

    async def research_phase(self, plan: Plan) -> ResearchResult:
        units = [ExecutionUnit(name=r, actor_id=r, payload={"plan_path": FINAL_PLAN_PATH}) for r in plan.researcher_ids]
        by_name = {unit.name: unit for unit in units}

        def build_task(unit: ExecutionUnit) -> str:
            return prompts.research_task(unit.actor_id, plan)

        def build_inputs(batch: list[ExecutionUnit]) -> dict[str, str]:
            return {
                "researchers": encode_list([u.name for u in batch]),
                "plan_path": FINAL_PLAN_PATH,
                "session_id": str(self.session.session_id),
            }

        def build_rerun_inputs(unit: ExecutionUnit) -> dict[str, str]:
            inputs = build_inputs([unit])
            inputs["improvement_mode"] = "true"
            inputs["target_researcher_id"] = unit.name
            return inputs

        strategy = await self._strategy(
            "research",
            JobSpec(self.settings.execution.research_workflow, build_inputs, build_rerun_inputs),
        )
        initial = await strategy.execute(units, build_task)
        log.info("research_collected", strategy=strategy.name, researchers=sorted(initial))

        current: list[ResearchResult] = [initial]

        async def produce(verdict: Verdict | None) -> ResearchResult:
            if verdict is None:
                return current[-1]
            research = current[-1]
            for improvement in verdict.improvements:
                unit = by_name.get(improvement.unit)
                if unit is None:
                    log.warning("improvement_for_unknown_researcher", researcher=improvement.unit)
                    continue
                research = await strategy.rerun_unit(unit, build_task, research, improvement.suggestion)
            current.append(research)
            return research

        async def verify(research: ResearchResult) -> Verdict:
            reply = await self.agent.ask(prompts.research_verification_request(research))
            return parse_verdict(reply)

        result = await self._gate(Phase.RESEARCHING, produce, verify, self.settings.quality.research_max_iterations)
        return result.candidate

    async def dev_planning_phase(self, plan: Plan, research: ResearchResult) -> DevelopmentPlan:
        previous: list[str] = []

        async def produce(verdict: Verdict | None) -> str:
            text = await self.agent.ask(
                prompts.dev_plan_request(plan, research, previous[-1] if previous else None, verdict)
            )
            previous.append(text)
            return text

        async def verify(text: str) -> Verdict:
            try:
                parse_dev_plan(text)
            except (ParseError, PlanValidationError) as e:
                return Verdict(score=0, issues=[f"Development plan is not usable: {e.message}"], raw=text)
            reply = await self.agent.ask(prompts.dev_plan_verification_request(text, plan.requirements_text))
            return parse_verdict(reply)

        result = await self._gate(Phase.DEV_PLANNING, produce, verify, self.settings.quality.dev_plan_max_iterations)

        dev_plan = parse_dev_plan(result.candidate)
        await self.store.save(
            DEVELOPMENT_PLAN_PATH,
            json.dumps(dev_plan.to_dict(), indent=2),
            "Final development plan",
        )
        return dev_plan

    async def development_phase(self, dev_plan: DevelopmentPlan) -> dict[str, str]:
        units = [ExecutionUnit(name=c.name, actor_id=c.developer_id, payload=c.to_dict()) for c in dev_plan.components]
        components = {c.name: c for c in dev_plan.components}

        def build_task(unit: ExecutionUnit) -> str:
            return prompts.development_task(components[unit.name], dev_plan, self.session.branch_name)

        def build_inputs(batch: list[ExecutionUnit]) -> dict[str, str]:
            return {
                "components": json.dumps([components[u.name].to_dict() for u in batch]),
                "developers": encode_list(sorted({u.actor_id for u in batch})),
                "session_id": str(self.session.session_id),
            }

        strategy = await self._strategy(
            "development",
            JobSpec(self.settings.execution.development_workflow, build_inputs),
        )
        results = await strategy.execute(units, build_task)
        await self.store.notify(
            self.session.session_id,
            f"✅ Development phase completed ({len(results)}/{len(units)} components)",
        )
        return results

    async def verification_phase(self, plan: Plan) -> GateResult:
        branch = self.session.branch_name
        threshold = self.settings.quality.threshold
        rounds: list[int] = []

        async def produce(verdict: Verdict | None) -> str:
            rounds.append(len(rounds) + 1)
            if verdict is None:
                return f"Code on branch {branch} after development"
            if not verdict.fixes and not verdict.issues:
                return f"Code on branch {branch}, no fixes proposed"
            await self.store.notify(
                self.session.session_id,
                f"🔧 Found {len(verdict.issues)} issues, fixing...",
            )
            summary = await self.agent.ask(prompts.fix_request(verdict.fixes, verdict.issues, branch))
            return f"Code on branch {branch} after fix round {len(rounds) - 1}\n\n{summary}"

        async def verify(_: str) -> Verdict:
            report = await self.run_verifiers(plan)
            self._last_report = report
            return report.to_verdict(threshold)

        return await self._gate(
            Phase.VERIFYING,
            produce,
            verify,
            self.settings.quality.verification_max_iterations,
        )

    async def run_verifiers(self, plan: Plan) -> VerificationReport:
        """Ask every verifier to score the branch and commit their results."""
        report = VerificationReport()
        for verifier_id in plan.verifier_ids:
            reply = await self.agent.ask(
                prompts.verifier_request(verifier_id, self.session.branch_name, plan.requirements_text)
            )
            verdict = parse_verdict(reply)
            report.findings[verifier_id] = VerifierFinding(score=verdict.score, issues=verdict.issues, fixes=verdict.fixes)
            await self.store.save(
                f"verification/{verifier_id}-results.md",
                reply,
                f"Verification results from {verifier_id}",
            )
        log.info("verifiers_finished", scores={k: v.score for k, v in report.findings.items()})
        return report

    async def reporting_phase(
        self,
        plan: Plan,
        research: ResearchResult,
        dev_plan: DevelopmentPlan,
        verification: GateResult,
    ) -> tuple[str, PullRequest]:
        number = self.session.session_id
        history = await self.state.get_history(self.state_key)
        project_data = {
            "issue": number,
            "branch": self.session.branch_name,
            "plan": plan.to_dict(),
            "research": sorted(research),
            "components": [c.to_dict() for c in dev_plan.components],
            "verification": {
                "overall_score": verification.score,
                "passed": verification.passed,
                "verifiers": self._last_report.to_dict() if self._last_report else {},
            },
            "iterations": history,
        }
        report = await self.agent.ask(prompts.report_request(project_data))

        report_path = f"reports/project-{number}.md"
        await self.store.save(report_path, report, "Final project report")

        body = (
            f"Closes #{number}\n\n"
            f"Automated implementation of #{number}.\n\n"
            f"- Components: {', '.join(c.name for c in dev_plan.components)}\n"
            f"- Verification score: {verification.score}%\n"
            f"- Report: `{report_path}`\n"
        )
        pull_request = await self.store.open_pull_request(self.session.branch_name, f"Implementation for #{number}", body)
        return report_path, pull_request

    async def _notify_completion(self, pull_request: PullRequest, verification: GateResult) -> None:
        await self.store.notify(
            self.session.session_id,
            "🎉 **Project completed successfully!**\n\n"
            f"Branch: `{self.session.branch_name}`\n"
            f"Quality achieved: {verification.score}%\n"
            f"Pull request: {pull_request.url}\n"
            f"Report: `reports/project-{self.session.session_id}.md`\n\n"
            "The project is ready for review!",
        )

    # -- Helpers -------------------------------------------------------------

    async def _gate(self, phase: Phase, produce, verify, max_iterations: int) -> GateResult:
        assert self.gate is not None
        result = await self.gate.run_detailed(phase.value, produce, verify, max_iterations)
        self._gate_results[phase.value] = result
        if not result.passed:
            await self.store.notify(
                self.session.session_id,
                f"⚠️ {phase.value.replace('_', ' ').capitalize()} stopped at {result.score}% "
                f"after {result.iterations} iterations; continuing with the best effort result",
            )
        return result

    async def _strategy(self, area: str, job: JobSpec) -> ExecutionStrategy:
        execution = self.settings.execution
        return await select_strategy(
            execution.mode,
            self.store,
            self.agent,
            self.session,
            area,
            job,
            poll_interval=execution.job_poll_interval,
            max_wait=execution.job_max_wait,
        )
