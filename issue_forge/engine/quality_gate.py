"""Bounded, quality-gated iteration.

The gate repeats produce -> verify until a candidate reaches the threshold
or the iteration budget is spent::

    candidate = produce(None)
    loop (at most max_iterations times):
        verdict = verify(candidate)        # ParseError -> score 0
        persist + announce the pass
        stop if verdict.score >= threshold
        candidate = produce(verdict)       # only if budget remains

Running out of budget is a soft failure: the last candidate is returned and
``GateResult.passed`` is False.
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog

from issue_forge.engine.state_manager import SessionStateStore
from issue_forge.exceptions import ParseError
from issue_forge.models.domain import IterationRecord, Session, Verdict
from issue_forge.providers.base import ContentStore

log = structlog.get_logger(__name__)

C = TypeVar("C")

DEFAULT_THRESHOLD = 95


@dataclass
class GateResult(Generic[C]):
    """Outcome of one gate run."""

    candidate: C
    score: int
    passed: bool
    iterations: int
    records: list[IterationRecord] = field(default_factory=list)
    verdict: Verdict | None = None


def render_candidate(candidate: Any) -> str:
    """Text form of a candidate for the iteration artifact."""
    if isinstance(candidate, str):
        return candidate
    if hasattr(candidate, "to_dict"):
        candidate = candidate.to_dict()
    return json.dumps(candidate, indent=2, default=str)


class QualityGate:
    """Runs gated iterations for one session and keeps the iteration ledger.

    Every pass, passing or not, is written to
    ``plans/<phase>/iteration-<n>.md`` on the session branch, recorded in the
    session state, and announced on the notification channel. Indices come
    from the session state and are never reused, including across restarts.
    """

    def __init__(
        self,
        session: Session,
        store: ContentStore,
        state: SessionStateStore,
        run_number: int = 1,
        threshold: int = DEFAULT_THRESHOLD,
    ) -> None:
        self.session = session
        self.store = store
        self.state = state
        self.run_number = run_number
        self.threshold = threshold

    async def run(
        self,
        phase: str,
        produce: Callable[[Verdict | None], Awaitable[C]],
        verify: Callable[[C], Awaitable[Verdict]],
        max_iterations: int,
        threshold: int | None = None,
    ) -> C:
        """Run the gate and return the final candidate."""
        result = await self.run_detailed(phase, produce, verify, max_iterations, threshold)
        return result.candidate

    async def run_detailed(
        self,
        phase: str,
        produce: Callable[[Verdict | None], Awaitable[C]],
        verify: Callable[[C], Awaitable[Verdict]],
        max_iterations: int,
        threshold: int | None = None,
        render: Callable[[Any], str] = render_candidate,
    ) -> GateResult[C]:
        """Run the gate.

        Args:
            phase: Phase name; used for artifact paths and index counters.
            produce: Returns a candidate. Called with None first, then with
                the previous verdict.
            verify: Scores a candidate. A ParseError scores 0.
            max_iterations: Maximum number of verify calls.
            threshold: Passing score, defaults to the gate's threshold.
            render: Converts a candidate to the artifact text.

        Returns:
            GateResult with the passing candidate, or the last candidate
            when the budget ran out.

        Raises:
            ValueError: If max_iterations is less than 1.
        """
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        threshold = self.threshold if threshold is None else threshold

        key = SessionStateStore.key_for(self.session)
        records: list[IterationRecord] = []

        candidate = await produce(None)
        verdict: Verdict | None = None

        for iteration in range(1, max_iterations + 1):
            verdict = await self._verify(verify, candidate, phase)

            index = await self.state.next_iteration_index(key, phase)
            path = f"plans/{phase}/iteration-{index}.md"
            await self.store.save(
                path,
                self._artifact(render(candidate), verdict, index),
                f"{phase} iteration {index}: score {verdict.score}",
            )
            record = IterationRecord(
                phase=phase,
                iteration_index=index,
                candidate_path=path,
                score=verdict.score,
                run=self.run_number,
            )
            await self.state.record_iteration(key, record)
            await self.state.publish(key, self.store)
            records.append(record)

            await self.store.notify(
                self.session.session_id,
                f"📋 {phase.replace('_', ' ').capitalize()} iteration {index}: Quality {verdict.score}%",
            )
            log.info(
                "gate_iteration",
                phase=phase,
                iteration=iteration,
                index=index,
                score=verdict.score,
                threshold=threshold,
            )

            if verdict.score >= threshold:
                return GateResult(candidate, verdict.score, True, iteration, records, verdict)

            if iteration < max_iterations:
                candidate = await produce(verdict)

        log.warning("gate_budget_exhausted", phase=phase, iterations=max_iterations, score=verdict.score)
        return GateResult(candidate, verdict.score, False, max_iterations, records, verdict)

    async def _verify(self, verify: Callable[[C], Awaitable[Verdict]], candidate: C, phase: str) -> Verdict:
        try:
            verdict = await verify(candidate)
        except ParseError as e:
            log.warning("gate_verdict_unparsable", phase=phase, error=str(e))
            return Verdict(score=0, raw=str(e))
        if not isinstance(verdict, Verdict):
            log.warning("gate_verdict_invalid", phase=phase, type=type(verdict).__name__)
            return Verdict(score=0)
        return verdict

    @staticmethod
    def _artifact(candidate_text: str, verdict: Verdict, index: int) -> str:
        lines = [candidate_text.rstrip(), "", "---", "", f"## Verification (iteration {index})", ""]
        lines.append(f"SCORE: {verdict.score}")
        if verdict.issues:
            lines.append("")
            lines.append("### Issues")
            lines.extend(f"- {issue}" for issue in verdict.issues)
        if verdict.fixes:
            lines.append("")
            lines.append("### Fixes")
            lines.extend(f"- {fix}" for fix in verdict.fixes)
        return "\n".join(lines) + "\n"
