"""Execution strategies for multi-unit phases.

Research and development split their work into independent units (one per
researcher, one per component). A strategy runs a list of units and returns
``{unit.name: result_text}``:

- SequentialExecution asks the agent for each unit in declared order.
- DelegatedExecution hands the units to an external parallel job runner,
  polls for completion, and collects each unit's output. It owns a
  SequentialExecution and falls back to it when the runner cannot start,
  fails, times out, or leaves unit outputs missing.

Both strategies leave the same artifacts behind: ``<area>/<unit>-results.md``
for every unit that produced a result. A failed unit is absent from the
returned mapping.
"""

import asyncio
import json
import math
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import PurePosixPath

import structlog

from issue_forge.exceptions import ExecutionDispatchError
from issue_forge.models.domain import ExecutionUnit, JobStatus, Session
from issue_forge.providers.base import AgentCapability, ContentStore

log = structlog.get_logger(__name__)

TaskBuilder = Callable[[ExecutionUnit], str]
InputsBuilder = Callable[[list[ExecutionUnit]], dict[str, str]]

# Runs created this long before a dispatch are treated as older runs.
DISPATCH_CLOCK_SKEW = timedelta(seconds=30)


def result_path(area: str, unit_name: str) -> str:
    return f"{area}/{unit_name}-results.md"


def task_path(area: str, unit_name: str) -> str:
    return f"{area}/tasks/{unit_name}.md"


def improvement_path(unit_name: str) -> str:
    return f"improvements/{unit_name}-improvement.md"


def improvement_task(task: str, previous: str | None, suggestion: str) -> str:
    """Task text for refining one unit's earlier result."""
    parts = [task.rstrip(), "", "## Improvement requested", "", suggestion.strip()]
    if previous:
        parts += ["", "## Previous result", "", previous.strip()]
    parts += ["", "Return the complete improved result, not only the changes."]
    return "\n".join(parts)


def encode_list(values: list[str]) -> str:
    """Encode a list as a workflow input (inputs are strings)."""
    return json.dumps(values)


class ExecutionStrategy(ABC):
    """Runs the units of a multi-unit phase."""

    name: str = "base"

    def __init__(self, store: ContentStore, area: str) -> None:
        self.store = store
        self.area = area

    @abstractmethod
    async def execute(self, units: list[ExecutionUnit], build_task: TaskBuilder) -> dict[str, str]:
        """Run every unit.

        Returns:
            Mapping of unit name to result for the units that succeeded,
            in declared order.
        """
        pass

    @abstractmethod
    async def rerun_unit(
        self,
        unit: ExecutionUnit,
        build_task: TaskBuilder,
        previous: dict[str, str],
        suggestion: str,
    ) -> dict[str, str]:
        """Re-run one unit with an improvement suggestion.

        Returns:
            A copy of ``previous`` where only ``unit.name`` may differ. If the
            re-run fails, the previous value is kept.
        """
        pass

    async def _save_improvement(self, unit: ExecutionUnit, suggestion: str) -> None:
        await self.store.save(
            improvement_path(unit.name),
            f"# Improvement for {unit.name}\n\n{suggestion.strip()}\n",
            f"Improvement request for {unit.name}",
        )


class SequentialExecution(ExecutionStrategy):
    """Runs units one at a time through the agent."""

    name = "sequential"

    def __init__(self, agent: AgentCapability, store: ContentStore, area: str) -> None:
        super().__init__(store, area)
        self.agent = agent

    async def execute(self, units: list[ExecutionUnit], build_task: TaskBuilder) -> dict[str, str]:
        results: dict[str, str] = {}
        for unit in units:
            result = await self._run_unit(unit, build_task(unit))
            if result is not None:
                results[unit.name] = result
        log.info("sequential_execution_complete", area=self.area, units=len(units), succeeded=len(results))
        return results

    async def rerun_unit(
        self,
        unit: ExecutionUnit,
        build_task: TaskBuilder,
        previous: dict[str, str],
        suggestion: str,
    ) -> dict[str, str]:
        await self._save_improvement(unit, suggestion)
        task = improvement_task(build_task(unit), previous.get(unit.name), suggestion)
        updated = dict(previous)
        result = await self._run_unit(unit, task)
        if result is not None:
            updated[unit.name] = result
        return updated

    async def _run_unit(self, unit: ExecutionUnit, task: str) -> str | None:
        """Ask the agent for one unit and commit its result.

        A unit that raises is logged and reported as None so the caller can
        leave it out of the mapping.
        """
        log.info("unit_started", area=self.area, unit=unit.name, actor=unit.actor_id)
        try:
            response = await self.agent.ask(task)
            if not response.strip():
                log.warning("unit_empty_result", area=self.area, unit=unit.name)
                return None
            await self.store.save(
                result_path(self.area, unit.name),
                response,
                f"{self.area.capitalize()} results from {unit.actor_id} for {unit.name}",
            )
        except Exception as e:
            log.error("unit_failed", area=self.area, unit=unit.name, error=str(e), exc_info=True)
            return None
        return response


@dataclass
class JobSpec:
    """How units of one area are handed to the job runner."""

    workflow_id: str
    build_inputs: InputsBuilder
    build_rerun_inputs: Callable[[ExecutionUnit], dict[str, str]] | None = None


class DelegatedExecution(ExecutionStrategy):
    """Dispatches units to an external job runner with a sequential fallback."""

    name = "delegated"

    def __init__(
        self,
        store: ContentStore,
        session: Session,
        area: str,
        job: JobSpec,
        fallback: SequentialExecution,
        poll_interval: float = 30.0,
        max_wait: float = 1800.0,
    ) -> None:
        super().__init__(store, area)
        self.session = session
        self.job = job
        self.fallback = fallback
        self.poll_interval = poll_interval
        self.max_wait = max_wait

    async def execute(self, units: list[ExecutionUnit], build_task: TaskBuilder) -> dict[str, str]:
        if not units:
            return {}

        for unit in units:
            await self.store.save(
                task_path(self.area, unit.name),
                build_task(unit),
                f"{self.area.capitalize()} task for {unit.name}",
            )

        previous = await self._snapshot(units)
        try:
            run = await self.dispatch_and_wait(self.job.build_inputs(units))
        except ExecutionDispatchError as e:
            log.warning(
                "delegated_execution_fallback",
                area=self.area,
                workflow=self.job.workflow_id,
                error=str(e),
            )
            return await self.fallback.execute(units, build_task)

        results = await self.collect_outputs(run, units, previous)
        missing = [unit for unit in units if unit.name not in results]
        if missing:
            log.warning(
                "delegated_outputs_missing",
                area=self.area,
                missing=[unit.name for unit in missing],
            )
            results.update(await self.fallback.execute(missing, build_task))

        return {unit.name: results[unit.name] for unit in units if unit.name in results}

    async def rerun_unit(
        self,
        unit: ExecutionUnit,
        build_task: TaskBuilder,
        previous: dict[str, str],
        suggestion: str,
    ) -> dict[str, str]:
        if self.job.build_rerun_inputs is None:
            return await self.fallback.rerun_unit(unit, build_task, previous, suggestion)

        await self._save_improvement(unit, suggestion)
        before = await self._snapshot([unit])
        try:
            run = await self.dispatch_and_wait(self.job.build_rerun_inputs(unit))
        except ExecutionDispatchError as e:
            log.warning("delegated_rerun_fallback", area=self.area, unit=unit.name, error=str(e))
            return await self.fallback.rerun_unit(unit, build_task, previous, suggestion)

        outputs = await self.collect_outputs(run, [unit], before)
        if unit.name not in outputs:
            return await self.fallback.rerun_unit(unit, build_task, previous, suggestion)

        updated = dict(previous)
        updated[unit.name] = outputs[unit.name]
        return updated

    async def dispatch_and_wait(self, inputs: dict[str, str]) -> JobStatus:
        """Dispatch the job and poll until it reaches a terminal state.

        Polling errors are logged and polling continues until the wait
        budget is spent.

        Raises:
            ExecutionDispatchError: If dispatch fails, the run concludes with
                anything but success, or the wait budget runs out.
        """
        workflow_id = self.job.workflow_id
        branch = self.session.branch_name
        dispatched_at = datetime.now(UTC)
        await self.store.dispatch_job(workflow_id, branch, inputs)
        log.info("job_dispatched", workflow=workflow_id, branch=branch)

        max_polls = max(1, math.ceil(self.max_wait / self.poll_interval)) if self.poll_interval > 0 else 1
        for poll in range(1, max_polls + 1):
            await asyncio.sleep(self.poll_interval)
            try:
                status = await self.store.poll_job_status(workflow_id, branch)
            except ExecutionDispatchError:
                raise
            except Exception as e:
                log.warning("job_poll_failed", workflow=workflow_id, poll=poll, error=str(e))
                continue

            if status is None or _predates(status, dispatched_at):
                log.debug("job_not_started", workflow=workflow_id, poll=poll)
                continue

            log.debug("job_status", workflow=workflow_id, run_id=status.run_id, status=status.status)
            if status.is_terminal:
                if status.succeeded:
                    log.info("job_succeeded", workflow=workflow_id, run_id=status.run_id)
                    return status
                raise ExecutionDispatchError(
                    "Job finished unsuccessfully",
                    workflow_id=workflow_id,
                    conclusion=status.conclusion,
                )

        raise ExecutionDispatchError(
            f"Job did not finish within {self.max_wait:g} seconds",
            workflow_id=workflow_id,
        )

    async def collect_outputs(
        self,
        run: JobStatus,
        units: list[ExecutionUnit],
        previous: dict[str, str | None] | None = None,
    ) -> dict[str, str]:
        """Locate each unit's output: job artifacts first, then the store.

        Outputs found only as artifacts are committed to the unit's result
        file so the branch holds the same files as after sequential runs. A
        result file still holding the content it had before dispatch (see
        ``previous``) was not written by this run and counts as missing.
        """
        previous = previous or {}
        try:
            artifacts = await self.store.fetch_job_artifacts(run.run_id)
        except Exception as e:
            log.warning("job_artifacts_unavailable", run_id=run.run_id, error=str(e))
            artifacts = {}

        results: dict[str, str] = {}
        for unit in units:
            path = result_path(self.area, unit.name)
            content = _find_artifact(artifacts, unit.name)
            if content is not None:
                if await self.store.read(path) != content:
                    await self.store.save(path, content, f"{self.area.capitalize()} results for {unit.name}")
            else:
                content = await self.store.read(path)
                if content is not None and content == previous.get(unit.name):
                    log.info("unit_output_stale", area=self.area, unit=unit.name, run_id=run.run_id)
                    content = None

            if content and content.strip():
                results[unit.name] = content
        return results

    async def _snapshot(self, units: list[ExecutionUnit]) -> dict[str, str | None]:
        """Current result file contents, read before a dispatch."""
        return {unit.name: await self.store.read(result_path(self.area, unit.name)) for unit in units}


def _predates(status: JobStatus, dispatched_at: datetime) -> bool:
    if status.created_at is None:
        return False
    created = status.created_at if status.created_at.tzinfo else status.created_at.replace(tzinfo=UTC)
    return created < dispatched_at - DISPATCH_CLOCK_SKEW


def _find_artifact(artifacts: dict[str, str], unit_name: str) -> str | None:
    """Match ``<unit>-results.<ext>`` (or ``<unit>.<ext>``) among artifact files."""
    for file_name, content in artifacts.items():
        stem = PurePosixPath(file_name).name.split(".", 1)[0]
        if stem in (f"{unit_name}-results", unit_name):
            return content
    return None


async def select_strategy(
    mode: str,
    store: ContentStore,
    agent: AgentCapability,
    session: Session,
    area: str,
    job: JobSpec,
    poll_interval: float = 30.0,
    max_wait: float = 1800.0,
) -> ExecutionStrategy:
    """Build the strategy for one phase.

    ``auto`` probes the job runner once and picks delegated execution only
    if the workflow is available.
    """
    sequential = SequentialExecution(agent, store, area)
    if mode == "sequential":
        return sequential

    if mode == "auto" and not await store.job_runner_available(job.workflow_id):
        log.info("job_runner_unavailable", area=area, workflow=job.workflow_id)
        return sequential

    return DelegatedExecution(
        store,
        session,
        area,
        job,
        fallback=sequential,
        poll_interval=poll_interval,
        max_wait=max_wait,
    )
