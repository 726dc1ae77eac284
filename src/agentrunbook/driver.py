"""
Orchestration Driver — dispatches a PhaseGraph to an agent invoker.

Scheduling:
  - Phases are barriers. Phase N+1 starts only after every step of
    phase N has reached a terminal state.
  - Within a phase, every step whose dependencies have completed is
    dispatched at once (bounded by max_concurrency). No order is
    promised among independent steps.

Failure handling:
  - A failed step (AgentInvocationError or DispatchTimeout) blocks its
    transitive dependents, which are marked skipped. Independent
    branches keep running.
  - In strict mode the first failure stops all new dispatches.
  - Setting the cancel event stops new dispatches; in-flight calls are
    allowed to finish and steps that never started are marked cancelled.
  - The driver never retries. One dispatch, one outcome.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Any, Mapping

from .config import RunConfig
from .errors import AgentInvocationError, DispatchTimeout, StepExecutionError
from .graph import PhaseGraph
from .invokers import AgentInvoker
from .models import (
    LogEntry,
    RunContext,
    RunReport,
    SkipReason,
    Step,
    StepRecord,
    StepStatus,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def flag_is_set(flags: Mapping[str, Any], name: str) -> bool:
    value = flags.get(name.lower())
    return value is not None and value is not False


def is_pruned(step: Step, flags: Mapping[str, Any]) -> bool:
    """True when the step's skip/only flag conditions exclude it from this run."""
    if any(flag_is_set(flags, f) for f in step.skip_if):
        return True
    if step.only_if and not all(flag_is_set(flags, f) for f in step.only_if):
        return True
    return False


class _Run:
    """Mutable state of one in-progress run."""

    def __init__(self, graph: PhaseGraph, cancel_event: asyncio.Event | None):
        self.graph = graph
        self.cancel_event = cancel_event
        self.records = {s.id: StepRecord(step_id=s.id, role=s.role) for s in graph.steps}
        self.context = RunContext()
        self.log: list[LogEntry] = []
        self.halted = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    @property
    def stopped(self) -> bool:
        return self.halted or self.cancelled

    def note(self, step_id: str, event: str, detail: str = "") -> None:
        self.log.append(LogEntry(step_id=step_id, event=event, detail=detail))

    def blockers(self, step: Step) -> list[str]:
        blocking = []
        for dep in step.depends_on:
            record = self.records[dep]
            if record.status in (StepStatus.FAILED, StepStatus.CANCELLED):
                blocking.append(dep)
            elif record.status == StepStatus.SKIPPED and record.skip_reason != SkipReason.PRUNED:
                blocking.append(dep)
        return blocking

    def satisfied(self, step: Step) -> bool:
        return all(self.records[dep].status.is_terminal for dep in step.depends_on)

    def skip(self, step: Step, reason: SkipReason, blocked_by: list[str] | None = None) -> None:
        record = self.records[step.id]
        record.status = StepStatus.SKIPPED
        record.skip_reason = reason
        record.blocked_by = list(blocked_by or [])
        detail = reason.value
        if blocked_by:
            detail += f" by {', '.join(blocked_by)}"
        self.note(step.id, "skipped", detail)
        if reason == SkipReason.PRUNED:
            logger.info(f"Step {step.id} pruned by flags")
        else:
            logger.warning(f"Step {step.id} skipped: {detail}")

    def cancel(self, step: Step) -> None:
        self.records[step.id].status = StepStatus.CANCELLED
        self.note(step.id, "cancelled")

    def stop_step(self, step: Step) -> None:
        """Mark a never-started step after the run has stopped."""
        if self.cancelled:
            self.cancel(step)
        else:
            self.skip(step, SkipReason.STRICT_HALT)

    def report(self, name: str) -> RunReport:
        return RunReport(
            workflow=name,
            records=self.records,
            context=self.context,
            log=self.log,
            cancelled=self.cancelled,
            halted=self.halted,
        )


class OrchestrationDriver:
    """
    Walks a PhaseGraph and dispatches each step to an AgentInvoker.

    Usage:
        driver = OrchestrationDriver(RunConfig(step_timeout=600))
        report = await driver.run(graph, invoker, instructions=resolved)
        print(report.summary())
    """

    def __init__(self, config: RunConfig | None = None):
        self.config = config or RunConfig()

    async def run(
        self,
        graph: PhaseGraph,
        invoker: AgentInvoker,
        instructions: Mapping[str, str] | None = None,
        flags: Mapping[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        name: str | None = None,
    ) -> RunReport:
        """
        Execute every phase of the graph.

        Args:
            graph: Parsed phases and steps.
            invoker: The agent collaborator.
            instructions: Resolved instruction per step id. Steps missing
                from the mapping use their own (already resolved) text.
            flags: Recognized flags for this run; drive skip/only pruning.
            cancel_event: Set it to stop dispatching new steps.
            name: Workflow name for the report.
        """
        instructions = instructions or {}
        flags = {k.lower(): v for k, v in (flags or {}).items()}
        name = name or str(graph.metadata.name or "workflow")
        state = _Run(graph, cancel_event)
        semaphore = (
            asyncio.Semaphore(self.config.max_concurrency)
            if self.config.max_concurrency else None
        )

        logger.info(
            f"Starting run '{name}': {len(graph.phases)} phases, {len(graph)} steps"
            + (" (strict)" if self.config.strict else "")
        )

        for phase in graph.phases:
            if state.stopped:
                for step in phase.steps:
                    state.stop_step(step)
                continue

            logger.info(f"Entering {phase.label}")
            pending = list(phase.steps)
            running: dict[asyncio.Task, Step] = {}

            while True:
                self._schedule(state, pending, running, invoker, instructions, flags, semaphore)
                if not running:
                    break
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
                    task.result()

            if pending:
                raise RuntimeError(
                    f"Scheduler stalled in {phase.label}: {[s.id for s in pending]}"
                )

        report = state.report(name)
        logger.info(
            f"Run '{name}' finished: {len(report.completed)} completed, "
            f"{len(report.failed)} failed, {len(report.skipped)} skipped"
            + (", cancelled" if report.cancelled else "")
        )
        return report

    def _schedule(
        self,
        state: _Run,
        pending: list[Step],
        running: dict[asyncio.Task, Step],
        invoker: AgentInvoker,
        instructions: Mapping[str, str],
        flags: Mapping[str, Any],
        semaphore: asyncio.Semaphore | None,
    ) -> None:
        """Decide every pending step that can be decided now."""
        changed = True
        while changed and pending:
            changed = False
            for step in list(pending):
                if state.stopped:
                    state.stop_step(step)
                    pending.remove(step)
                    changed = True
                    continue

                blockers = state.blockers(step)
                if blockers:
                    state.skip(step, SkipReason.UPSTREAM_FAILED, blockers)
                elif not state.satisfied(step):
                    continue
                elif is_pruned(step, flags):
                    state.skip(step, SkipReason.PRUNED)
                else:
                    instruction = instructions.get(step.id, step.instruction)
                    task = asyncio.create_task(
                        self._dispatch(state, step, instruction, invoker, semaphore),
                        name=f"step-{step.id}",
                    )
                    running[task] = step
                pending.remove(step)
                changed = True

    async def _dispatch(
        self,
        state: _Run,
        step: Step,
        instruction: str,
        invoker: AgentInvoker,
        semaphore: asyncio.Semaphore | None,
    ) -> None:
        async with semaphore if semaphore is not None else nullcontext():
            if state.stopped:
                state.stop_step(step)
                return

            record = state.records[step.id]
            inputs = state.context.subset(step.depends_on)
            record.upstream_inputs = list(inputs)
            record.status = StepStatus.RUNNING
            record.started_at = _now()
            state.note(step.id, "dispatched", step.role)
            logger.info(f"Dispatching step {step.id} '{step.label}' to {step.role}")

            timeout = self.config.step_timeout
            error: StepExecutionError | None = None
            output: Any = None
            try:
                call = invoker.invoke(step.role, instruction, inputs)
                if timeout is not None:
                    output = await asyncio.wait_for(call, timeout)
                else:
                    output = await call
            except asyncio.TimeoutError:
                error = DispatchTimeout(step.id, timeout or 0.0)
            except Exception as e:
                error = AgentInvocationError(step.id, step.role, e)

            record.finished_at = _now()
            if error is not None:
                record.status = StepStatus.FAILED
                record.error = error
                state.note(step.id, "failed", str(error))
                logger.warning(
                    f"Step {step.id} failed: {error} "
                    f"(upstream inputs: {record.upstream_inputs or 'none'})"
                )
                if self.config.strict and not state.halted:
                    state.halted = True
                    logger.warning(f"Strict mode: halting run after failure of step {step.id}")
                return

            state.context.record(step, output)
            record.status = StepStatus.COMPLETED
            record.output = output
            state.note(step.id, "completed")
            logger.info(f"Step {step.id} completed in {record.duration:.2f}s")
