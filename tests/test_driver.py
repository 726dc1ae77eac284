"""
Tests for the orchestration driver.

A scripted in-memory invoker stands in for the agent backend, so no
LLM calls are made.
"""

import asyncio
import textwrap

import pytest

from agentrunbook.config import RunConfig
from agentrunbook.driver import OrchestrationDriver, is_pruned
from agentrunbook.errors import AgentInvocationError, DispatchTimeout
from agentrunbook.graph import build_graph
from agentrunbook.invokers import CallableInvoker
from agentrunbook.models import SkipReason, StepStatus


def _graph(text):
    return build_graph(textwrap.dedent(text))


class ScriptedInvoker:
    """Answers every instruction with "done: <instruction>" unless told to fail."""

    def __init__(self, fail=(), delay=0.0):
        self.fail = set(fail)
        self.delay = delay
        self.calls = []

    async def invoke(self, role, instruction, context):
        self.calls.append((role, instruction, dict(context)))
        await asyncio.sleep(self.delay)
        if instruction in self.fail:
            raise RuntimeError(f"{instruction} broke")
        return f"done: {instruction}"

    def context_for(self, instruction):
        return next(c for _, i, c in self.calls if i == instruction)


CHAIN = """\
    ## Phase 1: Build
    ### Step A: Compile
    - Prompt: compile
    ### Step B: Package
    - Prompt: package
    - Context from previous: Step A
    ### Step C: Publish
    - Prompt: publish
    - Context from previous: Step B
    ### Step D: Docs
    - Prompt: docs
"""


async def _run(graph, invoker, config=None, **kwargs):
    return await OrchestrationDriver(config).run(graph, invoker, **kwargs)


# ── Happy path ───────────────────────────────────────────────

class TestDispatch:
    @pytest.mark.asyncio
    async def test_single_step(self):
        graph = _graph("Phase 1: do $X")
        invoker = ScriptedInvoker()
        report = await _run(graph, invoker, instructions={"1.1": "Phase 1: do build"})

        assert report.succeeded
        assert report.dispatch_order == ["1.1"]
        assert invoker.calls == [("general-purpose", "Phase 1: do build", {})]
        assert report.context["1.1"] == "done: Phase 1: do build"

    @pytest.mark.asyncio
    async def test_instruction_defaults_to_step_text(self):
        graph = _graph("## Phase 1: A\n- Prompt: hello\n")
        invoker = ScriptedInvoker()
        await _run(graph, invoker)
        assert invoker.calls[0][1] == "hello"

    @pytest.mark.asyncio
    async def test_context_holds_only_declared_dependencies(self):
        invoker = ScriptedInvoker()
        report = await _run(_graph(CHAIN), invoker)

        assert report.succeeded
        assert invoker.context_for("compile") == {}
        assert invoker.context_for("publish") == {"1.2": "done: package"}
        assert report.records["1.3"].upstream_inputs == ["1.2"]
        assert set(report.context) == {"1.1", "1.2", "1.3", "1.4"}

    @pytest.mark.asyncio
    async def test_dependencies_complete_before_dependents_start(self):
        report = await _run(_graph(CHAIN), ScriptedInvoker(delay=0.01))
        order = report.dispatch_order
        assert order.index("1.1") < order.index("1.2") < order.index("1.3")
        records = report.records
        assert records["1.1"].finished_at <= records["1.2"].started_at

    @pytest.mark.asyncio
    async def test_independent_roots_run_concurrently(self):
        graph = _graph("""\
            ## Phase 1: Parallel
            ### Left
            - Prompt: left
            ### Right
            - Prompt: right
        """)
        right_started = asyncio.Event()

        async def call(role, instruction, context):
            if instruction == "right":
                right_started.set()
                return "R"
            await right_started.wait()
            return "L"

        report = await _run(graph, CallableInvoker(call), RunConfig(step_timeout=5))
        assert report.succeeded
        assert dict(report.context) == {"1.1": "L", "1.2": "R"}

    @pytest.mark.asyncio
    async def test_phases_are_barriers(self):
        graph = _graph("## Phase 1: A\n- Prompt: slow\n## Phase 2: B\n- Prompt: fast\n")
        report = await _run(graph, ScriptedInvoker(delay=0.02))
        assert report.dispatch_order == ["1.1", "2.1"]
        assert report.records["1.1"].finished_at <= report.records["2.1"].started_at
        assert report.context.for_phase(1) == {"1.1": "done: slow"}
        assert report.context.for_phase(2) == {"2.1": "done: fast"}
        assert report.context.for_phase(3) == {}

    @pytest.mark.asyncio
    async def test_max_concurrency(self):
        graph = _graph("## Phase 1: A\n### One\nx\n### Two\ny\n### Three\nz\n")
        active = 0
        peak = 0

        async def call(role, instruction, context):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return instruction

        report = await _run(graph, CallableInvoker(call), RunConfig(max_concurrency=1))
        assert report.succeeded
        assert peak == 1

    @pytest.mark.asyncio
    async def test_sync_callable(self):
        graph = _graph("Phase 1: go")
        invoker = CallableInvoker(lambda role, instruction, context: instruction.upper())
        report = await _run(graph, invoker)
        assert report.context["1.1"] == "PHASE 1: GO"

    @pytest.mark.asyncio
    async def test_log_and_report_name(self):
        report = await _run(_graph("Phase 1: go"), ScriptedInvoker(), name="demo")
        assert report.workflow == "demo"
        assert [e.event for e in report.log] == ["dispatched", "completed"]
        assert "Run 'demo' succeeded" in report.summary()


# ── Failures ─────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_upstream_skips_dependent(self):
        graph = _graph("""\
            ## Phase 1: Build
            ### Step A
            - Prompt: a
            ### Step B
            - Prompt: b
            - Context from previous: Step A
        """)
        invoker = ScriptedInvoker(fail={"a"})
        report = await _run(graph, invoker)

        assert report.failed == ["1.1"]
        assert report.skipped == ["1.2"]
        assert not report.succeeded
        skipped = report.records["1.2"]
        assert skipped.skip_reason == SkipReason.UPSTREAM_FAILED
        assert skipped.blocked_by == ["1.1"]
        error = report.records["1.1"].error
        assert isinstance(error, AgentInvocationError)
        assert isinstance(error.cause, RuntimeError)
        assert [c[1] for c in invoker.calls] == ["a"]

    @pytest.mark.asyncio
    async def test_only_transitive_dependents_are_skipped(self):
        report = await _run(_graph(CHAIN), ScriptedInvoker(fail={"compile"}))
        assert report.failed == ["1.1"]
        assert report.skipped == ["1.2", "1.3"]
        assert report.completed == ["1.4"]
        assert report.records["1.3"].blocked_by == ["1.2"]
        assert "1.1" not in report.context

    @pytest.mark.asyncio
    async def test_timeout(self):
        graph = _graph("Phase 1: hang")
        report = await _run(graph, ScriptedInvoker(delay=5), RunConfig(step_timeout=0.05))
        record = report.records["1.1"]
        assert record.status == StepStatus.FAILED
        assert isinstance(record.error, DispatchTimeout)
        assert record.error.timeout == 0.05

    @pytest.mark.asyncio
    async def test_lenient_mode_keeps_going(self):
        graph = _graph("## Phase 1: A\n- Prompt: a\n## Phase 2: B\n- Prompt: b\n")
        report = await _run(graph, ScriptedInvoker(fail={"a"}))
        assert report.completed == ["2.1"]
        assert not report.halted

    @pytest.mark.asyncio
    async def test_strict_mode_halts(self):
        graph = _graph("## Phase 1: A\n- Prompt: a\n## Phase 2: B\n- Prompt: b\n")
        invoker = ScriptedInvoker(fail={"a"})
        report = await _run(graph, invoker, RunConfig(strict=True))

        assert report.halted
        assert report.records["2.1"].skip_reason == SkipReason.STRICT_HALT
        assert [c[1] for c in invoker.calls] == ["a"]
        assert not report.succeeded

    @pytest.mark.asyncio
    async def test_strict_mode_stops_queued_steps(self):
        graph = _graph("## Phase 1: A\n### One\n- Prompt: a\n### Two\n- Prompt: b\n")
        invoker = ScriptedInvoker(fail={"a"})
        report = await _run(graph, invoker, RunConfig(strict=True, max_concurrency=1))
        assert report.records["1.2"].skip_reason == SkipReason.STRICT_HALT
        assert len(invoker.calls) == 1


# ── Cancellation and pruning ─────────────────────────────────

class TestCancelAndPrune:
    @pytest.mark.asyncio
    async def test_cancel_event(self):
        graph = _graph("## Phase 1: A\n- Prompt: a\n## Phase 2: B\n- Prompt: b\n")
        cancel = asyncio.Event()

        async def call(role, instruction, context):
            cancel.set()
            return instruction

        report = await _run(graph, CallableInvoker(call), cancel_event=cancel)
        assert report.completed == ["1.1"]
        assert report.records["2.1"].status == StepStatus.CANCELLED
        assert report.cancelled
        assert not report.succeeded

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        cancel = asyncio.Event()
        cancel.set()
        invoker = ScriptedInvoker()
        report = await _run(_graph(CHAIN), invoker, cancel_event=cancel)
        assert invoker.calls == []
        assert report.by_status(StepStatus.CANCELLED) == ["1.1", "1.2", "1.3", "1.4"]

    @pytest.mark.asyncio
    async def test_pruned_step_does_not_block(self):
        graph = _graph("""\
            ## Phase 1: Review
            ### Quality
            - Prompt: quality
            ### Security
            - Prompt: security
            - Only if: --security-focus
            ## Phase 2: Report
            - Prompt: report
            - Context from phase 1: findings
        """)
        invoker = ScriptedInvoker()
        report = await _run(graph, invoker)

        assert report.records["1.2"].skip_reason == SkipReason.PRUNED
        assert report.completed == ["1.1", "2.1"]
        assert invoker.context_for("report") == {"1.1": "done: quality"}
        assert report.succeeded

    @pytest.mark.asyncio
    async def test_flag_enables_step(self):
        graph = _graph("## Phase 1: A\n- Prompt: a\n- Only if: --full\n")
        report = await _run(graph, ScriptedInvoker(), flags={"FULL": True})
        assert report.completed == ["1.1"]

    def test_is_pruned(self):
        graph = _graph("## Phase 1: A\n### X\n- Skip if: --fast\n### Y\n- Only if: --slow\n")
        x, y = graph.steps
        assert is_pruned(x, {"fast": True})
        assert not is_pruned(x, {"fast": False})
        assert is_pruned(y, {})
        assert not is_pruned(y, {"slow": "yes"})
