"""
Workflow runner — the end-to-end pipeline for one document.

    document ─▶ front-matter ─▶ phase graph ─▶ placeholder resolution ─▶ driver

Everything up to resolution is ``render()``: it either returns a fully
resolved workflow or raises a parse-time error, so a malformed document
never dispatches a single step. ``run()`` renders and then hands the
result to the OrchestrationDriver.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from langchain_core.tools import BaseTool, tool

from .config import RunConfig
from .driver import OrchestrationDriver, is_pruned
from .frontmatter import load_document
from .graph import PhaseGraph, build_graph
from .invokers import AgentInvoker
from .models import Document, RunReport
from .registry import DocumentRegistry
from .resolver import PlaceholderResolver

logger = logging.getLogger(__name__)


@dataclass
class RenderedWorkflow:
    """A document ready to run: structure plus resolved instructions."""
    document: Document
    graph: PhaseGraph
    instructions: dict[str, str]
    flags: dict[str, str | bool] = field(default_factory=dict)
    config: RunConfig = field(default_factory=RunConfig)

    @property
    def name(self) -> str:
        return self.document.name

    def describe(self) -> str:
        """Human-readable dump of metadata, phases, edges and instructions."""
        meta = self.document.metadata
        lines = [f"Workflow: {self.name}"]
        if meta.description:
            lines.append(f"  Description: {meta.description}")
        if meta.tool_access:
            lines.append(f"  Tools: {', '.join(meta.tool_access)}")
        if self.flags:
            lines.append(f"  Flags: {self.flags}")
        lines.append(f"  Strict: {self.config.strict}")
        lines.append("")
        lines.append(self.graph.describe())

        for step in self.graph.steps:
            marker = " (pruned)" if is_pruned(step, self.flags) else ""
            lines.append("")
            lines.append(f"{'=' * 60}")
            lines.append(f"  Step {step.id}: {step.label} -> {step.role}{marker}")
            lines.append(f"{'=' * 60}")
            lines.append(self.instructions[step.id])
        return "\n".join(lines)


class WorkflowRunner:
    """
    Renders and runs instruction documents.

    Usage:
        registry = load_bundled_documents()
        runner = WorkflowRunner(registry)
        rendered = runner.render("feature-development", arguments="user login --skip-tests")
        report = await runner.run("feature-development", invoker, arguments="user login")
    """

    def __init__(
        self,
        registry: DocumentRegistry | None = None,
        config: RunConfig | None = None,
    ):
        self.registry = registry or DocumentRegistry()
        self.config = config or RunConfig()

    def load(self, document: Document | str | Path) -> Document:
        """Accept a Document, a registry name, or a path to a markdown file."""
        if isinstance(document, Document):
            return document
        if isinstance(document, str) and document in self.registry:
            return self.registry.require(document)
        if isinstance(document, Path) or str(document).endswith(".md"):
            return load_document(document)
        return self.registry.require(str(document))

    def render(
        self,
        document: Document | str | Path,
        arguments: str | None = None,
        values: Mapping[str, str] | None = None,
    ) -> RenderedWorkflow:
        """
        Parse and resolve a document without dispatching anything.

        Args:
            document: Document, registry name, or .md path.
            arguments: Free-form arguments blob (becomes $ARGUMENTS after
                recognized --flags are removed). None means no arguments.
            values: Named placeholder values.

        Raises:
            WorkflowParseError: any authoring error in the document.
        """
        document = self.load(document)
        config = self.config.for_document(document.metadata, path=document.path)
        graph = build_graph(document.body, document.metadata, default_role=config.default_role)

        resolver = PlaceholderResolver.for_document(
            document,
            arguments=arguments,
            values=values,
            recognized_flags=sorted(graph.flag_names()),
        )

        instructions: dict[str, str] = {}
        for step in graph.steps:
            text = step.instruction
            if step.expected_output and step.expected_output not in text:
                text = f"{text}\n\nExpected output: {step.expected_output}"
            instructions[step.id] = resolver.resolve(text, step_id=step.id)

        logger.info(
            f"Rendered '{document.name}': {len(graph.phases)} phases, "
            f"{len(graph)} steps, flags={sorted(resolver.flags)}"
        )
        return RenderedWorkflow(
            document=document,
            graph=graph,
            instructions=instructions,
            flags=resolver.flags,
            config=config,
        )

    async def run(
        self,
        document: Document | str | Path | RenderedWorkflow,
        invoker: AgentInvoker,
        arguments: str | None = None,
        values: Mapping[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunReport:
        """Render (unless already rendered) and execute a document."""
        if isinstance(document, RenderedWorkflow):
            rendered = document
        else:
            rendered = self.render(document, arguments=arguments, values=values)

        driver = OrchestrationDriver(rendered.config)
        return await driver.run(
            rendered.graph,
            invoker,
            instructions=rendered.instructions,
            flags=rendered.flags,
            cancel_event=cancel_event,
            name=rendered.name,
        )

    # ── Expose as LangChain tools for orchestrator agents ────

    def as_tool(self, invoker: AgentInvoker) -> BaseTool:
        """
        Expose the runner as a LangChain tool.

        An orchestrator agent calls this to run a registered workflow
        document end to end.
        """
        runner = self

        @tool
        async def run_workflow(name: str, arguments: str = "") -> str:
            """Run a registered workflow document with an arguments string.

            Use search_documents first to find the workflow name.

            Args:
                name: Registry name of the workflow document
                arguments: Free-form arguments, including any --flags

            Returns:
                The run summary followed by the last completed step's output.
            """
            try:
                report = await runner.run(name, invoker, arguments=arguments)
            except Exception as e:
                return f"[Workflow Error] {e}"

            lines = [report.summary()]
            if report.completed:
                last = report.completed[-1]
                lines.append(f"\n# Output of step {last}\n\n{report.context[last]}")
            return "\n".join(lines)

        return run_workflow

    def search_documents_tool(self) -> BaseTool:
        """Expose registry search as a tool for the orchestrator."""
        registry = self.registry

        @tool
        def search_documents(query: str | None = None, tags: list[str] | None = None) -> str:
            """Search the document registry for workflows, commands and agent personas.

            Args:
                query: Keyword search (e.g., "code review", "migration")
                tags: Filter by tag (e.g., ["security"])
            """
            results = registry.search(query=query, tags=tags)
            if not results:
                return "No documents found matching your criteria."

            lines = [f"Found {len(results)} matching documents:\n"]
            for d in results[:10]:
                lines.append(
                    f"  [{d.name}] ({d.kind.value}) {d.metadata.description}\n"
                    f"    Tags: {', '.join(d.metadata.tags) or 'none'}\n"
                )
            return "\n".join(lines)

        return search_documents
