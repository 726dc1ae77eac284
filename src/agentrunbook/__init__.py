"""
agentrunbook — turns markdown agent instructions into runnable workflows.

Usage:
    from agentrunbook import WorkflowRunner, CallableInvoker
    from agentrunbook.templates import load_bundled_documents

    # Load documents
    registry = load_bundled_documents()
    registry.load_directory(".claude/commands")

    # Render (parse + resolve, no dispatch)
    runner = WorkflowRunner(registry)
    rendered = runner.render("feature-development", arguments="user login --skip-tests")
    print(rendered.describe())

    # Run against any agent backend
    async def call_agent(role, instruction, context):
        ...

    report = await runner.run("feature-development", CallableInvoker(call_agent),
                              arguments="user login")
    print(report.summary())
"""

from .models import (
    Document,
    DocumentKind,
    LogEntry,
    Metadata,
    Phase,
    PhaseKind,
    PlaceholderToken,
    RunContext,
    RunReport,
    SkipReason,
    Step,
    StepRecord,
    StepStatus,
)
from .errors import (
    AgentInvocationError,
    AmbiguousPlaceholder,
    DanglingContextReference,
    DispatchTimeout,
    DocumentNotFoundError,
    ForwardReference,
    MalformedMetadata,
    PhaseOrderError,
    RunbookError,
    StepExecutionError,
    UnresolvedPlaceholder,
    WorkflowParseError,
)
from .frontmatter import load_document, parse_front_matter
from .resolver import PlaceholderResolver, find_placeholders, parse_arguments, resolve
from .graph import PhaseGraph, PhaseGraphBuilder, build_graph
from .config import RunConfig
from .invokers import AgentInvoker, CallableInvoker, LangGraphInvoker, RunnableInvoker
from .driver import OrchestrationDriver
from .registry import DocumentRegistry
from .workflow import RenderedWorkflow, WorkflowRunner

__version__ = "0.1.0"

__all__ = [
    # Core
    "WorkflowRunner",
    "RenderedWorkflow",
    "OrchestrationDriver",
    "DocumentRegistry",
    "RunConfig",
    # Components
    "parse_front_matter",
    "load_document",
    "PlaceholderResolver",
    "find_placeholders",
    "parse_arguments",
    "resolve",
    "PhaseGraph",
    "PhaseGraphBuilder",
    "build_graph",
    # Invokers
    "AgentInvoker",
    "CallableInvoker",
    "RunnableInvoker",
    "LangGraphInvoker",
    # Models
    "Document",
    "Metadata",
    "Phase",
    "Step",
    "PlaceholderToken",
    "RunContext",
    "RunReport",
    "StepRecord",
    "LogEntry",
    # Enums
    "DocumentKind",
    "PhaseKind",
    "SkipReason",
    "StepStatus",
    # Errors
    "RunbookError",
    "WorkflowParseError",
    "MalformedMetadata",
    "UnresolvedPlaceholder",
    "AmbiguousPlaceholder",
    "DanglingContextReference",
    "ForwardReference",
    "PhaseOrderError",
    "StepExecutionError",
    "DispatchTimeout",
    "AgentInvocationError",
    "DocumentNotFoundError",
]
