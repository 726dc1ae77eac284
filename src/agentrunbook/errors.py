"""
Error taxonomy for agentrunbook.

Parse-time errors (WorkflowParseError) are authoring problems in a document.
They abort a run before any step is dispatched and are never retried.

Runtime errors (StepExecutionError) belong to a single step. The driver
records them in the run report and propagates them to dependent steps only.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class RunbookError(Exception):
    """Base exception for all agentrunbook errors."""


class DocumentNotFoundError(RunbookError):
    """Raised when a document cannot be found by name or path."""

    def __init__(self, name: str, available: list[str] | None = None):
        self.name = name
        self.available = available or []
        msg = f"Document '{name}' not found"
        if self.available:
            msg += f". Available: {self.available[:10]}"
        super().__init__(msg)


# ── Parse-time ──────────────────────────────────────────────

class WorkflowParseError(RunbookError):
    """An authoring error that makes a document unusable for orchestration."""


class MalformedMetadata(WorkflowParseError):
    """The front-matter block is unterminated, is not a YAML mapping, or carries a bad run setting."""

    def __init__(self, reason: str, path: str | Path | None = None):
        self.reason = reason
        self.path = str(path) if path else None
        where = f" in {self.path}" if self.path else ""
        super().__init__(f"Malformed front-matter{where}: {reason}")


class UnresolvedPlaceholder(WorkflowParseError):
    """One or more placeholder tokens have neither a value nor a default."""

    def __init__(self, names: list[str], step_id: str | None = None):
        self.names = list(names)
        self.step_id = step_id
        where = f" in step {step_id}" if step_id else ""
        tokens = ", ".join(f"${n}" for n in self.names)
        super().__init__(f"Unresolved placeholder{'s' if len(self.names) > 1 else ''}{where}: {tokens}")


class AmbiguousPlaceholder(UnresolvedPlaceholder):
    """The same placeholder name is given two conflicting values or defaults."""

    def __init__(self, name: str, candidates: list[Any]):
        self.candidates = list(candidates)
        super().__init__([name])
        self.args = (
            f"Ambiguous placeholder ${name}: conflicting values {self.candidates!r}",
        )


class DanglingContextReference(WorkflowParseError):
    """A context annotation names a phase or step that does not exist."""

    def __init__(self, step_id: str, reference: str):
        self.step_id = step_id
        self.reference = reference
        super().__init__(
            f"Step {step_id} references '{reference}', which does not exist"
        )


class ForwardReference(WorkflowParseError):
    """A context annotation names the step itself or something later in the document."""

    def __init__(self, step_id: str, reference: str, target: str):
        self.step_id = step_id
        self.reference = reference
        self.target = target
        super().__init__(
            f"Step {step_id} references '{reference}' ({target}), "
            f"which does not occur before it"
        )


class PhaseOrderError(WorkflowParseError):
    """Phase ordinals are duplicated or not increasing in document order."""

    def __init__(self, ordinal: int, previous: int):
        self.ordinal = ordinal
        self.previous = previous
        super().__init__(
            f"Phase {ordinal} follows phase {previous}; phases must strictly increase"
        )


# ── Runtime ─────────────────────────────────────────────────

class StepExecutionError(RunbookError):
    """A failure confined to one step dispatch."""

    def __init__(self, step_id: str, message: str):
        self.step_id = step_id
        super().__init__(message)


class DispatchTimeout(StepExecutionError):
    """The agent invocation did not return within the step timeout."""

    def __init__(self, step_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(step_id, f"Step {step_id} timed out after {timeout:g}s")


class AgentInvocationError(StepExecutionError):
    """The external agent collaborator reported an error."""

    def __init__(self, step_id: str, role: str, cause: BaseException):
        self.role = role
        self.cause = cause
        super().__init__(
            step_id,
            f"Agent '{role}' failed on step {step_id}: {type(cause).__name__}: {cause}",
        )
