"""
Data models for agentrunbook.

Enums, dataclasses, and type definitions used across the system.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping


# ── Enums ────────────────────────────────────────────────────

class DocumentKind(str, Enum):
    AGENT = "agent"
    COMMAND = "command"
    WORKFLOW = "workflow"
    DOCUMENT = "document"


class PhaseKind(str, Enum):
    PHASE = "phase"
    VALIDATION = "validation"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


class SkipReason(str, Enum):
    UPSTREAM_FAILED = "upstream-failed"
    STRICT_HALT = "strict-halt"
    PRUNED = "pruned"


# ── Document ─────────────────────────────────────────────────

def _as_list(value: Any) -> list[str]:
    """Normalize a YAML scalar, comma string, or sequence into a list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [str(value)]


@dataclass(frozen=True)
class Metadata:
    """Front-matter of a document, with typed accessors over the raw mapping."""
    data: Mapping[str, Any] = field(default_factory=dict)

    KNOWN_KEYS = (
        "name", "description", "model", "tools", "allowed-tools", "tool_access",
        "version", "tags", "argument-hint", "flags", "defaults",
    )

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def __bool__(self) -> bool:
        return bool(self.data)

    @property
    def name(self) -> str | None:
        return self.data.get("name")

    @property
    def description(self) -> str:
        return self.data.get("description", "")

    @property
    def model(self) -> str | None:
        return self.data.get("model")

    @property
    def tool_access(self) -> list[str]:
        for key in ("tool_access", "allowed-tools", "tools"):
            if key in self.data:
                return _as_list(self.data[key])
        return []

    @property
    def version(self) -> str | None:
        version = self.data.get("version")
        return str(version) if version is not None else None

    @property
    def tags(self) -> list[str]:
        return _as_list(self.data.get("tags"))

    @property
    def argument_hint(self) -> str | None:
        return self.data.get("argument-hint")

    @property
    def flags(self) -> list[str]:
        return [f.lstrip("-") for f in _as_list(self.data.get("flags"))]

    @property
    def defaults(self) -> dict[str, str]:
        defaults = self.data.get("defaults") or {}
        if not isinstance(defaults, Mapping):
            return {}
        return {str(k): "" if v is None else str(v) for k, v in defaults.items()}

    @property
    def extra(self) -> dict[str, Any]:
        return {k: v for k, v in self.data.items() if k not in self.KNOWN_KEYS}


@dataclass(frozen=True)
class Document:
    """A unit of instruction text. Immutable once loaded."""
    raw: str
    metadata: Metadata
    body: str
    path: Path | None = None
    kind: DocumentKind = DocumentKind.DOCUMENT

    @property
    def name(self) -> str:
        if self.metadata.name:
            return str(self.metadata.name)
        if self.path is not None:
            return self.path.stem
        return "untitled"

    @classmethod
    def from_text(
        cls,
        text: str,
        path: str | Path | None = None,
        kind: DocumentKind = DocumentKind.DOCUMENT,
    ) -> Document:
        from .frontmatter import parse_front_matter

        metadata, body = parse_front_matter(text, path=path)
        return cls(
            raw=text,
            metadata=metadata,
            body=body,
            path=Path(path) if path else None,
            kind=kind,
        )


@dataclass(frozen=True)
class PlaceholderToken:
    """A named substitution site in a piece of text."""
    name: str
    default: str | None = None
    positions: tuple[int, ...] = ()


# ── Phase graph ──────────────────────────────────────────────

@dataclass
class Step:
    """A single delegated unit of work within a phase."""
    id: str
    phase: int
    label: str
    instruction: str
    role: str
    number: str | None = None
    expected_output: str | None = None
    context_annotation: str | None = None
    depends_on: list[str] = field(default_factory=list)
    skip_if: list[str] = field(default_factory=list)
    only_if: list[str] = field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return not self.depends_on


@dataclass
class Phase:
    """An ordered stage of a workflow."""
    ordinal: int
    title: str
    steps: list[Step] = field(default_factory=list)
    kind: PhaseKind = PhaseKind.PHASE

    @property
    def label(self) -> str:
        return f"Phase {self.ordinal}: {self.title}" if self.title else f"Phase {self.ordinal}"


# ── Run state ────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunContext(Mapping[str, Any]):
    """
    Append-only map of step outputs for one run.

    Each step writes exactly one entry under its own id, so concurrent
    writers never collide; a second write to the same key is a bug.
    """

    def __init__(self):
        self._outputs: dict[str, Any] = {}
        self._phases: dict[str, int] = {}

    def record(self, step: Step, output: Any) -> None:
        if step.id in self._outputs:
            raise KeyError(f"RunContext already has an output for step {step.id}")
        self._outputs[step.id] = output
        self._phases[step.id] = step.phase

    def for_phase(self, ordinal: int) -> dict[str, Any]:
        return {
            sid: out for sid, out in self._outputs.items()
            if self._phases[sid] == ordinal
        }

    def subset(self, step_ids: list[str]) -> dict[str, Any]:
        return {sid: self._outputs[sid] for sid in step_ids if sid in self._outputs}

    def __getitem__(self, key: str) -> Any:
        return self._outputs[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._outputs)

    def __len__(self) -> int:
        return len(self._outputs)

    def __repr__(self) -> str:
        return f"RunContext(steps={list(self._outputs)})"


@dataclass
class StepRecord:
    """What happened to one step during a run."""
    step_id: str
    role: str
    status: StepStatus = StepStatus.PENDING
    output: Any = None
    error: Exception | None = None
    skip_reason: SkipReason | None = None
    blocked_by: list[str] = field(default_factory=list)
    upstream_inputs: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


@dataclass
class LogEntry:
    """One line of the ordered execution log."""
    step_id: str
    event: str
    timestamp: datetime = field(default_factory=_utcnow)
    detail: str = ""


@dataclass
class RunReport:
    """The outcome of one orchestration run."""
    workflow: str
    records: dict[str, StepRecord]
    context: RunContext
    log: list[LogEntry]
    cancelled: bool = False
    halted: bool = False

    def by_status(self, status: StepStatus) -> list[str]:
        return [sid for sid, r in self.records.items() if r.status == status]

    @property
    def completed(self) -> list[str]:
        return self.by_status(StepStatus.COMPLETED)

    @property
    def failed(self) -> list[str]:
        return self.by_status(StepStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self.by_status(StepStatus.SKIPPED)

    @property
    def succeeded(self) -> bool:
        if self.cancelled or self.halted or self.failed:
            return False
        return all(
            r.status == StepStatus.COMPLETED
            or (r.status == StepStatus.SKIPPED and r.skip_reason == SkipReason.PRUNED)
            for r in self.records.values()
        )

    @property
    def dispatch_order(self) -> list[str]:
        return [e.step_id for e in self.log if e.event == "dispatched"]

    def summary(self) -> str:
        status = "succeeded" if self.succeeded else "did not succeed"
        lines = [f"Run '{self.workflow}' {status}:", "=" * 50]
        for sid, record in self.records.items():
            line = f"  [{record.status.value:<9}] {sid} ({record.role})"
            if record.error is not None:
                line += f": {record.error}"
            elif record.skip_reason is not None:
                line += f": {record.skip_reason.value}"
                if record.blocked_by:
                    line += f" by {', '.join(record.blocked_by)}"
            lines.append(line)
        return "\n".join(lines)
