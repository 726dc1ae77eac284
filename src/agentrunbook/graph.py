"""
Phase Graph Builder — parses a document body into phases, steps and edges.

Structure recognized (outside fenced code blocks):

    ## Phase 1: Discovery              phase marker (heading or plain line)
    ### 1. Requirements Analysis       step heading, deeper than the phase
    - Use Task tool with subagent_type="business-analyst"
    - Prompt: "Analyze requirements for $ARGUMENTS"
    - Expected output: Requirements document
    ### 2. Architecture Design
    - subagent_type: architect-review
    - Context from previous: Requirements Analysis
    - Skip if: --quick

    ## Success Criteria                terminal validation phase

A phase with no step headings is a single step whose instruction is the
whole phase section. A body with no phase markers is one single-step phase.

Dependency edges come only from "Context ..." annotations. References must
point strictly backwards in document order, so the graph is acyclic by
construction: a reference to a later (or the same) step or phase raises
ForwardReference, and a reference to nothing raises DanglingContextReference.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .errors import DanglingContextReference, ForwardReference, PhaseOrderError
from .models import Metadata, Phase, PhaseKind, Step

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "general-purpose"

FENCE_RE = re.compile(r"^\s*(```|~~~)")
HEADING_RE = re.compile(r"^\s{0,3}(#{1,6})\s+(.*?)\s*#*\s*$")
PHASE_HEADING_RE = re.compile(
    r"^(?:\*\*)?Phase\s+(?P<ordinal>\d+)\b(?:\*\*)?\s*[:.)\-–—]?\s*(?P<title>.*?)(?:\*\*)?$"
)
PHASE_LINE_RE = re.compile(
    r"^\s{0,3}(?:\*\*)?Phase\s+(?P<ordinal>\d+)(?:\*\*)?\s*[:.)\-–—]\s*(?P<title>.*?)(?:\*\*)?\s*$"
)
VALIDATION_RE = re.compile(
    r"^(?:final\s+)?(?:success\s+criteria|validation(?:\s+checklist)?)\b",
    re.IGNORECASE,
)
STEP_TITLE_RE = re.compile(
    r"^(?:\*\*)?(?:(?i:step)\s+(?P<named>[A-Za-z0-9]+(?:\.[A-Za-z0-9]+)*)"
    r"|(?P<numbered>\d+(?:\.\d+)*))\.?(?:\*\*)?\s*[:.)\-–—]?\s*(?P<label>.*?)(?:\*\*)?$"
)
BULLET_RE = re.compile(
    r"^(?P<indent>\s*)[-*+]\s+(?:\*\*)?(?P<key>[A-Za-z][A-Za-z0-9 _-]*?)(?:\*\*)?\s*:(?:\*\*)?\s*(?P<value>.*)$"
)
ANY_BULLET_RE = re.compile(r"^(?P<indent>\s*)(?:[-*+]|\d+\.)\s+")
SUBAGENT_RE = re.compile(r"subagent_type\s*[=:]\s*[\"'`]?(?P<role>[\w:.\-]+)")
FLAG_RE = re.compile(r"--(?P<flag>[A-Za-z0-9][\w-]*)")

PHASE_REF_RE = re.compile(
    r"\b(?i:phases?)\s+(?P<first>\d+)(?:\s*(?P<sep>-|–|to|and|,|&)\s*(?P<last>\d+))?"
)
STEP_REF_RE = re.compile(
    r"\b(?i:step)\s+(?P<ref>\d+(?:\.\d+)*|[A-Z]\d*)\b"
)

ROLE_KEYS = ("agent", "role", "subagent", "subagent_type", "subagent type")
PROMPT_KEYS = ("prompt", "instruction", "instructions", "task")
OUTPUT_KEYS = ("expected output", "output", "expected")
SKIP_KEYS = ("skip if", "skip when", "skip unless not")
ONLY_KEYS = ("only if", "only when", "run if")


# ── Raw sections ────────────────────────────────────────────

@dataclass
class _Section:
    title: str
    header: str
    level: int
    lines: list[str] = field(default_factory=list)
    ordinal: int = 0
    kind: PhaseKind = PhaseKind.PHASE

    @property
    def text(self) -> str:
        return "\n".join([self.header] + self.lines).strip()

    @property
    def content(self) -> str:
        return "\n".join(self.lines).strip()


@dataclass
class _Attributes:
    role: str | None = None
    prompt: str | None = None
    expected_output: str | None = None
    context_source: str | None = None
    context: str | None = None
    skip_if: list[str] = field(default_factory=list)
    only_if: list[str] = field(default_factory=list)

    @property
    def has_context(self) -> bool:
        return self.context_source is not None or self.context is not None

    @property
    def annotation(self) -> str | None:
        if not self.has_context:
            return None
        parts = []
        if self.context_source:
            parts.append(f"from {self.context_source}")
        if self.context:
            parts.append(self.context)
        return ": ".join(parts) if len(parts) > 1 else parts[0]


def _iter_unfenced(lines: list[str]):
    """Yield (line, in_fence) pairs, tracking fenced code blocks."""
    fence: str | None = None
    for line in lines:
        match = FENCE_RE.match(line)
        if match:
            marker = match.group(1)
            if fence is None:
                fence = marker
                yield line, True
                continue
            if fence == marker:
                fence = None
                yield line, True
                continue
        yield line, fence is not None


def _heading(line: str) -> tuple[int, str] | None:
    match = HEADING_RE.match(line)
    if not match:
        return None
    return len(match.group(1)), match.group(2).strip()


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'`":
        return value[1:-1].strip()
    return value


def _flag_names(value: str) -> list[str]:
    flags = [m.group("flag").lower() for m in FLAG_RE.finditer(value)]
    if flags:
        return flags
    return [
        _strip_quotes(v).lstrip("-").lower()
        for v in re.split(r"[,\s]+", value) if _strip_quotes(v)
    ]


# ── Attribute bullets ───────────────────────────────────────

def _parse_attributes(lines: list[str]) -> _Attributes:
    attrs = _Attributes()
    index = 0
    unfenced = list(_iter_unfenced(lines))

    while index < len(unfenced):
        line, in_fence = unfenced[index]
        index += 1
        if in_fence:
            continue

        if attrs.role is None:
            sub = SUBAGENT_RE.search(line)
            if sub:
                attrs.role = sub.group("role")

        match = BULLET_RE.match(line)
        if not match:
            continue

        key = match.group("key").strip().lower()
        value = match.group("value").strip()
        indent = len(match.group("indent"))

        if key in PROMPT_KEYS:
            continuation = []
            while index < len(unfenced):
                nxt, nxt_fence = unfenced[index]
                if not nxt_fence:
                    bullet = ANY_BULLET_RE.match(nxt)
                    if bullet and len(bullet.group("indent")) <= indent:
                        break
                    if _heading(nxt):
                        break
                continuation.append(nxt)
                index += 1
            text = "\n".join([value] + continuation).strip()
            attrs.prompt = _strip_quotes(text)
        elif key in ROLE_KEYS:
            words = _strip_quotes(value).split()
            if attrs.role is None and words:
                attrs.role = _strip_quotes(words[0])
        elif key in OUTPUT_KEYS:
            attrs.expected_output = value
        elif key in SKIP_KEYS:
            attrs.skip_if.extend(_flag_names(value))
        elif key in ONLY_KEYS:
            attrs.only_if.extend(_flag_names(value))
        elif key == "context" or key.startswith("context from"):
            source = key[len("context from"):].strip() if key.startswith("context from") else None
            attrs.context_source = source or None
            attrs.context = value or None

    return attrs


# ── Phase graph ─────────────────────────────────────────────

class PhaseGraph:
    """
    Ordered phases of steps with step-to-step dependency edges.

    Steps are kept in document order; ``depends_on`` on each step lists
    its upstream step ids.
    """

    def __init__(
        self,
        phases: list[Phase],
        metadata: Metadata | None = None,
        preamble: str = "",
    ):
        self.phases = phases
        self.metadata = metadata or Metadata()
        self.preamble = preamble
        self._steps: dict[str, Step] = {
            step.id: step for phase in phases for step in phase.steps
        }

    @property
    def steps(self) -> list[Step]:
        return list(self._steps.values())

    def step(self, step_id: str) -> Step:
        return self._steps[step_id]

    def phase(self, ordinal: int) -> Phase | None:
        return next((p for p in self.phases if p.ordinal == ordinal), None)

    def roots(self) -> list[Step]:
        return [s for s in self._steps.values() if s.is_root]

    def edges(self) -> list[tuple[str, str]]:
        """(upstream, downstream) pairs."""
        return [(dep, s.id) for s in self._steps.values() for dep in s.depends_on]

    def dependents(self, step_id: str) -> set[str]:
        """All steps that transitively depend on step_id."""
        found: set[str] = set()
        frontier = [step_id]
        while frontier:
            current = frontier.pop()
            for step in self._steps.values():
                if current in step.depends_on and step.id not in found:
                    found.add(step.id)
                    frontier.append(step.id)
        return found

    def topological_order(self) -> list[str]:
        """A dispatch order that respects every edge, ties broken by document order."""
        remaining = {sid: set(s.depends_on) for sid, s in self._steps.items()}
        order: list[str] = []
        while remaining:
            ready = [sid for sid, deps in remaining.items() if not deps]
            if not ready:
                raise RuntimeError(f"Cycle among steps {sorted(remaining)}")
            for sid in ready:
                order.append(sid)
                del remaining[sid]
            for deps in remaining.values():
                deps.difference_update(ready)
        return order

    def flag_names(self) -> set[str]:
        """Flags referenced by skip/only conditions."""
        return {f for s in self._steps.values() for f in s.skip_if + s.only_if}

    def describe(self) -> str:
        lines = []
        for phase in self.phases:
            lines.append(phase.label + (" [validation]" if phase.kind == PhaseKind.VALIDATION else ""))
            for step in phase.steps:
                deps = f" <- {', '.join(step.depends_on)}" if step.depends_on else ""
                lines.append(f"  {step.id} {step.label} ({step.role}){deps}")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._steps)

    def __repr__(self) -> str:
        return f"PhaseGraph(phases={len(self.phases)}, steps={len(self._steps)})"


# ── Builder ─────────────────────────────────────────────────

class PhaseGraphBuilder:
    """Builds a PhaseGraph from a document body."""

    def __init__(self, default_role: str = DEFAULT_ROLE):
        self.default_role = default_role

    def build(self, body: str, metadata: Metadata | None = None) -> PhaseGraph:
        metadata = metadata or Metadata()
        default_role = str(metadata.get("agent") or self.default_role)

        preamble, sections = self._split_phases(body)
        if not sections:
            title = str(metadata.name or "")
            phase = Phase(ordinal=1, title=title)
            attrs = _parse_attributes(body.splitlines())
            phase.steps.append(self._make_step(
                phase, 1, None, title or "main",
                attrs.prompt or body.strip(), attrs, default_role,
            ))
            phases = [phase]
            preamble = ""
        else:
            phases = [self._build_phase(section, default_role) for section in sections]

        self._infer_edges(phases)
        graph = PhaseGraph(phases, metadata=metadata, preamble=preamble)
        logger.debug(
            f"Built phase graph: {len(phases)} phases, {len(graph)} steps, "
            f"{len(graph.edges())} edges"
        )
        return graph

    # ── Structure ───────────────────────────────────────────

    def _split_phases(self, body: str) -> tuple[str, list[_Section]]:
        preamble: list[str] = []
        sections: list[_Section] = []
        validation: _Section | None = None
        current: _Section | None = None

        for line, in_fence in _iter_unfenced(body.splitlines()):
            if not in_fence:
                heading = _heading(line)
                phase_match = None
                level = 0
                if heading:
                    level, text = heading
                    phase_match = PHASE_HEADING_RE.match(text)
                else:
                    phase_match = PHASE_LINE_RE.match(line)

                if phase_match:
                    ordinal = int(phase_match.group("ordinal"))
                    if sections and ordinal <= sections[-1].ordinal:
                        raise PhaseOrderError(ordinal, sections[-1].ordinal)
                    current = _Section(
                        title=phase_match.group("title").strip(),
                        header=line.strip(),
                        level=level,
                        ordinal=ordinal,
                    )
                    sections.append(current)
                    continue

                if (
                    heading
                    and sections
                    and validation is None
                    and (sections[-1].level == 0 or heading[0] <= sections[-1].level)
                    and VALIDATION_RE.match(heading[1])
                ):
                    current = _Section(
                        title=heading[1], header=line.strip(), level=heading[0],
                        kind=PhaseKind.VALIDATION,
                    )
                    validation = current
                    continue

                if heading and current is not None and 0 < heading[0] <= current.level:
                    current = None

            if current is not None:
                current.lines.append(line)
            elif not sections:
                preamble.append(line)

        if validation is not None:
            validation.ordinal = sections[-1].ordinal + 1
            sections.append(validation)

        return "\n".join(preamble).strip(), sections

    def _build_phase(self, section: _Section, default_role: str) -> Phase:
        phase = Phase(ordinal=section.ordinal, title=section.title, kind=section.kind)

        intro: list[str] = []
        raw_steps: list[_Section] = []
        step_level: int | None = None
        for line, in_fence in _iter_unfenced(section.lines):
            heading = None if in_fence else _heading(line)
            if (
                heading
                and section.kind == PhaseKind.PHASE
                and heading[0] > section.level
                and heading[0] >= 2
                and (step_level is None or heading[0] <= step_level)
            ):
                step_level = heading[0]
                raw_steps.append(_Section(title=heading[1], header=line.strip(), level=heading[0]))
                continue
            if raw_steps:
                raw_steps[-1].lines.append(line)
            else:
                intro.append(line)

        phase_attrs = _parse_attributes(intro)
        phase_role = phase_attrs.role or default_role

        if not raw_steps:
            label = section.title or f"Phase {section.ordinal}"
            phase.steps.append(self._make_step(
                phase, 1, None, label,
                phase_attrs.prompt or section.text, phase_attrs, phase_role,
            ))
            return phase

        for index, raw in enumerate(raw_steps, start=1):
            number, label = self._parse_step_title(raw.title)
            attrs = _parse_attributes(raw.lines)
            if not attrs.has_context and phase_attrs.has_context:
                # phase-level "from previous" means the previous phase, not the previous step
                source = phase_attrs.context_source
                attrs.context_source = "previous phase" if source == "previous" else source
                attrs.context = phase_attrs.context
            attrs.skip_if = phase_attrs.skip_if + attrs.skip_if
            attrs.only_if = phase_attrs.only_if + attrs.only_if
            phase.steps.append(self._make_step(
                phase, index, number, label,
                attrs.prompt or raw.text, attrs, phase_role,
            ))
        return phase

    @staticmethod
    def _parse_step_title(title: str) -> tuple[str | None, str]:
        match = STEP_TITLE_RE.match(title)
        if not match:
            return None, title.strip("* ")
        number = (match.group("named") or match.group("numbered")).rstrip(".")
        label = match.group("label").strip("* ")
        if not label:
            label = f"Step {number}" if match.group("named") else number
        return number, label

    @staticmethod
    def _make_step(
        phase: Phase,
        index: int,
        number: str | None,
        label: str,
        instruction: str,
        attrs: _Attributes,
        default_role: str,
    ) -> Step:
        return Step(
            id=f"{phase.ordinal}.{index}",
            phase=phase.ordinal,
            label=label,
            instruction=instruction,
            role=attrs.role or default_role,
            number=number,
            expected_output=attrs.expected_output,
            context_annotation=attrs.annotation,
            skip_if=list(dict.fromkeys(attrs.skip_if)),
            only_if=list(dict.fromkeys(attrs.only_if)),
        )

    # ── Edges ───────────────────────────────────────────────

    def _infer_edges(self, phases: list[Phase]) -> None:
        ordered = [step for phase in phases for step in phase.steps]
        position = {step.id: i for i, step in enumerate(ordered)}

        for phase in phases:
            for step in phase.steps:
                if phase.kind == PhaseKind.VALIDATION:
                    step.depends_on = [s.id for s in ordered if position[s.id] < position[step.id]]
                    continue
                if step.context_annotation is None:
                    continue
                deps = self._resolve_references(step, phases, ordered, position)
                step.depends_on = list(dict.fromkeys(d for d in deps if d != step.id))

    def _resolve_references(
        self,
        step: Step,
        phases: list[Phase],
        ordered: list[Step],
        position: dict[str, int],
    ) -> list[str]:
        text = step.context_annotation or ""
        here = position[step.id]
        deps: list[str] = []
        masked = text

        def _phase_targets(ordinal: int, reference: str) -> list[str]:
            target = next((p for p in phases if p.ordinal == ordinal), None)
            if target is None:
                raise DanglingContextReference(step.id, reference)
            if ordinal >= step.phase:
                raise ForwardReference(step.id, reference, f"phase {ordinal}")
            return [s.id for s in target.steps]

        # Explicit "Phase N" / "phases N-M"
        for match in PHASE_REF_RE.finditer(text):
            first = int(match.group("first"))
            last = int(match.group("last")) if match.group("last") else first
            if match.group("sep") in ("-", "–", "to"):
                ordinals = list(range(first, last + 1))
            else:
                ordinals = sorted({first, last})
            for ordinal in ordinals:
                deps.extend(_phase_targets(ordinal, match.group(0)))
            masked = masked.replace(match.group(0), " " * len(match.group(0)), 1)

        # Explicit "Step X"
        for match in STEP_REF_RE.finditer(masked):
            ref = match.group("ref")
            candidates = [s for s in ordered if ref in (s.number, s.id)]
            if not candidates:
                raise DanglingContextReference(step.id, match.group(0))
            earlier = [s for s in candidates if position[s.id] < here]
            if not earlier:
                raise ForwardReference(step.id, match.group(0), candidates[0].id)
            same_phase = [s for s in earlier if s.phase == step.phase]
            deps.append((same_phase or earlier)[-1].id)
            masked = masked.replace(match.group(0), " " * len(match.group(0)), 1)

        # Exact label matches, longest first so "API Design" beats "Design"
        labels: list[tuple[str, list[str], bool]] = []
        for other in ordered:
            if other.id != step.id:
                labels.append((other.label, [other.id], position[other.id] < here))
        for phase in phases:
            if phase.title and phase.ordinal != step.phase:
                labels.append((
                    phase.title,
                    [s.id for s in phase.steps],
                    phase.ordinal < step.phase,
                ))
        labels.sort(key=lambda item: len(item[0]), reverse=True)

        for label, targets, is_earlier in labels:
            if len(label) < 4:
                continue
            pattern = re.compile(rf"(?<!\w){re.escape(label)}(?!\w)", re.IGNORECASE)
            match = pattern.search(masked)
            if not match:
                continue
            if not is_earlier:
                raise ForwardReference(step.id, label, targets[0])
            deps.extend(targets)
            masked = pattern.sub(lambda m: " " * len(m.group(0)), masked)

        if not deps and text.lower().startswith("from previous"):
            source = text[len("from previous"):].split(":", 1)[0].strip().lower()
            earlier = ordered[:here]
            if source.startswith("phase"):
                earlier_phases = [p for p in phases if p.ordinal < step.phase]
                if source == "phases":
                    deps.extend(s.id for p in earlier_phases for s in p.steps)
                elif earlier_phases:
                    deps.extend(s.id for s in earlier_phases[-1].steps)
                else:
                    raise DanglingContextReference(step.id, "previous phase")
            elif earlier:
                deps.append(earlier[-1].id)
            else:
                raise DanglingContextReference(step.id, "previous")

        return deps


def build_graph(
    body: str,
    metadata: Metadata | None = None,
    default_role: str = DEFAULT_ROLE,
) -> PhaseGraph:
    """Parse a document body into a PhaseGraph."""
    return PhaseGraphBuilder(default_role=default_role).build(body, metadata)
