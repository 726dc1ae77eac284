"""
Placeholder Resolver — substitutes $TOKEN / ${TOKEN} sites with values.

Token syntax:
    $NAME               value of NAME (NAME is upper-case: [A-Z][A-Z0-9_]*)
    ${NAME}             same, braced
    ${NAME:-default}    value of NAME, or "default" when the caller gives none
    \\$NAME              escaped; renders as the literal text "$NAME"

Lower-case shell variables ($file, ${dir}) are not tokens and pass through.
Neither is anything inside a fenced code block (``` or ~~~): documents
quote shell snippets like `psql "$DATABASE_URL"`, and those are left
exactly as written, escapes included.

Resolution never emits a raw token: a token with no caller value and no
default raises UnresolvedPlaceholder. Substitution is a single pass, so
replacement values are never re-scanned for tokens.

The caller's free-form arguments blob is the value of the catch-all
$ARGUMENTS token, after recognized --flags have been pulled out of it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Mapping

from .errors import AmbiguousPlaceholder, UnresolvedPlaceholder
from .graph import FENCE_RE
from .models import Document, PlaceholderToken

logger = logging.getLogger(__name__)

CATCH_ALL = "ARGUMENTS"

TOKEN_PATTERN = re.compile(
    r"(?P<escape>\\)?"
    r"\$(?:\{(?P<braced>[A-Z][A-Z0-9_]*)(?::-(?P<default>[^}]*))?\}"
    r"|(?P<bare>[A-Z][A-Z0-9_]*))"
)

FLAG_PATTERN = re.compile(
    r"(?<!\S)--(?P<name>[A-Za-z0-9][\w-]*)"
    r"(?:=(?P<value>\"[^\"]*\"|'[^']*'|\S+))?(?!\S)"
)


def fenced_spans(text: str) -> list[tuple[int, int]]:
    """(start, end) offsets of fenced code blocks. An unclosed fence runs to the end."""
    spans: list[tuple[int, int]] = []
    offset = 0
    start: int | None = None
    marker: str | None = None
    for line in text.splitlines(keepends=True):
        match = FENCE_RE.match(line)
        if match:
            if start is None:
                start, marker = offset, match.group(1)
            elif match.group(1) == marker:
                spans.append((start, offset + len(line)))
                start = marker = None
        offset += len(line)
    if start is not None:
        spans.append((start, len(text)))
    return spans


def _in_spans(position: int, spans: list[tuple[int, int]]) -> bool:
    return any(start <= position < end for start, end in spans)


def find_placeholders(text: str) -> list[PlaceholderToken]:
    """
    List the tokens referenced in text, in order of first occurrence.

    Escaped sites and sites inside fenced code blocks are not tokens.
    Raises AmbiguousPlaceholder when the same name carries two different
    inline defaults.
    """
    positions: dict[str, list[int]] = {}
    defaults: dict[str, str] = {}

    spans = fenced_spans(text)
    for match in TOKEN_PATTERN.finditer(text):
        if match.group("escape") or _in_spans(match.start(), spans):
            continue
        name = match.group("braced") or match.group("bare")
        positions.setdefault(name, []).append(match.start())

        default = match.group("default")
        if default is None:
            continue
        if name in defaults and defaults[name] != default:
            raise AmbiguousPlaceholder(name, [defaults[name], default])
        defaults[name] = default

    return [
        PlaceholderToken(name=name, default=defaults.get(name), positions=tuple(pos))
        for name, pos in positions.items()
    ]


def resolve(
    text: str,
    values: Mapping[str, str] | None = None,
    defaults: Mapping[str, str] | None = None,
    step_id: str | None = None,
) -> str:
    """
    Replace every token in text.

    Precedence: caller value, then the token's inline default, then the
    document-level default.

    Raises:
        UnresolvedPlaceholder: naming every token left without a value.
        AmbiguousPlaceholder: conflicting inline defaults for one name.
    """
    values = values or {}
    defaults = defaults or {}

    tokens = find_placeholders(text)
    missing = [
        t.name for t in tokens
        if t.name not in values and t.default is None and t.name not in defaults
    ]
    if missing:
        raise UnresolvedPlaceholder(missing, step_id=step_id)
    if not tokens and "\\$" not in text:
        return text

    spans = fenced_spans(text)

    def _substitute(match: re.Match) -> str:
        if _in_spans(match.start(), spans):
            return match.group(0)
        if match.group("escape"):
            return match.group(0)[1:]
        name = match.group("braced") or match.group("bare")
        if name in values:
            return str(values[name])
        if match.group("default") is not None:
            return match.group("default")
        inline = next(t.default for t in tokens if t.name == name)
        if inline is not None:
            return inline
        return str(defaults[name])

    return TOKEN_PATTERN.sub(_substitute, text)


def merge_values(*sources: Mapping[str, str]) -> dict[str, str]:
    """
    Merge named values from several sources into one flat namespace.

    A name supplied twice with different values is an authoring error,
    not something to shadow silently.
    """
    merged: dict[str, str] = {}
    for source in sources:
        for name, value in source.items():
            value = str(value)
            if name in merged and merged[name] != value:
                raise AmbiguousPlaceholder(name, [merged[name], value])
            merged[name] = value
    return merged


# ── Arguments blob ──────────────────────────────────────────

@dataclass
class ParsedArguments:
    """Result of scanning an arguments blob for --flags."""
    flags: dict[str, str | bool] = field(default_factory=dict)
    remainder: str = ""

    @property
    def flag_values(self) -> dict[str, str]:
        """Recognized flags that carried a value, as placeholder names."""
        return {
            name.upper().replace("-", "_"): value
            for name, value in self.flags.items()
            if isinstance(value, str)
        }


def parse_arguments(blob: str, recognized: list[str] | set[str] | None = None) -> ParsedArguments:
    """
    Pull recognized ``--name[=value]`` flags out of an arguments blob.

    Unrecognized flags stay in the remainder untouched, since the valid
    flag set is specific to each document.
    """
    recognized = {r.lstrip("-").lower() for r in (recognized or [])}
    flags: dict[str, str | bool] = {}
    kept: list[str] = []
    cursor = 0

    for match in FLAG_PATTERN.finditer(blob):
        name = match.group("name").lower()
        if name not in recognized:
            continue
        value = match.group("value")
        if value is not None and len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        flags[name] = value if value is not None else True
        kept.append(blob[cursor:match.start()])
        cursor = match.end()

    kept.append(blob[cursor:])
    remainder = re.sub(r"[ \t]{2,}", " ", "".join(kept)).strip()

    if flags:
        logger.debug(f"Recognized flags: {flags}")
    return ParsedArguments(flags=flags, remainder=remainder)


# ── Per-document resolver ───────────────────────────────────

class PlaceholderResolver:
    """
    Resolves every step of one document against one set of values.

    Usage:
        resolver = PlaceholderResolver.for_document(doc, "--skip-tests add login")
        text = resolver.resolve(step.instruction, step_id=step.id)
    """

    def __init__(
        self,
        values: Mapping[str, str] | None = None,
        defaults: Mapping[str, str] | None = None,
        flags: Mapping[str, str | bool] | None = None,
    ):
        self.values = dict(values or {})
        self.defaults = dict(defaults or {})
        self.flags = dict(flags or {})

    @classmethod
    def for_document(
        cls,
        document: Document,
        arguments: str | None = None,
        values: Mapping[str, str] | None = None,
        recognized_flags: list[str] | None = None,
    ) -> PlaceholderResolver:
        """
        Build the resolver for a document run.

        ``arguments`` is the free-form blob; None means the caller gave no
        arguments at all, so $ARGUMENTS needs a default. ``recognized_flags``
        extends the flags declared in the document's front-matter.
        """
        recognized = list(document.metadata.flags) + list(recognized_flags or [])
        named = dict(values or {})
        parsed = ParsedArguments()

        if arguments is not None:
            parsed = parse_arguments(arguments, recognized)
            if CATCH_ALL in named and named[CATCH_ALL] != parsed.remainder:
                raise AmbiguousPlaceholder(CATCH_ALL, [named[CATCH_ALL], parsed.remainder])
            named[CATCH_ALL] = parsed.remainder

        merged = merge_values(named, parsed.flag_values)

        defaults = document.metadata.defaults
        for token in find_placeholders(document.body):
            if token.default is None or token.name not in defaults:
                continue
            if defaults[token.name] != token.default:
                raise AmbiguousPlaceholder(token.name, [defaults[token.name], token.default])

        return cls(values=merged, defaults=defaults, flags=parsed.flags)

    def resolve(self, text: str, step_id: str | None = None) -> str:
        return resolve(text, self.values, self.defaults, step_id=step_id)

    def unresolved(self, text: str) -> list[str]:
        """Names in text that would fail to resolve."""
        return [
            t.name for t in find_placeholders(text)
            if t.name not in self.values and t.default is None and t.name not in self.defaults
        ]
