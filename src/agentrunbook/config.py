"""
Run configuration — how the orchestration driver behaves.

Config can come from code, a YAML file, or environment variables:

    strict: false            # halt the whole run on the first failed step
    step_timeout: 300        # seconds per agent dispatch (omit for unbounded)
    max_concurrency: 4       # parallel dispatches within a phase
    default_role: general-purpose
    default_model: anthropic:claude-sonnet-4-5-20250929

Documents can override ``strict`` and ``step_timeout`` in their own
front-matter.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import MalformedMetadata
from .graph import DEFAULT_ROLE

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "anthropic:claude-sonnet-4-5-20250929"

ENV_PREFIX = "AGENTRUNBOOK_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _to_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"'{key}' must be a boolean, got {value!r}")


def _to_timeout(value: Any, key: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{key}' must be a number of seconds, got {value!r}") from None
    if timeout <= 0:
        raise ValueError(f"'{key}' must be positive, got {value!r}")
    return timeout


def _to_positive_int(value: Any, key: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{key}' must be an integer, got {value!r}") from None
    if number < 1:
        raise ValueError(f"'{key}' must be at least 1, got {value!r}")
    return number


@dataclass(frozen=True)
class RunConfig:
    """
    Driver settings for one run.

    Fields:
        strict: Any step failure halts the run (no new dispatches).
        step_timeout: Seconds allowed per dispatch; None is unbounded.
        max_concurrency: Cap on simultaneous dispatches; None is unbounded.
        default_role: Agent role for steps that do not name one.
        default_model: Model string used by LLM-backed invokers.
    """
    strict: bool = False
    step_timeout: float | None = None
    max_concurrency: int | None = None
    default_role: str = DEFAULT_ROLE
    default_model: str = DEFAULT_MODEL

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RunConfig:
        """Create a RunConfig from a plain dict, validating each value."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")

        kwargs: dict[str, Any] = {}
        if "strict" in data:
            kwargs["strict"] = _to_bool(data["strict"], "strict")
        if "step_timeout" in data:
            kwargs["step_timeout"] = _to_timeout(data["step_timeout"], "step_timeout")
        if "max_concurrency" in data:
            kwargs["max_concurrency"] = _to_positive_int(data["max_concurrency"], "max_concurrency")
        if data.get("default_role"):
            kwargs["default_role"] = str(data["default_role"])
        if data.get("default_model"):
            kwargs["default_model"] = str(data["default_model"])
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str | Path) -> RunConfig:
        """Load a run config from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Run config not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError(f"Run config must be a YAML mapping, got {type(data).__name__}")

        return cls.from_dict(data)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, base: RunConfig | None = None) -> RunConfig:
        """Overlay AGENTRUNBOOK_* environment variables on a base config."""
        environ = os.environ if environ is None else environ
        mapping = {
            "STRICT": "strict",
            "STEP_TIMEOUT": "step_timeout",
            "MAX_CONCURRENCY": "max_concurrency",
            "ROLE": "default_role",
            "MODEL": "default_model",
        }
        data = {
            key: environ[ENV_PREFIX + var]
            for var, key in mapping.items()
            if ENV_PREFIX + var in environ
        }
        overlay = cls.from_dict(data)
        base = base or cls()
        return replace(base, **{k: getattr(overlay, k) for k in data})

    def for_document(
        self,
        metadata: Mapping[str, Any] | Any,
        path: str | Path | None = None,
    ) -> RunConfig:
        """
        Apply per-document overrides from front-matter.

        Raises:
            MalformedMetadata: an override value of the wrong type.
        """
        overrides: dict[str, Any] = {}
        try:
            if "strict" in metadata:
                overrides["strict"] = _to_bool(metadata.get("strict"), "strict")
            if "step_timeout" in metadata:
                overrides["step_timeout"] = _to_timeout(metadata.get("step_timeout"), "step_timeout")
        except ValueError as e:
            raise MalformedMetadata(str(e), path) from e
        return replace(self, **overrides) if overrides else self
