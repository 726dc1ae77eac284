"""Shared fixtures for the agentrunbook tests."""

import pytest

from agentrunbook.templates import load_bundled_documents


@pytest.fixture
def registry():
    return load_bundled_documents()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("STRICT", "STEP_TIMEOUT", "MAX_CONCURRENCY", "ROLE", "MODEL"):
        monkeypatch.delenv(f"AGENTRUNBOOK_{var}", raising=False)
