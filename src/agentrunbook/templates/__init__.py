"""
Bundled example documents.

Loads the agent personas, command templates, and workflows that ship
with the package into a DocumentRegistry.
"""

from __future__ import annotations

from pathlib import Path

from ..registry import DocumentRegistry

TEMPLATES_DIR = Path(__file__).parent


def load_bundled_documents(registry: DocumentRegistry | None = None) -> DocumentRegistry:
    """
    Load every bundled document into a registry.

    Returns a populated DocumentRegistry ready for use.
    """
    if registry is None:
        registry = DocumentRegistry()

    registry.load_directory(TEMPLATES_DIR)
    return registry
