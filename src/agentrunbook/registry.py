"""
Document Registry — searchable library of instruction documents.

Documents are markdown files, usually laid out the way agent hosts expect:

    agents/code-reviewer.md        persona   (kind: agent)
    commands/review.md             template  (kind: command)
    workflows/feature-dev.md       workflow  (kind: workflow)

Each is registered under its front-matter ``name`` or, failing that, its
file stem.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import DocumentNotFoundError
from .frontmatter import load_document
from .models import Document, DocumentKind

logger = logging.getLogger(__name__)


class DocumentRegistry:
    """
    Library of documents, looked up by name.

    The workflow runner finds the document to run here, and the
    LangGraph invoker finds agent personas here.
    """

    def __init__(self):
        self._documents: dict[str, Document] = {}

    def register(self, document: Document, name: str | None = None) -> str:
        key = name or document.name
        if key in self._documents:
            logger.info(f"Replacing document '{key}'")
        self._documents[key] = document
        return key

    def load_directory(self, path: str | Path) -> int:
        """Load every markdown file below a directory."""
        path = Path(path)
        if not path.is_dir():
            raise FileNotFoundError(f"Document directory not found: {path}")

        count = 0
        for md_file in sorted(path.rglob("*.md")):
            if md_file.name.lower() == "readme.md":
                continue
            self.register(load_document(md_file))
            count += 1

        logger.info(f"Loaded {count} documents from {path}")
        return count

    def load_file(self, path: str | Path) -> Document:
        document = load_document(path)
        self.register(document)
        return document

    def get(self, name: str) -> Document | None:
        return self._documents.get(name)

    def require(self, name: str) -> Document:
        document = self._documents.get(name)
        if document is None:
            raise DocumentNotFoundError(name, self.list_all())
        return document

    def search(
        self,
        query: str | None = None,
        tags: list[str] | None = None,
        kind: DocumentKind | None = None,
    ) -> list[Document]:
        """Search the registry with filters, best keyword matches first."""
        results = list(self._documents.values())

        if kind:
            results = [d for d in results if d.kind == kind]
        if tags:
            results = [d for d in results if any(t in d.metadata.tags for t in tags)]

        if query:
            query_lower = query.lower()
            scored = []
            for d in results:
                searchable = (
                    f"{d.name} {d.metadata.description} {' '.join(d.metadata.tags)}"
                ).lower()
                score = sum(1 for word in query_lower.split() if word in searchable)
                if score > 0:
                    scored.append((score, d))
            scored.sort(key=lambda x: x[0], reverse=True)
            results = [d for _, d in scored]

        return results

    def list_all(self) -> list[str]:
        return list(self._documents.keys())

    @property
    def count(self) -> int:
        return len(self._documents)

    def __contains__(self, name: str) -> bool:
        return name in self._documents
