"""Document store contract and the two bundled implementations.

Collections used by the engine:

- ``recipes``           keyed by recipe id
- ``executions``        keyed by execution id (written by ExecutionTracker only)
- ``prompt_templates``  keyed by template id
- ``adaptor_configs``   keyed by config id
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

RECIPES = "recipes"
EXECUTIONS = "executions"
PROMPT_TEMPLATES = "prompt_templates"
ADAPTOR_CONFIGS = "adaptor_configs"

COLLECTIONS = (RECIPES, EXECUTIONS, PROMPT_TEMPLATES, ADAPTOR_CONFIGS)


class DocumentStore(ABC):
    """Minimal keyed-document persistence. Documents are plain JSON-compatible dicts."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> dict | None:
        """Return a copy of the document, or None."""

    @abstractmethod
    def put(self, collection: str, doc_id: str, doc: dict):
        """Create or replace a document."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns False if it did not exist."""

    @abstractmethod
    def all(self, collection: str) -> list[dict]:
        """Return copies of every document in a collection."""

    def list(self, collection: str, **filters: Any) -> list[dict]:
        """Documents whose top-level fields equal every given filter value."""
        return [
            doc for doc in self.all(collection)
            if all(doc.get(k) == v for k, v in filters.items())
        ]


class MemoryDocumentStore(DocumentStore):
    """In-process store. Documents are JSON round-tripped on every read and write,
    so anything stored here is guaranteed to survive a real persistence layer."""

    def __init__(self):
        self._data: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def get(self, collection: str, doc_id: str) -> dict | None:
        with self._lock:
            raw = self._data.get(collection, {}).get(doc_id)
        return json.loads(raw) if raw is not None else None

    def put(self, collection: str, doc_id: str, doc: dict):
        raw = json.dumps(doc)
        with self._lock:
            self._data.setdefault(collection, {})[doc_id] = raw

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._data.get(collection, {}).pop(doc_id, None) is not None

    def all(self, collection: str) -> list[dict]:
        with self._lock:
            raws = list(self._data.get(collection, {}).values())
        return [json.loads(r) for r in raws]

    def clear(self):
        with self._lock:
            self._data.clear()


class JsonFileDocumentStore(DocumentStore):
    """One JSON file per document under ``<base_dir>/<collection>/<id>.json``."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, collection: str, doc_id: str) -> Path:
        if "/" in doc_id or "\\" in doc_id or doc_id in ("", ".", ".."):
            raise ValueError(f"Invalid document id: {doc_id!r}")
        return self.base_dir / collection / f"{doc_id}.json"

    def get(self, collection: str, doc_id: str) -> dict | None:
        path = self._path(collection, doc_id)
        with self._lock:
            if not path.exists():
                return None
            return json.loads(path.read_text())

    def put(self, collection: str, doc_id: str, doc: dict):
        path = self._path(collection, doc_id)
        raw = json.dumps(doc, indent=2)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(raw)
            os.replace(tmp, path)

    def delete(self, collection: str, doc_id: str) -> bool:
        path = self._path(collection, doc_id)
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
            return True

    def all(self, collection: str) -> list[dict]:
        folder = self.base_dir / collection
        with self._lock:
            if not folder.exists():
                return []
            return [json.loads(p.read_text()) for p in sorted(folder.glob("*.json"))]


def create_store(backend: str, data_dir: Path | None = None) -> DocumentStore:
    """Create a store from the configured backend name."""
    if backend == "memory":
        return MemoryDocumentStore()
    if backend == "json":
        if data_dir is None:
            raise ValueError("The json store backend needs a data directory")
        logger.info(f"Using JSON document store at {data_dir}")
        return JsonFileDocumentStore(data_dir)
    raise ValueError(f"Unknown store backend: {backend}. Use 'memory' or 'json'.")
