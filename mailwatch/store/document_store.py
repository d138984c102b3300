"""Document store interface and local implementations.

The production system keeps these records in a hosted document database. The
watch manager only relies on atomic per-document merge writes, so any backend
offering get/set-with-merge can stand behind this interface.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

Document = dict[str, Any]


def merge_document(base: Document, update: Document) -> Document:
    """Recursively merge update into a copy of base, map by map."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_document(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class DocumentStore(ABC):
    """Interface for a collection/document key-value store.

    Implementations:
    - InMemoryDocumentStore: For tests and single-process development
    - JsonFileDocumentStore: Persists to one JSON file for local runs
    """

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Fetch a document.

        Args:
            collection: Collection name
            doc_id: Document ID within the collection

        Returns:
            A copy of the document, or None if it doesn't exist
        """
        pass

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: Document, merge: bool = True) -> None:
        """Write a document atomically.

        Args:
            collection: Collection name
            doc_id: Document ID within the collection
            data: Fields to write
            merge: Merge into the existing document instead of replacing it
        """
        pass

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Missing documents are ignored."""
        pass

    @abstractmethod
    def list_ids(self, collection: str) -> list[str]:
        """List all document IDs in a collection."""
        pass

    def where(self, collection: str, **equals: Any) -> list[tuple[str, Document]]:
        """Find documents whose fields equal all the given values."""
        matches = []
        for doc_id in self.list_ids(collection):
            doc = self.get(collection, doc_id)
            if doc is None:
                continue
            if all(doc.get(name) == value for name, value in equals.items()):
                matches.append((doc_id, doc))
        return matches

    def batch_set(self, writes: Iterable[tuple[str, str, Document]], merge: bool = True) -> None:
        """Apply several writes. Each write is individually atomic."""
        for collection, doc_id, data in writes:
            self.set(collection, doc_id, data, merge=merge)

    def batch_delete(self, collection: str, doc_ids: Iterable[str]) -> None:
        """Delete several documents of one collection. Missing IDs are ignored."""
        for doc_id in doc_ids:
            self.delete(collection, doc_id)


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe in-memory store.

    Data is lost on restart, which is fine for tests and local experiments.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, Document]] = {}

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def set(self, collection: str, doc_id: str, data: Document, merge: bool = True) -> None:
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            existing = docs.get(doc_id)
            if merge and existing is not None:
                docs[doc_id] = merge_document(existing, data)
            else:
                docs[doc_id] = copy.deepcopy(data)

    def delete(self, collection: str, doc_id: str) -> None:
        with self._lock:
            self._collections.get(collection, {}).pop(doc_id, None)

    def list_ids(self, collection: str) -> list[str]:
        with self._lock:
            return list(self._collections.get(collection, {}).keys())

    def batch_set(self, writes: Iterable[tuple[str, str, Document]], merge: bool = True) -> None:
        with self._lock:
            for collection, doc_id, data in writes:
                self.set(collection, doc_id, data, merge=merge)

    def batch_delete(self, collection: str, doc_ids: Iterable[str]) -> None:
        with self._lock:
            docs = self._collections.get(collection, {})
            for doc_id in doc_ids:
                docs.pop(doc_id, None)

    def clear(self) -> None:
        """Drop every collection. Useful for testing."""
        with self._lock:
            self._collections.clear()


class JsonFileDocumentStore(InMemoryDocumentStore):
    """In-memory store persisted to a single JSON file after every write.

    The file is rewritten through a temporary file and os.replace, so a crash
    mid-write leaves the previous version intact.
    """

    def __init__(self, path: Path):
        super().__init__()
        self._path = Path(path)
        if self._path.exists():
            with open(self._path, "r", encoding="utf-8") as fh:
                self._collections = json.load(fh)
            logger.info("Loaded document store from %s", self._path)

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._collections, fh, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def set(self, collection: str, doc_id: str, data: Document, merge: bool = True) -> None:
        with self._lock:
            super().set(collection, doc_id, data, merge=merge)
            self._flush()

    def delete(self, collection: str, doc_id: str) -> None:
        with self._lock:
            super().delete(collection, doc_id)
            self._flush()

    def batch_set(self, writes: Iterable[tuple[str, str, Document]], merge: bool = True) -> None:
        with self._lock:
            for collection, doc_id, data in writes:
                InMemoryDocumentStore.set(self, collection, doc_id, data, merge=merge)
            self._flush()

    def batch_delete(self, collection: str, doc_ids: Iterable[str]) -> None:
        with self._lock:
            InMemoryDocumentStore.batch_delete(self, collection, doc_ids)
            self._flush()
