"""Schema-agnostic document store contract.

Documents live in named collections, carry a store-owned integer `revision`
that is bumped on every write, and may be indexed under named views
(`query_by_key(collection, view, key)`), mirroring map/reduce views of a
document database.

Implementations:
- `InMemoryDocumentStore` for tests and local development.
- `SqlDocumentStore` (see `sql_docstore`) for SQLAlchemy async engines.
"""

from __future__ import annotations

import asyncio
import copy
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

ViewKeys = Mapping[str, Sequence[Any]]


class DocumentStoreError(Exception):
    """Storage I/O failure (connection, driver or integrity error)."""


class DocumentNotFound(DocumentStoreError):
    """Update targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class RevisionConflict(DocumentStoreError):
    """A write carried a stale revision; the caller must re-read and retry."""

    def __init__(self, collection: str, doc_id: str, expected: Optional[int], actual: Optional[int]) -> None:
        super().__init__(f"{collection}/{doc_id}: expected revision {expected}, found {actual}")
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected
        self.actual = actual


@dataclass
class StoredDocument:
    """A document body together with its storage bookkeeping."""
    id: str
    collection: str
    revision: int
    body: Dict[str, Any]
    created_at: datetime
    updated_at: datetime


def new_id(prefix: str) -> str:
    """Return a unique document id such as `assessment_attempt_3f2a...`."""
    return f"{prefix}_{uuid.uuid4().hex}"


def encode_key(key: Sequence[Any]) -> str:
    """Encode a composite view key into a stable string."""
    return json.dumps(list(key), separators=(",", ":"), default=str)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStore(ABC):
    """Generic persistence used by the typed repositories."""

    async def init(self) -> None:
        """Prepare the backing storage (create tables, etc.)."""

    async def close(self) -> None:
        """Release connections held by the store."""

    @abstractmethod
    async def create(
        self,
        collection: str,
        body: Mapping[str, Any],
        keys: Optional[ViewKeys] = None,
        doc_id: Optional[str] = None,
    ) -> StoredDocument:
        """Insert a new document at revision 1 and index it under `keys`."""

    @abstractmethod
    async def find_by_id(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        """Return the document or None."""

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        partial: Mapping[str, Any],
        expected_revision: Optional[int] = None,
    ) -> StoredDocument:
        """Shallow-merge `partial` into the stored body and bump the revision.

        Raises:
            DocumentNotFound: If the document does not exist.
            RevisionConflict: If `expected_revision` is given and stale.
        """

    @abstractmethod
    async def query_by_key(self, collection: str, view: str, key: Sequence[Any]) -> List[StoredDocument]:
        """Return every document indexed under `view` with exactly `key`."""


class InMemoryDocumentStore(DocumentStore):
    """Process-local store; bodies are deep-copied in and out."""

    def __init__(self) -> None:
        self._docs: Dict[Tuple[str, str], StoredDocument] = {}
        self._views: Dict[Tuple[str, str, str], List[str]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(doc: StoredDocument) -> StoredDocument:
        return StoredDocument(
            id=doc.id,
            collection=doc.collection,
            revision=doc.revision,
            body=copy.deepcopy(doc.body),
            created_at=doc.created_at,
            updated_at=doc.updated_at,
        )

    async def create(self, collection, body, keys=None, doc_id=None) -> StoredDocument:
        doc_id = doc_id or new_id(collection)
        async with self._lock:
            if (collection, doc_id) in self._docs:
                raise DocumentStoreError(f"{collection}/{doc_id} already exists")
            now = _utcnow()
            doc = StoredDocument(doc_id, collection, 1, copy.deepcopy(dict(body)), now, now)
            self._docs[(collection, doc_id)] = doc
            for view, key in (keys or {}).items():
                self._views.setdefault((collection, view, encode_key(key)), []).append(doc_id)
            return self._copy(doc)

    async def find_by_id(self, collection, doc_id) -> Optional[StoredDocument]:
        doc = self._docs.get((collection, doc_id))
        return self._copy(doc) if doc else None

    async def update(self, collection, doc_id, partial, expected_revision=None) -> StoredDocument:
        async with self._lock:
            doc = self._docs.get((collection, doc_id))
            if doc is None:
                raise DocumentNotFound(collection, doc_id)
            if expected_revision is not None and doc.revision != expected_revision:
                raise RevisionConflict(collection, doc_id, expected_revision, doc.revision)
            doc.body = {**doc.body, **copy.deepcopy(dict(partial))}
            doc.revision += 1
            doc.updated_at = _utcnow()
            return self._copy(doc)

    async def query_by_key(self, collection, view, key) -> List[StoredDocument]:
        ids = self._views.get((collection, view, encode_key(key)), [])
        return [self._copy(self._docs[(collection, i)]) for i in ids]


def open_document_store(dsn: str) -> DocumentStore:
    """Build a store from a DSN: `memory://` or an SQLAlchemy async URL."""
    if dsn.startswith("memory://"):
        return InMemoryDocumentStore()
    from .sql_docstore import SqlDocumentStore

    return SqlDocumentStore(dsn)
