"""SQLAlchemy-backed document store.

Defines two tables:
- documents: one row per document; the body is stored as JSON text next to
  its collection and integer revision.
- document_keys: view index rows (collection, view, encoded key) -> document id.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from .docstore import (
    DocumentNotFound,
    DocumentStore,
    DocumentStoreError,
    RevisionConflict,
    StoredDocument,
    encode_key,
    new_id,
)

Base = declarative_base()


class DocumentRow(Base):
    """Stored document.

    Attributes:
        id: Document id (unique across collections).
        collection: Collection name, e.g. "assessment_attempts".
        revision: Optimistic concurrency token, starts at 1.
        body: JSON-encoded document body.
    """

    __tablename__ = "documents"
    id: Mapped[str] = mapped_column(String(96), primary_key=True)
    collection: Mapped[str] = mapped_column(String(64), index=True)
    revision: Mapped[int] = mapped_column(Integer, default=1)
    body: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class DocumentKeyRow(Base):
    """View index entry pointing at a document."""

    __tablename__ = "document_keys"
    __table_args__ = (Index("ix_document_keys_lookup", "collection", "view", "key"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doc_id: Mapped[str] = mapped_column(ForeignKey("documents.id"))
    collection: Mapped[str] = mapped_column(String(64))
    view: Mapped[str] = mapped_column(String(64))
    key: Mapped[str] = mapped_column(Text)


def _aware(value: datetime) -> datetime:
    # sqlite drops tzinfo on the way back
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_document(row: DocumentRow) -> StoredDocument:
    return StoredDocument(
        id=row.id,
        collection=row.collection,
        revision=row.revision,
        body=json.loads(row.body),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


class SqlDocumentStore(DocumentStore):
    """Document store on top of an async SQLAlchemy engine."""

    def __init__(self, dsn: str, echo: bool = False) -> None:
        self.engine = create_async_engine(dsn, echo=echo)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init(self) -> None:
        """Create database schema if it doesn't exist."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"schema init failed: {exc}") from exc

    async def close(self) -> None:
        await self.engine.dispose()

    async def create(self, collection, body, keys=None, doc_id=None) -> StoredDocument:
        doc_id = doc_id or new_id(collection)
        now = datetime.now(timezone.utc)
        row = DocumentRow(
            id=doc_id,
            collection=collection,
            revision=1,
            body=json.dumps(dict(body), default=str),
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.Session() as session, session.begin():
                session.add(row)
                await session.flush()
                for view, key in (keys or {}).items():
                    session.add(DocumentKeyRow(doc_id=doc_id, collection=collection, view=view, key=encode_key(key)))
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"create {collection}/{doc_id} failed: {exc}") from exc
        return _to_document(row)

    async def find_by_id(self, collection, doc_id) -> Optional[StoredDocument]:
        try:
            async with self.Session() as session:
                row = await self._get(session, collection, doc_id)
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"read {collection}/{doc_id} failed: {exc}") from exc
        return _to_document(row) if row else None

    async def update(self, collection, doc_id, partial, expected_revision=None) -> StoredDocument:
        try:
            async with self.Session() as session, session.begin():
                row = await self._get(session, collection, doc_id)
                if row is None:
                    raise DocumentNotFound(collection, doc_id)
                if expected_revision is not None and row.revision != expected_revision:
                    raise RevisionConflict(collection, doc_id, expected_revision, row.revision)
                merged = {**json.loads(row.body), **dict(partial)}
                now = datetime.now(timezone.utc)
                # compare-and-swap on the revision read above
                res = await session.execute(
                    update(DocumentRow)
                    .where(DocumentRow.id == doc_id, DocumentRow.revision == row.revision)
                    .values(body=json.dumps(merged, default=str), revision=row.revision + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    raise RevisionConflict(collection, doc_id, row.revision, None)
                return StoredDocument(
                    id=doc_id,
                    collection=collection,
                    revision=row.revision + 1,
                    body=merged,
                    created_at=_aware(row.created_at),
                    updated_at=now,
                )
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"update {collection}/{doc_id} failed: {exc}") from exc

    async def query_by_key(self, collection, view, key) -> List[StoredDocument]:
        q = (
            select(DocumentRow)
            .join(DocumentKeyRow, DocumentKeyRow.doc_id == DocumentRow.id)
            .where(
                DocumentKeyRow.collection == collection,
                DocumentKeyRow.view == view,
                DocumentKeyRow.key == encode_key(key),
            )
        )
        try:
            async with self.Session() as session:
                res = await session.execute(q)
                return [_to_document(r) for r in res.scalars()]
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"query {collection}/{view} failed: {exc}") from exc

    @staticmethod
    async def _get(session: AsyncSession, collection: str, doc_id: str) -> Optional[DocumentRow]:
        res = await session.execute(
            select(DocumentRow).where(DocumentRow.id == doc_id, DocumentRow.collection == collection)
        )
        return res.scalar_one_or_none()
