"""Repository layer for the Assessment service.

Typed repositories over the generic `DocumentStore`. Documents are validated
with their pydantic model on the way out of the store and before every write,
and every write is guarded by the revision that was read.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, ClassVar, Dict, Generic, List, Mapping, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from packages.common.docstore import (
    DocumentNotFound,
    DocumentStore,
    DocumentStoreError,
    RevisionConflict,
    StoredDocument,
    new_id,
)
from packages.schemas.assessment import Assessment, AssessmentAttempt
from .errors import ConcurrentModification, NotFound, PersistenceError

log = logging.getLogger(__name__)

DocT = TypeVar("DocT", bound=BaseModel)

# Returns the fields to change, or None to leave the document untouched.
Mutation = Callable[[Any], Optional[Dict[str, Any]]]

_BOOKKEEPING = {"id", "revision"}


class Repository(Generic[DocT]):
    """Typed access to one collection of the document store."""

    collection: ClassVar[str]
    id_prefix: ClassVar[str]
    model: ClassVar[Type[BaseModel]]

    def __init__(self, store: DocumentStore, retries: int = 3) -> None:
        self.store = store
        self.retries = retries

    def view_keys(self, doc: DocT) -> Dict[str, Sequence[Any]]:
        return {}

    def new_id(self) -> str:
        return new_id(self.id_prefix)

    def _load(self, stored: StoredDocument) -> DocT:
        try:
            return self.model.model_validate({**stored.body, "id": stored.id, "revision": stored.revision})  # type: ignore[return-value]
        except ValidationError as exc:
            raise PersistenceError(
                f"stored {self.collection}/{stored.id} does not match its schema", errors=exc.errors()
            ) from exc

    def _dump(self, doc: DocT, fields: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        data = doc.model_dump(mode="json", exclude=_BOOKKEEPING)
        if fields is not None:
            data = {k: data[k] for k in fields}
        return data

    async def add(self, doc: DocT) -> DocT:
        try:
            stored = await self.store.create(self.collection, self._dump(doc), keys=self.view_keys(doc), doc_id=doc.id)  # type: ignore[attr-defined]
        except DocumentStoreError as exc:
            raise PersistenceError(f"could not create {self.collection} document: {exc}") from exc
        return self._load(stored)

    async def get(self, doc_id: str) -> Optional[DocT]:
        try:
            stored = await self.store.find_by_id(self.collection, doc_id)
        except DocumentStoreError as exc:
            raise PersistenceError(f"could not read {self.collection}/{doc_id}: {exc}") from exc
        return self._load(stored) if stored else None

    async def require(self, doc_id: str, label: str) -> DocT:
        doc = await self.get(doc_id)
        if doc is None:
            raise NotFound(f"{label} {doc_id} not found", doc_id=doc_id)
        return doc

    async def replace(self, doc: DocT, **changes: Any) -> DocT:
        """Write `changes` on top of `doc`, guarded by `doc.revision`.

        The merged document is re-validated before anything is written.

        Raises:
            ConcurrentModification: If the stored revision moved since `doc` was read.
            PersistenceError: On validation or storage failures.
        """
        try:
            merged = self.model.model_validate({**doc.model_dump(), **changes})
        except ValidationError as exc:
            raise PersistenceError(f"invalid update for {self.collection}/{doc.id}", errors=exc.errors()) from exc  # type: ignore[attr-defined]
        partial = self._dump(merged, fields=list(changes))  # type: ignore[arg-type]
        try:
            stored = await self.store.update(self.collection, doc.id, partial, expected_revision=doc.revision)  # type: ignore[attr-defined]
        except RevisionConflict as exc:
            raise ConcurrentModification(str(exc), doc_id=exc.doc_id) from exc
        except DocumentNotFound as exc:
            raise NotFound(str(exc), doc_id=exc.doc_id) from exc
        except DocumentStoreError as exc:
            raise PersistenceError(f"could not update {self.collection}/{doc.id}: {exc}") from exc  # type: ignore[attr-defined]
        return self._load(stored)

    async def mutate(self, doc_id: str, mutation: Mutation, label: str = "document") -> DocT:
        """Read-modify-write with retries on revision conflicts.

        `mutation` receives the freshly read document and returns the fields
        to change (or None for no change); it is re-run after every conflict.
        """
        for attempt in range(self.retries + 1):
            doc = await self.require(doc_id, label)
            changes = mutation(doc)
            if not changes:
                return doc
            try:
                return await self.replace(doc, **changes)
            except ConcurrentModification:
                log.info(f"revision conflict on {self.collection}/{doc_id}, retry {attempt + 1}/{self.retries}")
        raise ConcurrentModification(f"{self.collection}/{doc_id} kept changing; gave up after {self.retries} retries")

    async def query(self, view: str, key: Sequence[Any]) -> List[DocT]:
        try:
            rows = await self.store.query_by_key(self.collection, view, key)
        except DocumentStoreError as exc:
            raise PersistenceError(f"could not query {self.collection}/{view}: {exc}") from exc
        return [self._load(r) for r in rows]


class AssessmentRepository(Repository[Assessment]):
    collection = "assessments"
    id_prefix = "assessment"
    model = Assessment

    def view_keys(self, doc: Assessment) -> Dict[str, Sequence[Any]]:
        return {"by_course": [doc.course_id]} if doc.course_id else {}

    async def by_course(self, course_id: str) -> List[Assessment]:
        return await self.query("by_course", [course_id])


class AttemptRepository(Repository[AssessmentAttempt]):
    collection = "assessment_attempts"
    id_prefix = "assessment_attempt"
    model = AssessmentAttempt

    def view_keys(self, doc: AssessmentAttempt) -> Dict[str, Sequence[Any]]:
        return {
            "by_user_assessment": [doc.user_id, doc.assessment_id],
            "by_assessment": [doc.assessment_id],
        }

    async def for_user(self, user_id: str, assessment_id: str) -> List[AssessmentAttempt]:
        """All attempts of a user on an assessment, newest first."""
        attempts = await self.query("by_user_assessment", [user_id, assessment_id])
        return sorted(attempts, key=lambda a: (a.start_time, a.attempt_number), reverse=True)

    async def for_assessment(self, assessment_id: str) -> List[AssessmentAttempt]:
        return await self.query("by_assessment", [assessment_id])
