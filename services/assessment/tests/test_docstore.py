import pytest

from packages.common.docstore import (
    DocumentNotFound,
    InMemoryDocumentStore,
    RevisionConflict,
    open_document_store,
)
from packages.common.sql_docstore import SqlDocumentStore
from services.assessment.errors import ConcurrentModification, NotFound, PersistenceError
from services.assessment.repo import AssessmentRepository, AttemptRepository

from conftest import make_assessment


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryDocumentStore()
    return SqlDocumentStore(f"sqlite+aiosqlite:///{tmp_path}/docs.db")


@pytest.mark.asyncio
async def test_create_find_update(store):
    await store.init()
    try:
        created = await store.create("notes", {"title": "a", "tags": ["x"]}, doc_id="note_1")
        assert created.revision == 1
        assert (await store.find_by_id("notes", "note_1")).body == {"title": "a", "tags": ["x"]}
        assert await store.find_by_id("notes", "missing") is None
        assert await store.find_by_id("other", "note_1") is None

        updated = await store.update("notes", "note_1", {"title": "b"}, expected_revision=1)
        assert updated.revision == 2
        assert updated.body == {"title": "b", "tags": ["x"]}
        assert (await store.find_by_id("notes", "note_1")).revision == 2
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_stale_revision_is_rejected(store):
    await store.init()
    try:
        await store.create("notes", {"n": 0}, doc_id="note_1")
        await store.update("notes", "note_1", {"n": 1}, expected_revision=1)
        with pytest.raises(RevisionConflict) as exc:
            await store.update("notes", "note_1", {"n": 99}, expected_revision=1)
        assert exc.value.actual == 2
        assert (await store.find_by_id("notes", "note_1")).body == {"n": 1}
        with pytest.raises(DocumentNotFound):
            await store.update("notes", "missing", {"n": 1})
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_query_by_composite_key(store):
    await store.init()
    try:
        await store.create("att", {"n": 1}, keys={"by_user": ["u1", "a1"]})
        await store.create("att", {"n": 2}, keys={"by_user": ["u1", "a1"]})
        await store.create("att", {"n": 3}, keys={"by_user": ["u2", "a1"]})
        rows = await store.query_by_key("att", "by_user", ["u1", "a1"])
        assert sorted(r.body["n"] for r in rows) == [1, 2]
        assert await store.query_by_key("att", "by_user", ["u1"]) == []
        assert await store.query_by_key("att", "other_view", ["u1", "a1"]) == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_in_memory_store_copies_bodies():
    store = InMemoryDocumentStore()
    body = {"items": [1]}
    await store.create("c", body, doc_id="d")
    body["items"].append(2)
    found = await store.find_by_id("c", "d")
    found.body["items"].append(3)
    assert (await store.find_by_id("c", "d")).body == {"items": [1]}


def test_open_document_store_by_dsn(tmp_path):
    assert isinstance(open_document_store("memory://"), InMemoryDocumentStore)
    assert isinstance(open_document_store(f"sqlite+aiosqlite:///{tmp_path}/x.db"), SqlDocumentStore)


@pytest.mark.asyncio
async def test_repository_round_trip_and_guarded_replace():
    repo = AssessmentRepository(InMemoryDocumentStore())
    saved = await repo.add(make_assessment())
    assert saved.revision == 1
    assert (await repo.by_course("course_1"))[0].id == saved.id

    renamed = await repo.replace(saved, title="Renamed")
    assert renamed.revision == 2 and renamed.title == "Renamed"
    with pytest.raises(ConcurrentModification):
        await repo.replace(saved, title="Stale")
    with pytest.raises(PersistenceError):
        await repo.replace(renamed, settings={"max_attempts": 0})
    with pytest.raises(NotFound):
        await repo.require("assessment_missing", "Assessment")


@pytest.mark.asyncio
async def test_repository_mutate_retries_after_conflict():
    store = InMemoryDocumentStore()
    repo = AssessmentRepository(store)
    await repo.add(make_assessment())
    calls = []

    def rename(doc):
        calls.append(doc.revision)
        if len(calls) == 1:
            # simulate a concurrent writer landing between read and write
            store._docs[("assessments", doc.id)].revision += 1
        return {"title": f"v{len(calls)}"}

    updated = await repo.mutate("assessment_geo", rename, label="Assessment")
    assert calls == [1, 2]
    assert updated.title == "v2"


@pytest.mark.asyncio
async def test_repository_rejects_corrupt_documents():
    store = InMemoryDocumentStore()
    await store.create("assessment_attempts", {"user_id": "u1"}, doc_id="assessment_attempt_bad")
    with pytest.raises(PersistenceError):
        await AttemptRepository(store).get("assessment_attempt_bad")
