"""Tests for the SQLite record store, schema migrations and session scope."""

import shutil
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from knowledgemcp.database import DatabaseManager
from knowledgemcp.errors import ConflictError, StoreUnavailable, ValidationError
from knowledgemcp.ids import generate
from knowledgemcp.migrations import MIGRATIONS, run_migrations
from knowledgemcp.models import Knowledge
from knowledgemcp.records import (
    ChecklistItem,
    ChecklistPayload,
    CheckpointPayload,
    Direction,
    Kind,
    Record,
    RecordFilter,
    Relationship,
)
from knowledgemcp.store import SQLiteRecordStore, normalize_tags

WORKSPACE = "store-tests"


@pytest.fixture
def temp_storage():
    """Create a temporary storage directory."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
async def db(temp_storage):
    """Create a database manager with temporary storage."""
    db = DatabaseManager(temp_storage)
    await db.init_db()
    yield db
    await db.close()


@pytest.fixture
async def store(db):
    return SQLiteRecordStore(db)


def note(body: str, kind: Kind = Kind.WORK_NOTE, workspace: str = WORKSPACE, **fields) -> Record:
    return Record(id=generate(), kind=kind, body=body, workspace=workspace, **fields)


class TestInsertAndGet:
    """Basic record persistence."""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store):
        record = await store.insert(note("Cache invalidation is hard", tags=["cache"], status="open"))

        loaded = await store.get_by_id(record.id)

        assert loaded.body == "Cache invalidation is hard"
        assert loaded.kind is Kind.WORK_NOTE
        assert loaded.tags == ["cache"]
        assert loaded.status == "open"
        assert loaded.access_count == 0
        assert loaded.created_at <= loaded.modified_at
        assert loaded.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get_by_id("nope") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_is_conflict(self, store):
        record = await store.insert(note("first"))

        with pytest.raises(ConflictError):
            await store.insert(Record(id=record.id, kind=Kind.INSIGHT, body="second", workspace=WORKSPACE))

    @pytest.mark.asyncio
    async def test_checkpoint_payload_round_trip(self, store):
        record = await store.insert(note(
            "Finished auth refactor", kind=Kind.CHECKPOINT,
            payload=CheckpointPayload(session_id="s1", sequence_number=1, active_files=["auth.py"]),
        ))

        loaded = await store.get_by_id(record.id)

        assert loaded.payload == CheckpointPayload(session_id="s1", sequence_number=1, active_files=["auth.py"])
        assert "active_files" not in loaded.attributes

    @pytest.mark.asyncio
    async def test_checklist_payload_round_trip(self, store):
        items = [ChecklistItem(id="c-item0", content="write tests", order=0),
                 ChecklistItem(id="c-item1", content="ship", order=1, is_completed=True,
                               completed_at=datetime(2026, 1, 2, tzinfo=timezone.utc))]
        record = await store.insert(note("Release", kind=Kind.CHECKLIST, payload=ChecklistPayload(items=items)))

        loaded = await store.get_by_id(record.id)

        assert loaded.payload.items == items
        assert loaded.payload.parent_checklist_id is None

    @pytest.mark.asyncio
    async def test_checkpoint_without_payload_is_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.insert(note("bad", kind=Kind.CHECKPOINT))

    @pytest.mark.asyncio
    async def test_note_with_payload_is_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.insert(note("bad", payload=ChecklistPayload()))

    @pytest.mark.asyncio
    async def test_duplicate_checkpoint_sequence_is_conflict(self, store):
        await store.insert(note("one", kind=Kind.CHECKPOINT,
                                payload=CheckpointPayload(session_id="s1", sequence_number=1)))

        with pytest.raises(ConflictError):
            await store.insert(note("again", kind=Kind.CHECKPOINT,
                                    payload=CheckpointPayload(session_id="s1", sequence_number=1)))

    def test_normalize_tags(self):
        assert normalize_tags([" api ", "API", "", "db"]) == ["api", "db"]
        assert normalize_tags(None) == []


class TestQuery:
    """Predicate filtering and ordering."""

    @pytest.mark.asyncio
    async def test_workspace_scoping(self, store):
        await store.insert(note("here"))
        await store.insert(note("elsewhere", workspace="other"))

        records = await store.query([WORKSPACE], RecordFilter())

        assert [r.body for r in records] == ["here"]

    @pytest.mark.asyncio
    async def test_archived_excluded_by_default(self, store):
        kept = await store.insert(note("visible"))
        await store.insert(note("hidden", archived=True))

        default = await store.query([WORKSPACE], RecordFilter())
        everything = await store.query([WORKSPACE], RecordFilter(include_archived=True))

        assert [r.id for r in default] == [kept.id]
        assert len(everything) == 2

    @pytest.mark.asyncio
    async def test_tag_filter_matches_whole_tags(self, store):
        api = await store.insert(note("api note", tags=["api", "backend"]))
        await store.insert(note("apis note", tags=["apis"]))

        records = await store.query([WORKSPACE], RecordFilter(tags=["api"]))

        assert [r.id for r in records] == [api.id]

    @pytest.mark.asyncio
    async def test_all_tags_must_match(self, store):
        both = await store.insert(note("both", tags=["api", "backend"]))
        await store.insert(note("one", tags=["api"]))

        records = await store.query([WORKSPACE], RecordFilter(tags=["api", "backend"]))

        assert [r.id for r in records] == [both.id]

    @pytest.mark.asyncio
    async def test_kind_status_priority_filters(self, store):
        target = await store.insert(note("debt", kind=Kind.TECHNICAL_DEBT, status="Open", priority="high"))
        await store.insert(note("other debt", kind=Kind.TECHNICAL_DEBT, status="resolved", priority="high"))
        await store.insert(note("insight", kind=Kind.INSIGHT, status="open"))

        records = await store.query([WORKSPACE], RecordFilter(
            kinds=[Kind.TECHNICAL_DEBT], statuses=["open"], priorities=["HIGH"]
        ))

        assert [r.id for r in records] == [target.id]

    @pytest.mark.asyncio
    async def test_substring_text_filter_is_case_insensitive(self, store):
        hit = await store.insert(note("Fix the LOGIN bug"))
        tagged = await store.insert(note("unrelated", tags=["login-flow"]))
        await store.insert(note("nothing to see"))

        records = await store.query([WORKSPACE], RecordFilter(text="login"))

        assert {r.id for r in records} == {hit.id, tagged.id}

    @pytest.mark.asyncio
    async def test_text_filter_escapes_wildcards(self, store):
        await store.insert(note("100 percent"))

        assert await store.query([WORKSPACE], RecordFilter(text="%")) == []

    @pytest.mark.asyncio
    async def test_since_until(self, store):
        now = datetime.now(timezone.utc)
        old = await store.insert(note("old", created_at=now - timedelta(days=10)))
        new = await store.insert(note("new", created_at=now - timedelta(hours=1)))

        recent = await store.query([WORKSPACE], RecordFilter(since=now - timedelta(days=1)))
        older = await store.query([WORKSPACE], RecordFilter(until=now - timedelta(days=5)))

        assert [r.id for r in recent] == [new.id]
        assert [r.id for r in older] == [old.id]

    @pytest.mark.asyncio
    async def test_order_and_limit(self, store):
        ids = [(await store.insert(note(f"n{i}"))).id for i in range(5)]

        newest_first = await store.query([WORKSPACE], RecordFilter(), order_by="id", limit=3)
        oldest_first = await store.query([WORKSPACE], RecordFilter(), order_by="created", descending=False)

        assert [r.id for r in newest_first] == list(reversed(ids))[:3]
        assert [r.id for r in oldest_first] == ids

    @pytest.mark.asyncio
    async def test_workspaces_counts(self, store):
        await store.insert(note("a"))
        await store.insert(note("b"))
        await store.insert(note("c", workspace="other"))

        assert await store.workspaces() == [("other", 1), (WORKSPACE, 2)]


class TestFullTextSearch:
    """FTS5 matching."""

    @pytest.mark.asyncio
    async def test_fts_finds_words(self, store):
        login = await store.insert(note("fix login bug"))
        page = await store.insert(note("login page redesign"))
        await store.insert(note("unrelated note"))

        hits = await store.full_text_search("login", [WORKSPACE], RecordFilter())

        assert {record.id for record, _ in hits} == {login.id, page.id}
        assert all(rank >= 0 for _, rank in hits)

    @pytest.mark.asyncio
    async def test_fts_respects_predicate(self, store):
        await store.insert(note("login bug", archived=True))
        visible = await store.insert(note("login flow"))

        hits = await store.full_text_search("login", [WORKSPACE], RecordFilter())

        assert [record.id for record, _ in hits] == [visible.id]

    @pytest.mark.asyncio
    async def test_fts_sees_updates(self, store):
        record = await store.insert(note("postgres tuning"))
        await store.update_fields(record.id, {"body": "mysql tuning"})

        assert await store.full_text_search("postgres", [WORKSPACE], RecordFilter()) == []
        assert len(await store.full_text_search("mysql", [WORKSPACE], RecordFilter())) == 1

    @pytest.mark.asyncio
    async def test_fts_punctuation_is_quoted(self, store):
        await store.insert(note("use AND or NOT carefully"))

        hits = await store.full_text_search('AND OR "NOT', [WORKSPACE], RecordFilter())

        assert isinstance(hits, list)

    @pytest.mark.asyncio
    async def test_missing_fts_table_raises_store_unavailable(self, store, db):
        await store.insert(note("login"))
        conn = sqlite3.connect(str(db.db_path))
        conn.execute("DROP TRIGGER knowledge_fts_ai")
        conn.execute("DROP TRIGGER knowledge_fts_ad")
        conn.execute("DROP TRIGGER knowledge_fts_au")
        conn.execute("DROP TABLE knowledge_fts")
        conn.commit()
        conn.close()

        with pytest.raises(StoreUnavailable):
            await store.full_text_search("login", [WORKSPACE], RecordFilter())


class TestUpdates:
    """Field updates and access stats."""

    @pytest.mark.asyncio
    async def test_update_fields_bumps_modified(self, store):
        record = await store.insert(note("draft"))

        updated = await store.update_fields(record.id, {"body": "final", "tags": ["a", "a"]})

        assert updated.body == "final"
        assert updated.tags == ["a"]
        assert updated.modified_at >= record.created_at

    @pytest.mark.asyncio
    async def test_update_unknown_field_rejected(self, store):
        record = await store.insert(note("draft"))

        with pytest.raises(ValidationError):
            await store.update_fields(record.id, {"kind": "Insight"})

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self, store):
        assert await store.update_fields("missing", {"body": "x"}) is None

    @pytest.mark.asyncio
    async def test_increment_access(self, store):
        record = await store.insert(note("read me"))

        await store.increment_access([record.id, record.id])
        await store.increment_access([record.id])
        loaded = await store.get_by_id(record.id)

        assert loaded.access_count == 2
        assert loaded.last_accessed_at is not None

    @pytest.mark.asyncio
    async def test_max_sequence(self, store):
        assert await store.max_sequence(WORKSPACE, "s1") == 0
        for n in (1, 2):
            await store.insert(note(f"cp{n}", kind=Kind.CHECKPOINT,
                                    payload=CheckpointPayload(session_id="s1", sequence_number=n)))

        assert await store.max_sequence(WORKSPACE, "s1") == 2
        assert await store.max_sequence("other", "s1") == 0


class TestRelationshipsAndDelete:
    """Edges and cascading deletes."""

    @pytest.mark.asyncio
    async def test_upsert_overwrites_metadata(self, store):
        a = await store.insert(note("a"))
        b = await store.insert(note("b"))

        await store.upsert_relationship(Relationship(a.id, b.id, "blocks", {"v": 1}))
        await store.upsert_relationship(Relationship(a.id, b.id, "blocks", {"v": 2}))
        edges = await store.relationships_for([a.id], Direction.OUTGOING)

        assert len(edges) == 1
        assert edges[0].metadata == {"v": 2}

    @pytest.mark.asyncio
    async def test_delete_removes_edges(self, store):
        a = await store.insert(note("a"))
        b = await store.insert(note("b"))
        await store.upsert_relationship(Relationship(a.id, b.id, "relates_to"))

        assert await store.delete(b.id) is True
        assert await store.relationships_for([a.id]) == []
        assert await store.delete(b.id) is False


class TestSessionScope:
    """Transactions commit together or not at all."""

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, store, db):
        with pytest.raises(RuntimeError):
            async with store.unit_of_work() as session:
                await store.insert(note("never committed"), session=session)
                raise RuntimeError("boom")

        async with db.get_session() as session:
            count = (await session.execute(select(func.count(Knowledge.id)))).scalar()
        assert count == 0

    @pytest.mark.asyncio
    async def test_savepoint_isolates_failure(self, store, db):
        existing = await store.insert(note("existing"))

        async with store.unit_of_work() as session:
            kept = await store.insert(note("kept"), session=session)
            with pytest.raises(ConflictError):
                async with session.begin_nested():
                    await store.insert(
                        Record(id=existing.id, kind=Kind.WORK_NOTE, body="dup", workspace=WORKSPACE),
                        session=session,
                    )

        assert await store.get_by_id(kept.id) is not None


class TestMigrations:
    """Schema migrations."""

    @pytest.mark.asyncio
    async def test_schema_version_recorded(self, db):
        conn = sqlite3.connect(str(db.db_path))
        version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
        conn.close()

        assert version == max(v for v, _, _ in MIGRATIONS)

    @pytest.mark.asyncio
    async def test_migrations_are_idempotent(self, db):
        count, applied = run_migrations(str(db.db_path))

        assert count == 0
        assert applied == []

    def test_missing_database_is_skipped(self, temp_storage):
        assert run_migrations(f"{temp_storage}/missing.db") == (0, [])
