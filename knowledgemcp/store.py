"""
Record Store - the persistence adapter the core talks to.

Everything above this module sees ``Record`` / ``Relationship`` values and a
``RecordFilter`` predicate; ORM rows never leave this file. Kind-specific
payloads are decoded here, explicitly per kind.

Each method opens its own transaction unless a session is passed in, which
lets callers group several writes into one unit of work.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from sqlalchemy import String, and_, bindparam, cast, delete, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import DatabaseManager
from .errors import ConflictError, StoreUnavailable, ValidationError
from .models import Knowledge, KnowledgeRelationship
from .records import (
    ChecklistItem,
    ChecklistPayload,
    CheckpointPayload,
    Direction,
    Kind,
    Record,
    RecordFilter,
    Relationship,
    ensure_utc,
    to_utc_naive,
)

logger = logging.getLogger(__name__)

# Columns update_fields() may touch
UPDATABLE_FIELDS = frozenset({"body", "tags", "status", "priority", "archived", "attributes"})

ORDER_COLUMNS = {
    "id": Knowledge.id,
    "created": Knowledge.created_at,
    "modified": Knowledge.modified_at,
    "accessed": Knowledge.last_accessed_at,
    "access_count": Knowledge.access_count,
}


class RecordStore(Protocol):
    """Narrow contract the search, graph and sequencing code relies on."""

    async def insert(self, record: Record, session=None) -> Record: ...

    async def get_by_id(self, record_id: str, session=None) -> Optional[Record]: ...

    async def query(
        self,
        workspaces: Optional[Sequence[str]],
        predicate: RecordFilter,
        order_by: str = "id",
        descending: bool = True,
        limit: Optional[int] = None,
        session=None,
    ) -> List[Record]: ...

    async def full_text_search(
        self,
        query: str,
        workspaces: Optional[Sequence[str]],
        predicate: RecordFilter,
        limit: Optional[int] = None,
    ) -> List[Tuple[Record, float]]: ...

    async def update_fields(self, record_id: str, fields: Dict[str, Any], session=None) -> Optional[Record]: ...

    async def delete(self, record_id: str) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Strip, drop empties and de-duplicate tags (case-insensitively), keeping first spelling."""
    seen: Set[str] = set()
    result = []
    for tag in tags or []:
        cleaned = str(tag).strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            result.append(cleaned)
    return result


def encode_payload(record: Record) -> Tuple[Dict[str, Any], Optional[str], Optional[int]]:
    """Flatten a record's payload into (attributes, session_id, sequence_number)."""
    attributes = dict(record.attributes or {})
    if record.kind is Kind.CHECKPOINT:
        if not isinstance(record.payload, CheckpointPayload):
            raise ValidationError("Checkpoint records require a checkpoint payload",
                                  operation="insert", key=record.id)
        attributes["active_files"] = list(record.payload.active_files)
        return attributes, record.payload.session_id, record.payload.sequence_number
    if record.kind is Kind.CHECKLIST:
        if not isinstance(record.payload, ChecklistPayload):
            raise ValidationError("Checklist records require a checklist payload",
                                  operation="insert", key=record.id)
        attributes["items"] = [item.to_dict() for item in record.payload.items]
        attributes["parent_checklist_id"] = record.payload.parent_checklist_id
        return attributes, None, None
    if record.payload is not None:
        raise ValidationError(f"{record.kind.value} records do not carry a payload",
                              operation="insert", key=record.id)
    return attributes, None, None


def decode_row(row: Knowledge) -> Record:
    """Build a Record from an ORM row, decoding the payload for its kind."""
    kind = Kind.parse(row.kind)
    attributes = dict(row.attributes or {})
    payload = None

    if kind is Kind.CHECKPOINT:
        payload = CheckpointPayload(
            session_id=row.session_id or "",
            sequence_number=row.sequence_number or 0,
            active_files=list(attributes.pop("active_files", None) or []),
        )
    elif kind is Kind.CHECKLIST:
        payload = ChecklistPayload(
            items=[ChecklistItem.from_dict(item) for item in attributes.pop("items", None) or []],
            parent_checklist_id=attributes.pop("parent_checklist_id", None),
        )

    return Record(
        id=row.id,
        kind=kind,
        body=row.body,
        workspace=row.workspace,
        tags=list(row.tags or []),
        status=row.status,
        priority=row.priority,
        created_at=ensure_utc(row.created_at),
        modified_at=ensure_utc(row.modified_at),
        last_accessed_at=ensure_utc(row.last_accessed_at),
        access_count=row.access_count or 0,
        archived=bool(row.archived),
        attributes=attributes,
        payload=payload,
    )


def _decode_relationship(row: KnowledgeRelationship) -> Relationship:
    return Relationship(
        from_id=row.from_id,
        to_id=row.to_id,
        type=row.relationship_type,
        metadata=dict(row.metadata_ or {}),
        created_at=ensure_utc(row.created_at),
    )


def _fts_expression(query: str) -> str:
    """Quote each word so user punctuation can't be read as FTS5 syntax."""
    words = [w for w in query.replace('"', " ").split() if w.strip()]
    return " ".join(f'"{w}"' for w in words)


class SQLiteRecordStore:
    """RecordStore backed by the SQLite database from DatabaseManager."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @asynccontextmanager
    async def _scope(self, session=None, write: bool = False):
        if session is not None:
            yield session
        else:
            async with self.db.get_session(write=write) as own:
                yield own

    @asynccontextmanager
    async def _errors(self, operation: str, key: Optional[str] = None):
        try:
            yield
        except IntegrityError as e:
            raise ConflictError(
                f"{operation} violated a unique constraint: {e.orig}",
                operation=operation, key=key
            ) from e
        except SQLAlchemyError as e:
            raise StoreUnavailable(
                f"Store failed during {operation}: {e}", operation=operation, key=key
            ) from e

    def unit_of_work(self):
        """A session whose writes commit together (or not at all)."""
        return self.db.get_session(write=True)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def insert(self, record: Record, session=None) -> Record:
        attributes, session_id, sequence_number = encode_payload(record)
        now = _utcnow()
        created = record.created_at or now
        row = Knowledge(
            id=record.id,
            kind=record.kind.value,
            body=record.body,
            workspace=record.workspace,
            tags=normalize_tags(record.tags),
            status=record.status,
            priority=record.priority,
            attributes=attributes,
            session_id=session_id,
            sequence_number=sequence_number,
            archived=record.archived,
            access_count=record.access_count,
            created_at=created,
            modified_at=max(record.modified_at or created, created),
            last_accessed_at=record.last_accessed_at,
        )
        async with self._errors("insert", record.id):
            async with self._scope(session, write=True) as s:
                s.add(row)
                await s.flush()
                return decode_row(row)

    async def get_by_id(self, record_id: str, session=None) -> Optional[Record]:
        async with self._errors("get_by_id", record_id):
            async with self._scope(session) as s:
                row = await s.get(Knowledge, record_id)
                return decode_row(row) if row else None

    async def get_many(self, record_ids: Iterable[str], session=None) -> Dict[str, Record]:
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return {}
        async with self._errors("get_many"):
            async with self._scope(session) as s:
                result = await s.execute(select(Knowledge).where(Knowledge.id.in_(ids)))
                return {row.id: decode_row(row) for row in result.scalars().all()}

    async def existing_ids(self, record_ids: Iterable[str], session=None) -> Set[str]:
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return set()
        async with self._errors("existing_ids"):
            async with self._scope(session) as s:
                result = await s.execute(select(Knowledge.id).where(Knowledge.id.in_(ids)))
                return set(result.scalars().all())

    def _conditions(self, workspaces: Optional[Sequence[str]], predicate: RecordFilter) -> list:
        conditions = []
        if workspaces:
            conditions.append(Knowledge.workspace.in_(list(workspaces)))
        if predicate.kinds:
            conditions.append(Knowledge.kind.in_([k.value for k in predicate.kinds]))
        if not predicate.include_archived:
            # Treat NULL archived values as not archived
            conditions.append(or_(Knowledge.archived == False, Knowledge.archived.is_(None)))  # noqa: E712
        if predicate.statuses:
            conditions.append(func.lower(Knowledge.status).in_([s.lower() for s in predicate.statuses]))
        if predicate.priorities:
            conditions.append(func.lower(Knowledge.priority).in_([p.lower() for p in predicate.priorities]))
        for tag in predicate.tags or []:
            # Match the quoted JSON element so "api" does not match "apis"
            conditions.append(cast(Knowledge.tags, String).contains(json.dumps(tag), autoescape=True))
        if predicate.session_id:
            conditions.append(Knowledge.session_id == predicate.session_id)
        if predicate.since:
            conditions.append(Knowledge.created_at >= to_utc_naive(predicate.since))
        if predicate.until:
            conditions.append(Knowledge.created_at <= to_utc_naive(predicate.until))
        if predicate.text:
            term = predicate.text.lower()
            conditions.append(or_(
                func.lower(Knowledge.body).contains(term, autoescape=True),
                func.lower(cast(Knowledge.tags, String)).contains(term, autoescape=True),
            ))
        return conditions

    async def query(
        self,
        workspaces: Optional[Sequence[str]],
        predicate: RecordFilter,
        order_by: str = "id",
        descending: bool = True,
        limit: Optional[int] = None,
        session=None,
    ) -> List[Record]:
        column = ORDER_COLUMNS.get(order_by, Knowledge.id)
        ordering = [column.desc() if descending else column.asc()]
        if column is not Knowledge.id:
            ordering.append(Knowledge.id.desc() if descending else Knowledge.id.asc())

        stmt = select(Knowledge).where(and_(*self._conditions(workspaces, predicate))).order_by(*ordering)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._errors("query"):
            async with self._scope(session) as s:
                result = await s.execute(stmt)
                return [decode_row(row) for row in result.scalars().all()]

    async def full_text_search(
        self,
        query: str,
        workspaces: Optional[Sequence[str]],
        predicate: RecordFilter,
        limit: Optional[int] = None,
    ) -> List[Tuple[Record, float]]:
        """
        FTS5 match over body and tags, best match first.

        Returns (record, rank) pairs where rank is the positive bm25 strength.
        Raises StoreUnavailable when the FTS index is missing or the match
        expression is rejected; callers fall back to substring search.
        """
        expression = _fts_expression(query)
        if not expression:
            return []

        sql = (
            "SELECT k.id AS id, bm25(knowledge_fts) AS match_rank "
            "FROM knowledge k "
            "JOIN knowledge_fts ON k.rowid = knowledge_fts.rowid "
            "WHERE knowledge_fts MATCH :expression"
        )
        params: Dict[str, Any] = {"expression": expression}
        if workspaces:
            sql += " AND k.workspace IN :workspaces"
            params["workspaces"] = list(workspaces)
        stmt = text(sql)
        if workspaces:
            stmt = stmt.bindparams(bindparam("workspaces", expanding=True))

        async with self._errors("full_text_search"):
            async with self._scope() as s:
                matches = (await s.execute(stmt, params)).all()
                if not matches:
                    return []
                # bm25 is negative; more negative = better
                ranks = {row.id: abs(row.match_rank or 0.0) for row in matches}

                result = await s.execute(
                    select(Knowledge).where(
                        Knowledge.id.in_(list(ranks)),
                        *self._conditions(workspaces, predicate),
                    )
                )
                records = [decode_row(row) for row in result.scalars().all()]

        records.sort(key=lambda r: r.id, reverse=True)
        records.sort(key=lambda r: ranks[r.id], reverse=True)
        hits = [(record, ranks[record.id]) for record in records]
        return hits[:limit] if limit is not None else hits

    async def update_fields(self, record_id: str, fields: Dict[str, Any], session=None) -> Optional[Record]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot update field(s): {', '.join(sorted(unknown))}",
                operation="update_fields", key=record_id
            )
        async with self._errors("update_fields", record_id):
            async with self._scope(session, write=True) as s:
                row = await s.get(Knowledge, record_id)
                if row is None:
                    return None
                for name, value in fields.items():
                    if name == "tags":
                        value = normalize_tags(value)
                    setattr(row, name, value)
                row.modified_at = max(_utcnow(), ensure_utc(row.created_at) or _utcnow())
                await s.flush()
                return decode_row(row)

    async def increment_access(self, record_ids: Sequence[str], session=None) -> int:
        """Bump access_count and last_accessed_at. Concurrent bumps may race."""
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return 0
        async with self._errors("increment_access"):
            async with self._scope(session, write=True) as s:
                result = await s.execute(
                    update(Knowledge)
                    .where(Knowledge.id.in_(ids))
                    .values(
                        access_count=func.coalesce(Knowledge.access_count, 0) + 1,
                        last_accessed_at=_utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount or 0

    async def delete(self, record_id: str) -> bool:
        """Delete a record and every relationship touching it."""
        async with self._errors("delete", record_id):
            async with self._scope(write=True) as s:
                await s.execute(
                    delete(KnowledgeRelationship).where(or_(
                        KnowledgeRelationship.from_id == record_id,
                        KnowledgeRelationship.to_id == record_id,
                    ))
                )
                result = await s.execute(delete(Knowledge).where(Knowledge.id == record_id))
                return (result.rowcount or 0) > 0

    async def max_sequence(self, workspace: str, session_id: str, session=None) -> int:
        async with self._errors("max_sequence", session_id):
            async with self._scope(session) as s:
                result = await s.execute(
                    select(func.max(Knowledge.sequence_number)).where(
                        Knowledge.workspace == workspace,
                        Knowledge.kind == Kind.CHECKPOINT.value,
                        Knowledge.session_id == session_id,
                    )
                )
                return result.scalar() or 0

    async def workspaces(self) -> List[Tuple[str, int]]:
        async with self._errors("workspaces"):
            async with self._scope() as s:
                result = await s.execute(
                    select(Knowledge.workspace, func.count(Knowledge.id))
                    .group_by(Knowledge.workspace)
                    .order_by(Knowledge.workspace)
                )
                return [(name, count) for name, count in result.all()]

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def upsert_relationship(self, relationship: Relationship, session=None) -> Relationship:
        """Insert an edge, or overwrite the metadata of the existing (from, to, type) edge."""
        key = f"{relationship.from_id}->{relationship.to_id}:{relationship.type}"
        async with self._errors("upsert_relationship", key):
            async with self._scope(session, write=True) as s:
                row = await s.get(
                    KnowledgeRelationship,
                    (relationship.from_id, relationship.to_id, relationship.type),
                )
                if row is None:
                    row = KnowledgeRelationship(
                        from_id=relationship.from_id,
                        to_id=relationship.to_id,
                        relationship_type=relationship.type,
                        metadata_=dict(relationship.metadata),
                        created_at=relationship.created_at or _utcnow(),
                    )
                    s.add(row)
                else:
                    row.metadata_ = dict(relationship.metadata)
                await s.flush()
                return _decode_relationship(row)

    async def relationships_for(
        self,
        record_ids: Iterable[str],
        direction: Direction = Direction.BOTH,
        session=None,
    ) -> List[Relationship]:
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return []
        if direction is Direction.OUTGOING:
            condition = KnowledgeRelationship.from_id.in_(ids)
        elif direction is Direction.INCOMING:
            condition = KnowledgeRelationship.to_id.in_(ids)
        else:
            condition = or_(KnowledgeRelationship.from_id.in_(ids), KnowledgeRelationship.to_id.in_(ids))

        async with self._errors("relationships_for"):
            async with self._scope(session) as s:
                result = await s.execute(
                    select(KnowledgeRelationship)
                    .where(condition)
                    .order_by(KnowledgeRelationship.created_at, KnowledgeRelationship.to_id)
                )
                return [_decode_relationship(row) for row in result.scalars().all()]

    async def delete_relationships(self, from_id: str, to_id: str, relationship_type: Optional[str] = None) -> int:
        conditions = [
            KnowledgeRelationship.from_id == from_id,
            KnowledgeRelationship.to_id == to_id,
        ]
        if relationship_type:
            conditions.append(KnowledgeRelationship.relationship_type == relationship_type)

        async with self._errors("delete_relationships", f"{from_id}->{to_id}"):
            async with self._scope(write=True) as s:
                result = await s.execute(delete(KnowledgeRelationship).where(and_(*conditions)))
                return result.rowcount or 0
