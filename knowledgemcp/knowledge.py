"""
Knowledge Service - the operations the tool layer calls.

Wires the record store, search, relationship graph, overflow store and
sequence tracker together over one DatabaseManager, and implements the
kind-specific workflows: notes, checkpoints, checklists and the timeline.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .budget import TokenBudgetAllocator
from .config import normalize_workspace, settings
from .database import DatabaseManager
from .errors import KnowledgeError, NotFoundError, ValidationError
from .graph import RelationshipGraph
from .ids import generate
from .overflow import OverflowStore
from .records import (
    NOTE_KINDS,
    ChecklistItem,
    ChecklistPayload,
    CheckpointPayload,
    Kind,
    Record,
    RecordFilter,
    Relationship,
    ensure_utc,
)
from .search import KnowledgeSearch, clamp_max_results
from .sequence import SequenceTracker, checklist_status, completion_percentage
from .store import SQLiteRecordStore, encode_payload

logger = logging.getLogger(__name__)

TIMELINE_SUMMARY_CHARS = 100
DEFAULT_TIMELINE_DAYS = 7
DEFAULT_TIMELINE_RESULTS = 100


def _summary(body: str) -> str:
    if len(body) > TIMELINE_SUMMARY_CHARS:
        return body[:TIMELINE_SUMMARY_CHARS] + "..."
    return body


class KnowledgeService:
    """Stores, retrieves and relates knowledge records."""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.store = SQLiteRecordStore(db)
        self.overflow = OverflowStore(db)
        self.allocator = TokenBudgetAllocator(self.overflow)
        self.searcher = KnowledgeSearch(self.store, self.allocator)
        self.graph = RelationshipGraph(self.store)
        self.sequences = SequenceTracker(self.store)

    @staticmethod
    def _workspace(workspace: Optional[str]) -> str:
        return normalize_workspace(workspace) if workspace else settings.get_workspace()

    async def _require(self, record_id: str, operation: str, kind: Optional[Kind] = None, session=None) -> Record:
        record = await self.store.get_by_id(record_id, session=session)
        if record is None or (kind is not None and record.kind is not kind):
            label = kind.value if kind else "Record"
            raise NotFoundError(f"{label} {record_id} not found", operation=operation, key=record_id)
        return record

    async def _touch(self, record: Record) -> Record:
        """
        Bump access stats after a read and return the bumped record.

        Failures are logged, not raised; the record is then returned as read.
        """
        try:
            await self.store.increment_access([record.id])
            return await self.store.get_by_id(record.id) or record
        except KnowledgeError as e:
            logger.warning(f"Failed to update access stats for {record.id}: {e.message}")
        return record

    # ------------------------------------------------------------------
    # Generic records
    # ------------------------------------------------------------------

    async def store_knowledge(
        self,
        kind: str,
        body: str,
        tags: Optional[List[str]] = None,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
        workspace: Optional[str] = None,
    ) -> Record:
        """Store a TechnicalDebt, Insight or WorkNote record."""
        parsed = Kind.parse(kind)
        if parsed not in NOTE_KINDS:
            tool = "save_checkpoint" if parsed is Kind.CHECKPOINT else "create_checklist"
            raise ValidationError(f"{parsed.value} records are created with {tool}",
                                  operation="store_knowledge", key=parsed.value)
        if not body or not body.strip():
            raise ValidationError("Content is required", operation="store_knowledge")

        record = await self.store.insert(Record(
            id=generate(),
            kind=parsed,
            body=body,
            workspace=self._workspace(workspace),
            tags=list(tags or []),
            status=status,
            priority=priority,
            attributes=dict(attributes or {}),
        ))
        logger.info(f"Stored {parsed.value} {record.id} in {record.workspace}")
        return record

    async def get_knowledge(self, record_id: str) -> Record:
        """Fetch any record by id, archived or not."""
        record = await self._require(record_id, "get_knowledge")
        return await self._touch(record)

    async def update_knowledge(
        self,
        record_id: str,
        body: Optional[str] = None,
        tags: Optional[List[str]] = None,
        status: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> Record:
        fields: Dict[str, Any] = {}
        if body is not None:
            if not body.strip():
                raise ValidationError("Content cannot be empty", operation="update_knowledge", key=record_id)
            fields["body"] = body
        if tags is not None:
            fields["tags"] = list(tags)
        if status is not None:
            fields["status"] = status
        if priority is not None:
            fields["priority"] = priority
        if not fields:
            raise ValidationError("Nothing to update", operation="update_knowledge", key=record_id)

        record = await self.store.update_fields(record_id, fields)
        if record is None:
            raise NotFoundError(f"Record {record_id} not found", operation="update_knowledge", key=record_id)
        return record

    async def archive_knowledge(self, record_id: str, archived: bool = True) -> Record:
        record = await self.store.update_fields(record_id, {"archived": archived})
        if record is None:
            raise NotFoundError(f"Record {record_id} not found", operation="archive_knowledge", key=record_id)
        logger.info(f"{'Archived' if archived else 'Restored'} {record_id}")
        return record

    async def delete_knowledge(self, record_id: str) -> bool:
        """Delete a record and its relationships."""
        if not await self.store.delete(record_id):
            raise NotFoundError(f"Record {record_id} not found", operation="delete_knowledge", key=record_id)
        logger.info(f"Deleted {record_id}")
        return True

    async def search(self, query: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        return await self.searcher.search(query, **kwargs)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def save_checkpoint(
        self,
        content: str,
        session_id: Optional[str] = None,
        active_files: Optional[List[str]] = None,
        workspace: Optional[str] = None,
    ) -> Record:
        """
        Save a session checkpoint with the next sequence number for its session.

        A session id is generated when none is given.
        """
        if not content or not content.strip():
            raise ValidationError("Checkpoint content is required", operation="save_checkpoint")

        workspace = self._workspace(workspace)
        session_id = (session_id or "").strip() or str(uuid.uuid4())

        async def write(sequence_number: int) -> Record:
            return await self.store.insert(Record(
                id=generate(),
                kind=Kind.CHECKPOINT,
                body=content,
                workspace=workspace,
                tags=["checkpoint", session_id],
                payload=CheckpointPayload(
                    session_id=session_id,
                    sequence_number=sequence_number,
                    active_files=list(active_files or []),
                ),
            ))

        record = await self.sequences.assign(session_id, write, workspace=workspace)
        logger.info(f"Saved checkpoint {record.id} #{record.payload.sequence_number} for session {session_id}")
        return record

    async def get_checkpoint(
        self,
        checkpoint_id: Optional[str] = None,
        session_id: Optional[str] = None,
        workspace: Optional[str] = None,
    ) -> Record:
        """By id, else the latest for a session, else the latest in the workspace."""
        if checkpoint_id:
            record = await self._require(checkpoint_id, "get_checkpoint", Kind.CHECKPOINT)
            return await self._touch(record)

        records = await self.store.query(
            [self._workspace(workspace)],
            RecordFilter(kinds=[Kind.CHECKPOINT], session_id=session_id, include_archived=True),
            order_by="created",
            limit=1,
        )
        if not records:
            key = session_id or self._workspace(workspace)
            scope = f"session {session_id}" if session_id else f"workspace {key}"
            raise NotFoundError(f"No checkpoint found for {scope}", operation="get_checkpoint", key=key)
        return await self._touch(records[0])

    async def list_checkpoints(
        self,
        session_id: Optional[str] = None,
        workspace: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> List[Record]:
        """Newest first."""
        return await self.store.query(
            [self._workspace(workspace)],
            RecordFilter(kinds=[Kind.CHECKPOINT], session_id=session_id, include_archived=True),
            order_by="created",
            limit=clamp_max_results(max_results),
        )

    # ------------------------------------------------------------------
    # Checklists
    # ------------------------------------------------------------------

    async def create_checklist(
        self,
        content: str,
        items: List[str],
        parent_checklist_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        priority: Optional[str] = None,
        workspace: Optional[str] = None,
    ) -> Record:
        """
        Create a checklist from item texts.

        A parent checklist must exist; the parent gets a ``parent_of`` edge to
        the new checklist in the same transaction.
        """
        if not content or not content.strip():
            raise ValidationError("Checklist content is required", operation="create_checklist")
        texts = [str(item).strip() for item in items or []]
        if any(not text for text in texts):
            raise ValidationError("Checklist items cannot be empty", operation="create_checklist")

        checklist_id = generate()
        payload = ChecklistPayload(
            items=[
                ChecklistItem(id=f"{checklist_id}-item{index}", content=text, order=index)
                for index, text in enumerate(texts)
            ],
            parent_checklist_id=parent_checklist_id,
        )

        async with self.store.unit_of_work() as session:
            if parent_checklist_id:
                await self._require(parent_checklist_id, "create_checklist", Kind.CHECKLIST, session=session)
            record = await self.store.insert(Record(
                id=checklist_id,
                kind=Kind.CHECKLIST,
                body=content,
                workspace=self._workspace(workspace),
                tags=list(tags or []),
                priority=priority,
                payload=payload,
            ), session=session)
            if parent_checklist_id:
                await self.graph.link(parent_checklist_id, checklist_id, "parent_of", session=session)

        logger.info(f"Created checklist {checklist_id} with {len(texts)} items")
        return record

    async def get_checklist(self, checklist_id: str) -> Record:
        record = await self._require(checklist_id, "get_checklist", Kind.CHECKLIST)
        return await self._touch(record)

    async def list_checklists(
        self,
        include_completed: bool = True,
        workspace: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> List[Record]:
        records = await self.store.query(
            [self._workspace(workspace)],
            RecordFilter(kinds=[Kind.CHECKLIST]),
            order_by="created",
        )
        if not include_completed:
            records = [r for r in records if checklist_status(r.payload.items) != "Completed"]
        return records[:clamp_max_results(max_results)]

    async def update_checklist_item(
        self,
        checklist_id: str,
        item_id: str,
        is_completed: bool = True,
    ) -> Dict[str, Any]:
        """
        Flip one item's completion flag.

        The read and the write share one write transaction, so concurrent
        updates to the same checklist serialize and none is lost.
        Progress is derived from the items and never stored.
        """
        async with self.store.unit_of_work() as session:
            record = await self._require(checklist_id, "update_checklist_item", Kind.CHECKLIST, session=session)
            items = record.payload.items
            item = next((i for i in items if i.id == item_id), None)
            if item is None:
                raise NotFoundError(
                    f"Item {item_id} not found in checklist {checklist_id}",
                    operation="update_checklist_item", key=item_id, checklist_id=checklist_id
                )

            item.is_completed = bool(is_completed)
            item.completed_at = datetime.now(timezone.utc) if item.is_completed else None
            status = checklist_status(items)

            attributes, _, _ = encode_payload(record)
            await self.store.update_fields(checklist_id, {"attributes": attributes}, session=session)

        return {
            "checklist_id": checklist_id,
            "item_id": item_id,
            "is_completed": item.is_completed,
            "completion_percentage": completion_percentage(items),
            "status": status,
        }

    # ------------------------------------------------------------------
    # Relationships and overflow
    # ------------------------------------------------------------------

    async def link(self, from_id: str, to_id: str, relationship_type: str = "relates_to",
                   metadata: Optional[Dict[str, Any]] = None) -> Relationship:
        return await self.graph.link(from_id, to_id, relationship_type, metadata)

    async def get_overflow(self, handle: str) -> Dict[str, Any]:
        return await self.overflow.load(handle)

    # ------------------------------------------------------------------
    # Timeline and workspaces
    # ------------------------------------------------------------------

    async def get_timeline(
        self,
        days_ago: Optional[int] = None,
        hours_ago: Optional[float] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        kind: Optional[str] = None,
        workspace: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Records created in a time window, newest first, grouped by day."""
        now = datetime.now(timezone.utc)
        if start is not None:
            start = ensure_utc(start)
        elif hours_ago is not None:
            start = now - timedelta(hours=hours_ago)
        elif days_ago is not None:
            start = now - timedelta(days=days_ago)
        else:
            start = now - timedelta(days=DEFAULT_TIMELINE_DAYS)
        end = ensure_utc(end) if end is not None else now
        if start > end:
            raise ValidationError("Timeline start must not be after end", operation="get_timeline",
                                  key=start.isoformat())

        limit = DEFAULT_TIMELINE_RESULTS if max_results is None else clamp_max_results(max_results)
        records = await self.store.query(
            [self._workspace(workspace)],
            RecordFilter(
                kinds=[Kind.parse(kind)] if kind else None,
                include_archived=True,
                since=start,
                until=end,
            ),
            order_by="created",
            limit=limit,
        )

        days: Dict[str, List[Dict[str, Any]]] = {}
        for record in records:
            created = ensure_utc(record.created_at)
            days.setdefault(created.date().isoformat(), []).append({
                "id": record.id,
                "kind": record.kind.value,
                "summary": _summary(record.body),
                "created_at": created.isoformat(),
                "tags": list(record.tags),
                "status": record.status,
                "priority": record.priority,
                "access_count": record.access_count,
            })

        return {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "total_count": len(records),
            "days": [{"date": date, "items": items} for date, items in days.items()],
        }

    async def get_workspaces(self) -> List[Dict[str, Any]]:
        return [{"workspace": name, "count": count} for name, count in await self.store.workspaces()]

    async def close(self):
        await self.db.close()
