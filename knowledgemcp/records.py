"""
Domain types for captured knowledge.

A Record is a tagged variant: ``kind`` says which payload (if any) it carries.
Payloads are decoded explicitly at the store boundary (see store.py).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import ValidationError


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc_naive(value: datetime) -> datetime:
    """Convert to the naive-UTC form used for column comparisons."""
    if value.tzinfo:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


class Kind(str, Enum):
    CHECKPOINT = "Checkpoint"
    CHECKLIST = "Checklist"
    TECHNICAL_DEBT = "TechnicalDebt"
    INSIGHT = "Insight"
    WORK_NOTE = "WorkNote"

    @classmethod
    def parse(cls, value: Union[str, "Kind"]) -> "Kind":
        """Case-insensitive lookup; ``ProjectInsight`` is accepted for Insight."""
        if isinstance(value, Kind):
            return value
        if not value:
            raise ValidationError("Kind is required", operation="parse_kind")
        lowered = str(value).strip().lower()
        if lowered == "projectinsight":
            return cls.INSIGHT
        for kind in cls:
            if kind.value.lower() == lowered:
                return kind
        raise ValidationError(
            f"Invalid kind '{value}'. Valid kinds: {', '.join(k.value for k in cls)}",
            operation="parse_kind",
            key=str(value)
        )


# Kinds stored through the generic store_knowledge path
NOTE_KINDS = frozenset({Kind.TECHNICAL_DEBT, Kind.INSIGHT, Kind.WORK_NOTE})


class Direction(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"
    BOTH = "both"

    @classmethod
    def parse(cls, value: Union[str, "Direction", None]) -> "Direction":
        if isinstance(value, Direction):
            return value
        aliases = {
            None: cls.BOTH, "": cls.BOTH, "both": cls.BOTH,
            "outgoing": cls.OUTGOING, "out": cls.OUTGOING, "from": cls.OUTGOING, "forward": cls.OUTGOING,
            "incoming": cls.INCOMING, "in": cls.INCOMING, "to": cls.INCOMING, "backward": cls.INCOMING,
        }
        key = value.strip().lower() if isinstance(value, str) else value
        if key not in aliases:
            raise ValidationError(
                f"Invalid direction '{value}'. Use: outgoing, incoming, both",
                operation="neighbors",
                key=str(value)
            )
        return aliases[key]


@dataclass
class ChecklistItem:
    id: str
    content: str
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    order: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "is_completed": self.is_completed,
            "completed_at": _iso(self.completed_at),
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChecklistItem":
        completed_at = data.get("completed_at")
        return cls(
            id=data["id"],
            content=data.get("content", ""),
            is_completed=bool(data.get("is_completed", False)),
            completed_at=ensure_utc(datetime.fromisoformat(completed_at)) if completed_at else None,
            order=int(data.get("order", 0)),
        )


@dataclass
class CheckpointPayload:
    session_id: str
    sequence_number: int
    active_files: List[str] = field(default_factory=list)


@dataclass
class ChecklistPayload:
    items: List[ChecklistItem] = field(default_factory=list)
    parent_checklist_id: Optional[str] = None


Payload = Union[CheckpointPayload, ChecklistPayload, None]


@dataclass
class Record:
    id: str
    kind: Kind
    body: str
    workspace: str
    tags: List[str] = field(default_factory=list)
    status: Optional[str] = None
    priority: Optional[str] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0
    archived: bool = False
    attributes: Dict[str, Any] = field(default_factory=dict)
    payload: Payload = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "body": self.body,
            "workspace": self.workspace,
            "tags": list(self.tags),
            "status": self.status,
            "priority": self.priority,
            "created_at": _iso(self.created_at),
            "modified_at": _iso(self.modified_at),
            "last_accessed_at": _iso(self.last_accessed_at),
            "access_count": self.access_count,
            "archived": self.archived,
        }
        if self.attributes:
            data["attributes"] = dict(self.attributes)

        if isinstance(self.payload, CheckpointPayload):
            data["session_id"] = self.payload.session_id
            data["sequence_number"] = self.payload.sequence_number
            data["active_files"] = list(self.payload.active_files)
        elif isinstance(self.payload, ChecklistPayload):
            from .sequence import checklist_status, completion_percentage

            data["items"] = [item.to_dict() for item in self.payload.items]
            data["parent_checklist_id"] = self.payload.parent_checklist_id
            data["completion_percentage"] = completion_percentage(self.payload.items)
            data["progress"] = checklist_status(self.payload.items)
        return data


@dataclass
class Relationship:
    from_id: str
    to_id: str
    type: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def other_end(self, record_id: str) -> str:
        return self.to_id if self.from_id == record_id else self.from_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_id": self.from_id,
            "to_id": self.to_id,
            "type": self.type,
            "metadata": dict(self.metadata),
            "created_at": _iso(self.created_at),
        }


@dataclass
class RecordFilter:
    """Structured predicate handed to the store's query()."""

    kinds: Optional[List[Kind]] = None
    tags: Optional[List[str]] = None  # all must be present
    statuses: Optional[List[str]] = None
    priorities: Optional[List[str]] = None
    include_archived: bool = False
    session_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    text: Optional[str] = None  # case-insensitive substring over body and tags


@dataclass
class ScoredRecord:
    record: Record
    score: float
    text_score: float = 0.0
    recency: float = 0.0
    frequency: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = self.record.to_dict()
        data["score"] = round(self.score, 6)
        data["text_match"] = round(self.text_score, 3)
        data["recency_weight"] = round(self.recency, 3)
        data["frequency_weight"] = round(self.frequency, 3)
        return data
