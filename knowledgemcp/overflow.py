"""
Overflow Offload - persists result sets that did not fit a token budget.

Each set is stored whole under a fresh handle and can only be read back by
that exact handle. Sets are never modified after they are written.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import DatabaseManager
from .errors import ConflictError, NotFoundError, StoreUnavailable
from .ids import generate_handle
from .models import OverflowSet
from .records import ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class OverflowHandle:
    handle: str
    category: str
    created_at: datetime
    item_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "category": self.category,
            "created_at": self.created_at.isoformat(),
            "item_count": self.item_count,
        }


class OverflowStore:
    """Write-once storage for offloaded result sets."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @asynccontextmanager
    async def _scope(self, session=None, write: bool = False):
        if session is not None:
            yield session
        else:
            async with self.db.get_session(write=write) as own:
                yield own

    async def save(
        self,
        items: List[Dict[str, Any]],
        category: str,
        session=None
    ) -> OverflowHandle:
        """Persist the full list verbatim and return its handle."""
        handle = generate_handle(category)
        created_at = datetime.now(timezone.utc)
        try:
            async with self._scope(session, write=True) as s:
                s.add(OverflowSet(
                    handle=handle,
                    category=category,
                    item_count=len(items),
                    payload=list(items),
                    created_at=created_at,
                ))
                await s.flush()
        except IntegrityError as e:
            raise ConflictError(f"Overflow handle {handle} already exists",
                                operation="overflow_save", key=handle) from e
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Failed to persist overflow set: {e}",
                                   operation="overflow_save", key=handle) from e

        logger.info(f"Offloaded {len(items)} {category} items to {handle}")
        return OverflowHandle(handle=handle, category=category, created_at=created_at, item_count=len(items))

    async def load(self, handle: str) -> Dict[str, Any]:
        """Read a persisted set by its exact handle."""
        try:
            async with self._scope() as s:
                row: Optional[OverflowSet] = await s.get(OverflowSet, handle)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Failed to read overflow set: {e}",
                                   operation="get_overflow", key=handle) from e

        if row is None:
            raise NotFoundError(f"Overflow handle {handle} not found",
                                operation="get_overflow", key=handle)

        return {
            "handle": row.handle,
            "category": row.category,
            "created_at": ensure_utc(row.created_at).isoformat(),
            "item_count": row.item_count,
            "items": row.payload,
        }
