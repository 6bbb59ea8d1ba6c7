"""
Relationship Graph - typed, directed edges between records.

Edges are keyed by (from_id, to_id, type): linking the same triple again
overwrites its metadata. Deleting a record removes every edge touching it.
"""

import logging
from collections import deque
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .records import Direction, Relationship

logger = logging.getLogger(__name__)

# Common types; any non-empty string is accepted
RELATIONSHIP_TYPES = (
    "relates_to",
    "references",
    "blocks",
    "blocked_by",
    "parent_of",
    "child_of",
    "implements",
    "supersedes",
    "depends_on",
)


class RelationshipGraph:
    """Link, look up and walk relationships through the record store."""

    def __init__(self, store):
        self.store = store

    async def link(
        self,
        from_id: str,
        to_id: str,
        relationship_type: str = "relates_to",
        metadata: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> Relationship:
        """
        Create or overwrite the (from_id, to_id, type) edge.

        Raises NotFoundError naming the missing side ("from" or "to").
        """
        relationship_type = (relationship_type or "").strip()
        if not relationship_type:
            raise ValidationError("Relationship type is required", operation="link",
                                  key=f"{from_id}->{to_id}")
        if from_id == to_id:
            raise ValidationError("Cannot link a record to itself", operation="link", key=from_id)

        existing = await self.store.existing_ids([from_id, to_id], session=session)
        if from_id not in existing:
            raise NotFoundError(f"From id {from_id} not found", operation="link",
                                key=from_id, side="from")
        if to_id not in existing:
            raise NotFoundError(f"To id {to_id} not found", operation="link",
                                key=to_id, side="to")

        relationship = await self.store.upsert_relationship(
            Relationship(from_id=from_id, to_id=to_id, type=relationship_type, metadata=dict(metadata or {})),
            session=session,
        )
        logger.info(f"Linked {from_id} --{relationship_type}--> {to_id}")
        return relationship

    async def unlink(self, from_id: str, to_id: str, relationship_type: Optional[str] = None) -> int:
        """Remove one typed edge, or every edge from from_id to to_id. Returns the count."""
        removed = await self.store.delete_relationships(from_id, to_id, relationship_type)
        logger.info(f"Removed {removed} relationship(s) from {from_id} to {to_id}")
        return removed

    async def neighbors(self, record_id: str, direction: Any = Direction.BOTH) -> List[Relationship]:
        """Edges leaving, entering, or touching a record."""
        direction = Direction.parse(direction)
        if not await self.store.existing_ids([record_id]):
            raise NotFoundError(f"Record {record_id} not found", operation="neighbors", key=record_id)
        return await self.store.relationships_for([record_id], direction)

    async def expand(
        self,
        record_id: str,
        max_depth: int = 2,
        direction: Any = Direction.BOTH,
    ) -> Dict[str, List[str]]:
        """
        Breadth-first walk up to max_depth hops.

        Returns every visited id mapped to the ids it connects to directly.
        Ids at the depth limit are reported without neighbors, so
        ``expand(x, 0)`` is ``{x: []}``. Each id is expanded once, which
        bounds the walk even when edges form a cycle.
        """
        if max_depth < 0:
            raise ValidationError("max_depth must be >= 0", operation="expand", key=str(max_depth))
        direction = Direction.parse(direction)
        if not await self.store.existing_ids([record_id]):
            raise NotFoundError(f"Record {record_id} not found", operation="expand", key=record_id)

        graph: Dict[str, List[str]] = {record_id: []}
        frontier = deque([record_id])
        depth = 0

        while frontier and depth < max_depth:
            level = list(frontier)
            frontier.clear()
            edges = await self.store.relationships_for(level, direction)

            for node in level:
                connected = []
                for edge in edges:
                    if direction is Direction.OUTGOING and edge.from_id != node:
                        continue
                    if direction is Direction.INCOMING and edge.to_id != node:
                        continue
                    if node not in (edge.from_id, edge.to_id):
                        continue
                    other = edge.other_end(node)
                    if other not in connected:
                        connected.append(other)
                graph[node] = connected

                for other in connected:
                    if other not in graph:
                        graph[other] = []
                        frontier.append(other)
            depth += 1

        logger.debug(f"Expanded {record_id} to {len(graph)} ids within {max_depth} hops")
        return graph
