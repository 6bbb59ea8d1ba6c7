"""
Knowledge search - candidate retrieval, ranking and budget shaping.

Two layers:

- ``rank()`` fetches candidates from the store (full-text first, substring
  fallback), scores and sorts them, and cuts the list to ``max_results``.
  It never writes.
- ``search()`` shapes the ranked list to a token budget and then, in one
  transaction, offloads the full list (if it was truncated) and bumps the
  access stats of the records actually returned. Both writes are
  best-effort: a failure is logged and the response still goes out.
"""

import logging
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .budget import ShapedResult, TokenBudgetAllocator
from .config import normalize_workspace, settings
from .errors import KnowledgeError, SoftDegradation, StoreUnavailable, ValidationError
from .records import Kind, RecordFilter, ScoredRecord, ensure_utc
from .scoring import ParsedQuery, TemporalScoringMode, created_key, parse_query, rank, score_record

logger = logging.getLogger(__name__)

# Caller filter keys and the RecordFilter / option they map to
FILTER_ALIASES = {
    "kind": "kinds",
    "kinds": "kinds",
    "type": "kinds",
    "types": "kinds",
    "tag": "tags",
    "tags": "tags",
    "status": "statuses",
    "statuses": "statuses",
    "priority": "priorities",
    "priorities": "priorities",
    "since": "since",
    "from_date": "since",
    "until": "until",
    "to_date": "until",
    "include_archived": "include_archived",
    "session_id": "session_id",
    "workspace": "workspaces",
    "workspaces": "workspaces",
    "order_by": "order_by",
    "descending": "descending",
    "boost_frequent": "boost_frequent",
}

SORT_FIELDS = {
    "created": lambda r: ensure_utc(r.created_at),
    "modified": lambda r: ensure_utc(r.modified_at),
    "accessed": lambda r: ensure_utc(r.last_accessed_at),
    "access_count": lambda r: r.access_count,
    "id": lambda r: r.id,
}


def _as_list(value) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def _as_datetime(value, name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        raise ValidationError(f"Invalid {name} timestamp '{value}'. Use ISO 8601",
                              operation="search", key=str(value))


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


@dataclass
class SearchOptions:
    predicate: RecordFilter
    workspaces: List[str]
    order_by: str = "created"
    descending: bool = True
    boost_frequent: bool = False


def build_options(
    parsed: ParsedQuery,
    filters: Optional[Dict[str, Any]],
    workspace: Optional[str] = None,
) -> SearchOptions:
    """Merge query-embedded filters with caller filters. Unknown keys are ignored."""
    merged: Dict[str, Any] = {}
    for source in (parsed.filters, filters or {}):
        for key, value in source.items():
            target = FILTER_ALIASES.get(key)
            if target is None:
                logger.debug(f"Ignoring unknown search filter '{key}'")
                continue
            if target in ("kinds", "tags", "statuses", "priorities", "workspaces"):
                merged.setdefault(target, []).extend(_as_list(value))
            else:
                merged[target] = value

    predicate = RecordFilter(
        kinds=list(dict.fromkeys(Kind.parse(k) for k in merged.get("kinds", []))) or None,
        tags=[str(t) for t in merged.get("tags", [])] or None,
        statuses=[str(s) for s in merged.get("statuses", [])] or None,
        priorities=[str(p) for p in merged.get("priorities", [])] or None,
        include_archived=_as_bool(merged.get("include_archived", False)),
        session_id=merged.get("session_id") or None,
        since=_as_datetime(merged.get("since"), "since"),
        until=_as_datetime(merged.get("until"), "until"),
    )

    workspaces = [normalize_workspace(w) for w in merged.get("workspaces", []) if w]
    if not workspaces:
        workspaces = [normalize_workspace(workspace) if workspace else settings.get_workspace()]

    order_by = str(merged.get("order_by") or "created").lower()
    if order_by not in SORT_FIELDS:
        raise ValidationError(
            f"Invalid order_by '{order_by}'. Use: {', '.join(SORT_FIELDS)}",
            operation="search", key=order_by
        )

    return SearchOptions(
        predicate=predicate,
        workspaces=list(dict.fromkeys(workspaces)),
        order_by=order_by,
        descending=_as_bool(merged.get("descending", True)),
        boost_frequent=_as_bool(merged.get("boost_frequent", False)),
    )


def clamp_max_results(max_results: Optional[int]) -> int:
    if max_results is None:
        return settings.default_max_results
    return max(1, min(int(max_results), settings.max_results_limit))


@dataclass
class RankedResult:
    items: List[ScoredRecord]
    total_count: int
    method: str
    mode: TemporalScoringMode


class KnowledgeSearch:
    """Relevance-ranked, budget-shaped search over the record store."""

    def __init__(self, store, allocator: TokenBudgetAllocator):
        self.store = store
        self.allocator = allocator

    async def _candidates(self, text: str, options: SearchOptions):
        """Return (records, text_match, method)."""
        if not text:
            records = await self.store.query(options.workspaces, options.predicate, order_by="created")
            return records, 1.0, "recent"

        try:
            hits = await self.store.full_text_search(text, options.workspaces, options.predicate)
            if hits:
                return [record for record, _ in hits], 1.0, "fts"
            logger.debug(f"Full-text search found nothing for '{text}', trying substring match")
        except StoreUnavailable as e:
            logger.debug(f"Full-text search unavailable, falling back to substring match: {e.message}")

        predicate = replace(options.predicate, text=text)
        records = await self.store.query(options.workspaces, predicate, order_by="created")
        return records, settings.substring_match_score, "substring"

    async def rank(
        self,
        query: Optional[str] = None,
        workspace: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        max_results: Optional[int] = None,
        mode: Any = None,
    ) -> RankedResult:
        """Fetch, score and order candidates. Read-only."""
        mode = TemporalScoringMode.parse(mode)
        parsed = parse_query(query)
        options = build_options(parsed, filters, workspace)
        limit = clamp_max_results(max_results)

        records, text_match, method = await self._candidates(parsed.text, options)

        # An empty query is a recency listing; read counts never reorder it
        boost = options.boost_frequent and method != "recent"
        now = datetime.now(timezone.utc)
        scored = [
            score_record(record, text_match, mode, now=now, boost_frequent=boost)
            for record in records
        ]

        if method == "recent" and mode is not TemporalScoringMode.NONE:
            scored.sort(key=created_key, reverse=True)
        elif mode is TemporalScoringMode.NONE:
            sort_key = SORT_FIELDS[options.order_by]
            # None sorts as lowest so it lands last when descending
            scored.sort(
                key=lambda s: (sort_key(s.record) is not None, sort_key(s.record) or 0, s.record.id),
                reverse=options.descending,
            )
        else:
            scored = rank(scored)

        logger.debug(f"Ranked {len(scored)} candidates via {method} ({mode.value}), keeping {limit}")
        return RankedResult(items=scored[:limit], total_count=len(scored), method=method, mode=mode)

    async def _record_access(self, record_ids: Sequence[str], session) -> bool:
        try:
            async with session.begin_nested():
                await self.store.increment_access(record_ids, session=session)
            return True
        except (KnowledgeError, SQLAlchemyError) as e:
            logger.warning(f"Failed to update access stats for {len(record_ids)} records: {e}")
            return False

    async def search(
        self,
        query: Optional[str] = None,
        workspace: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        max_results: Optional[int] = None,
        mode: Any = None,
        token_budget: Optional[int] = None,
        data_ratio: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Ranked search shaped to a token budget.

        Returns items, total_count (matches before max_results), truncated and,
        when the preview was cut by the budget, an overflow_handle for the full
        ranked list.
        """
        ranked = await self.rank(query, workspace, filters, max_results, mode)
        payloads = [scored.to_dict() for scored in ranked.items]
        shaped = self.allocator.plan(payloads, token_budget, data_ratio)
        returned_ids = [item["id"] for item in shaped.items]

        if shaped.truncated or returned_ids:
            try:
                async with self.store.unit_of_work() as session:
                    await self.allocator.offload(shaped, payloads, session=session)
                    await self._record_access(returned_ids, session)
            except (KnowledgeError, SQLAlchemyError) as e:
                logger.warning(f"Search side effects were not saved: {e}")
                if shaped.overflow_handle:
                    shaped.overflow_handle = None
                    shaped.warnings.append(SoftDegradation(
                        code="OVERFLOW_UNAVAILABLE",
                        message="Full result set could not be stored; no overflow handle is available",
                    ))

        return self._response(query, ranked, shaped, len(payloads))

    def _response(
        self,
        query: Optional[str],
        ranked: RankedResult,
        shaped: ShapedResult,
        ranked_count: int,
    ) -> Dict[str, Any]:
        response = shaped.to_dict()
        response["total_count"] = ranked.total_count
        response["returned_count"] = len(shaped.items)
        response["warnings"] = [w.to_dict() for w in shaped.warnings]
        response["query"] = query or ""
        response["temporal_scoring"] = ranked.mode.value
        response["search_method"] = ranked.method
        response["summary"] = summarize(shaped.items, ranked.total_count)
        response["next_actions"] = next_actions(shaped, ranked.total_count, ranked_count)
        return response


def summarize(items: List[Dict[str, Any]], total_count: int) -> str:
    """One line over the items actually returned."""
    if total_count == 0:
        return "No knowledge items found - try broadening your search criteria"
    kinds = Counter(item["kind"] for item in items)
    distribution = ", ".join(f"{kind} ({count})" for kind, count in kinds.most_common(3))
    return f"Showing {len(items)} of {total_count} matching items: {distribution}"


def next_actions(shaped: ShapedResult, total_count: int, ranked_count: int) -> List[Dict[str, Any]]:
    actions: List[Dict[str, Any]] = []
    if total_count == 0:
        actions.append({
            "action": "store_knowledge",
            "description": "Create a new knowledge entry",
            "parameters": {"kind": Kind.WORK_NOTE.value},
        })
        return actions
    if shaped.overflow_handle:
        actions.append({
            "action": "get_overflow",
            "description": f"Fetch all {ranked_count} ranked items",
            "parameters": {"handle": shaped.overflow_handle},
        })
    if total_count > ranked_count:
        actions.append({
            "action": "find_knowledge",
            "description": f"Raise max_results to see more of the {total_count} matches",
            "parameters": {"max_results": min(total_count, settings.max_results_limit)},
        })
    return actions
