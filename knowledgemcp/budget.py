"""
Token Budget Allocator - fits a ranked result list into a token budget.

Costs are estimated, not encoded: roughly four characters per token over a
canonical JSON rendering of each item, with a safety margin for the
serialization overhead of the real response.

When the full list does not fit, a fixed share of the budget goes to the
items and the rest is left for the envelope (summary, hints, warnings). The
kept items are always a prefix of the ranked list; the full list is offloaded
so nothing ranked is lost.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .errors import KnowledgeError, SoftDegradation, ValidationError
from .overflow import OverflowStore

logger = logging.getLogger(__name__)

# Fields that make up an item's estimated cost
CANONICAL_FIELDS = ("id", "kind", "body", "tags", "status", "priority", "created_at", "score")


def estimate_tokens(text: str, include_safety_margin: bool = True) -> int:
    """Estimate token count from text (~4 characters per token)."""
    if not text:
        return 0
    base_estimate = len(text) // settings.chars_per_token
    if include_safety_margin:
        return int(base_estimate * settings.token_safety_margin)
    return base_estimate


def estimate_item_tokens(item: Dict[str, Any]) -> int:
    """Cost of one item: its canonical fields rendered as compact JSON."""
    canonical = {name: item.get(name) for name in CANONICAL_FIELDS if name in item}
    rendered = json.dumps(canonical, separators=(",", ":"), sort_keys=True, default=str)
    return max(1, estimate_tokens(rendered))


def clamp_budget(token_budget: Optional[int]) -> int:
    if token_budget is None:
        return settings.default_token_budget
    return max(settings.min_token_budget, min(int(token_budget), settings.max_token_budget))


def select_prefix(costs: Sequence[int], limit: int) -> int:
    """Length of the longest prefix whose cumulative cost stays within limit."""
    used = 0
    for index, cost in enumerate(costs):
        if used + cost > limit:
            return index
        used += cost
    return len(costs)


@dataclass
class ShapedResult:
    items: List[Dict[str, Any]]
    total_count: int
    truncated: bool = False
    overflow_handle: Optional[str] = None
    token_budget: int = 0
    estimated_tokens: int = 0
    warnings: List[SoftDegradation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "items": self.items,
            "total_count": self.total_count,
            "truncated": self.truncated,
            "token_budget": self.token_budget,
            "estimated_tokens": self.estimated_tokens,
        }
        if self.overflow_handle:
            data["overflow_handle"] = self.overflow_handle
        if self.warnings:
            data["warnings"] = [w.to_dict() for w in self.warnings]
        return data


class TokenBudgetAllocator:
    """Shapes ranked lists to a budget and offloads what does not fit."""

    def __init__(self, overflow: OverflowStore):
        self.overflow = overflow

    def plan(
        self,
        items: Sequence[Dict[str, Any]],
        token_budget: Optional[int] = None,
        data_ratio: Optional[float] = None,
    ) -> ShapedResult:
        """Decide what to keep without writing anything."""
        budget = clamp_budget(token_budget)
        ratio = settings.data_budget_ratio if data_ratio is None else data_ratio
        if not 0 < ratio <= 1:
            raise ValidationError(
                f"data_ratio must be in (0, 1], got {ratio}", operation="shape", key=str(ratio)
            )

        costs = [estimate_item_tokens(item) for item in items]
        total_cost = sum(costs)
        if total_cost <= budget:
            return ShapedResult(
                items=list(items), total_count=len(items),
                token_budget=budget, estimated_tokens=total_cost,
            )

        kept = select_prefix(costs, int(budget * ratio))
        logger.debug(
            f"Shaping {len(items)} items ({total_cost} tokens) to {kept} "
            f"within data share {int(budget * ratio)} of {budget}"
        )
        return ShapedResult(
            items=list(items[:kept]),
            total_count=len(items),
            truncated=kept < len(items),
            token_budget=budget,
            estimated_tokens=sum(costs[:kept]),
        )

    async def offload(
        self,
        shaped: ShapedResult,
        items: Sequence[Dict[str, Any]],
        category: Optional[str] = None,
        session=None,
    ) -> ShapedResult:
        """
        Persist the full list for a truncated result and attach the handle.

        A failed write leaves the preview intact and adds a warning instead.
        When a session is given, the write runs in a savepoint so a failure
        does not poison the caller's transaction.
        """
        if not shaped.truncated:
            return shaped

        category = category or settings.overflow_category
        try:
            if session is not None:
                async with session.begin_nested():
                    handle = await self.overflow.save(list(items), category, session=session)
            else:
                handle = await self.overflow.save(list(items), category)
            shaped.overflow_handle = handle.handle
        except (KnowledgeError, SQLAlchemyError) as e:
            logger.warning(f"Overflow offload of {len(items)} items failed: {e}")
            shaped.warnings.append(SoftDegradation(
                code="OVERFLOW_UNAVAILABLE",
                message=f"Full result set could not be stored; showing {len(shaped.items)} "
                        f"of {len(items)} items without an overflow handle",
            ))
        return shaped

    async def shape(
        self,
        items: Sequence[Dict[str, Any]],
        token_budget: Optional[int] = None,
        data_ratio: Optional[float] = None,
        category: Optional[str] = None,
        session=None,
    ) -> ShapedResult:
        """Fit items to the budget, offloading the full list when truncated."""
        shaped = self.plan(items, token_budget, data_ratio)
        return await self.offload(shaped, items, category=category, session=session)
