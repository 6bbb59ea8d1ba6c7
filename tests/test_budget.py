"""Tests for token estimation, budget shaping and overflow offload."""

import re
import shutil
import tempfile
from unittest.mock import AsyncMock

import pytest

from knowledgemcp.budget import (
    TokenBudgetAllocator,
    clamp_budget,
    estimate_item_tokens,
    estimate_tokens,
    select_prefix,
)
from knowledgemcp.config import settings
from knowledgemcp.database import DatabaseManager
from knowledgemcp.errors import NotFoundError, StoreUnavailable, ValidationError
from knowledgemcp.overflow import OverflowStore


def make_items(count: int, body_chars: int = 400):
    return [{"id": f"item-{i:03d}", "kind": "WorkNote", "body": "x" * body_chars, "score": 1.0 - i / 100}
            for i in range(count)]


@pytest.fixture
def temp_storage():
    """Create a temporary storage directory."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
async def overflow(temp_storage):
    db = DatabaseManager(temp_storage)
    await db.init_db()
    yield OverflowStore(db)
    await db.close()


class TestEstimation:
    """Cheap deterministic token estimates."""

    def test_empty_text(self):
        assert estimate_tokens("") == 0

    def test_four_chars_per_token_with_margin(self):
        assert estimate_tokens("a" * 400, include_safety_margin=False) == 100
        assert estimate_tokens("a" * 400) == int(100 * settings.token_safety_margin)

    def test_item_cost_uses_canonical_fields(self):
        item = {"id": "1", "body": "hello"}
        with_noise = dict(item, attributes={"huge": "y" * 10000})

        assert estimate_item_tokens(item) == estimate_item_tokens(with_noise)

    def test_item_cost_is_at_least_one(self):
        assert estimate_item_tokens({}) == 1

    def test_clamp_budget(self):
        assert clamp_budget(None) == settings.default_token_budget
        assert clamp_budget(1) == settings.min_token_budget
        assert clamp_budget(10 ** 9) == settings.max_token_budget

    def test_select_prefix(self):
        assert select_prefix([10, 10, 10], 25) == 2
        assert select_prefix([30, 1], 25) == 0
        assert select_prefix([], 25) == 0


class TestPlan:
    """Greedy prefix selection."""

    def setup_method(self):
        self.allocator = TokenBudgetAllocator(overflow=AsyncMock())

    def test_fits_whole_list_unshaped(self):
        items = make_items(3, body_chars=40)

        shaped = self.allocator.plan(items, token_budget=5000)

        assert shaped.items == items
        assert shaped.truncated is False

    def test_over_budget_keeps_prefix_within_data_share(self):
        items = make_items(30)
        costs = [estimate_item_tokens(i) for i in items]
        budget = 2000

        shaped = self.allocator.plan(items, token_budget=budget)

        kept = len(shaped.items)
        assert shaped.items == items[:kept]
        assert shaped.truncated is True
        assert sum(costs[:kept]) <= int(budget * settings.data_budget_ratio)
        assert sum(costs[:kept + 1]) > int(budget * settings.data_budget_ratio)
        assert shaped.total_count == 30

    def test_truncated_iff_fewer_items(self):
        items = make_items(10)
        for budget in (100, 500, 1000, 2000, 5000, 50000):
            shaped = self.allocator.plan(items, token_budget=budget)
            assert shaped.truncated == (len(shaped.items) < len(items))
            assert shaped.items == items[:len(shaped.items)]

    def test_custom_ratio(self):
        items = make_items(30)

        narrow = self.allocator.plan(items, token_budget=4000, data_ratio=0.1)
        wide = self.allocator.plan(items, token_budget=4000, data_ratio=0.9)

        assert len(narrow.items) < len(wide.items)

    def test_invalid_ratio(self):
        with pytest.raises(ValidationError):
            self.allocator.plan(make_items(2), token_budget=1000, data_ratio=0)
        with pytest.raises(ValidationError):
            self.allocator.plan(make_items(2), token_budget=1000, data_ratio=1.5)


class TestShape:
    """Offload of truncated lists."""

    @pytest.mark.asyncio
    async def test_truncated_list_is_offloaded(self, overflow):
        allocator = TokenBudgetAllocator(overflow)
        items = make_items(30)

        shaped = await allocator.shape(items, token_budget=2000)

        assert shaped.truncated is True
        assert shaped.overflow_handle is not None
        stored = await overflow.load(shaped.overflow_handle)
        assert stored["items"] == items
        assert stored["item_count"] == 30
        assert stored["category"] == settings.overflow_category

    @pytest.mark.asyncio
    async def test_untruncated_list_is_not_offloaded(self):
        store = AsyncMock()
        allocator = TokenBudgetAllocator(store)

        shaped = await allocator.shape(make_items(2, body_chars=10), token_budget=5000)

        assert shaped.overflow_handle is None
        store.save.assert_not_called()

    @pytest.mark.asyncio
    async def test_offload_failure_is_soft(self):
        store = AsyncMock()
        store.save.side_effect = StoreUnavailable("disk full", operation="overflow_save")
        allocator = TokenBudgetAllocator(store)
        items = make_items(30)

        shaped = await allocator.shape(items, token_budget=2000)

        assert shaped.truncated is True
        assert shaped.overflow_handle is None
        assert shaped.items == items[:len(shaped.items)]
        assert [w.code for w in shaped.warnings] == ["OVERFLOW_UNAVAILABLE"]
        assert "warnings" in shaped.to_dict()


class TestOverflowStore:
    """Write-once sets read back by exact handle."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, overflow):
        items = [{"id": "a"}, {"id": "b"}]

        handle = await overflow.save(items, "search")
        stored = await overflow.load(handle.handle)

        assert re.fullmatch(r"search-[0-9A-F]{12}-[0-9a-f]{8}", handle.handle)
        assert handle.item_count == 2
        assert stored["items"] == items
        assert stored["handle"] == handle.handle

    @pytest.mark.asyncio
    async def test_each_save_gets_a_new_handle(self, overflow):
        first = await overflow.save([{"id": "a"}], "search")
        second = await overflow.save([{"id": "a"}], "search")

        assert first.handle != second.handle

    @pytest.mark.asyncio
    async def test_unknown_handle(self, overflow):
        with pytest.raises(NotFoundError) as exc_info:
            await overflow.load("search-000000000000-deadbeef")

        assert exc_info.value.key == "search-000000000000-deadbeef"
