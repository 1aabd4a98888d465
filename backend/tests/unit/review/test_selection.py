"""Unit tests for cross-page selection.

Run with: pytest backend/tests/unit/review/test_selection.py -v
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from matchdesk.errors import TransientFetchError
from matchdesk.models import QuerySpec, StatusFilter
from matchdesk.review.selection import SelectionManager, SelectionScope


@pytest.fixture
def enumerate_ids() -> AsyncMock:
    return AsyncMock(return_value=["a", "b", "c", "d"])


@pytest.fixture
def selection(enumerate_ids) -> SelectionManager:
    return SelectionManager(enumerate_ids)


class TestPageSelection:
    """Tests for explicit, page-by-page selection."""

    def test_select_page_then_toggle_back(self, selection):
        assert selection.select_page(["a", "b"]) is True
        assert selection.ids() == ["a", "b"]

        assert selection.select_page(["a", "b"]) is False
        assert selection.count() == 0

    def test_toggling_full_page_clears_other_pages_too(self, selection):
        selection.select_ids(["x", "y"])
        selection.select_page(["a", "b"])

        assert selection.select_page(["a", "b"]) is False
        assert selection.count() == 0
        assert selection.scope == SelectionScope.PAGE

    def test_partially_selected_page_selects_rest(self, selection):
        selection.toggle("a")
        assert selection.select_page(["a", "b"]) is True
        assert selection.is_page_selected(["a", "b"])

    def test_selection_survives_page_changes(self, selection):
        selection.select_page(["a", "b"])
        selection.select_page(["c", "d"])
        assert selection.ids() == ["a", "b", "c", "d"]

    def test_toggle_returns_new_state(self, selection):
        assert selection.toggle("x") is True
        assert selection.toggle("x") is False

    def test_empty_page_is_not_selected(self, selection):
        assert selection.select_page([]) is False
        assert not selection.is_page_selected([])

    def test_snapshot_is_by_value(self, selection):
        selection.toggle("a")
        snapshot = selection.snapshot()
        selection.toggle("b")

        assert "a" in snapshot
        assert "b" not in snapshot
        assert len(snapshot) == 1

    def test_discard_keeps_other_ids(self, selection):
        selection.select_ids(["a", "b", "c"])
        selection.discard(["a", "c", "missing"])
        assert selection.ids() == ["b"]

    def test_replace(self, selection):
        selection.select_ids(["a", "b"])
        selection.replace(["c"])
        assert selection.ids() == ["c"]

    def test_consume_clears(self, selection):
        selection.select_ids(["a", "b"])
        assert selection.consume() == ["a", "b"]
        assert selection.count() == 0


class TestGlobalSelection:
    """Tests for select-all-filtered and filter changes."""

    @pytest.mark.asyncio
    async def test_select_all_uses_id_enumeration(self, selection, enumerate_ids):
        count = await selection.select_all_filtered(QuerySpec(page=3))

        assert count == 4
        assert selection.scope == SelectionScope.GLOBAL
        assert enumerate_ids.await_args.args[0].page == 1

    @pytest.mark.asyncio
    async def test_clear_resets_scope(self, selection):
        await selection.select_all_filtered(QuerySpec())
        selection.clear()
        assert selection.scope == SelectionScope.PAGE
        assert selection.count() == 0

    @pytest.mark.asyncio
    async def test_filter_change_reenumerates_and_keeps_exclusions(self, selection, enumerate_ids):
        await selection.select_all_filtered(QuerySpec())
        selection.toggle("b")

        enumerate_ids.return_value = ["a", "b", "e"]
        await selection.on_query_changed(QuerySpec(status_filter=StatusFilter.PENDING))

        assert selection.ids() == ["a", "e"]
        assert selection.scope == SelectionScope.GLOBAL

    @pytest.mark.asyncio
    async def test_same_filter_does_not_reenumerate(self, selection, enumerate_ids):
        query = QuerySpec()
        await selection.select_all_filtered(query)
        await selection.on_query_changed(query.with_changes(page=2))
        assert enumerate_ids.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_reenumeration_invalidates_selection(self, selection, enumerate_ids):
        await selection.select_all_filtered(QuerySpec())

        enumerate_ids.side_effect = TransientFetchError("down")
        await selection.on_query_changed(QuerySpec(search_term="cola"))

        assert selection.count() == 0
        assert selection.scope == SelectionScope.PAGE

    @pytest.mark.asyncio
    async def test_page_scope_ignores_filter_change(self, selection, enumerate_ids):
        selection.toggle("a")
        await selection.on_query_changed(QuerySpec(search_term="cola"))

        assert selection.ids() == ["a"]
        enumerate_ids.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enumeration_superseded_by_clear_is_discarded(self):
        release = asyncio.Event()

        async def slow_enumerate(query):
            await release.wait()
            return ["a", "b"]

        selection = SelectionManager(slow_enumerate)
        pending = asyncio.create_task(selection.select_all_filtered(QuerySpec()))
        await asyncio.sleep(0)

        selection.clear()
        release.set()
        await pending

        assert selection.count() == 0
        assert selection.scope == SelectionScope.PAGE

    @pytest.mark.asyncio
    async def test_select_all_failure_propagates(self, selection, enumerate_ids):
        enumerate_ids.side_effect = TransientFetchError("down")
        with pytest.raises(TransientFetchError):
            await selection.select_all_filtered(QuerySpec())
        assert selection.count() == 0

    @pytest.mark.asyncio
    async def test_discarding_everything_returns_to_page_scope(self, selection):
        await selection.select_all_filtered(QuerySpec())
        selection.toggle("b")

        selection.discard(["a", "c", "d"])

        assert selection.count() == 0
        assert selection.scope == SelectionScope.PAGE

        selection.toggle("b")
        assert selection.ids() == ["b"]
