"""Unit tests for the poll and reconciliation loop.

Run with: pytest backend/tests/unit/review/test_polling.py -v
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from factories import make_record, make_task
from matchdesk.errors import ActionRejected, TransientFetchError
from matchdesk.models import RecordStatus, TaskStatus
from matchdesk.review.polling import PollLoop, PollState, diff_signatures


def make_loop(fetch, **kwargs) -> PollLoop:
    kwargs.setdefault("interval", 0.01)
    return PollLoop(fetch, **kwargs)


class TestDiffSignatures:
    def test_changed_added_removed(self):
        old = {"a": ("pending", 0, 0.0), "b": ("pending", 0, 0.0)}
        new = {"a": ("confirmed", 0, 0.0), "c": ("pending", 0, 0.0)}
        changed, added, removed = diff_signatures(old, new)

        assert changed == {"a"}
        assert added == {"c"}
        assert removed == {"b"}


class TestPollApply:
    """Tests for diffing and applying fetch results."""

    def test_first_apply_emits_everything_as_added(self):
        on_change = MagicMock()
        loop = make_loop(AsyncMock(), on_change=on_change)

        event = loop.apply([make_record("a"), make_record("b")])

        assert event.added_ids == {"a", "b"}
        on_change.assert_called_once_with(event)

    def test_identical_signatures_emit_nothing(self):
        on_change = MagicMock()
        loop = make_loop(AsyncMock(), on_change=on_change)
        loop.apply([make_record("a")])

        assert loop.apply([make_record("a", name="renamed")]) is None
        assert on_change.call_count == 1

    def test_status_change_emits_single_event(self):
        on_change = MagicMock()
        loop = make_loop(AsyncMock(), on_change=on_change)
        loop.apply([make_record("a"), make_record("b")])

        event = loop.apply([make_record("a", status=RecordStatus.CONFIRMED), make_record("b")])

        assert event.changed_ids == {"a"}
        assert event.touched_ids == {"a"}
        assert on_change.call_count == 2
        assert loop.snapshot.items[0].status == RecordStatus.CONFIRMED

    def test_task_progress_change_is_detected(self):
        loop = make_loop(AsyncMock())
        loop.apply([make_task("t1", total=10, processed=2)])
        event = loop.apply([make_task("t1", total=10, processed=3)])
        assert event.changed_ids == {"t1"}


class TestPollTick:
    """Tests for fetch sequencing and failure handling."""

    @pytest.mark.asyncio
    async def test_tick_applies_fetch(self):
        loop = make_loop(AsyncMock(return_value=[make_record("a")]))
        event = await loop.tick()
        assert event.added_ids == {"a"}
        assert loop.state == PollState.IDLE

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_previous_snapshot(self):
        fetch = AsyncMock(return_value=[make_record("a")])
        loop = make_loop(fetch)
        await loop.tick()

        fetch.side_effect = TransientFetchError("down")
        assert await loop.tick() is None
        assert [r.id for r in loop.snapshot.items] == ["a"]

    @pytest.mark.asyncio
    async def test_user_triggered_failure_raises(self):
        loop = make_loop(AsyncMock(side_effect=TransientFetchError("down")))
        with pytest.raises(TransientFetchError):
            await loop.tick(user_triggered=True)

    @pytest.mark.asyncio
    async def test_slow_older_fetch_is_discarded(self):
        release = asyncio.Event()
        responses = [[make_record("old")], [make_record("new")]]

        async def fetch():
            items = responses.pop(0)
            if items[0].id == "old":
                await release.wait()
            return items

        loop = make_loop(fetch)
        slow = asyncio.create_task(loop.tick())
        await asyncio.sleep(0)
        await loop.tick()
        release.set()

        assert await slow is None
        assert [r.id for r in loop.snapshot.items] == ["new"]

    @pytest.mark.asyncio
    async def test_result_after_close_is_discarded(self):
        release = asyncio.Event()
        on_change = MagicMock()

        async def fetch():
            await release.wait()
            return [make_record("a")]

        loop = make_loop(fetch, on_change=on_change)
        pending = asyncio.create_task(loop.tick())
        await asyncio.sleep(0)

        await loop.close()
        release.set()

        assert await pending is None
        on_change.assert_not_called()
        assert loop.state == PollState.CLOSED
        assert loop.snapshot is None

    @pytest.mark.asyncio
    async def test_stop_invalidates_in_flight_fetch(self):
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return [make_record("a")]

        loop = make_loop(fetch)
        pending = asyncio.create_task(loop.tick())
        await asyncio.sleep(0)
        loop.stop()
        release.set()

        assert await pending is None
        assert loop.snapshot is None

    @pytest.mark.asyncio
    async def test_start_polls_on_interval(self):
        on_change = MagicMock()
        loop = make_loop(AsyncMock(return_value=[make_record("a")]), on_change=on_change)

        loop.start()
        await asyncio.sleep(0.05)
        await loop.close()

        on_change.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_after_close_raises(self):
        loop = make_loop(AsyncMock())
        await loop.close()
        with pytest.raises(RuntimeError):
            loop.start()

    @pytest.mark.asyncio
    async def test_skips_ticks_without_active_items(self):
        fetch = AsyncMock(return_value=[make_task("t1", status=TaskStatus.COMPLETED)])
        loop = make_loop(fetch, is_active=lambda task: task.is_in_progress)

        await loop.tick()
        loop.start()
        await asyncio.sleep(0.05)
        await loop.close()

        assert fetch.await_count == 1


class TestStuckReconciliation:
    """Tests for silent reconciliation of stuck tasks."""

    @pytest.mark.asyncio
    async def test_stuck_task_reconciled_once(self):
        reconcile = AsyncMock()
        loop = make_loop(AsyncMock(), reconcile=reconcile, reconcile_delay=0)

        loop.apply([make_task("t1", total=5, processed=5)])
        await asyncio.sleep(0.01)
        # Still stuck on the next change: no second call
        loop.apply([make_task("t1", total=5, processed=5), make_task("t2", total=3, processed=1)])
        await asyncio.sleep(0.01)

        reconcile.assert_awaited_once_with("t1")

    @pytest.mark.asyncio
    async def test_reentering_stuck_state_fires_again(self):
        reconcile = AsyncMock()
        loop = make_loop(AsyncMock(), reconcile=reconcile, reconcile_delay=0)

        loop.apply([make_task("t1", total=5, processed=5)])
        await asyncio.sleep(0.01)
        loop.apply([make_task("t1", total=6, processed=5)])
        loop.apply([make_task("t1", total=6, processed=6)])
        await asyncio.sleep(0.01)

        assert reconcile.await_count == 2

    @pytest.mark.asyncio
    async def test_reconciliation_is_staggered(self):
        reconcile = AsyncMock()
        loop = make_loop(AsyncMock(), reconcile=reconcile, reconcile_delay=0.1)

        loop.apply([make_task("t1", total=5, processed=5), make_task("t2", total=2, processed=2)])

        await asyncio.sleep(0.15)
        assert [c.args[0] for c in reconcile.await_args_list] == ["t1"]

        await asyncio.sleep(0.1)
        assert [c.args[0] for c in reconcile.await_args_list] == ["t1", "t2"]
        await loop.close()

    @pytest.mark.asyncio
    async def test_reconcile_failure_is_silent(self):
        reconcile = AsyncMock(side_effect=ActionRejected("no"))
        loop = make_loop(AsyncMock(), reconcile=reconcile, reconcile_delay=0)

        loop.apply([make_task("t1", total=1, processed=1)])
        await asyncio.sleep(0.01)

        reconcile.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_cancels_pending_reconciliation(self):
        reconcile = AsyncMock()
        loop = make_loop(AsyncMock(), reconcile=reconcile, reconcile_delay=1.0)

        loop.apply([make_task("t1", total=1, processed=1)])
        await loop.close()
        await asyncio.sleep(0.01)

        reconcile.assert_not_awaited()
