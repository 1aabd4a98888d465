"""Poll and reconciliation loop.

Periodically re-fetches a tracked item set (review records or matching
tasks), compares per-item signatures against the last snapshot, and emits
a single change event only when something actually moved. Tasks that
finished processing items but never left ``processing`` are reconciled
automatically, once per continuous stuck interval, with staggered calls.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

from ..errors import MatchDeskError, TransientFetchError
from ..logging import get_context_logger, log_poll_change
from ..models import UpdatedSignature
from .tokens import GenerationTracker

logger = get_context_logger(__name__)


class Pollable(Protocol):
    id: str

    @property
    def signature(self) -> UpdatedSignature: ...

    @property
    def is_stuck(self) -> bool: ...


T = TypeVar("T", bound=Pollable)


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    CLOSED = "closed"


@dataclass(frozen=True)
class PollSnapshot(Generic[T]):
    """Last applied fetch: signatures per id and the full item list."""

    signatures: dict[str, UpdatedSignature]
    items: tuple[T, ...]
    captured_at: datetime

    @classmethod
    def capture(cls, items: Sequence[T]) -> "PollSnapshot[T]":
        return cls(
            signatures={item.id: item.signature for item in items},
            items=tuple(items),
            captured_at=datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class ChangeEvent(Generic[T]):
    """One applied change: which ids moved, and the complete new item set."""

    changed_ids: frozenset[str]
    added_ids: frozenset[str]
    removed_ids: frozenset[str]
    items: tuple[T, ...] = field(repr=False)

    @property
    def touched_ids(self) -> frozenset[str]:
        return self.changed_ids | self.added_ids | self.removed_ids


def diff_signatures(
    old: dict[str, UpdatedSignature],
    new: dict[str, UpdatedSignature],
) -> tuple[frozenset[str], frozenset[str], frozenset[str]]:
    """Return (changed, added, removed) ids between two signature maps."""
    changed = frozenset(k for k in new.keys() & old.keys() if new[k] != old[k])
    added = frozenset(new.keys() - old.keys())
    removed = frozenset(old.keys() - new.keys())
    return changed, added, removed


class PollLoop(Generic[T]):
    """Interval-driven fetch, diff and apply cycle for one item set.

    States move ``idle -> polling -> idle`` on each tick; ``close`` is
    terminal. Results that arrive after ``close`` or after a newer fetch
    was issued are dropped.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Sequence[T]]],
        *,
        interval: float,
        on_change: Callable[[ChangeEvent[T]], Any] | None = None,
        reconcile: Callable[[str], Awaitable[Any]] | None = None,
        reconcile_delay: float = 1.0,
        is_active: Callable[[T], bool] | None = None,
        tracker: GenerationTracker | None = None,
        name: str = "poll",
    ):
        """Initialize the loop.

        Args:
            fetch: Async callable returning the full current item set
            interval: Seconds between ticks
            on_change: Called synchronously with each applied change
            reconcile: Async callable fixing a stuck item's status
            reconcile_delay: Per-item stagger between reconciliation calls
            is_active: When given, ticks are skipped while no snapshot item
                satisfies it
            tracker: Generation tracker, shared with the owning session
            name: Label for logs and the generation token kind
        """
        self._fetch = fetch
        self._interval = interval
        self._on_change = on_change
        self._reconcile = reconcile
        self._reconcile_delay = reconcile_delay
        self._is_active = is_active
        self._tracker = tracker or GenerationTracker()
        self._name = name
        self._kind = f"poll:{name}"

        self._state = PollState.IDLE
        self._snapshot: PollSnapshot[T] | None = None
        self._task: asyncio.Task | None = None
        self._stuck_fired: set[str] = set()
        self._reconcile_tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def snapshot(self) -> PollSnapshot[T] | None:
        return self._snapshot

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the interval timer. No-op if already running."""
        if self._closed:
            raise RuntimeError(f"Poll loop {self._name} is closed")
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"poll-{self._name}")
        logger.debug(f"Started poll loop {self._name} ({self._interval}s)")

    def invalidate(self) -> None:
        """Drop the result of any fetch currently in flight."""
        self._tracker.invalidate(self._kind)

    def stop(self) -> None:
        """Stop the timer; the snapshot is kept and the loop can restart."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._tracker.invalidate(self._kind)
        if not self._closed:
            self._state = PollState.IDLE

    async def close(self) -> None:
        """Tear down: stop polling, drop in-flight results and the snapshot."""
        self._closed = True
        self._state = PollState.CLOSED
        self._tracker.invalidate(self._kind)

        tasks = [t for t in [self._task, *self._reconcile_tasks] if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._task = None
        self._reconcile_tasks.clear()
        self._snapshot = None
        self._stuck_fired.clear()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if not self._should_tick():
                continue
            try:
                await self.tick()
            except Exception:
                logger.exception(f"Poll tick for {self._name} failed")

    def _should_tick(self) -> bool:
        if self._is_active is None or self._snapshot is None:
            return True
        return any(self._is_active(item) for item in self._snapshot.items)

    async def tick(self, user_triggered: bool = False) -> ChangeEvent[T] | None:
        """Fetch once and apply the result if anything changed.

        Args:
            user_triggered: Re-raise fetch failures instead of only logging

        Returns:
            The applied change event, or None if nothing was applied

        Raises:
            TransientFetchError: If the fetch fails and ``user_triggered``
        """
        if self._closed:
            return None

        token = self._tracker.issue(self._kind)
        self._state = PollState.POLLING
        try:
            items = await self._fetch()
        except TransientFetchError as e:
            logger.warning(f"Poll fetch for {self._name} failed, keeping previous state: {e}")
            if user_triggered:
                raise
            return None
        finally:
            if not self._closed:
                self._state = PollState.IDLE

        if self._closed or not self._tracker.is_current(self._kind, token):
            logger.debug(f"Discarded poll result for {self._name}")
            return None

        return self.apply(items)

    def apply(self, items: Sequence[T]) -> ChangeEvent[T] | None:
        """Diff ``items`` against the snapshot and replace it if changed."""
        snapshot = PollSnapshot.capture(items)
        old = self._snapshot.signatures if self._snapshot is not None else None

        if old is not None and snapshot.signatures == old:
            return None

        changed, added, removed = diff_signatures(old or {}, snapshot.signatures)
        self._snapshot = snapshot
        event = ChangeEvent(
            changed_ids=changed,
            added_ids=added,
            removed_ids=removed,
            items=snapshot.items,
        )
        log_poll_change(self._name, len(changed), len(added), len(removed))

        if self._on_change is not None:
            self._on_change(event)
        self._detect_stuck(snapshot.items)
        return event

    def _detect_stuck(self, items: Sequence[T]) -> None:
        stuck_ids = [item.id for item in items if item.is_stuck]

        # Items that left the stuck state may fire again if they re-enter it
        self._stuck_fired.intersection_update(stuck_ids)

        if self._reconcile is None:
            return

        fresh = [item_id for item_id in stuck_ids if item_id not in self._stuck_fired]
        for position, item_id in enumerate(fresh, start=1):
            self._stuck_fired.add(item_id)
            delay = self._reconcile_delay * position
            logger.info(f"Detected stuck item {item_id}, reconciling in {delay:.1f}s")
            task = asyncio.create_task(self._reconcile_later(item_id, delay))
            self._reconcile_tasks.add(task)
            task.add_done_callback(self._reconcile_tasks.discard)

    async def _reconcile_later(self, item_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closed:
            return
        try:
            await self._reconcile(item_id)
            logger.debug(f"Reconciled stuck item {item_id}")
        except MatchDeskError as e:
            logger.warning(f"Silent reconciliation of {item_id} failed: {e}")
