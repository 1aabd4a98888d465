"""Session-scoped review queue controller.

One ``ReviewSession`` exists per open review screen. It owns the query,
the record snapshot (through its poll loop), the selection, optimistic
local overrides, loading flags and notifications. Every outbound fetch is
sequenced with generation tokens so slow responses never overwrite newer
state, and every state change is published as one immutable view.
"""

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..config import Settings, get_settings
from ..errors import (
    ActionRejected,
    ResolutionError,
    StaleResponseDiscarded,
    TransientFetchError,
)
from ..logging import get_context_logger
from ..models import (
    BatchResult,
    Notification,
    NotificationLevel,
    PageView,
    QuerySpec,
    Record,
    RecordStatus,
    ReviewAction,
    StatusCounts,
)
from ..services.backend import ReviewBackend
from .batch import BatchOrchestrator, make_confirm_resolver, resolve_confirm_target
from .confidence import HIGH_THRESHOLD
from .navigation import plan_advance
from .pipeline import clamp_page, filter_and_sort, page_of, paginate, summarize
from .polling import ChangeEvent, PollLoop
from .selection import SelectionManager
from .tokens import GenerationTracker

# Status a record moves to after each action; LEARN leaves status alone
ACTION_STATUS = {
    ReviewAction.CONFIRM: RecordStatus.CONFIRMED,
    ReviewAction.REJECT: RecordStatus.REJECTED,
    ReviewAction.CLEAR: RecordStatus.PENDING,
}

_PAGE = "page"
_SEARCH = "search"
_BATCH = "batch"

# Records requested per page when loading the full filtered set
FETCH_PAGE_SIZE = 500


@dataclass(frozen=True)
class ReviewView:
    """Everything a screen renders, published as one value."""

    query: QuerySpec
    page: PageView
    current_record_id: str | None
    counts: StatusCounts
    filtered_counts: StatusCounts
    selected_count: int
    loading: dict[str, bool] = field(default_factory=dict)


class ReviewSession:
    """Review queue controller for one matching task."""

    def __init__(
        self,
        backend: ReviewBackend,
        task_id: str | None = None,
        settings: Settings | None = None,
        query: QuerySpec | None = None,
        on_view: Callable[[ReviewView], Any] | None = None,
        on_notify: Callable[[Notification], Any] | None = None,
    ):
        """Initialize the session.

        Args:
            backend: Matching backend client
            task_id: Task whose records are reviewed (None for all tasks)
            settings: Settings override
            query: Initial query; takes precedence over ``task_id``
            on_view: Called with every published view
            on_notify: Called with every user-facing notification
        """
        self._backend = backend
        self._settings = settings or get_settings()
        self._on_view = on_view
        self._on_notify = on_notify
        self.logger = get_context_logger(__name__, task_id=task_id)

        self._tracker = GenerationTracker()
        self._query = query or QuerySpec(
            task_id=task_id, page_size=self._settings.page_size
        )
        self._ordered: list[Record] = []
        self._view = PageView(page_size=self._query.page_size)
        self._counts = StatusCounts()
        self._filtered_counts = StatusCounts()
        self._current_id: str | None = None
        self._overrides: dict[str, Record] = {}
        self._search_task: asyncio.Task | None = None
        self._closed = False

        self.loading: dict[str, bool] = {_PAGE: False, _SEARCH: False, _BATCH: False}
        self.notifications: list[Notification] = []

        self.selection = SelectionManager(backend.fetch_record_ids, self._tracker)
        self._poll: PollLoop[Record] = PollLoop(
            self._fetch_full,
            interval=self._settings.poll_interval,
            on_change=self._on_records_changed,
            tracker=self._tracker,
            name="records",
        )
        self.batch = BatchOrchestrator(
            backend.batch_action,
            chunk_size=self._settings.batch_chunk_size,
            chunk_pause=self._settings.batch_chunk_pause,
            on_complete=self._poll.tick,
        )

    # =========================
    # Read accessors
    # =========================

    @property
    def query(self) -> QuerySpec:
        return self._query

    @property
    def page(self) -> PageView:
        return self._view

    @property
    def ordered(self) -> list[Record]:
        """The full filtered and sorted order (a copy)."""
        return list(self._ordered)

    @property
    def current_record(self) -> Record | None:
        if self._current_id is None:
            return None
        return self._records_by_id().get(self._current_id)

    @property
    def poll_loop(self) -> PollLoop[Record]:
        return self._poll

    @property
    def closed(self) -> bool:
        return self._closed

    def view(self) -> ReviewView:
        return ReviewView(
            query=self._query,
            page=self._view,
            current_record_id=self._current_id,
            counts=self._counts,
            filtered_counts=self._filtered_counts,
            selected_count=self.selection.count(),
            loading=dict(self.loading),
        )

    # =========================
    # Lifecycle
    # =========================

    async def open(self) -> ReviewView:
        """Load the first snapshot. Failures surface as a notification."""
        await self.refresh()
        return self.view()

    def start_polling(self) -> None:
        self._poll.start()

    def stop_polling(self) -> None:
        self._poll.stop()

    async def close(self) -> None:
        """Stop polling and invalidate every outstanding response."""
        if self._closed:
            return
        self._closed = True
        self._tracker.invalidate_all()
        if self._search_task is not None:
            self._search_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._search_task
            self._search_task = None
        await self._poll.close()
        self.logger.debug("Review session closed")

    async def refresh(self, user_triggered: bool = True) -> ChangeEvent[Record] | None:
        """Re-fetch the record set now.

        Args:
            user_triggered: Surface a failure to the reviewer
        """
        if self._closed:
            return None
        self.loading[_PAGE] = True
        try:
            return await self._poll.tick(user_triggered=user_triggered)
        except TransientFetchError as e:
            self._notify(NotificationLevel.ERROR, "Refresh failed", f"Could not load records: {e}")
            return None
        finally:
            self.loading[_PAGE] = False

    # =========================
    # Query changes
    # =========================

    async def update_query(self, **changes: Any) -> PageView:
        """Change filters, sort or page and re-derive the view.

        Filter and sort changes reset the page to 1, re-fetch the record
        set and keep a global selection in step with the new filter. A
        page change alone re-paginates the current snapshot.
        """
        return await self._apply_query(self._query.with_changes(**changes), _PAGE)

    async def set_page(self, page: int) -> PageView:
        page = clamp_page(page, self._view.total_pages)
        return await self._apply_query(self._query.with_changes(page=page), _PAGE)

    def type_search(self, term: str) -> None:
        """Feed one keystroke; only the settled term issues a request."""
        if self._closed:
            return
        if self._search_task is not None and not self._search_task.done():
            self._search_task.cancel()
        self._search_task = asyncio.create_task(self._debounced_search(term))

    async def flush_search(self) -> None:
        """Wait for a pending debounced search to settle and apply."""
        task = self._search_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _debounced_search(self, term: str) -> None:
        await asyncio.sleep(self._settings.search_debounce)
        await self._apply_query(self._query.with_changes(search_term=term), _SEARCH)

    async def _apply_query(self, query: QuerySpec, kind: str) -> PageView:
        if self._closed or query == self._query:
            return self._view

        filters_changed = (
            query.filter_key() != self._query.filter_key()
            or query.page_size != self._query.page_size
        )
        self._query = query
        self._rebuild()

        if filters_changed:
            # A poll fetch issued under the old filter must not land
            self._poll.invalidate()
            await asyncio.gather(
                self._reload(kind, query),
                self.selection.on_query_changed(query),
            )
        return self._view

    async def _reload(self, kind: str, query: QuerySpec) -> None:
        token = self._tracker.issue(kind)
        self.loading[kind] = True
        try:
            records = await self._fetch_full(query)
        except TransientFetchError as e:
            if self._tracker.is_current(kind, token):
                self._notify(NotificationLevel.ERROR, "Load failed", f"Could not load records: {e}")
            return
        finally:
            if self._tracker.is_current(kind, token):
                self.loading[kind] = False

        try:
            self._tracker.check(kind, token)
        except StaleResponseDiscarded:
            return
        if query.filter_key() != self._query.filter_key():
            return

        if self._poll.apply(records) is None:
            self._publish()

    async def _fetch_full(self, query: QuerySpec | None = None) -> list[Record]:
        """Every record matching the filter, across backend pages."""
        query = query or self._query
        limit = self._settings.max_records_fetch
        page_size = min(FETCH_PAGE_SIZE, limit)
        records: list[Record] = []
        page = 1
        while True:
            result = await self._backend.fetch_records(
                query.model_copy(update={"page": page, "page_size": page_size})
            )
            records.extend(result.records)
            if (
                not result.records
                or len(records) >= result.total_count
                or len(records) >= limit
            ):
                break
            page += 1
        return records[:limit]

    # =========================
    # Snapshot -> view
    # =========================

    def _records(self) -> list[Record]:
        snapshot = self._poll.snapshot
        if snapshot is None:
            return []
        return [self._overrides.get(r.id, r) for r in snapshot.items]

    def _records_by_id(self) -> dict[str, Record]:
        return {record.id: record for record in self._records()}

    def _on_records_changed(self, event: ChangeEvent[Record]) -> None:
        incoming = {record.id: record for record in event.items}
        for record_id, override in list(self._overrides.items()):
            fresh = incoming.get(record_id)
            if fresh is None or record_id in event.changed_ids or fresh.status == override.status:
                del self._overrides[record_id]
        self._rebuild()

    def _rebuild(self, focus_id: str | None = None) -> None:
        """Recompute order and page from the snapshot, then publish once."""
        records = self._records()
        self._ordered = filter_and_sort(records, self._query)
        self._counts = summarize(records)
        self._filtered_counts = summarize(self._ordered)

        page_size = self._query.page_size
        page = self._query.page
        if focus_id is not None:
            page = page_of(self._ordered, focus_id, page_size) or page

        total_pages = -(-len(self._ordered) // page_size)
        if total_pages and page > total_pages:
            page = total_pages
        if page != self._query.page:
            self._query = self._query.with_changes(page=page)

        self._view = paginate(self._ordered, self._query.page, page_size)
        self._publish()

    def _publish(self) -> None:
        if self._on_view is not None and not self._closed:
            self._on_view(self.view())

    # =========================
    # Single-record review
    # =========================

    def present(self, record_id: str) -> Record | None:
        """Make ``record_id`` the current record, switching to its page."""
        record = self._records_by_id().get(record_id)
        if record is None:
            return None
        self._current_id = record_id
        self._rebuild(focus_id=record_id)
        return record

    async def review(
        self,
        record_id: str,
        action: ReviewAction,
        product_id: str | None = None,
        note: str | None = None,
    ) -> Record | None:
        """Apply one action and auto-advance to the next open record.

        The next record is located in the view as it was before the status
        change. The page switch and the new current record are applied in a
        single view update.

        Returns:
            The record now presented, or None if nothing was advanced to
        """
        record = self._records_by_id().get(record_id)
        if record is None:
            self._notify(
                NotificationLevel.WARNING,
                "Record unavailable",
                "The record is no longer loaded",
                record_id=record_id,
            )
            return None

        if action == ReviewAction.CONFIRM and product_id is None:
            try:
                product_id = resolve_confirm_target(record)
            except ResolutionError as e:
                self._notify(NotificationLevel.WARNING, "Nothing to confirm", e.reason, record_id=record_id)
                return None

        advance = action in ACTION_STATUS and self._settings.auto_advance
        plan = plan_advance(record_id, self._ordered, self._query.page_size) if advance else None

        if action in ACTION_STATUS:
            self._overrides[record_id] = self._optimistic(record, action)
            self._rebuild()

        try:
            updated = await self._backend.record_action(record_id, action, product_id, note)
        except (ActionRejected, TransientFetchError) as e:
            self._overrides.pop(record_id, None)
            self._rebuild()
            self._notify(
                NotificationLevel.ERROR,
                f"{action.value.capitalize()} failed",
                f"Record {record_id}: {e}",
                record_id=record_id,
            )
            return None

        if self._closed:
            return None
        if updated is not None and action in ACTION_STATUS:
            self._overrides[record_id] = updated

        if action not in ACTION_STATUS:
            self._notify(NotificationLevel.SUCCESS, "Saved", f"Record {record_id} learned", record_id=record_id)
            return self.current_record

        if plan is None:
            self._current_id = None
            self._rebuild()
            if advance:
                self._notify(NotificationLevel.SUCCESS, "Queue complete", "All records have been reviewed")
            return None

        self._current_id = plan.record_id
        self._rebuild(focus_id=plan.record_id)
        return self.current_record

    @staticmethod
    def _optimistic(record: Record, action: ReviewAction) -> Record:
        update: dict[str, Any] = {"status": ACTION_STATUS[action]}
        if action == ReviewAction.CLEAR:
            update["selected_match"] = None
        return record.model_copy(update=update)

    # =========================
    # Selection and batch
    # =========================

    def toggle(self, record_id: str) -> bool:
        selected = self.selection.toggle(record_id)
        self._publish()
        return selected

    def select_page(self) -> bool:
        selected = self.selection.select_page(self._view.ids)
        self._publish()
        return selected

    def select_confirmed(self) -> int:
        """Replace the selection with every confirmed record in the current filtered set."""
        confirmed = [r.id for r in self._ordered if r.status == RecordStatus.CONFIRMED]
        if not confirmed:
            self._notify(NotificationLevel.WARNING, "No confirmed records", "The current filter has no confirmed records")
            return 0
        self.selection.replace(confirmed)
        self._publish()
        return len(confirmed)

    async def select_all_filtered(self) -> int:
        try:
            count = await self.selection.select_all_filtered(self._query)
        except TransientFetchError as e:
            self._notify(NotificationLevel.ERROR, "Select all failed", str(e))
            return self.selection.count()
        self._publish()
        return count

    def clear_selection(self) -> None:
        self.selection.clear()
        self._publish()

    async def run_batch(self, action: ReviewAction) -> BatchResult:
        """Apply ``action`` to the selection. The selection is consumed."""
        count = self.selection.count()
        if count == 0:
            self._notify(NotificationLevel.WARNING, "Nothing selected", "Select records first")
            return BatchResult()

        resolver = None
        if action == ReviewAction.CONFIRM:
            resolver = make_confirm_resolver(self._records_by_id())

        self.loading[_BATCH] = True
        try:
            result = await self.batch.run(self.selection, action, resolver)
        finally:
            self.loading[_BATCH] = False

        self._report_batch(action, result)
        self._publish()
        return result

    async def smart_confirm(self) -> BatchResult:
        """Confirm open records on the current page whose match scores >= 90."""
        ids = [
            r.id
            for r in self._view.items
            if r.is_open and r.selected_match is not None and r.confidence >= HIGH_THRESHOLD
        ]
        if not ids:
            self._notify(NotificationLevel.INFO, "Nothing to confirm", "No high-confidence records on this page")
            return BatchResult()

        self.loading[_BATCH] = True
        try:
            result = await self.batch.run_ids(
                ids, ReviewAction.CONFIRM, make_confirm_resolver(self._records_by_id())
            )
        finally:
            self.loading[_BATCH] = False

        self._report_batch(ReviewAction.CONFIRM, result)
        return result

    def _report_batch(self, action: ReviewAction, result: BatchResult) -> None:
        verb = action.value
        if result.all_succeeded:
            self._notify(
                NotificationLevel.SUCCESS,
                f"Batch {verb} complete",
                f"{len(result.succeeded)} records processed",
                count=len(result.succeeded),
            )
            return
        sample = ", ".join(result.failed_ids[:5])
        self._notify(
            NotificationLevel.WARNING,
            f"Batch {verb} partially failed",
            f"{len(result.succeeded)} succeeded, {len(result.failed)} failed ({sample})",
            count=len(result.failed),
        )

    # =========================
    # Notifications
    # =========================

    def _notify(
        self,
        level: NotificationLevel,
        title: str,
        message: str,
        record_id: str | None = None,
        count: int | None = None,
    ) -> None:
        notification = Notification(
            level=level, title=title, message=message, record_id=record_id, count=count
        )
        self.notifications.append(notification)
        log = self.logger.warning if level == NotificationLevel.ERROR else self.logger.info
        log(f"{title}: {message}")
        if self._on_notify is not None:
            self._on_notify(notification)
