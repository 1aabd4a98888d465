"""Cross-page selection of records.

A selection is either an explicit set of ids picked page by page, or a
global selection meaning "every record matching the current filter". The
global form is materialized with the lightweight id enumeration endpoint,
never by loading full records.
"""

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from ..errors import StaleResponseDiscarded, TransientFetchError
from ..logging import get_context_logger
from ..models import QuerySpec
from .tokens import GenerationTracker

logger = get_context_logger(__name__)

IdEnumerator = Callable[[QuerySpec], Awaitable[list[str]]]

_IDS = "ids"


class SelectionScope(str, Enum):
    PAGE = "page"
    GLOBAL = "global"


@dataclass(frozen=True)
class SelectionSet:
    """By-value view of a selection."""

    explicit_ids: frozenset[str]
    scope: SelectionScope

    def __len__(self) -> int:
        return len(self.explicit_ids)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self.explicit_ids


class SelectionManager:
    """Tracks selected record ids across pages and filter changes.

    Under global scope, ids the reviewer toggles out are remembered as
    exclusions so they stay deselected when the enumeration is re-run
    after a filter change.
    """

    def __init__(
        self,
        enumerate_ids: IdEnumerator,
        tracker: GenerationTracker | None = None,
    ):
        """Initialize the manager.

        Args:
            enumerate_ids: Async callable returning every id matching a query
            tracker: Generation tracker shared with the owning session
        """
        self._enumerate_ids = enumerate_ids
        self._tracker = tracker or GenerationTracker()
        # dict keeps insertion order for deterministic batch dispatch
        self._ids: dict[str, None] = {}
        self._excluded: set[str] = set()
        self._scope = SelectionScope.PAGE
        self._query: QuerySpec | None = None

    @property
    def scope(self) -> SelectionScope:
        return self._scope

    def is_selected(self, record_id: str) -> bool:
        return record_id in self._ids

    def count(self) -> int:
        return len(self._ids)

    def ids(self) -> list[str]:
        return list(self._ids)

    def snapshot(self) -> SelectionSet:
        return SelectionSet(frozenset(self._ids), self._scope)

    def is_page_selected(self, page_ids: Iterable[str]) -> bool:
        page_ids = list(page_ids)
        return bool(page_ids) and all(record_id in self._ids for record_id in page_ids)

    def select_page(self, page_ids: Iterable[str]) -> bool:
        """Page checkbox: select every id on the page.

        When the page is already fully selected the whole selection is
        cleared, ids on other pages included.

        Returns:
            True if the page ended up selected
        """
        page_ids = list(page_ids)
        if self.is_page_selected(page_ids):
            self.clear()
            return False
        for record_id in page_ids:
            self._add(record_id)
        return bool(page_ids)

    def select_ids(self, record_ids: Iterable[str]) -> None:
        """Add ``record_ids`` to the explicit selection."""
        for record_id in record_ids:
            self._add(record_id)

    def toggle(self, record_id: str) -> bool:
        """Flip one id. Returns the new selection state of that id."""
        if record_id in self._ids:
            self._remove(record_id)
            return False
        self._add(record_id)
        return True

    def clear(self) -> None:
        """Drop the selection and any in-flight global enumeration."""
        self._ids.clear()
        self._excluded.clear()
        self._scope = SelectionScope.PAGE
        self._query = None
        self._tracker.invalidate(_IDS)

    def discard(self, record_ids: Iterable[str]) -> None:
        """Drop ``record_ids`` from the selection, leaving other ids in place.

        Discarded ids are not remembered as exclusions. Once nothing is
        left the selection falls back to page scope.
        """
        for record_id in record_ids:
            self._ids.pop(record_id, None)
        if not self._ids:
            self._excluded.clear()
            self._scope = SelectionScope.PAGE
            self._query = None

    def replace(self, record_ids: Iterable[str]) -> None:
        """Make ``record_ids`` the whole explicit selection."""
        self.clear()
        self.select_ids(record_ids)

    def consume(self) -> list[str]:
        """Return the selected ids and clear the selection."""
        ids = self.ids()
        self.clear()
        return ids

    async def select_all_filtered(self, query: QuerySpec) -> int:
        """Select every record matching ``query``, ignoring pagination.

        A response superseded by a newer enumeration or a ``clear`` is
        discarded.

        Returns:
            Number of selected ids after the call

        Raises:
            TransientFetchError: If the enumeration fails
        """
        token = self._tracker.issue(_IDS)
        ids = await self._enumerate_ids(query.model_copy(update={"page": 1}))
        try:
            self._tracker.check(_IDS, token)
        except StaleResponseDiscarded:
            return self.count()

        self._ids = dict.fromkeys(ids)
        self._excluded.clear()
        self._scope = SelectionScope.GLOBAL
        self._query = query
        logger.info(f"Selected all {len(self._ids)} records matching filter")
        return self.count()

    async def on_query_changed(self, query: QuerySpec) -> None:
        """Keep a global selection in step with a new filter.

        Re-runs the enumeration for the new filter. If that fails the
        selection is invalidated rather than left pointing at the old
        filter's records.
        """
        if self._scope != SelectionScope.GLOBAL:
            # A select-all still in flight belongs to the old filter
            self._tracker.invalidate(_IDS)
            return
        if self._query is not None and self._query.filter_key() == query.filter_key():
            return

        excluded = set(self._excluded)
        token = self._tracker.issue(_IDS)
        try:
            ids = await self._enumerate_ids(query.model_copy(update={"page": 1}))
        except TransientFetchError as e:
            if self._tracker.is_current(_IDS, token):
                logger.warning(f"Invalidating global selection, re-enumeration failed: {e}")
                self.clear()
            return
        try:
            self._tracker.check(_IDS, token)
        except StaleResponseDiscarded:
            return

        self._ids = dict.fromkeys(i for i in ids if i not in excluded)
        self._excluded = excluded
        self._query = query
        logger.debug(f"Re-enumerated global selection: {len(self._ids)} records")

    def _add(self, record_id: str) -> None:
        self._ids[record_id] = None
        self._excluded.discard(record_id)

    def _remove(self, record_id: str) -> None:
        self._ids.pop(record_id, None)
        if self._scope == SelectionScope.GLOBAL:
            self._excluded.add(record_id)
