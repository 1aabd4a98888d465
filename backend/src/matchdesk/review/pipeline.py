"""Filter, sort and paginate a record set for display.

Pure functions over an in-memory snapshot: the same records and query
always produce the same page.
"""

from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from ..models import (
    ConfidenceFilter,
    PageView,
    QuerySpec,
    Record,
    RecordStatus,
    SortKey,
    SourceFilter,
    StatusCounts,
    StatusFilter,
)
from .confidence import confidence_tier

_EPOCH = datetime.min


def matches_search(record: Record, term: str) -> bool:
    """Case-insensitive substring match over the searchable fields."""
    needle = term.strip().casefold()
    if not needle:
        return True
    return any(needle in field.casefold() for field in record.search_fields() if field)


def matches_status(record: Record, status_filter: StatusFilter) -> bool:
    if status_filter == StatusFilter.ALL:
        return True
    if status_filter == StatusFilter.UNCONFIRMED:
        return record.status != RecordStatus.CONFIRMED
    return record.status.value == status_filter.value


def matches_confidence(record: Record, confidence_filter: ConfidenceFilter) -> bool:
    if confidence_filter == ConfidenceFilter.ALL:
        return True
    return confidence_tier(record.confidence) == confidence_filter.value


def matches_source(record: Record, source_filter: SourceFilter) -> bool:
    if source_filter == SourceFilter.ALL:
        return True
    if source_filter == SourceFilter.MEMORY:
        return record.is_memory_match
    return not record.is_memory_match


def matches(record: Record, query: QuerySpec) -> bool:
    """All filters of ``query`` combined with AND."""
    return (
        matches_search(record, query.search_term)
        and matches_status(record, query.status_filter)
        and matches_confidence(record, query.confidence_filter)
        and matches_source(record, query.source_filter)
    )


def _updated(record: Record) -> datetime:
    stamp = record.updated_at or record.created_at
    if stamp is None:
        return _EPOCH
    # Naive stamps are taken as UTC; aware ones are converted first
    if stamp.tzinfo is not None:
        stamp = stamp.astimezone(timezone.utc)
    return stamp.replace(tzinfo=None)


# sort key -> (key function, descending)
_SORTS: dict[SortKey, tuple[Callable[[Record], object], bool]] = {
    SortKey.CONFIDENCE_DESC: (lambda r: r.confidence, True),
    SortKey.CONFIDENCE_ASC: (lambda r: r.confidence, False),
    SortKey.PRICE_DESC: (lambda r: r.original.price or 0.0, True),
    SortKey.PRICE_ASC: (lambda r: r.original.price or 0.0, False),
    SortKey.NAME_ASC: (lambda r: r.original.name.casefold(), False),
    SortKey.NAME_DESC: (lambda r: r.original.name.casefold(), True),
    SortKey.STATUS: (lambda r: r.status.value, False),
    SortKey.UPDATED_DESC: (_updated, True),
    SortKey.UPDATED_ASC: (_updated, False),
}


def sort_records(records: Iterable[Record], sort_key: SortKey) -> list[Record]:
    """Stable sort; ties keep their incoming relative order.

    ``sorted(reverse=True)`` preserves the order of equal elements, so
    descending keys are stable too.
    """
    ordered = list(records)
    if sort_key == SortKey.DEFAULT:
        return ordered
    key, descending = _SORTS[sort_key]
    return sorted(ordered, key=key, reverse=descending)


def filter_and_sort(records: Iterable[Record], query: QuerySpec) -> list[Record]:
    """The full filtered order, before pagination."""
    return sort_records((r for r in records if matches(r, query)), query.sort_key)


def paginate(ordered: list[Record], page: int, page_size: int) -> PageView:
    return PageView.create(ordered, page, page_size)


def apply(records: Iterable[Record], query: QuerySpec) -> PageView:
    """Produce the visible page for ``query``.

    Returns:
        PageView with the page items, total count and total pages
        (0 pages for an empty result)
    """
    return paginate(filter_and_sort(records, query), query.page, query.page_size)


def page_of(ordered: list[Record], record_id: str, page_size: int) -> int | None:
    """1-indexed page holding ``record_id`` in ``ordered``, or None."""
    for index, record in enumerate(ordered):
        if record.id == record_id:
            return index // page_size + 1
    return None


def clamp_page(page: int, total_pages: int) -> int:
    """Keep a page number inside ``[1, total_pages]`` (1 when empty)."""
    return max(1, min(page, total_pages))


def summarize(records: Iterable[Record]) -> StatusCounts:
    """Per-status totals over ``records``."""
    counts = StatusCounts()
    for record in records:
        counts.total += 1
        field = record.status.value
        setattr(counts, field, getattr(counts, field) + 1)
        if record.is_memory_match:
            counts.memory_matches += 1
    return counts
