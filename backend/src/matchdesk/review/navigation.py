"""Auto-advance: which record to present after one is resolved."""

from collections.abc import Sequence
from dataclasses import dataclass

from ..models import Record
from .pipeline import page_of


def open_subset(visible_ordered: Sequence[Record]) -> list[Record]:
    """Records still awaiting review, in the order the reviewer sees them."""
    return [record for record in visible_ordered if record.is_open]


def next_after_resolving(
    record_id: str,
    visible_ordered: Sequence[Record],
) -> Record | None:
    """Pick the record to present after ``record_id`` is resolved.

    Must be called with the view as it was *before* the record's status
    changed, so the resolved record can still be located.

    Args:
        record_id: The record that was just resolved
        visible_ordered: The current filtered and sorted record order

    Returns:
        The next pending or exception record, wrapping to the first one,
        or None when the queue is exhausted
    """
    subset = open_subset(visible_ordered)
    index = next((i for i, r in enumerate(subset) if r.id == record_id), None)

    if index is not None and index + 1 < len(subset):
        return subset[index + 1]

    if subset and subset[0].id != record_id:
        return subset[0]
    return None


@dataclass(frozen=True)
class AdvancePlan:
    """Where to go after an action: the record and the page it lives on."""

    record: Record
    page: int

    @property
    def record_id(self) -> str:
        return self.record.id


def plan_advance(
    record_id: str,
    visible_ordered: Sequence[Record],
    page_size: int,
) -> AdvancePlan | None:
    """Locate the next record and its true page in the full filtered order.

    The session applies the page switch and the new current record in one
    state update so the wrong page never shows in between.
    """
    target = next_after_resolving(record_id, visible_ordered)
    if target is None:
        return None
    page = page_of(list(visible_ordered), target.id, page_size) or 1
    return AdvancePlan(record=target, page=page)
