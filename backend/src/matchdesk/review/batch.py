"""Batch operation orchestrator.

Takes a set of record ids and an action, resolves each id's action target,
dispatches in chunks the backend accepts, and folds per-chunk outcomes into
one BatchResult where every submitted id is either succeeded or failed.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from typing import Any

from ..errors import ActionRejected, ResolutionError, TransientFetchError
from ..logging import get_context_logger, log_batch_result
from ..models import BatchResult, Record, ReviewAction
from .selection import SelectionManager

logger = get_context_logger(__name__)

Resolver = Callable[[str], str]
BatchDispatch = Callable[
    [list[str], ReviewAction, list[str | None]], Awaitable[BatchResult]
]

# Actions that need a concrete product id per record
TARGETED_ACTIONS = frozenset({ReviewAction.CONFIRM})


def resolve_confirm_target(record: Record) -> str:
    """Product to confirm: the selected match first, then the top candidate.

    Raises:
        ResolutionError: If the record has neither
    """
    if record.selected_match is not None and record.selected_match.product is not None:
        return record.selected_match.product.id
    if record.candidates:
        return record.candidates[0].product.id
    raise ResolutionError(record.id, f"no confirmable product for '{record.original.name}'")


def make_confirm_resolver(records: Mapping[str, Record]) -> Resolver:
    """Build a resolver over a snapshot of records keyed by id."""

    def resolve(record_id: str) -> str:
        record = records.get(record_id)
        if record is None:
            raise ResolutionError(record_id, "record is not loaded")
        return resolve_confirm_target(record)

    return resolve


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BatchOrchestrator:
    """Runs one action over many records with partial-failure isolation."""

    def __init__(
        self,
        dispatch: BatchDispatch,
        *,
        chunk_size: int = 100,
        chunk_pause: float = 0.3,
        on_complete: Callable[[], Awaitable[Any]] | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            dispatch: Async batch endpoint call returning per-id outcomes
            chunk_size: Maximum ids per dispatch call
            chunk_pause: Seconds to wait between chunks
            on_complete: Refresh triggered once after every run
        """
        self._dispatch = dispatch
        self._chunk_size = chunk_size
        self._chunk_pause = chunk_pause
        self._on_complete = on_complete

    async def run(
        self,
        selection: SelectionManager,
        action: ReviewAction,
        resolver: Resolver | None = None,
    ) -> BatchResult:
        """Apply ``action`` to the selection, then drop the submitted ids.

        The ids are read once when the run starts. Only those are removed
        afterwards, fully or partially processed, so ids the reviewer
        selects while the run is in flight stay selected.
        """
        submitted = selection.ids()
        result = await self.run_ids(submitted, action, resolver)
        selection.discard(submitted)
        return result

    async def run_ids(
        self,
        record_ids: Iterable[str],
        action: ReviewAction,
        resolver: Resolver | None = None,
    ) -> BatchResult:
        """Apply ``action`` to explicit ids.

        Args:
            record_ids: Ids to act on; duplicates are submitted once
            action: The review action
            resolver: Maps an id to its action target; required for confirm

        Returns:
            BatchResult covering every distinct submitted id exactly once
        """
        if action in TARGETED_ACTIONS and resolver is None:
            raise ValueError(f"Action {action.value} requires a target resolver")

        started = time.monotonic()
        ids = list(dict.fromkeys(record_ids))
        result = BatchResult()

        dispatchable: list[tuple[str, str | None]] = []
        for record_id in ids:
            if resolver is None:
                dispatchable.append((record_id, None))
                continue
            try:
                target = resolver(record_id)
            except ResolutionError as e:
                result.fail(record_id, e.reason)
                continue
            if not target:
                result.fail(record_id, "no action target resolved")
                continue
            dispatchable.append((record_id, target))

        for number, chunk in enumerate(chunked(dispatchable, self._chunk_size)):
            if number and self._chunk_pause:
                await asyncio.sleep(self._chunk_pause)
            chunk_ids = [record_id for record_id, _ in chunk]
            payloads = [target for _, target in chunk]
            try:
                reported = await self._dispatch(chunk_ids, action, payloads)
            except (ActionRejected, TransientFetchError) as e:
                logger.warning(
                    f"Batch {action.value} chunk {number + 1} rejected "
                    f"({len(chunk_ids)} records): {e}"
                )
                for record_id in chunk_ids:
                    result.fail(record_id, str(e))
                continue
            result.extend(self._account(chunk_ids, reported))

        log_batch_result(
            action.value,
            len(ids),
            len(result.succeeded),
            len(result.failed),
            time.monotonic() - started,
        )

        if self._on_complete is not None:
            await self._on_complete()
        return result

    @staticmethod
    def _account(chunk_ids: list[str], reported: BatchResult) -> BatchResult:
        """Map a backend report onto exactly the ids that were sent."""
        failed = {f.id: f.reason for f in reported.failed}
        succeeded = set(reported.succeeded)

        unknown = (failed.keys() | succeeded) - set(chunk_ids)
        if unknown:
            logger.warning(f"Backend reported {len(unknown)} ids that were not submitted")

        accounted = BatchResult()
        for record_id in chunk_ids:
            if record_id in failed:
                accounted.fail(record_id, failed[record_id])
            elif record_id in succeeded:
                accounted.succeeded.append(record_id)
            else:
                accounted.fail(record_id, "no result reported")
        return accounted
