"""CLI commands for reviewing matching records."""

import asyncio
import json
import sys
from collections.abc import Callable

import click

from ..models import (
    ConfidenceFilter,
    NotificationLevel,
    QuerySpec,
    Record,
    ReviewAction,
    SortKey,
    SourceFilter,
    StatusFilter,
)
from ..review.confidence import confidence_tier
from ..review.session import ReviewSession
from ..services.backend import HttpReviewBackend


def query_options(func: Callable) -> Callable:
    """Shared filter and sort options for record commands."""
    options = [
        click.option("--task", "-t", "task_id", help="Matching task id"),
        click.option("--search", "-q", default="", help="Free-text search"),
        click.option(
            "--status",
            "-s",
            default=StatusFilter.ALL.value,
            type=click.Choice([s.value for s in StatusFilter]),
            help="Status filter",
        ),
        click.option(
            "--confidence",
            "-c",
            default=ConfidenceFilter.ALL.value,
            type=click.Choice([c.value for c in ConfidenceFilter]),
            help="Confidence tier filter",
        ),
        click.option(
            "--source",
            default=SourceFilter.ALL.value,
            type=click.Choice([s.value for s in SourceFilter]),
            help="Match source filter",
        ),
        click.option(
            "--sort",
            "sort_key",
            default=SortKey.DEFAULT.value,
            type=click.Choice([s.value for s in SortKey]),
            help="Sort order",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_query(
    task_id: str | None,
    search: str,
    status: str,
    confidence: str,
    source: str,
    sort_key: str,
    page: int = 1,
    page_size: int = 20,
) -> QuerySpec:
    return QuerySpec(
        task_id=task_id,
        search_term=search,
        status_filter=StatusFilter(status),
        confidence_filter=ConfidenceFilter(confidence),
        source_filter=SourceFilter(source),
        sort_key=SortKey(sort_key),
        page=page,
        page_size=page_size,
    )


def format_record(record: Record) -> list[str]:
    match = record.selected_match.product if record.selected_match else None
    lines = [
        f"  {record.id}",
        f"    Line: {record.original.name}",
        f"    Status: {record.status.value}",
        f"    Confidence: {record.confidence:.1f} ({confidence_tier(record.confidence)})",
    ]
    if match is not None:
        source = "memory" if record.is_memory_match else "algorithm"
        lines.append(f"    Match: {match.name or match.id} [{source}]")
    return lines


def _fail(session: ReviewSession) -> None:
    for notification in session.notifications:
        if notification.level == NotificationLevel.ERROR:
            click.echo(f"Error: {notification.message}", err=True)
            sys.exit(1)


@click.group("records")
def records_group() -> None:
    """Browse and review matching records."""
    pass


@records_group.command("list")
@query_options
@click.option("--page", "-p", default=1, type=int, help="Page number")
@click.option("--page-size", default=20, type=int, help="Records per page")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_records(
    task_id: str | None,
    search: str,
    status: str,
    confidence: str,
    source: str,
    sort_key: str,
    page: int,
    page_size: int,
    as_json: bool,
) -> None:
    """List one page of filtered, sorted records."""
    query = build_query(task_id, search, status, confidence, source, sort_key, page, page_size)

    async def _list() -> None:
        async with HttpReviewBackend() as backend:
            session = ReviewSession(backend, query=query)
            view = await session.open()
            await session.close()
            _fail(session)

        if as_json:
            data = {
                "items": [r.model_dump(mode="json") for r in view.page.items],
                "total": view.page.total_count,
                "page": view.page.page,
                "total_pages": view.page.total_pages,
                "counts": view.counts.model_dump(),
            }
            click.echo(json.dumps(data, indent=2))
            return

        counts = view.counts
        click.echo(
            f"Records ({view.page.total_count} matching, "
            f"page {view.page.page}/{max(view.page.total_pages, 1)}):"
        )
        click.echo(
            f"  pending={counts.pending} reviewing={counts.reviewing} "
            f"confirmed={counts.confirmed} rejected={counts.rejected} "
            f"exception={counts.exception} memory={counts.memory_matches}"
        )
        click.echo("")
        for record in view.page.items:
            for line in format_record(record):
                click.echo(line)
            click.echo("")

    asyncio.run(_list())


@records_group.command("select-all")
@query_options
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def select_all(
    task_id: str | None,
    search: str,
    status: str,
    confidence: str,
    source: str,
    sort_key: str,
    as_json: bool,
) -> None:
    """Enumerate every record id matching the filter."""
    query = build_query(task_id, search, status, confidence, source, sort_key)

    async def _select() -> None:
        async with HttpReviewBackend() as backend:
            session = ReviewSession(backend, query=query)
            count = await session.select_all_filtered()
            ids = session.selection.ids()
            await session.close()
            _fail(session)

        if as_json:
            click.echo(json.dumps({"ids": ids, "total": count}, indent=2))
        else:
            click.echo(f"{count} records match")
            for record_id in ids:
                click.echo(f"  {record_id}")

    asyncio.run(_select())


@records_group.command("review")
@click.argument("record_id")
@click.argument("action", type=click.Choice([a.value for a in ReviewAction]))
@click.option("--task", "-t", "task_id", help="Matching task id")
@click.option("--product", "product_id", help="Product to confirm (default: best match)")
@click.option("--note", help="Reviewer note")
def review_record(
    record_id: str,
    action: str,
    task_id: str | None,
    product_id: str | None,
    note: str | None,
) -> None:
    """Apply one review action and show the next open record."""

    async def _review() -> None:
        async with HttpReviewBackend() as backend:
            session = ReviewSession(backend, task_id=task_id)
            await session.open()
            _fail(session)
            next_record = await session.review(record_id, ReviewAction(action), product_id, note)
            await session.close()

        for notification in session.notifications:
            click.echo(f"{notification.title}: {notification.message}")
        if next_record is not None:
            click.echo("Next record:")
            for line in format_record(next_record):
                click.echo(line)

    asyncio.run(_review())


@records_group.command("batch")
@click.argument("action", type=click.Choice([a.value for a in ReviewAction]))
@click.argument("record_ids", nargs=-1)
@query_options
@click.option("--all-filtered", is_flag=True, help="Act on every record matching the filter")
@click.option("--smart", is_flag=True, help="Confirm high-confidence open records on the first page")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def batch_records(
    action: str,
    record_ids: tuple[str, ...],
    task_id: str | None,
    search: str,
    status: str,
    confidence: str,
    source: str,
    sort_key: str,
    all_filtered: bool,
    smart: bool,
    yes: bool,
    as_json: bool,
) -> None:
    """Apply ACTION to RECORD_IDS or to every record matching the filter."""
    if not record_ids and not all_filtered and not smart:
        click.echo("Error: pass record ids, --all-filtered or --smart", err=True)
        sys.exit(1)

    review_action = ReviewAction(action)
    if smart and review_action != ReviewAction.CONFIRM:
        click.echo("Error: --smart only applies to confirm", err=True)
        sys.exit(1)

    query = build_query(task_id, search, status, confidence, source, sort_key)

    async def _batch() -> None:
        async with HttpReviewBackend() as backend:
            session = ReviewSession(backend, query=query)
            await session.open()
            _fail(session)

            if smart:
                result = await session.smart_confirm()
            else:
                if all_filtered:
                    await session.select_all_filtered()
                    _fail(session)
                session.selection.select_ids(record_ids)

                count = session.selection.count()
                if not yes and not click.confirm(f"{action} {count} records?"):
                    await session.close()
                    return
                result = await session.run_batch(review_action)
            await session.close()

        if as_json:
            click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
            return

        click.echo(f"Submitted: {result.submitted}")
        click.echo(f"  Succeeded: {len(result.succeeded)}")
        click.echo(f"  Failed: {len(result.failed)}")
        for failure in result.failed:
            click.echo(f"    {failure.id}: {failure.reason}")
        if not result.all_succeeded:
            sys.exit(2)

    asyncio.run(_batch())
