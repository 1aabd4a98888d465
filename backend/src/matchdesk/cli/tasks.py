"""CLI commands for matching task progress."""

import asyncio
import json
import sys

import click

from ..errors import MatchDeskError
from ..models import MatchingTask
from ..review.polling import ChangeEvent
from ..review.tasks import TaskMonitor
from ..services.backend import HttpReviewBackend


def format_task(task: MatchingTask) -> str:
    progress = task.progress
    line = (
        f"  {task.id}  {task.status.value:<10} "
        f"{progress.processed_items}/{progress.total_items} "
        f"({task.percent_complete:.0f}%)  {task.filename}"
    )
    if task.is_stuck:
        line += "  [stuck]"
    return line


@click.group("tasks")
def tasks_group() -> None:
    """Monitor matching tasks."""
    pass


@tasks_group.command("list")
@click.option("--active", is_flag=True, help="Only pending or processing tasks")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_tasks(active: bool, as_json: bool) -> None:
    """List matching tasks."""

    async def _list() -> None:
        async with HttpReviewBackend() as backend:
            monitor = TaskMonitor(backend)
            try:
                await monitor.refresh()
            except MatchDeskError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)
            finally:
                await monitor.close()

        tasks = monitor.in_progress if active else monitor.tasks
        if as_json:
            data = {
                "items": [t.model_dump(mode="json") for t in tasks],
                "total": len(tasks),
            }
            click.echo(json.dumps(data, indent=2))
            return

        click.echo(f"Tasks ({len(tasks)} total):")
        for task in tasks:
            click.echo(format_task(task))

    asyncio.run(_list())


@tasks_group.command("show")
@click.argument("task_id")
@click.option("--check", is_flag=True, help="Ask the backend to re-derive the status first")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show_task(task_id: str, check: bool, as_json: bool) -> None:
    """Show progress of one matching task."""

    async def _show() -> None:
        async with HttpReviewBackend() as backend:
            try:
                if check:
                    await backend.reconcile_task_status(task_id)
                task = await backend.task_progress(task_id)
            except MatchDeskError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)

        if as_json:
            click.echo(json.dumps(task.model_dump(mode="json"), indent=2))
            return

        click.echo(f"Task: {task.id}")
        click.echo(f"  File: {task.filename}")
        click.echo(f"  Status: {task.status.value}")
        click.echo(
            f"  Progress: {task.progress.processed_items}/{task.progress.total_items} "
            f"({task.percent_complete:.0f}%)"
        )
        if task.is_stuck:
            click.echo("  Stuck: all items processed, status not updated (use --check)")
        if task.error:
            click.echo(f"  Error: {task.error}")

    asyncio.run(_show())


@tasks_group.command("watch")
@click.option("--timeout", default=0.0, type=float, help="Give up after N seconds (0 = never)")
def watch_tasks(timeout: float) -> None:
    """Watch in-progress tasks until none remain.

    Tasks whose items are all processed but whose status never moved on
    are reconciled automatically.
    """

    def _changed(event: ChangeEvent[MatchingTask]) -> None:
        for task in event.items:
            if task.id in event.touched_ids:
                click.echo(format_task(task))

    async def _watch() -> None:
        async with HttpReviewBackend() as backend:
            monitor = TaskMonitor(backend, on_change=_changed)
            try:
                await monitor.refresh()
            except MatchDeskError as e:
                click.echo(f"Error: {e}", err=True)
                await monitor.close()
                sys.exit(1)

            monitor.start()
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout if timeout else None
            try:
                while monitor.in_progress:
                    if deadline is not None and loop.time() >= deadline:
                        click.echo("Timed out waiting for tasks", err=True)
                        break
                    await asyncio.sleep(0.5)
            finally:
                await monitor.close()

        if not monitor.in_progress:
            click.echo("No tasks in progress")

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        pass
