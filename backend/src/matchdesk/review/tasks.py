"""Matching task progress monitor.

Polls the task list while any task is still pending or processing, and
silently asks the backend to re-derive the status of tasks whose items are
all processed but which never left ``processing``.
"""

from collections.abc import Callable
from typing import Any

from ..config import Settings, get_settings
from ..logging import get_context_logger
from ..models import MatchingTask
from ..services.backend import ReviewBackend
from .polling import ChangeEvent, PollLoop

logger = get_context_logger(__name__)


class TaskMonitor:
    """Keeps a fresh view of matching tasks and reconciles stuck ones."""

    def __init__(
        self,
        backend: ReviewBackend,
        settings: Settings | None = None,
        on_change: Callable[[ChangeEvent[MatchingTask]], Any] | None = None,
    ):
        self._backend = backend
        self._settings = settings or get_settings()
        self._on_change = on_change
        self._tasks: list[MatchingTask] = []
        self._poll: PollLoop[MatchingTask] = PollLoop(
            backend.fetch_tasks,
            interval=self._settings.poll_interval,
            on_change=self._apply,
            reconcile=self._reconcile,
            reconcile_delay=self._settings.stuck_reconcile_delay,
            is_active=lambda task: task.is_in_progress,
            name="tasks",
        )

    @property
    def tasks(self) -> list[MatchingTask]:
        return list(self._tasks)

    @property
    def in_progress(self) -> list[MatchingTask]:
        return [task for task in self._tasks if task.is_in_progress]

    @property
    def poll_loop(self) -> PollLoop[MatchingTask]:
        return self._poll

    def get(self, task_id: str) -> MatchingTask | None:
        return next((task for task in self._tasks if task.id == task_id), None)

    def start(self) -> None:
        self._poll.start()

    def stop(self) -> None:
        self._poll.stop()

    async def close(self) -> None:
        await self._poll.close()

    async def refresh(self, user_triggered: bool = True) -> list[MatchingTask]:
        """Fetch the task list now.

        Raises:
            TransientFetchError: If ``user_triggered`` and the fetch fails
        """
        await self._poll.tick(user_triggered=user_triggered)
        return self.tasks

    async def check_status(self, task_id: str) -> MatchingTask | None:
        """Ask the backend to re-derive one task's status, then refresh.

        Raises:
            ActionRejected: If the backend refuses the request
            TransientFetchError: If the backend is unreachable
        """
        task = await self._backend.reconcile_task_status(task_id)
        await self.refresh(user_triggered=False)
        return task

    def _apply(self, event: ChangeEvent[MatchingTask]) -> None:
        self._tasks = list(event.items)
        if self._on_change is not None:
            self._on_change(event)

    async def _reconcile(self, task_id: str) -> None:
        await self._backend.reconcile_task_status(task_id)
        logger.info(f"Reconciled status of task {task_id}")
        await self._poll.tick()
