"""Fire-and-forget hand-off of post-commit side effects to Celery."""

import asyncio
import logging
from typing import Iterable, Optional

from citypulse.services.base import SideEffect

logger = logging.getLogger(__name__)


def _default_tasks() -> dict:
    from citypulse.tasks import celery_tasks

    return {
        "schedule_assignment_event": celery_tasks.schedule_assignment_event,
        "send_assignment_emails": celery_tasks.send_assignment_emails,
        "send_status_update_email": celery_tasks.send_status_update_email,
        "send_issue_reported_email": celery_tasks.send_issue_reported_email,
    }


class OutboundQueue:
    """
    Enqueues side effects without blocking the caller.

    Publishing runs on the default executor; a broker that is down only
    produces a log line. The committed mutation is never affected.
    """

    def __init__(self, tasks: Optional[dict] = None):
        self._tasks = tasks

    @property
    def tasks(self) -> dict:
        if self._tasks is None:
            self._tasks = _default_tasks()
        return self._tasks

    def _publish(self, effect: SideEffect) -> None:
        task = self.tasks.get(effect.task)
        if task is None:
            logger.error(f"Unknown side effect task: {effect.task}")
            return
        task.apply_async(kwargs=effect.kwargs)
        logger.info(f"Queued {effect.task}", extra={"task_kwargs": effect.kwargs})

    def _log_failure(self, effect: SideEffect, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning(
                f"Failed to queue {effect.task}: {exc}",
                extra={"task_kwargs": effect.kwargs},
            )

    def enqueue(self, effects: Iterable[SideEffect]) -> None:
        loop = asyncio.get_running_loop()
        for effect in effects:
            future = loop.run_in_executor(None, self._publish, effect)
            future.add_done_callback(lambda f, effect=effect: self._log_failure(effect, f))
