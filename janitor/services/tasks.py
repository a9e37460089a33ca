from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from janitor.core.logging import get_logger, task_context

logger = get_logger("janitor.tasks")


class TaskAlreadyRunning(RuntimeError):
    def __init__(self, requested: str, active: str) -> None:
        self.requested = requested
        self.active = active
        super().__init__(f"cannot start {requested}: {active} is already running")


@dataclass
class RunningTask:
    name: str
    task_id: str
    cancel: threading.Event
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    thread: Optional[threading.Thread] = None


class TaskRegistry:
    """Owns the single background task slot shared by purge runs and scans.

    ``start`` is a compare-and-set: the slot is claimed under the lock, so of
    two callers racing to start a task exactly one wins and the other gets
    ``TaskAlreadyRunning``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Optional[RunningTask] = None
        self._counter = itertools.count(1)

    def start(
        self,
        name: str,
        target: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> RunningTask:
        with self._lock:
            if self._active is not None:
                raise TaskAlreadyRunning(name, self._active.name)
            task = RunningTask(
                name=name,
                task_id=f"{name}-{next(self._counter)}",
                cancel=threading.Event(),
            )
            task.thread = threading.Thread(
                target=self._run,
                args=(task, target, args, kwargs),
                name=task.task_id,
                daemon=True,
            )
            self._active = task
        task.thread.start()
        return task

    def _run(
        self,
        task: RunningTask,
        target: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        with task_context(task.task_id):
            try:
                logger.info("task.start", extra={"event": "task.start", "task": task.name})
                target(task.cancel, *args, **kwargs)
                logger.info("task.complete", extra={"event": "task.complete", "task": task.name})
            except Exception as exc:
                logger.exception(
                    "task.failed",
                    extra={"event": "task.failed", "task": task.name, "error_message": str(exc)},
                )
            finally:
                with self._lock:
                    if self._active is task:
                        self._active = None

    def active(self) -> Optional[RunningTask]:
        with self._lock:
            return self._active

    def is_running(self, name: Optional[str] = None) -> bool:
        task = self.active()
        if task is None:
            return False
        return name is None or task.name == name

    def cancel(self, name: Optional[str] = None) -> bool:
        task = self.active()
        if task is None or (name is not None and task.name != name):
            return False
        task.cancel.set()
        logger.info(
            "task.cancel_requested",
            extra={"event": "task.cancel_requested", "task": task.name},
        )
        return True

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the active task to finish. Returns False on timeout."""
        task = self.active()
        if task is None or task.thread is None:
            return True
        task.thread.join(timeout)
        return not task.thread.is_alive()
