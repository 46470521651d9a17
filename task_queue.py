#!/usr/bin/env python3
"""
Background Queue — bounded-concurrency post-response work.

Fact extraction and message embedding run after a reply has been sent. Each
job is tracked by id so callers (and tests) can wait for it with join() and
inspect its outcome; a failing job is logged and recorded, never raised into
the submitter.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

MAX_FINISHED = 200


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class QueuedTask:
    id: str
    name: str
    status: TaskStatus = TaskStatus.PENDING
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }


class BackgroundQueue:
    """Runs submitted coroutines with at most max_concurrent in flight."""

    def __init__(self, max_concurrent: int = 2):
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: dict[str, QueuedTask] = {}
        self._handles: dict[str, asyncio.Task] = {}

    def submit(self, name: str, func: Callable[..., Awaitable], *args, **kwargs) -> str:
        """Schedule func(*args, **kwargs) on the running loop. Returns the task id."""
        task_id = uuid.uuid4().hex[:12]
        record = QueuedTask(id=task_id, name=name)
        self._tasks[task_id] = record
        self._handles[task_id] = asyncio.get_running_loop().create_task(
            self._run(record, func, args, kwargs)
        )
        return task_id

    async def _run(self, record: QueuedTask, func, args, kwargs):
        try:
            async with self._semaphore:
                record.status = TaskStatus.RUNNING
                try:
                    record.result = await func(*args, **kwargs)
                    record.status = TaskStatus.COMPLETED
                except Exception as e:
                    record.status = TaskStatus.FAILED
                    record.error = str(e)
                    logger.exception(f"[Queue] Task {record.name} ({record.id}) failed")
        except asyncio.CancelledError:
            record.status = TaskStatus.CANCELLED
            logger.info(f"[Queue] Task {record.name} ({record.id}) cancelled")
            raise
        finally:
            record.finished_at = time.time()
            self._handles.pop(record.id, None)
            self._forget_finished()

    def _forget_finished(self):
        finished = [t for t in self._tasks.values() if t.finished_at is not None]
        if len(finished) <= MAX_FINISHED:
            return
        finished.sort(key=lambda t: t.finished_at)
        for t in finished[:len(finished) - MAX_FINISHED]:
            del self._tasks[t.id]

    async def join(self, timeout: Optional[float] = None):
        """Wait until every submitted task has finished. Timing out leaves the tasks running."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._handles:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise asyncio.TimeoutError(f"{len(self._handles)} background tasks still running")
            await asyncio.wait(list(self._handles.values()), timeout=remaining)

    def get(self, task_id: str) -> Optional[QueuedTask]:
        return self._tasks.get(task_id)

    def status(self) -> dict:
        counts = {s.value: 0 for s in TaskStatus}
        for t in self._tasks.values():
            counts[t.status.value] += 1
        return {"max_concurrent": self.max_concurrent, "in_flight": len(self._handles), **counts}

    async def close(self):
        for handle in list(self._handles.values()):
            handle.cancel()
        if self._handles:
            await asyncio.gather(*self._handles.values(), return_exceptions=True)
        self._handles.clear()
