"""
Inline / thread pool job runner.

Modes:
- inline: run in the calling thread before submit() returns (tests, CLI)
- thread: run on a bounded ThreadPoolExecutor
"""
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional

from dataexport.ports.tasks import TaskRunner, TaskStatus

logger = logging.getLogger(__name__)

FINISHED_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


class InlineTaskRunner(TaskRunner):
    def __init__(self, mode: str = "inline", max_workers: int = 4, max_finished: int = 256):
        if mode not in ("inline", "thread"):
            raise ValueError(f"Unknown runner mode '{mode}'")

        self.mode = mode
        self.executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="export")
            if mode == "thread"
            else None
        )
        self.max_finished = max_finished
        self._tasks: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def submit(
        self,
        func: Callable,
        *args,
        task_id: Optional[str] = None,
        **kwargs,
    ) -> str:
        task_id = task_id or str(uuid.uuid4())
        with self._lock:
            self._prune()
            self._tasks[task_id] = {
                "status": TaskStatus.PENDING,
                "result": None,
                "error": None,
                "future": None,
            }

        def _wrapper():
            self._set(task_id, status=TaskStatus.RUNNING)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(f"Task {task_id} raised: {e}", exc_info=True)
                self._set(task_id, status=TaskStatus.FAILED, error=str(e))
                if self.mode == "thread":
                    raise
                return None
            self._set(task_id, status=TaskStatus.COMPLETED, result=result)
            return result

        if self.mode == "inline":
            _wrapper()
        else:
            future = self.executor.submit(_wrapper)
            self._set(task_id, future=future)

        return task_id

    def status(self, task_id: str) -> TaskStatus:
        return self._get(task_id)["status"]

    def result(self, task_id: str, timeout: Optional[float] = None) -> Any:
        """Outcome of a task; a finished task is forgotten once collected."""
        task = self._get(task_id)
        future: Optional[Future] = task["future"]

        try:
            if future is not None:
                try:
                    return future.result(timeout=timeout)
                except FutureTimeoutError as e:
                    raise TimeoutError(f"Task {task_id} still running") from e
                except Exception as e:
                    raise RuntimeError(f"Task failed: {e}") from e

            if task["status"] == TaskStatus.FAILED:
                raise RuntimeError(f"Task failed: {task['error']}")
            return task["result"]
        finally:
            self._forget(task_id)

    def shutdown(self) -> None:
        if self.executor:
            self.executor.shutdown(wait=True)

    def _get(self, task_id: str) -> Dict[str, Any]:
        with self._lock:
            if task_id not in self._tasks:
                raise ValueError(f"Task {task_id} not found")
            return dict(self._tasks[task_id])

    def _set(self, task_id: str, **values) -> None:
        with self._lock:
            self._tasks[task_id].update(values)

    def _forget(self, task_id: str) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is not None and task["status"] in FINISHED_STATUSES:
                del self._tasks[task_id]

    def _prune(self) -> None:
        """Drop the oldest finished tasks beyond max_finished; caller holds the lock."""
        finished = [
            task_id for task_id, task in self._tasks.items()
            if task["status"] in FINISHED_STATUSES
        ]
        for task_id in finished[:max(0, len(finished) - self.max_finished)]:
            del self._tasks[task_id]
