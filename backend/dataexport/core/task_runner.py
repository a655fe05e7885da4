"""
Shared job runner.

One process-wide runner, built from settings on first use and shut down at exit.
"""
import atexit
import threading
from typing import Optional

from dataexport.adapters.tasks_inline import InlineTaskRunner
from dataexport.core.config import settings
from dataexport.ports.tasks import TaskRunner

_task_runner: Optional[TaskRunner] = None
_task_runner_lock = threading.Lock()


def get_task_runner() -> TaskRunner:
    global _task_runner
    with _task_runner_lock:
        if _task_runner is None:
            _task_runner = InlineTaskRunner(
                mode=settings.RUNNER, max_workers=settings.RUNNER_MAX_WORKERS
            )
            atexit.register(shutdown_task_runner)
        return _task_runner


def shutdown_task_runner() -> None:
    """Shut down the shared runner, waiting for running exports."""
    global _task_runner
    if _task_runner is not None:
        _task_runner.shutdown()
        _task_runner = None
