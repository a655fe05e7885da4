"""
Job runner interface.

Export runs are decoupled from the request that started them: the caller gets a
job id back and the run proceeds on whatever runner is configured.
"""
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Optional


class TaskStatus(str, Enum):
    """Runner-level state of a submitted job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskRunner(ABC):
    """Submits export runs for execution."""

    @abstractmethod
    def submit(
        self,
        func: Callable,
        *args,
        task_id: Optional[str] = None,
        **kwargs,
    ) -> str:
        """
        Submit a callable for execution.

        Args:
            func: Function to execute
            *args: Positional arguments
            task_id: Id to track the task under (generated if not provided)
            **kwargs: Keyword arguments

        Returns:
            Task id
        """

    @abstractmethod
    def status(self, task_id: str) -> TaskStatus:
        """Get the runner-level status of a task."""

    @abstractmethod
    def result(self, task_id: str, timeout: Optional[float] = None) -> Any:
        """
        Block until the task finishes and return its result.

        Raises:
            TimeoutError: If timeout exceeded
            RuntimeError: If the task raised
        """

    def shutdown(self) -> None:
        """Release runner resources."""
