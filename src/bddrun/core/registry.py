from __future__ import annotations

import threading

from bddrun.core.broadcaster import ProgressBroadcaster
from bddrun.core.logging import get_logger
from bddrun.core.process import RunningProcess, TerminationReason

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Execution cancelled by user"


class ExecutionRegistry:
    """In-flight runner processes keyed by execution id.

    An entry is removed exactly once: `remove` pops atomically, so of natural
    completion, the timeout watchdog and an explicit cancel, only the first caller
    gets the handle back and the others see None.
    """

    def __init__(self, broadcaster: ProgressBroadcaster | None = None) -> None:
        self._broadcaster = broadcaster
        self._handles: dict[str, RunningProcess] = {}
        self._lock = threading.Lock()

    def register(self, execution_id: str, handle: RunningProcess) -> None:
        with self._lock:
            if execution_id in self._handles:
                raise ValueError(f"Execution already registered: {execution_id}")
            self._handles[execution_id] = handle

    def lookup(self, execution_id: str) -> RunningProcess | None:
        with self._lock:
            return self._handles.get(execution_id)

    def remove(self, execution_id: str) -> RunningProcess | None:
        with self._lock:
            return self._handles.pop(execution_id, None)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def cancel(self, execution_id: str) -> bool:
        """Kill the run's process. False when the id is unknown, finished or timing out."""
        handle = self.remove(execution_id)
        if handle is None:
            return False
        if not handle.terminate(TerminationReason.CANCELLED):
            # The watchdog got there first, or the runner had already exited.
            return False
        logger.info("execution_cancelled", execution_id=execution_id, pid=handle.pid)
        if self._broadcaster is not None:
            self._broadcaster.publish(execution_id, CANCELLED_MESSAGE, -1)
        return True
