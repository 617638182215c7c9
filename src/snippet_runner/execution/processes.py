from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import threading
from typing import Any, Iterator, Sequence

logger = logging.getLogger(__name__)


def terminate_process(process: subprocess.Popen[Any], grace_seconds: float = 2.0) -> bool:
    """Kill a still-running process and its whole process group.

    Returns True when a live process was signalled. Failures are logged as
    cleanup failures and never raised.

    Example:
        ```python
        terminate_process(proc)
        ```
    """
    if process.poll() is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:  # pragma: no cover - non-POSIX
            process.kill()
    except ProcessLookupError:
        pass
    except OSError as exc:
        logger.warning("Cleanup failure: could not kill pid %s: %s", process.pid, exc)
        return False
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Cleanup failure: pid %s did not exit after SIGKILL", process.pid)
    return True


class ProcessRegistry:
    """Process-wide map of execution id to live subprocess handle.

    Exists so shutdown can force-terminate stragglers.

    Example:
        ```python
        registry = ProcessRegistry()
        ```
    """

    def __init__(self) -> None:
        """Initialize an empty thread-safe registry.

        Example:
            ```python
            registry = ProcessRegistry()
            ```
        """
        self._lock = threading.Lock()
        self._processes: dict[str, subprocess.Popen[Any]] = {}

    def register(self, execution_id: str, process: subprocess.Popen[Any]) -> None:
        """Track a freshly spawned process.

        Example:
            ```python
            registry.register(request.execution_id, proc)
            ```
        """
        with self._lock:
            self._processes[execution_id] = process

    def unregister(self, execution_id: str) -> None:
        """Forget a process; unknown ids are ignored.

        Example:
            ```python
            registry.unregister(request.execution_id)
            ```
        """
        with self._lock:
            self._processes.pop(execution_id, None)

    def snapshot(self) -> dict[str, subprocess.Popen[Any]]:
        """Return a copy of the tracked processes.

        Example:
            ```python
            live = registry.snapshot()
            ```
        """
        with self._lock:
            return dict(self._processes)

    def terminate_all(self) -> int:
        """Terminate every tracked process, clear the registry and return the kill count.

        Example:
            ```python
            killed = registry.terminate_all()
            ```
        """
        with self._lock:
            processes = list(self._processes.items())
            self._processes.clear()
        killed = 0
        for execution_id, process in processes:
            try:
                if terminate_process(process):
                    killed += 1
                    logger.info("Terminated straggler process for %s", execution_id)
            except Exception:
                logger.exception("Cleanup failure: terminating process for %s", execution_id)
        return killed

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._processes

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)


@contextlib.contextmanager
def tracked_process(
    registry: ProcessRegistry,
    execution_id: str,
    argv: Sequence[str],
    **popen_kwargs: Any,
) -> Iterator[subprocess.Popen[Any]]:
    """Spawn a process in its own session and guarantee kill + deregistration.

    The handle is registered before control returns to the caller, so a crash
    while the caller is still waiting leaves it reachable by shutdown.

    Example:
        ```python
        with tracked_process(registry, "abc", ["sleep", "1"]) as proc:
            proc.wait()
        ```
    """
    process = subprocess.Popen(list(argv), start_new_session=True, **popen_kwargs)
    registry.register(execution_id, process)
    try:
        yield process
    finally:
        try:
            terminate_process(process)
        finally:
            registry.unregister(execution_id)
