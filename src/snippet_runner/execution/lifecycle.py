from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .artifacts import empty_directory
from .engine import ExecutionEngine
from .processes import ProcessRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ShutdownSummary:
    """What one `shutdown()` call actually removed.

    Example:
        ```python
        summary = ShutdownSummary(terminated_processes=1, removed_artifacts=3)
        ```
    """

    terminated_processes: int
    removed_artifacts: int


class LifecycleManager:
    """Force-terminates stragglers and empties the scratch directory.

    Example:
        ```python
        manager = LifecycleManager(registry, Path("/tmp/snippet-runner"), engines)
        manager.shutdown()
        ```
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        scratch_dir: Path,
        engines: Sequence[ExecutionEngine] = (),
    ) -> None:
        """Bind the manager to the shared registry, scratch directory and engines.

        Example:
            ```python
            manager = LifecycleManager(ProcessRegistry(), Path("/tmp/snippet-runner"))
            ```
        """
        self._registry = registry
        self._scratch_dir = scratch_dir
        self._engines = list(engines)
        self._lock = threading.Lock()

    def shutdown(self) -> ShutdownSummary:
        """Terminate tracked processes, run engine cleanup and empty scratch space.

        Safe to call repeatedly; later calls find nothing left to do.

        Example:
            ```python
            summary = manager.shutdown()
            ```
        """
        with self._lock:
            terminated = self._registry.terminate_all()
            for engine in self._engines:
                try:
                    engine.cleanup()
                except Exception:
                    logger.exception("Cleanup failure: %s engine cleanup", engine.mode.value)
            removed = empty_directory(self._scratch_dir)
        if terminated or removed:
            logger.info(
                "Shutdown terminated %d process(es) and removed %d artifact(s)",
                terminated,
                removed,
            )
        return ShutdownSummary(terminated_processes=terminated, removed_artifacts=removed)
