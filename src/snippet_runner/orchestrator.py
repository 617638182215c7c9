from __future__ import annotations

import logging
import threading
from dataclasses import replace
from types import TracebackType
from typing import Sequence

from .execution.cache import ExecutionCache
from .execution.capabilities import CapabilitySet, probe_capabilities, select_engine
from .execution.docker_engine import DockerEngine
from .execution.engine import ExecutionEngine
from .execution.gate import ConcurrencyGate, Slot
from .execution.lifecycle import LifecycleManager, ShutdownSummary
from .execution.microvm_engine import MicroVMEngine
from .execution.processes import ProcessRegistry
from .execution.sandbox_engine import SandboxEngine
from .execution.types import (
    BackendMode,
    ErrorKind,
    ExecutionOutcome,
    ExecutionRequest,
    ExecutionResult,
)
from .settings import RunnerSettings

logger = logging.getLogger(__name__)

CAPACITY_EXCEEDED_MESSAGE = "Maximum number of concurrent executions reached. Please try again later."


def build_engines(settings: RunnerSettings, registry: ProcessRegistry) -> list[ExecutionEngine]:
    """Construct every built-in engine, strongest first.

    Example:
        ```python
        engines = build_engines(RunnerSettings(), ProcessRegistry())
        ```
    """
    return [
        MicroVMEngine(settings, registry),
        DockerEngine(settings, registry),
        SandboxEngine(settings),
    ]


def normalize_outcome(
    request: ExecutionRequest,
    outcome: ExecutionOutcome,
    mode: BackendMode,
) -> ExecutionResult:
    """Convert a raw engine outcome into the common result record.

    Example:
        ```python
        result = normalize_outcome(request, outcome, BackendMode.SANDBOX)
        ```
    """
    output = outcome.stdout.strip()
    if outcome.timed_out:
        return ExecutionResult(
            success=False,
            output=output,
            error=outcome.error or "Execution timed out",
            mode=mode,
            execution_id=request.execution_id,
            error_kind=ErrorKind.TIMEOUT,
        )
    if outcome.error or outcome.returncode != 0:
        error = outcome.error or outcome.stderr.strip() or f"Process exited with code {outcome.returncode}"
        return ExecutionResult(
            success=False,
            output=output,
            error=error,
            mode=mode,
            execution_id=request.execution_id,
            error_kind=ErrorKind.BACKEND_FAILURE,
        )
    return ExecutionResult(
        success=True,
        output=output,
        error=outcome.stderr.strip(),
        mode=mode,
        execution_id=request.execution_id,
    )


class Orchestrator:
    """Public facade: hash, cache lookup, gate, backend execution, cache store.

    Backend selection happens once, at construction.

    Example:
        ```python
        with Orchestrator(RunnerSettings(max_concurrent=3)) as orchestrator:
            result = orchestrator.execute("print(6 * 7)")
        ```
    """

    def __init__(
        self,
        settings: RunnerSettings | None = None,
        *,
        engines: Sequence[ExecutionEngine] | None = None,
        registry: ProcessRegistry | None = None,
    ) -> None:
        """Probe capabilities, select a backend and set up shared state.

        Example:
            ```python
            orchestrator = Orchestrator(engines=[SandboxEngine(RunnerSettings())])
            ```
        """
        self._settings = settings or RunnerSettings()
        self._settings.scratch_dir.mkdir(parents=True, exist_ok=True)
        self._registry = registry or ProcessRegistry()
        self._engines = list(engines) if engines is not None else build_engines(self._settings, self._registry)
        self._capabilities = probe_capabilities(self._engines)
        self._engine = select_engine(self._capabilities, self._engines)
        self._cache = ExecutionCache(self._settings.cache_capacity)
        self._gate = ConcurrencyGate(self._settings.max_concurrent)
        self._lifecycle = LifecycleManager(self._registry, self._settings.scratch_dir, self._engines)

    @property
    def mode(self) -> BackendMode:
        """Return the backend mode chosen for this orchestrator's lifetime.

        Example:
            ```python
            print(orchestrator.mode.value)
            ```
        """
        return self._engine.mode

    @property
    def capabilities(self) -> CapabilitySet:
        """Return the capability probe results.

        Example:
            ```python
            caps = orchestrator.capabilities
            ```
        """
        return self._capabilities

    @property
    def settings(self) -> RunnerSettings:
        """Return the settings the orchestrator was built with.

        Example:
            ```python
            timeout = orchestrator.settings.timeout_seconds
            ```
        """
        return self._settings

    @property
    def cache(self) -> ExecutionCache:
        """Return the result cache.

        Example:
            ```python
            size = len(orchestrator.cache)
            ```
        """
        return self._cache

    @property
    def gate(self) -> ConcurrencyGate:
        """Return the concurrency gate.

        Example:
            ```python
            busy = orchestrator.gate.in_use
            ```
        """
        return self._gate

    @property
    def registry(self) -> ProcessRegistry:
        """Return the process registry shared by the subprocess-backed engines.

        Example:
            ```python
            live = len(orchestrator.registry)
            ```
        """
        return self._registry

    def execute(self, source: str) -> ExecutionResult:
        """Execute source text through cache, gate and the selected backend.

        Never raises for string input; every fault becomes a result.

        Example:
            ```python
            result = orchestrator.execute("print('hello')")
            ```
        """
        if not isinstance(source, str):
            raise TypeError("source must be a string")
        request = ExecutionRequest.from_source(source)

        cached = self._cache.lookup(request.digest)
        if cached is not None:
            logger.debug("Cache hit for %s", request.digest[:16])
            return replace(cached, from_cache=True)

        slot = self._gate.acquire()
        if slot is None:
            logger.info("Rejected %s: %d slots in use", request.execution_id, self._gate.max_slots)
            return ExecutionResult(
                success=False,
                output="",
                error=CAPACITY_EXCEEDED_MESSAGE,
                mode=self.mode,
                execution_id=request.execution_id,
                error_kind=ErrorKind.CAPACITY_EXCEEDED,
            )
        lingering: threading.Thread | None = None
        try:
            logger.info("Executing %s with %s backend", request.execution_id, self.mode.value)
            result, lingering = self._run_engine(request)
            if self._cache.store(request.digest, result):
                logger.debug("Cached result for %s", request.digest[:16])
        finally:
            self._release_when_done(slot, lingering, request.execution_id)
        return result

    def shutdown(self) -> ShutdownSummary:
        """Terminate stragglers and empty the scratch directory; idempotent.

        Example:
            ```python
            orchestrator.shutdown()
            ```
        """
        return self._lifecycle.shutdown()

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()

    def _run_engine(self, request: ExecutionRequest) -> tuple[ExecutionResult, threading.Thread | None]:
        """Call the selected engine, converting escaped exceptions into failures.

        Also returns any worker thread the engine could not stop in time.

        Example:
            ```python
            result, lingering = orchestrator._run_engine(ExecutionRequest.from_source("print(1)"))
            ```
        """
        try:
            outcome = self._engine.execute(request)
        except Exception as exc:
            logger.exception("%s backend raised while executing %s", self.mode.value, request.execution_id)
            outcome = ExecutionOutcome("", "", 1, False, f"{type(exc).__name__}: {exc}")
        return normalize_outcome(request, outcome, self.mode), outcome.lingering

    def _release_when_done(self, slot: Slot, lingering: threading.Thread | None, execution_id: str) -> None:
        """Release `slot` now, or once a lingering worker thread has exited.

        Example:
            ```python
            orchestrator._release_when_done(slot, None, "abc")
            ```
        """
        if lingering is None or not lingering.is_alive():
            self._gate.release(slot)
            return
        logger.warning("Holding slot for %s until its worker exits", execution_id)

        def _wait_and_release() -> None:
            lingering.join()
            self._gate.release(slot)
            logger.info("Released slot held by %s", execution_id)

        threading.Thread(target=_wait_and_release, name=f"release-{execution_id}", daemon=True).start()
