from __future__ import annotations

import threading
from pathlib import Path

import pytest

from snippet_runner import RunnerSettings
from snippet_runner.execution.types import BackendMode, ExecutionOutcome, ExecutionRequest


class FakeEngine:
    """Scriptable engine used to drive the orchestrator without real isolation."""

    def __init__(
        self,
        mode: BackendMode = BackendMode.SANDBOX,
        *,
        available: bool = True,
        reason: str | None = None,
        outcome: ExecutionOutcome | None = None,
    ) -> None:
        self.mode = mode
        self.available = available
        self.reason = reason
        self.outcome = outcome or ExecutionOutcome("ok\n", "", 0, False)
        self.calls: list[ExecutionRequest] = []
        self.cleanups = 0
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def probe(self) -> tuple[bool, str | None]:
        return self.available, self.reason

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        with self._lock:
            self.calls.append(request)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.started.set()
            if self.gate is not None:
                self.gate.wait(timeout=5)
            return self.outcome
        finally:
            with self._lock:
                self.active -= 1

    def cleanup(self) -> None:
        self.cleanups += 1


@pytest.fixture
def scratch_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def settings(scratch_dir: Path) -> RunnerSettings:
    return RunnerSettings(
        timeout_seconds=1.0,
        timeout_grace_seconds=1.0,
        boot_grace_seconds=0.1,
        probe_timeout_seconds=5.0,
        scratch_dir=scratch_dir,
        prefetch_image=False,
    )
