import threading
import time
from pathlib import Path

import pytest

from conftest import FakeEngine
from snippet_runner import Orchestrator, RunnerSettings
from snippet_runner.errors import NoBackendAvailableError
from snippet_runner.execution.sandbox_engine import SandboxEngine
from snippet_runner.execution.types import BackendMode, ErrorKind, ExecutionOutcome, ExecutionRequest
from snippet_runner.orchestrator import CAPACITY_EXCEEDED_MESSAGE, normalize_outcome


def test_selects_strongest_available_engine(settings: RunnerSettings) -> None:
    engines = [
        FakeEngine(BackendMode.MICROVM, available=False, reason="no kvm"),
        FakeEngine(BackendMode.CONTAINER),
        FakeEngine(BackendMode.SANDBOX),
    ]
    orchestrator = Orchestrator(settings, engines=engines)
    assert orchestrator.mode is BackendMode.CONTAINER
    assert orchestrator.capabilities.microvm is False


def test_no_engine_available(settings: RunnerSettings) -> None:
    with pytest.raises(NoBackendAvailableError):
        Orchestrator(settings, engines=[FakeEngine(available=False)])


def test_success_is_cached_and_backend_not_reinvoked(settings: RunnerSettings) -> None:
    engine = FakeEngine(outcome=ExecutionOutcome("42\n", "", 0, False))
    orchestrator = Orchestrator(settings, engines=[engine])

    first = orchestrator.execute("print(6 * 7)")
    second = orchestrator.execute("print(6 * 7)")

    assert first.success is True
    assert first.output == "42"
    assert first.error == ""
    assert first.from_cache is False
    assert second.from_cache is True
    assert second.output == first.output
    assert second.execution_id == first.execution_id
    assert len(engine.calls) == 1


def test_execution_id_is_seeded_by_digest(settings: RunnerSettings) -> None:
    engine = FakeEngine()
    orchestrator = Orchestrator(settings, engines=[engine])
    result = orchestrator.execute("print(1)")
    request = engine.calls[0]
    assert result.execution_id == request.execution_id
    assert request.execution_id.startswith(request.digest[:16] + "-")


def test_errors_are_not_cached(settings: RunnerSettings) -> None:
    engine = FakeEngine(outcome=ExecutionOutcome("", "Traceback ...\nZeroDivisionError", 1, False))
    orchestrator = Orchestrator(settings, engines=[engine])

    first = orchestrator.execute("1 / 0")
    second = orchestrator.execute("1 / 0")

    assert first.success is False
    assert first.error_kind is ErrorKind.BACKEND_FAILURE
    assert "ZeroDivisionError" in first.error
    assert second.from_cache is False
    assert len(engine.calls) == 2
    assert len(orchestrator.cache) == 0


def test_success_with_warnings_is_not_cached(settings: RunnerSettings) -> None:
    engine = FakeEngine(outcome=ExecutionOutcome("1\n", "careful\n", 0, False))
    orchestrator = Orchestrator(settings, engines=[engine])
    result = orchestrator.execute("print(1)")
    assert result.success is True
    assert result.error == "careful"
    assert len(orchestrator.cache) == 0


def test_timeout_is_classified(settings: RunnerSettings) -> None:
    engine = FakeEngine(outcome=ExecutionOutcome("partial\n", "", 124, True, "Execution timed out after 1s"))
    orchestrator = Orchestrator(settings, engines=[engine])
    result = orchestrator.execute("while True: pass")
    assert result.success is False
    assert result.timed_out is True
    assert result.error_kind is ErrorKind.TIMEOUT
    assert result.output == "partial"


def test_engine_exception_becomes_backend_failure(settings: RunnerSettings) -> None:
    class _Crashing(FakeEngine):
        def execute(self, request):  # type: ignore[override]
            raise RuntimeError("hypervisor exploded")

    orchestrator = Orchestrator(settings, engines=[_Crashing()])
    result = orchestrator.execute("print(1)")
    assert result.success is False
    assert result.error_kind is ErrorKind.BACKEND_FAILURE
    assert "hypervisor exploded" in result.error
    assert orchestrator.gate.in_use == 0


def test_capacity_is_never_exceeded(scratch_dir: Path) -> None:
    settings = RunnerSettings(max_concurrent=2, scratch_dir=scratch_dir)
    engine = FakeEngine()
    engine.gate = threading.Event()
    orchestrator = Orchestrator(settings, engines=[engine])

    results = []
    workers = [
        threading.Thread(target=lambda i=i: results.append(orchestrator.execute(f"print({i})")))
        for i in range(settings.max_concurrent)
    ]
    for worker in workers:
        worker.start()
    for _ in range(200):
        if orchestrator.gate.in_use == settings.max_concurrent:
            break
        time.sleep(0.01)
    assert orchestrator.gate.in_use == settings.max_concurrent

    rejected = orchestrator.execute("print('one too many')")
    engine.gate.set()
    for worker in workers:
        worker.join(timeout=5)

    assert rejected.success is False
    assert rejected.error_kind is ErrorKind.CAPACITY_EXCEEDED
    assert rejected.error == CAPACITY_EXCEEDED_MESSAGE
    assert all(result.success for result in results)
    assert engine.max_active <= settings.max_concurrent
    assert orchestrator.gate.in_use == 0


def test_non_string_input_is_rejected(settings: RunnerSettings) -> None:
    orchestrator = Orchestrator(settings, engines=[FakeEngine()])
    with pytest.raises(TypeError):
        orchestrator.execute(b"print(1)")  # type: ignore[arg-type]


def test_context_manager_runs_shutdown(settings: RunnerSettings) -> None:
    engine = FakeEngine()
    (settings.scratch_dir / "leftover.py").write_text("print(1)", encoding="utf-8")
    with Orchestrator(settings, engines=[engine]) as orchestrator:
        orchestrator.execute("print(1)")
    assert engine.cleanups == 1
    assert list(settings.scratch_dir.iterdir()) == []


def test_to_dict_wire_shape(settings: RunnerSettings) -> None:
    orchestrator = Orchestrator(settings, engines=[FakeEngine(outcome=ExecutionOutcome("hi\n", "", 0, False))])
    payload = orchestrator.execute("print('hi')").to_dict()
    assert payload["success"] is True
    assert payload["output"] == "hi"
    assert payload["mode"] == "sandbox"
    assert payload["fromCache"] is False
    assert payload["errorKind"] is None
    assert set(payload) == {"success", "output", "error", "mode", "fromCache", "executionId", "errorKind"}


def test_normalize_nonzero_exit_without_stderr() -> None:
    request = ExecutionRequest.from_source("raise SystemExit(3)")
    result = normalize_outcome(request, ExecutionOutcome("", "", 3, False), BackendMode.CONTAINER)
    assert result.success is False
    assert result.error == "Process exited with code 3"
    assert result.mode is BackendMode.CONTAINER


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_slot_is_held_until_lingering_worker_exits(scratch_dir: Path) -> None:
    settings = RunnerSettings(max_concurrent=1, scratch_dir=scratch_dir, prefetch_image=False)
    release = threading.Event()
    worker = threading.Thread(target=release.wait, args=(5,), daemon=True)
    worker.start()
    engine = FakeEngine(outcome=ExecutionOutcome("", "", 124, True, "Execution timed out after 1s", lingering=worker))
    orchestrator = Orchestrator(settings, engines=[engine])

    first = orchestrator.execute("while True:\n    pass")
    assert first.timed_out is True
    assert orchestrator.gate.in_use == 1

    second = orchestrator.execute("print('next')")
    assert second.error_kind is ErrorKind.CAPACITY_EXCEEDED
    assert len(engine.calls) == 1

    release.set()
    assert _wait_until(lambda: orchestrator.gate.in_use == 0)
    engine.outcome = ExecutionOutcome("next\n", "", 0, False)
    assert orchestrator.execute("print('next')").success is True


def test_interrupt_swallowing_snippet_is_stopped(scratch_dir: Path) -> None:
    settings = RunnerSettings(
        max_concurrent=1,
        timeout_seconds=0.3,
        timeout_grace_seconds=0.2,
        scratch_dir=scratch_dir,
        prefetch_image=False,
    )
    orchestrator = Orchestrator(settings, engines=[SandboxEngine(settings)])
    source = (
        "import time\n"
        "end = time.monotonic() + 1.0\n"
        "while time.monotonic() < end:\n"
        "    try:\n"
        "        while time.monotonic() < end:\n"
        "            pass\n"
        "    except BaseException:\n"
        "        pass\n"
    )

    started = time.monotonic()
    result = orchestrator.execute(source)
    assert result.timed_out is True
    assert time.monotonic() - started < 1.0

    assert _wait_until(lambda: orchestrator.gate.in_use == 0)
    assert _wait_until(lambda: not any(thread.name.startswith("snippet-") for thread in threading.enumerate()))
