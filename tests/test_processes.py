import subprocess
import sys

import pytest

from snippet_runner.execution.processes import ProcessRegistry, terminate_process, tracked_process

SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]


def test_tracked_process_kills_and_deregisters_on_error() -> None:
    registry = ProcessRegistry()
    with pytest.raises(RuntimeError):
        with tracked_process(registry, "exec-1", SLEEPER) as process:
            assert "exec-1" in registry
            raise RuntimeError("caller crashed mid-wait")
    assert process.poll() is not None
    assert "exec-1" not in registry
    assert len(registry) == 0


def test_tracked_process_normal_exit() -> None:
    registry = ProcessRegistry()
    with tracked_process(
        registry,
        "exec-2",
        [sys.executable, "-c", "print('hi')"],
        stdout=subprocess.PIPE,
        text=True,
    ) as process:
        stdout, _ = process.communicate(timeout=10)
    assert stdout.strip() == "hi"
    assert process.returncode == 0
    assert len(registry) == 0


def test_terminate_all_kills_stragglers() -> None:
    registry = ProcessRegistry()
    process = subprocess.Popen(SLEEPER, start_new_session=True)
    registry.register("exec-3", process)
    assert registry.terminate_all() == 1
    assert process.poll() is not None
    assert len(registry) == 0
    assert registry.terminate_all() == 0


def test_terminate_process_ignores_finished_process() -> None:
    process = subprocess.Popen([sys.executable, "-c", "pass"], start_new_session=True)
    process.wait(timeout=10)
    assert terminate_process(process) is False


def test_unregister_unknown_id_is_noop() -> None:
    registry = ProcessRegistry()
    registry.unregister("missing")
    assert registry.snapshot() == {}
