import logging
import subprocess
import sys
from pathlib import Path

import pytest

from conftest import FakeEngine
from snippet_runner.execution.artifacts import artifact_path, residual_artifacts, write_artifact
from snippet_runner.execution.lifecycle import LifecycleManager
from snippet_runner.execution.processes import ProcessRegistry


def test_shutdown_terminates_and_empties_scratch(scratch_dir: Path) -> None:
    registry = ProcessRegistry()
    process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"], start_new_session=True)
    registry.register("abc", process)
    write_artifact(artifact_path(scratch_dir, "abc", "py"), "print(1)")
    write_artifact(artifact_path(scratch_dir, "abc", "json"), "{}")
    engine = FakeEngine()

    manager = LifecycleManager(registry, scratch_dir, [engine])
    summary = manager.shutdown()

    assert summary.terminated_processes == 1
    assert summary.removed_artifacts == 2
    assert process.poll() is not None
    assert len(registry) == 0
    assert residual_artifacts(scratch_dir, "abc") == []
    assert scratch_dir.is_dir()
    assert engine.cleanups == 1


def test_shutdown_is_idempotent(scratch_dir: Path) -> None:
    manager = LifecycleManager(ProcessRegistry(), scratch_dir)
    (scratch_dir / "stale.log").write_text("x", encoding="utf-8")
    first = manager.shutdown()
    second = manager.shutdown()
    assert first.removed_artifacts == 1
    assert second.terminated_processes == 0
    assert second.removed_artifacts == 0


def test_engine_cleanup_failure_is_logged(scratch_dir: Path, caplog: pytest.LogCaptureFixture) -> None:
    class _BadCleanup(FakeEngine):
        def cleanup(self) -> None:
            raise RuntimeError("docker gone")

    caplog.set_level(logging.ERROR)
    summary = LifecycleManager(ProcessRegistry(), scratch_dir, [_BadCleanup()]).shutdown()
    assert summary.removed_artifacts == 0
    assert "Cleanup failure" in caplog.text


def test_missing_scratch_dir_is_tolerated(tmp_path: Path) -> None:
    summary = LifecycleManager(ProcessRegistry(), tmp_path / "never-created").shutdown()
    assert summary.removed_artifacts == 0
