from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from pathlib import Path

from ..settings import RunnerSettings
from .artifacts import artifact_path, remove_artifact, write_artifact
from .config import (
    CONTAINER_CODE_PATH,
    CONTAINER_PIDS_LIMIT,
    CONTAINER_USER,
    MANAGED_LABEL,
    MANAGED_LABELS_BASE,
    TIMEOUT_EXIT_CODE,
    container_name,
)
from .processes import ProcessRegistry, tracked_process
from .types import BackendMode, ExecutionOutcome, ExecutionRequest

logger = logging.getLogger(__name__)

# Exit statuses the docker CLI itself uses for daemon and runtime errors.
_DOCKER_CLI_ERRORS = {125: "Docker daemon error", 126: "Container command cannot be invoked", 127: "Container command not found"}


def docker_is_available(docker_binary: str, timeout_seconds: float) -> tuple[bool, str | None]:
    """Check Docker CLI presence and daemon reachability in bounded time.

    Example:
        ```python
        ok, reason = docker_is_available("docker", timeout_seconds=5)
        ```
    """
    if shutil.which(docker_binary) is None:
        return False, "Docker CLI was not found. Install Docker and ensure it is on PATH."
    try:
        probe = subprocess.run(
            [docker_binary, "info"],
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return False, f"Docker daemon did not answer within {timeout_seconds:g}s."
    except OSError as exc:
        return False, f"Docker CLI could not be started: {exc}"
    if probe.returncode != 0:
        return False, "Docker is installed but the daemon is not running or not accessible."
    return True, None


class DockerEngine:
    """Execute each snippet in an ephemeral, locked-down Docker container.

    Example:
        ```python
        engine = DockerEngine(RunnerSettings(container_image="python:3.12-slim"), ProcessRegistry())
        ```
    """

    mode = BackendMode.CONTAINER

    def __init__(self, settings: RunnerSettings, registry: ProcessRegistry) -> None:
        """Initialize the engine from runner settings and the shared registry.

        Example:
            ```python
            engine = DockerEngine(RunnerSettings(), ProcessRegistry())
            ```
        """
        self._docker_binary = settings.docker_binary
        self._image = settings.container_image
        self._memory_limit_mb = settings.memory_limit_mb
        self._cpus = settings.container_cpus
        self._timeout = float(settings.timeout_seconds)
        self._timeout_grace = float(settings.timeout_grace_seconds)
        self._probe_timeout = float(settings.probe_timeout_seconds)
        self._prefetch = settings.prefetch_image
        self._scratch_dir = settings.scratch_dir
        self._registry = registry
        self._lock = threading.Lock()
        self._active_containers: set[str] = set()

    def probe(self) -> tuple[bool, str | None]:
        """Check Docker availability and best-effort prefetch the base image.

        Example:
            ```python
            ok, reason = engine.probe()
            ```
        """
        available, reason = docker_is_available(self._docker_binary, self._probe_timeout)
        if available and self._prefetch and not self.ensure_image_available():
            logger.warning("Could not prefetch %s; first execution will pull it", self._image)
        return available, reason

    def ensure_image_available(self) -> bool:
        """Ensure the base image exists locally, pulling when needed.

        Example:
            ```python
            ok = engine.ensure_image_available()
            ```
        """
        try:
            if self._run_docker(["image", "inspect", self._image], timeout=self._probe_timeout).returncode == 0:
                return True
            # Pulls can legitimately take longer than a daemon round-trip.
            pulled = self._run_docker(["pull", self._image], timeout=max(60.0, self._probe_timeout))
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Image prefetch failed: %s", exc)
            return False
        return pulled.returncode == 0

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Run one snippet in a fresh container and always remove it afterwards.

        Example:
            ```python
            outcome = engine.execute(ExecutionRequest.from_source("print(1)"))
            ```
        """
        execution_id = request.execution_id
        name = container_name(execution_id)
        code_path = artifact_path(self._scratch_dir, execution_id, "py")
        hard_deadline = self._timeout + self._timeout_grace
        try:
            write_artifact(code_path, request.source)
            with self._lock:
                self._active_containers.add(name)
            with tracked_process(
                self._registry,
                execution_id,
                self.run_command(name, code_path),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            ) as process:
                try:
                    stdout, stderr = process.communicate(timeout=hard_deadline)
                except subprocess.TimeoutExpired:
                    logger.info("Container %s missed its hard deadline of %.1fs", name, hard_deadline)
                    return ExecutionOutcome(
                        "",
                        "",
                        TIMEOUT_EXIT_CODE,
                        True,
                        f"Execution timed out after {self._timeout:g}s",
                    )
            return self._classify(process.returncode, stdout, stderr)
        except OSError as exc:
            logger.warning("Container %s could not be started: %s", name, exc)
            return ExecutionOutcome("", "", 125, False, f"Container launch failed: {exc}")
        finally:
            self._remove_container(name)
            remove_artifact(code_path)

    def run_command(self, name: str, code_path: Path) -> list[str]:
        """Build the `docker run` command with every resource ceiling applied.

        Example:
            ```python
            argv = engine.run_command("snippet-runner-abc", Path("/tmp/abc.py"))
            ```
        """
        memory = f"{int(self._memory_limit_mb)}m"
        cmd = [
            self._docker_binary,
            "run",
            "--rm",
            "--name",
            name,
            "--network",
            "none",
            "--memory",
            memory,
            "--memory-swap",
            memory,
            "--cpus",
            f"{self._cpus:g}",
            "--pids-limit",
            str(CONTAINER_PIDS_LIMIT),
            "--read-only",
            "--tmpfs",
            "/tmp:rw,noexec,nosuid,size=16m",
            "--cap-drop",
            "ALL",
            "--security-opt",
            "no-new-privileges",
            "--user",
            CONTAINER_USER,
            "--volume",
            f"{code_path}:{CONTAINER_CODE_PATH}:ro",
        ]
        for key, value in MANAGED_LABELS_BASE.items():
            cmd.extend(["--label", f"{key}={value}"])
        cmd.extend(
            [
                self._image,
                "timeout",
                "-k",
                "1",
                f"{self._timeout:g}",
                "python",
                CONTAINER_CODE_PATH,
            ]
        )
        return cmd

    def cleanup(self) -> None:
        """Force-remove containers whose executions never reached teardown.

        Example:
            ```python
            engine.cleanup()
            ```
        """
        with self._lock:
            names = list(self._active_containers)
        for name in names:
            self._remove_container(name)

    def remove_stale_containers(self) -> int:
        """Force-remove every container carrying the managed label.

        Example:
            ```python
            removed = engine.remove_stale_containers()
            ```
        """
        listed = self._run_docker(
            ["ps", "-aq", "--filter", f"label={MANAGED_LABEL}=true"],
            timeout=self._probe_timeout,
        )
        if listed.returncode != 0:
            raise RuntimeError(f"Failed to list containers: {listed.stderr.strip()}")
        removed = 0
        for container_id in listed.stdout.split():
            if self._run_docker(["rm", "-f", container_id], timeout=self._probe_timeout).returncode == 0:
                removed += 1
        return removed

    def _classify(self, returncode: int, stdout: str, stderr: str) -> ExecutionOutcome:
        """Map a `docker run` exit status onto an outcome.

        Example:
            ```python
            outcome = engine._classify(124, "", "")
            ```
        """
        if returncode == TIMEOUT_EXIT_CODE:
            return ExecutionOutcome(
                stdout,
                stderr,
                returncode,
                True,
                f"Execution timed out after {self._timeout:g}s",
            )
        if returncode in _DOCKER_CLI_ERRORS:
            detail = stderr.strip() or _DOCKER_CLI_ERRORS[returncode]
            return ExecutionOutcome(stdout, stderr, returncode, False, detail)
        return ExecutionOutcome(stdout, stderr, returncode, False)

    def _remove_container(self, name: str) -> None:
        """Force-remove one container, logging (never raising) failures.

        Example:
            ```python
            engine._remove_container("snippet-runner-abc")
            ```
        """
        try:
            removed = self._run_docker(["rm", "-f", name], timeout=self._probe_timeout)
            if removed.returncode != 0 and "No such container" not in removed.stderr:
                logger.warning("Cleanup failure: docker rm -f %s: %s", name, removed.stderr.strip())
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Cleanup failure: docker rm -f %s: %s", name, exc)
        finally:
            with self._lock:
                self._active_containers.discard(name)

    def _run_docker(self, args: list[str], *, timeout: float) -> subprocess.CompletedProcess[str]:
        """Run a Docker CLI command with a bounded wait.

        Example:
            ```python
            completed = engine._run_docker(["ps"], timeout=5)
            ```
        """
        return subprocess.run(
            [self._docker_binary, *args],
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
