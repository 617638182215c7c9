"""Firecracker microVM backend.

Each execution boots a fresh single-use VM from the provisioned kernel and
read-only rootfs. The snippet travels as a second read-only block device; the
guest init (provisioned with the rootfs) reads ``snippet.len`` bytes from
``/dev/vdb``, runs them with ``python3`` and prints one line on the serial
console before powering off::

    SNIPPET-RESULT <execution_id> <exit_code> <base64 stdout> <base64 stderr>
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import shutil
import subprocess
import time
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import SandboxTimeoutError
from ..settings import RunnerSettings
from .artifacts import artifact_path, remove_artifacts, write_artifact
from .config import BLOCK_DEVICE_SECTOR_SIZE, GUEST_RESULT_MARKER, TIMEOUT_EXIT_CODE, firecracker_config
from .processes import ProcessRegistry, tracked_process
from .types import BackendMode, ExecutionOutcome, ExecutionRequest

logger = logging.getLogger(__name__)

_CONSOLE_TAIL_LINES = 20


class VMPhase(str, Enum):
    ALLOCATE_ID = "allocate_id"
    WRITE_CODE_ARTIFACT = "write_code_artifact"
    WRITE_VM_CONFIG = "write_vm_config"
    LAUNCH_VM_PROCESS = "launch_vm_process"
    AWAIT_BOOT = "await_boot"
    EXECUTE = "execute"
    COLLECT_OUTPUT = "collect_output"
    TEARDOWN = "teardown"


def parse_guest_result(console_text: str, execution_id: str) -> ExecutionOutcome | None:
    """Find and decode the guest result line for one execution.

    Returns None when the guest never reported.

    Example:
        ```python
        outcome = parse_guest_result(Path("/tmp/abc.log").read_text(), "abc")
        ```
    """
    prefix = f"{GUEST_RESULT_MARKER} {execution_id} "
    for raw_line in console_text.splitlines():
        line = raw_line.strip("\r")
        if not line.startswith(prefix):
            continue
        parts = line[len(prefix):].split(" ")
        parts += [""] * (3 - len(parts))
        try:
            exit_code = int(parts[0])
            stdout = base64.b64decode(parts[1]).decode("utf-8", errors="replace")
            stderr = base64.b64decode(parts[2]).decode("utf-8", errors="replace")
        except (ValueError, binascii.Error):
            return ExecutionOutcome("", "", 1, False, "MicroVM guest reported a malformed result line")
        return ExecutionOutcome(stdout, stderr, exit_code, False)
    return None


class MicroVMEngine:
    """Execute each snippet inside a fresh Firecracker microVM.

    Example:
        ```python
        engine = MicroVMEngine(RunnerSettings(), ProcessRegistry())
        ```
    """

    mode = BackendMode.MICROVM

    def __init__(
        self,
        settings: RunnerSettings,
        registry: ProcessRegistry,
        *,
        kvm_device: Path = Path("/dev/kvm"),
    ) -> None:
        """Initialize the engine from runner settings and the shared registry.

        Example:
            ```python
            engine = MicroVMEngine(settings, registry, kvm_device=Path("/dev/kvm"))
            ```
        """
        self._binary = settings.firecracker_binary
        self._kernel_image_path = settings.kernel_image_path
        self._rootfs_path = settings.rootfs_path
        self._memory_limit_mb = settings.memory_limit_mb
        self._timeout = float(settings.timeout_seconds)
        self._boot_grace = float(settings.boot_grace_seconds)
        self._probe_timeout = float(settings.probe_timeout_seconds)
        self._scratch_dir = settings.scratch_dir
        self._registry = registry
        self._kvm_device = kvm_device

    def probe(self) -> tuple[bool, str | None]:
        """Check the Firecracker binary, KVM access and provisioned images.

        Example:
            ```python
            ok, reason = engine.probe()
            ```
        """
        binary = shutil.which(self._binary)
        if binary is None:
            return False, f"Firecracker binary '{self._binary}' was not found on PATH"
        if not os.access(self._kvm_device, os.R_OK | os.W_OK):
            return False, f"{self._kvm_device} is missing or not accessible"
        for label, path in (("kernel image", self._kernel_image_path), ("rootfs", self._rootfs_path)):
            if not path.is_file():
                return False, f"MicroVM {label} not found at {path}"
        try:
            version = subprocess.run(
                [binary, "--version"],
                capture_output=True,
                text=True,
                check=False,
                timeout=self._probe_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            return False, f"Firecracker version check failed: {exc}"
        if version.returncode != 0:
            return False, f"Firecracker version check exited with {version.returncode}"
        return True, None

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Run one snippet through the single-use VM state machine.

        Example:
            ```python
            outcome = engine.execute(ExecutionRequest.from_source("print('hi')"))
            ```
        """
        execution_id = request.execution_id
        phase = self._enter(VMPhase.ALLOCATE_ID, execution_id)
        code_path = artifact_path(self._scratch_dir, execution_id, "py")
        config_path = artifact_path(self._scratch_dir, execution_id, "json")
        socket_path = artifact_path(self._scratch_dir, execution_id, "sock")
        console_path = artifact_path(self._scratch_dir, execution_id, "log")
        try:
            phase = self._enter(VMPhase.WRITE_CODE_ARTIFACT, execution_id)
            code_size = write_artifact(code_path, request.source, pad_to=BLOCK_DEVICE_SECTOR_SIZE)

            phase = self._enter(VMPhase.WRITE_VM_CONFIG, execution_id)
            config = firecracker_config(
                execution_id=execution_id,
                kernel_image_path=self._kernel_image_path,
                rootfs_path=self._rootfs_path,
                code_path=code_path,
                code_size=code_size,
                memory_limit_mb=self._memory_limit_mb,
            )
            write_artifact(config_path, json.dumps(config, indent=2))

            phase = self._enter(VMPhase.LAUNCH_VM_PROCESS, execution_id)
            with console_path.open("wb") as console, tracked_process(
                self._registry,
                execution_id,
                self._launch_command(socket_path, config_path),
                stdin=subprocess.DEVNULL,
                stdout=console,
                stderr=subprocess.STDOUT,
            ) as process:
                launched_at = time.monotonic()

                phase = self._enter(VMPhase.AWAIT_BOOT, execution_id)
                exited = self._wait(process, self._boot_grace)

                phase = self._enter(VMPhase.EXECUTE, execution_id)
                if not exited:
                    remaining = launched_at + self._boot_grace + self._timeout - time.monotonic()
                    if not self._wait(process, max(0.0, remaining)):
                        raise SandboxTimeoutError(self._timeout)
                vm_returncode = process.returncode

            phase = self._enter(VMPhase.COLLECT_OUTPUT, execution_id)
            return self._collect(execution_id, console_path, vm_returncode)
        except SandboxTimeoutError as exc:
            logger.info("MicroVM %s timed out; VM process killed", execution_id)
            return ExecutionOutcome("", "", TIMEOUT_EXIT_CODE, True, str(exc))
        except OSError as exc:
            logger.warning("MicroVM %s failed during %s: %s", execution_id, phase.value, exc)
            return ExecutionOutcome("", "", 125, False, f"MicroVM {phase.value} failed: {exc}")
        finally:
            self._enter(VMPhase.TEARDOWN, execution_id)
            self._registry.unregister(execution_id)
            remove_artifacts([code_path, config_path, socket_path, console_path])

    def cleanup(self) -> None:
        """Nothing beyond the process registry and scratch directory to release.

        Example:
            ```python
            engine.cleanup()
            ```
        """

    def _launch_command(self, socket_path: Path, config_path: Path) -> list[str]:
        """Build the Firecracker command line for one VM.

        Example:
            ```python
            argv = engine._launch_command(Path("/tmp/a.sock"), Path("/tmp/a.json"))
            ```
        """
        return [
            self._binary,
            "--api-sock",
            str(socket_path),
            "--config-file",
            str(config_path),
        ]

    def _collect(self, execution_id: str, console_path: Path, vm_returncode: int) -> ExecutionOutcome:
        """Turn the VM console capture into an outcome.

        Example:
            ```python
            outcome = engine._collect("abc", Path("/tmp/abc.log"), 0)
            ```
        """
        console_text = console_path.read_text(encoding="utf-8", errors="replace")
        outcome = parse_guest_result(console_text, execution_id)
        if outcome is not None:
            return outcome
        tail = "\n".join(console_text.splitlines()[-_CONSOLE_TAIL_LINES:])
        return ExecutionOutcome(
            "",
            tail,
            vm_returncode or 1,
            False,
            f"MicroVM exited with code {vm_returncode} without reporting a result",
        )

    @staticmethod
    def _wait(process: subprocess.Popen[Any], seconds: float) -> bool:
        """Wait up to `seconds` and report whether the process has exited.

        Example:
            ```python
            exited = MicroVMEngine._wait(proc, 0.5)
            ```
        """
        try:
            process.wait(timeout=seconds)
        except subprocess.TimeoutExpired:
            return False
        return True

    @staticmethod
    def _enter(phase: VMPhase, execution_id: str) -> VMPhase:
        """Log a state transition and return the new phase.

        Example:
            ```python
            phase = MicroVMEngine._enter(VMPhase.EXECUTE, "abc")
            ```
        """
        logger.debug("MicroVM %s -> %s", execution_id, phase.value)
        return phase
