import json
import sys
import textwrap
from pathlib import Path

import pytest

from snippet_runner import RunnerSettings
from snippet_runner.execution.artifacts import residual_artifacts, write_artifact
from snippet_runner.execution.config import firecracker_config
from snippet_runner.execution.microvm_engine import MicroVMEngine, parse_guest_result
from snippet_runner.execution.processes import ProcessRegistry
from snippet_runner.execution.types import ExecutionRequest

# Stands in for Firecracker plus the guest init: reads the VM config, runs the
# snippet drive with the host interpreter and prints the guest result line.
FAKE_FIRECRACKER = """\
#!{python}
import base64
import json
import os
import subprocess
import sys

if "--version" in sys.argv:
    print("Firecracker v1.7.0")
    sys.exit(0)

config = json.load(open(sys.argv[sys.argv.index("--config-file") + 1]))
args = dict(
    token.split("=", 1) for token in config["boot-source"]["boot_args"].split() if "=" in token
)
drive = next(d for d in config["drives"] if d["drive_id"] == "snippet")
size = os.path.getsize(drive["path_on_host"])
record = os.environ.get("FAKE_FIRECRACKER_RECORD")
if record:
    with open(record, "w") as out:
        json.dump({"drive_size": size, "snippet_len": int(args["snippet.len"])}, out)
# Like a virtio block device, only whole 512-byte sectors are visible.
with open(drive["path_on_host"], "rb") as handle:
    source = handle.read(size - size % 512)[: int(args["snippet.len"])]
print("[    0.000000] Linux version 5.10 (fake)", flush=True)
proc = subprocess.run([sys.executable, "-c", source], capture_output=True)
print(
    "SNIPPET-RESULT",
    args["snippet.id"],
    proc.returncode,
    base64.b64encode(proc.stdout).decode(),
    base64.b64encode(proc.stderr).decode(),
    flush=True,
)
print("[    0.500000] reboot: Restarting system", flush=True)
"""

SILENT_FIRECRACKER = """\
#!{python}
import sys

if "--version" in sys.argv:
    sys.exit(0)
print("Kernel panic - not syncing: VFS: Unable to mount root fs")
sys.exit(1)
"""


def _install(tmp_path: Path, name: str, body: str) -> Path:
    script = tmp_path / name
    script.write_text(body.replace("{python}", sys.executable), encoding="utf-8")
    script.chmod(0o755)
    return script


@pytest.fixture
def vm_settings(tmp_path: Path, settings: RunnerSettings) -> RunnerSettings:
    kernel = tmp_path / "vmlinux"
    rootfs = tmp_path / "rootfs.ext4"
    kernel.write_bytes(b"kernel")
    rootfs.write_bytes(b"rootfs")
    binary = _install(tmp_path, "firecracker", FAKE_FIRECRACKER)
    return settings.with_overrides(
        {
            "firecracker_binary": str(binary),
            "kernel_image_path": str(kernel),
            "rootfs_path": str(rootfs),
        }
    )


@pytest.fixture
def kvm_device(tmp_path: Path) -> Path:
    device = tmp_path / "kvm"
    device.write_bytes(b"")
    return device


def test_probe_accepts_complete_host(vm_settings: RunnerSettings, kvm_device: Path) -> None:
    engine = MicroVMEngine(vm_settings, ProcessRegistry(), kvm_device=kvm_device)
    assert engine.probe() == (True, None)


def test_probe_rejects_missing_kvm(vm_settings: RunnerSettings, tmp_path: Path) -> None:
    engine = MicroVMEngine(vm_settings, ProcessRegistry(), kvm_device=tmp_path / "no-kvm")
    ok, reason = engine.probe()
    assert ok is False
    assert "not accessible" in (reason or "")


def test_probe_rejects_missing_binary(vm_settings: RunnerSettings, kvm_device: Path) -> None:
    engine = MicroVMEngine(
        vm_settings.with_overrides({"firecracker_binary": "definitely-not-firecracker"}),
        ProcessRegistry(),
        kvm_device=kvm_device,
    )
    ok, reason = engine.probe()
    assert ok is False
    assert "not found" in (reason or "")


def test_probe_rejects_missing_rootfs(vm_settings: RunnerSettings, kvm_device: Path, tmp_path: Path) -> None:
    engine = MicroVMEngine(
        vm_settings.with_overrides({"rootfs_path": str(tmp_path / "missing.ext4")}),
        ProcessRegistry(),
        kvm_device=kvm_device,
    )
    ok, reason = engine.probe()
    assert ok is False
    assert "rootfs" in (reason or "")


def test_execute_success_tears_down(vm_settings: RunnerSettings) -> None:
    registry = ProcessRegistry()
    engine = MicroVMEngine(vm_settings, registry)
    request = ExecutionRequest.from_source("print(6 * 7)")

    outcome = engine.execute(request)

    assert outcome.returncode == 0
    assert outcome.timed_out is False
    assert outcome.stdout.strip() == "42"
    assert residual_artifacts(vm_settings.scratch_dir, request.execution_id) == []
    assert len(registry) == 0


def test_execute_reports_guest_failure(vm_settings: RunnerSettings) -> None:
    engine = MicroVMEngine(vm_settings, ProcessRegistry())
    outcome = engine.execute(ExecutionRequest.from_source("raise ValueError('bad input')"))
    assert outcome.returncode == 1
    assert "ValueError: bad input" in outcome.stderr


def test_execute_timeout_kills_vm(vm_settings: RunnerSettings) -> None:
    registry = ProcessRegistry()
    engine = MicroVMEngine(vm_settings, registry)
    request = ExecutionRequest.from_source("while True:\n    pass")

    outcome = engine.execute(request)

    assert outcome.timed_out is True
    assert outcome.returncode == 124
    assert outcome.error == "Execution timed out after 1s"
    assert residual_artifacts(vm_settings.scratch_dir, request.execution_id) == []
    assert len(registry) == 0


def test_execute_without_result_line(vm_settings: RunnerSettings, tmp_path: Path) -> None:
    binary = _install(tmp_path, "firecracker-silent", SILENT_FIRECRACKER)
    engine = MicroVMEngine(
        vm_settings.with_overrides({"firecracker_binary": str(binary)}),
        ProcessRegistry(),
    )
    outcome = engine.execute(ExecutionRequest.from_source("print(1)"))
    assert outcome.returncode == 1
    assert "without reporting a result" in (outcome.error or "")
    assert "Kernel panic" in outcome.stderr


def test_execute_launch_failure(vm_settings: RunnerSettings, tmp_path: Path) -> None:
    engine = MicroVMEngine(
        vm_settings.with_overrides({"firecracker_binary": str(tmp_path / "absent")}),
        ProcessRegistry(),
    )
    request = ExecutionRequest.from_source("print(1)")
    outcome = engine.execute(request)
    assert outcome.returncode == 125
    assert "launch_vm_process" in (outcome.error or "")
    assert residual_artifacts(vm_settings.scratch_dir, request.execution_id) == []


def test_config_has_no_network_and_read_only_drives(tmp_path: Path) -> None:
    config = firecracker_config(
        execution_id="abc",
        kernel_image_path=tmp_path / "vmlinux",
        rootfs_path=tmp_path / "rootfs.ext4",
        code_path=tmp_path / "abc.py",
        code_size=8,
        memory_limit_mb=128,
    )
    assert config["network-interfaces"] == []
    assert all(drive["is_read_only"] for drive in config["drives"])
    assert config["machine-config"]["mem_size_mib"] == 128
    assert "snippet.id=abc" in config["boot-source"]["boot_args"]
    assert "snippet.len=8" in config["boot-source"]["boot_args"]
    json.dumps(config)


def test_parse_guest_result() -> None:
    console = textwrap.dedent(
        """\
        boot noise
        SNIPPET-RESULT other 0 aGk=
        SNIPPET-RESULT abc 2 b3V0 ZXJy
        """
    )
    outcome = parse_guest_result(console, "abc")
    assert outcome is not None
    assert (outcome.returncode, outcome.stdout, outcome.stderr) == (2, "out", "err")
    assert parse_guest_result("no marker here", "abc") is None
    malformed = parse_guest_result("SNIPPET-RESULT abc x y z", "abc")
    assert malformed is not None and malformed.error


@pytest.mark.parametrize("source", ["print('hi')", "x = 1\n" * 100 + "print('tail survived')"])
def test_code_drive_is_sector_aligned(
    vm_settings: RunnerSettings,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    source: str,
) -> None:
    record = tmp_path / "drive.json"
    monkeypatch.setenv("FAKE_FIRECRACKER_RECORD", str(record))
    outcome = MicroVMEngine(vm_settings, ProcessRegistry()).execute(ExecutionRequest.from_source(source))

    seen = json.loads(record.read_text(encoding="utf-8"))
    assert seen["snippet_len"] == len(source.encode("utf-8"))
    assert seen["drive_size"] % 512 == 0
    assert seen["drive_size"] >= seen["snippet_len"]
    assert outcome.returncode == 0
    assert outcome.stdout.strip() in {"hi", "tail survived"}


def test_write_artifact_pads_to_block_size(tmp_path: Path) -> None:
    path = tmp_path / "code.py"
    assert write_artifact(path, "print(1)", pad_to=512) == 8
    data = path.read_bytes()
    assert len(data) == 512
    assert data.rstrip(b"\0") == b"print(1)"
    assert write_artifact(path, "", pad_to=512) == 0
    assert path.stat().st_size == 512
    assert write_artifact(path, "a" * 513, pad_to=512) == 513
    assert path.stat().st_size == 1024
