from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any

DEFAULT_CONTAINER_IMAGE = "python:3.12-slim"
CONTAINER_CODE_PATH = "/sandbox/main.py"
CONTAINER_NAME_PREFIX = "snippet-runner-"
CONTAINER_USER = "65534:65534"
CONTAINER_PIDS_LIMIT = 64
MANAGED_LABEL = "snippet_runner.managed"
MANAGED_LABELS_BASE = {
    MANAGED_LABEL: "true",
    "snippet_runner.engine": "docker",
}

# Firecracker exposes block devices in whole sectors; trailing partial sectors are dropped.
BLOCK_DEVICE_SECTOR_SIZE = 512

# Exit status coreutils `timeout` reports when it had to stop the workload.
TIMEOUT_EXIT_CODE = 124

GUEST_INIT_PATH = "/sbin/snippet-init"
GUEST_RESULT_MARKER = "SNIPPET-RESULT"
VM_BOOT_ARGS = "console=ttyS0 reboot=k panic=1 pci=off quiet"


def content_digest(source: str) -> str:
    """Return the SHA-256 hex digest used as cache key and id seed.

    Example:
        ```python
        key = content_digest("print('hi')")
        ```
    """
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


def container_name(execution_id: str) -> str:
    """Return the ephemeral container name for one execution.

    Example:
        ```python
        name = container_name("0123abcd-ffee0011")
        ```
    """
    return f"{CONTAINER_NAME_PREFIX}{execution_id}"


def firecracker_config(
    *,
    execution_id: str,
    kernel_image_path: Path,
    rootfs_path: Path,
    code_path: Path,
    code_size: int,
    memory_limit_mb: int,
) -> dict[str, Any]:
    """Build a single-use Firecracker VM config with no network devices.

    The code artifact is attached as a second read-only drive; the guest init
    reads `snippet.len` bytes from it (the file itself is sector-padded) and runs them.

    Example:
        ```python
        cfg = firecracker_config(
            execution_id="abc",
            kernel_image_path=Path("/var/lib/firecracker/vmlinux"),
            rootfs_path=Path("/var/lib/firecracker/rootfs.ext4"),
            code_path=Path("/tmp/abc.py"),
            code_size=12,
            memory_limit_mb=128,
        )
        ```
    """
    boot_args = (
        f"{VM_BOOT_ARGS} init={GUEST_INIT_PATH} "
        f"snippet.id={execution_id} snippet.len={code_size}"
    )
    return {
        "boot-source": {
            "kernel_image_path": str(kernel_image_path),
            "boot_args": boot_args,
        },
        "drives": [
            {
                "drive_id": "rootfs",
                "path_on_host": str(rootfs_path),
                "is_root_device": True,
                "is_read_only": True,
            },
            {
                "drive_id": "snippet",
                "path_on_host": str(code_path),
                "is_root_device": False,
                "is_read_only": True,
            },
        ],
        "machine-config": {
            "vcpu_count": 1,
            "mem_size_mib": int(memory_limit_mb),
            "smt": False,
        },
        "network-interfaces": [],
    }
