"""Per-execution scratch files.

Artifacts are named ``<execution_id>.<suffix>`` inside the shared scratch
directory so that teardown and shutdown can find them without extra state.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def artifact_path(scratch_dir: Path, execution_id: str, suffix: str) -> Path:
    """Return the scratch path for one artifact of an execution.

    Example:
        ```python
        code_path = artifact_path(Path("/tmp/snippet-runner"), "abc", "py")
        ```
    """
    return scratch_dir / f"{execution_id}.{suffix}"


def write_artifact(path: Path, content: str, *, pad_to: int | None = None) -> int:
    """Write a world-readable text artifact and return the content size in bytes.

    With `pad_to`, the file is zero-filled up to the next multiple of that
    size (at least one block); the returned size excludes the padding.

    Example:
        ```python
        size = write_artifact(code_path, "print(1)", pad_to=512)
        ```
    """
    data = content.encode("utf-8")
    padded = data
    if pad_to:
        blocks = max(1, -(-len(data) // pad_to))
        padded = data.ljust(blocks * pad_to, b"\0")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(padded)
    path.chmod(0o644)
    return len(data)


def remove_artifact(path: Path) -> bool:
    """Delete one artifact, logging (never raising) on failure.

    Example:
        ```python
        remove_artifact(code_path)
        ```
    """
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Cleanup failure: could not delete %s: %s", path, exc)
        return False
    return True


def remove_artifacts(paths: list[Path]) -> None:
    """Attempt every deletion even when earlier ones fail.

    Example:
        ```python
        remove_artifacts([code_path, config_path])
        ```
    """
    for path in paths:
        remove_artifact(path)


def residual_artifacts(scratch_dir: Path, execution_id: str) -> list[Path]:
    """List files still present for an execution id.

    Example:
        ```python
        leftovers = residual_artifacts(scratch_dir, request.execution_id)
        ```
    """
    if not scratch_dir.is_dir():
        return []
    return sorted(scratch_dir.glob(f"{execution_id}.*"))


def empty_directory(directory: Path) -> int:
    """Delete everything inside a directory and return how many entries went.

    Example:
        ```python
        removed = empty_directory(Path("/tmp/snippet-runner"))
        ```
    """
    if not directory.is_dir():
        return 0
    removed = 0
    for entry in directory.iterdir():
        try:
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink(missing_ok=True)
            removed += 1
        except OSError as exc:
            logger.warning("Cleanup failure: could not delete %s: %s", entry, exc)
    return removed
