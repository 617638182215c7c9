from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import content_digest


class BackendMode(str, Enum):
    """Isolation backends, strongest first.

    Example:
        ```python
        mode = BackendMode("container")
        ```
    """

    MICROVM = "microvm"
    CONTAINER = "container"
    SANDBOX = "sandbox"


class ErrorKind(str, Enum):
    """User-visible classification of a failed execution.

    Example:
        ```python
        kind = ErrorKind.TIMEOUT
        ```
    """

    CAPACITY_EXCEEDED = "capacity_exceeded"
    TIMEOUT = "timeout"
    BACKEND_FAILURE = "backend_failure"


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Source text plus its content digest and a unique execution id.

    Example:
        ```python
        req = ExecutionRequest.from_source("print(1 + 1)")
        ```
    """

    source: str
    digest: str
    execution_id: str

    @classmethod
    def from_source(cls, source: str) -> "ExecutionRequest":
        """Hash source text and allocate an execution id seeded by the digest.

        Example:
            ```python
            req = ExecutionRequest.from_source("print('hi')")
            assert req.execution_id.startswith(req.digest[:16])
            ```
        """
        digest = content_digest(source)
        return cls(
            source=source,
            digest=digest,
            execution_id=f"{digest[:16]}-{uuid.uuid4().hex[:8]}",
        )


@dataclass(slots=True)
class ExecutionOutcome:
    """Raw outcome returned by an execution engine.

    `lingering` carries a worker thread that outlived its timeout; the
    orchestrator keeps the execution slot until that thread exits.

    Example:
        ```python
        out = ExecutionOutcome(stdout="4\\n", stderr="", returncode=0, timed_out=False)
        ```
    """

    stdout: str
    stderr: str
    returncode: int
    timed_out: bool
    error: str | None = None
    lingering: threading.Thread | None = None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Normalized, immutable result handed back to the API layer.

    Example:
        ```python
        result = ExecutionResult(True, "4", "", BackendMode.SANDBOX, execution_id="abc")
        ```
    """

    success: bool
    output: str
    error: str
    mode: BackendMode
    from_cache: bool = False
    execution_id: str = ""
    error_kind: ErrorKind | None = field(default=None)

    @property
    def timed_out(self) -> bool:
        """Return whether the execution was classified as a timeout.

        Example:
            ```python
            if result.timed_out:
                ...
            ```
        """
        return self.error_kind is ErrorKind.TIMEOUT

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire shape used by the API layer.

        Example:
            ```python
            payload = result.to_dict()
            ```
        """
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "mode": self.mode.value,
            "fromCache": self.from_cache,
            "executionId": self.execution_id,
            "errorKind": self.error_kind.value if self.error_kind else None,
        }
