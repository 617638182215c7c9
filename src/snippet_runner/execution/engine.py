from __future__ import annotations

from typing import Protocol, runtime_checkable

from .types import BackendMode, ExecutionOutcome, ExecutionRequest


@runtime_checkable
class ExecutionEngine(Protocol):
    """Uniform contract shared by the microVM, container and sandbox backends."""

    mode: BackendMode

    def probe(self) -> tuple[bool, str | None]:
        """Check, in bounded time, whether this backend can run on the host.

        Returns `(available, reason)` where `reason` explains a failure.

        Example:
            ```python
            ok, reason = engine.probe()
            ```
        """
        ...

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Execute one request and return its raw outcome.

        Example:
            ```python
            outcome = engine.execute(ExecutionRequest.from_source("print(1)"))
            ```
        """
        ...

    def cleanup(self) -> None:
        """Release backend-level resources left behind by crashed executions.

        Example:
            ```python
            engine.cleanup()
            ```
        """
        ...
