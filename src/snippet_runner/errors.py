"""Shared error types for snippet execution."""

from __future__ import annotations


class SnippetRunnerError(Exception):
    """Base error for all snippet-runner failures."""


class SandboxTimeoutError(SnippetRunnerError):
    """An isolated execution exceeded its wall-clock budget.

    Example:
        ```python
        raise SandboxTimeoutError(5.0)
        ```
    """

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Execution timed out after {timeout:g}s")


class NoBackendAvailableError(SnippetRunnerError):
    """None of the supplied engines reported itself capable."""
