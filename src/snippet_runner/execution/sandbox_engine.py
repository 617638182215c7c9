from __future__ import annotations

import ast
import logging

from ..settings import RunnerSettings
from .restricted import check_source_policy, run_restricted
from .sink import BufferedSink, LineKind
from .types import BackendMode, ExecutionOutcome, ExecutionRequest

logger = logging.getLogger(__name__)


class SandboxEngine:
    """Execute snippets in-process with a curated namespace.

    This is the zero-dependency fallback: it shares the host address space
    and cannot contain interpreter-level escapes, so it only ranks below the
    microVM and container backends.

    Example:
        ```python
        engine = SandboxEngine(RunnerSettings(timeout_seconds=2))
        ```
    """

    mode = BackendMode.SANDBOX

    def __init__(self, settings: RunnerSettings) -> None:
        """Initialize the engine from runner settings.

        Example:
            ```python
            engine = SandboxEngine(RunnerSettings())
            ```
        """
        self._budget = float(settings.timeout_seconds)
        self._reap_seconds = float(settings.timeout_grace_seconds)
        self._mode = settings.sandbox_mode
        self._allowed_imports = list(settings.allowed_imports)
        self._blocked_imports = list(settings.blocked_imports)
        self._allowed_builtins = list(settings.allowed_builtins)
        self._blocked_builtins = list(settings.blocked_builtins)

    def probe(self) -> tuple[bool, str | None]:
        """Report availability; the in-process sandbox always works.

        Example:
            ```python
            ok, _ = engine.probe()
            ```
        """
        return True, None

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Compile and run one snippet under the wall-clock budget.

        Example:
            ```python
            outcome = engine.execute(ExecutionRequest.from_source("print(6 * 7)"))
            ```
        """
        try:
            tree = ast.parse(request.source, "<snippet>")
            code = compile(tree, "<snippet>", "exec")
        except (SyntaxError, ValueError) as exc:
            return ExecutionOutcome("", "", 1, False, f"{type(exc).__name__}: {exc}")
        if self._mode == "allow":
            violation = check_source_policy(tree)
            if violation is not None:
                return ExecutionOutcome("", "", 1, False, f"PermissionError: {violation}")

        sink = BufferedSink()
        run = run_restricted(
            code,
            sink=sink,
            budget_seconds=self._budget,
            reap_seconds=self._reap_seconds,
            mode=self._mode,
            allowed_imports=self._allowed_imports,
            blocked_imports=self._blocked_imports,
            allowed_builtins=self._allowed_builtins,
            blocked_builtins=self._blocked_builtins,
            thread_name=f"snippet-{request.execution_id}",
        )
        stdout = sink.text(LineKind.STANDARD)
        stderr = sink.text(LineKind.WARNING)
        if run.timed_out:
            logger.info("Sandbox execution %s exceeded %.1fs budget", request.execution_id, self._budget)
            if run.worker is not None:
                logger.warning("Sandbox execution %s ignored interruption and is still running", request.execution_id)
            return ExecutionOutcome(
                stdout,
                stderr,
                run.exit_code,
                True,
                f"Execution timed out after {self._budget:g}s",
                lingering=run.worker,
            )
        return ExecutionOutcome(stdout, stderr, run.exit_code, False, run.error)

    def cleanup(self) -> None:
        """Nothing to release: no processes or files are created.

        Example:
            ```python
            engine.cleanup()
            ```
        """
