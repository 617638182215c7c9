"""Restricted in-process execution of snippet code.

The snippet runs on a dedicated daemon thread with curated builtins, a
policy-checked importer and a deadline tracer that interrupts it
cooperatively once its wall-clock budget is spent. A snippet that swallows
the interruption is interrupted again asynchronously for a short reap window;
if its thread is still alive after that, the thread is handed back to the
caller so the execution slot stays held until it really exits.

In ``allow`` mode only allowlisted modules can be imported, and they are
exposed as public views without private names or module attributes, so
``pathlib.os`` or ``random._os`` are not reachable.
"""

from __future__ import annotations

import ast
import builtins
import ctypes
import sys
import threading
import time
import types
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .sink import OutputSink, SandboxConsole, SinkPrinter

_JOIN_SLACK_SECONDS = 0.05
_REAP_INTERVAL_SECONDS = 0.02

SANDBOX_MODES = ("allow", "restrict")

# Frame, code and traceback introspection reaches the host interpreter.
_BLOCKED_ATTRIBUTE_PREFIXES = ("__", "f_", "gi_", "cr_", "ag_", "tb_", "co_")
_ALLOWED_DUNDER_ATTRIBUTES = frozenset({"__init__", "__name__", "__doc__"})

# Public members that perform attribute lookups from strings.
_HIDDEN_MEMBERS = {"string": frozenset({"Formatter"})}

_SET_ASYNC_EXC = ctypes.pythonapi.PyThreadState_SetAsyncExc
_SET_ASYNC_EXC.argtypes = [ctypes.c_ulong, ctypes.py_object]
_SET_ASYNC_EXC.restype = ctypes.c_int


class _BudgetExceeded(BaseException):
    """Raised inside the snippet thread when the deadline has passed."""


@dataclass(slots=True)
class RestrictedRun:
    """Outcome of one restricted execution.

    `worker` is set only when the snippet thread outlived the reap window.

    Example:
        ```python
        run = RestrictedRun(exit_code=0, error=None, timed_out=False)
        ```
    """

    exit_code: int
    error: str | None
    timed_out: bool
    worker: threading.Thread | None = None


class _DeadlineTracer:
    """Trace function raising `_BudgetExceeded` on the first event past the deadline."""

    def __init__(self, deadline: float) -> None:
        self._deadline = deadline

    def __call__(self, frame: Any, event: str, arg: Any) -> "_DeadlineTracer":
        if time.monotonic() >= self._deadline:
            raise _BudgetExceeded
        return self


def check_source_policy(tree: ast.AST) -> str | None:
    """Return a policy violation message for introspective attribute access, if any.

    Example:
        ```python
        problem = check_source_policy(ast.parse("f.__globals__"))
        ```
    """
    for node in ast.walk(tree):
        if not isinstance(node, ast.Attribute) or node.attr in _ALLOWED_DUNDER_ATTRIBUTES:
            continue
        if node.attr.startswith(_BLOCKED_ATTRIBUTE_PREFIXES):
            return f"Access to attribute '{node.attr}' is not allowed by policy"
    return None


def _budget_time_module(deadline: float) -> types.ModuleType:
    """Return a `time` look-alike whose `sleep` cannot outlive the budget.

    Example:
        ```python
        proxy = _budget_time_module(time.monotonic() + 5)
        ```
    """
    proxy = types.ModuleType("time")
    for name in dir(time):
        if not name.startswith("_"):
            setattr(proxy, name, getattr(time, name))

    def sleep(seconds: float) -> None:
        """Sleep, but raise once the snippet budget would be exceeded.

        Example:
            ```python
            sleep(0.1)
            ```
        """
        remaining = deadline - time.monotonic()
        if seconds >= remaining:
            time.sleep(max(0.0, remaining))
            raise _BudgetExceeded
        time.sleep(max(0.0, seconds))

    proxy.sleep = sleep  # type: ignore[attr-defined]
    return proxy


def _public_view(module: types.ModuleType) -> types.ModuleType:
    """Copy a module's public, non-module attributes into a fresh module object.

    Example:
        ```python
        view = _public_view(json)
        ```
    """
    view = types.ModuleType(module.__name__, module.__doc__)
    hidden = _HIDDEN_MEMBERS.get(module.__name__, frozenset())
    for name, value in vars(module).items():
        if name.startswith("_") or name in hidden or isinstance(value, types.ModuleType):
            continue
        setattr(view, name, value)
    return view


def _safe_import_factory(
    mode: str,
    allowed_imports: set[str],
    blocked_imports: set[str],
    time_module: types.ModuleType,
) -> Callable[..., Any]:
    def _safe_import(
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> Any:
        """Import hook enforcing the allow or restrict module policy.

        Example:
            ```python
            math = _safe_import("math")
            ```
        """
        if level != 0:
            raise ImportError("Relative imports are not available in the sandbox")
        root = name.split(".")[0]
        if root == "importlib":
            raise ImportError("Import 'importlib' is blocked by policy")
        if mode == "allow":
            if root not in allowed_imports:
                raise ImportError(f"Import '{name}' is not allowed by policy")
        elif root in blocked_imports:
            raise ImportError(f"Import '{name}' is blocked by policy")
        if name == "time":
            return time_module
        module = __import__(name, globals, locals, fromlist, level)
        if mode != "allow":
            return module
        return _allowed_view(module, name, fromlist)

    return _safe_import


def _allowed_view(module: types.ModuleType, name: str, fromlist: Any) -> types.ModuleType:
    """Wrap an imported module (and the submodules the statement names) in public views.

    Example:
        ```python
        view = _allowed_view(collections, "collections.abc", ())
        ```
    """
    view = _public_view(module)
    if fromlist:
        for item in fromlist:
            value = getattr(module, item, None)
            if isinstance(value, types.ModuleType):
                setattr(view, item, _public_view(value))
        return view
    parent_view, current = view, module
    for part in name.split(".")[1:]:
        current = getattr(current, part)
        child = _public_view(current)
        setattr(parent_view, part, child)
        parent_view = child
    return view


def _build_safe_builtins(
    mode: str,
    allowed_builtins: set[str],
    blocked_builtins: set[str],
    safe_import: Callable[..., Any],
    print_fn: Callable[..., None],
) -> dict[str, Any]:
    safe = {}
    for name, value in vars(builtins).items():
        if mode == "allow":
            if name not in allowed_builtins:
                continue
        elif name in blocked_builtins:
            continue
        safe[name] = value
    safe["__import__"] = safe_import
    safe["print"] = print_fn
    return safe


def _normalize_system_exit(exit_code: Any) -> tuple[int, str | None]:
    if exit_code in (None, 0):
        return 0, None
    if isinstance(exit_code, int):
        return exit_code, f"SystemExit: {exit_code}"
    return 1, f"SystemExit: {exit_code}"


def _interrupt(worker: threading.Thread) -> None:
    """Raise `_BudgetExceeded` asynchronously inside a running snippet thread.

    Example:
        ```python
        _interrupt(worker)
        ```
    """
    if worker.ident is None or not worker.is_alive():
        return
    affected = _SET_ASYNC_EXC(ctypes.c_ulong(worker.ident), ctypes.py_object(_BudgetExceeded))
    if affected > 1:
        _SET_ASYNC_EXC(ctypes.c_ulong(worker.ident), None)
        raise RuntimeError("PyThreadState_SetAsyncExc affected multiple threads")


def _reap(worker: threading.Thread, reap_seconds: float | None) -> bool:
    """Keep interrupting a runaway snippet thread; return whether it exited.

    `None` keeps interrupting until the thread is gone.

    Example:
        ```python
        exited = _reap(worker, 1.0)
        ```
    """
    give_up_at = None if reap_seconds is None else time.monotonic() + reap_seconds
    while worker.is_alive():
        _interrupt(worker)
        worker.join(_REAP_INTERVAL_SECONDS)
        if give_up_at is not None and time.monotonic() >= give_up_at:
            break
    return not worker.is_alive()


def build_globals(
    *,
    printer: SinkPrinter,
    sink: OutputSink,
    deadline: float,
    mode: str = "allow",
    allowed_imports: Iterable[str] = (),
    blocked_imports: Iterable[str] = (),
    allowed_builtins: Iterable[str] = (),
    blocked_builtins: Iterable[str] = (),
) -> dict[str, Any]:
    """Build the curated global namespace a snippet runs in.

    Example:
        ```python
        namespace = build_globals(printer=SinkPrinter(sink), sink=sink, deadline=time.monotonic() + 5, allowed_imports=["math"], allowed_builtins=["len"])
        ```
    """
    if mode not in SANDBOX_MODES:
        raise ValueError("mode must be 'allow' or 'restrict'")
    safe_import = _safe_import_factory(
        mode,
        set(allowed_imports),
        set(blocked_imports),
        _budget_time_module(deadline),
    )
    return {
        "__name__": "__snippet__",
        "__builtins__": _build_safe_builtins(
            mode,
            set(allowed_builtins),
            set(blocked_builtins),
            safe_import,
            printer,
        ),
        "console": SandboxConsole(sink),
        "environ": types.MappingProxyType({}),
    }


def run_restricted(
    code: types.CodeType,
    *,
    sink: OutputSink,
    budget_seconds: float,
    reap_seconds: float = 1.0,
    mode: str = "allow",
    allowed_imports: Iterable[str] = (),
    blocked_imports: Iterable[str] = (),
    allowed_builtins: Iterable[str] = (),
    blocked_builtins: Iterable[str] = (),
    thread_name: str = "snippet-sandbox",
) -> RestrictedRun:
    """Run compiled snippet code under the sandbox policy and budget.

    Example:
        ```python
        run = run_restricted(compile("print(1)", "<snippet>", "exec"), sink=BufferedSink(), budget_seconds=5, allowed_imports=["math"], allowed_builtins=["print"])
        ```
    """
    deadline = time.monotonic() + budget_seconds
    printer = SinkPrinter(sink)
    namespace = build_globals(
        printer=printer,
        sink=sink,
        deadline=deadline,
        mode=mode,
        allowed_imports=allowed_imports,
        blocked_imports=blocked_imports,
        allowed_builtins=allowed_builtins,
        blocked_builtins=blocked_builtins,
    )
    outcome: list[RestrictedRun] = []

    def _target() -> None:
        """Thread body: trace, execute and record exactly one outcome.

        Example:
            ```python
            threading.Thread(target=_target).start()
            ```
        """
        try:
            sys.settrace(_DeadlineTracer(deadline))
            try:
                exec(code, namespace, namespace)
            except _BudgetExceeded:
                outcome.append(RestrictedRun(124, None, True))
            except SystemExit as exc:
                exit_code, error = _normalize_system_exit(exc.code)
                outcome.append(RestrictedRun(exit_code, error, False))
            except BaseException as exc:
                outcome.append(RestrictedRun(1, f"{type(exc).__name__}: {exc}", False))
            else:
                outcome.append(RestrictedRun(0, None, False))
            finally:
                sys.settrace(None)
        except _BudgetExceeded:
            # A late asynchronous interrupt landed after the snippet finished.
            pass

    worker = threading.Thread(target=_target, name=thread_name, daemon=True)
    worker.start()
    worker.join(max(0.0, deadline - time.monotonic()) + _JOIN_SLACK_SECONDS)
    overran = worker.is_alive()
    if overran and not _reap(worker, reap_seconds):
        threading.Thread(
            target=_reap,
            args=(worker, None),
            name=f"{thread_name}-reaper",
            daemon=True,
        ).start()
        printer.flush()
        return RestrictedRun(124, None, True, worker=worker)
    printer.flush()
    if overran or not outcome:
        return RestrictedRun(124, None, True)
    return outcome[0]
