from __future__ import annotations

import re
import threading
from enum import Enum
from typing import Any, Protocol

_ADDRESS = re.compile(r" at 0x[0-9a-fA-F]+")


class LineKind(str, Enum):
    STANDARD = "standard"
    WARNING = "warning"


class OutputSink(Protocol):
    """Receives one rendered line of snippet output at a time."""

    def record_line(self, kind: LineKind, text: str) -> None:
        """Record a line of output.

        Example:
            ```python
            sink.record_line(LineKind.STANDARD, "hello")
            ```
        """
        ...


def render_value(value: Any) -> str:
    """Render a printed value so identical snippets print identical text.

    Strings pass through; sets are sorted and memory addresses dropped.

    Example:
        ```python
        assert render_value({3, 1, 2}) == "{1, 2, 3}"
        ```
    """
    if isinstance(value, str):
        return value
    return _ADDRESS.sub("", _canonical(value))


def _canonical(value: Any) -> str:
    if isinstance(value, (set, frozenset)):
        items = sorted((_canonical(item) for item in value))
        if not items:
            return "set()" if isinstance(value, set) else "frozenset()"
        body = "{" + ", ".join(items) + "}"
        return body if isinstance(value, set) else f"frozenset({body})"
    if isinstance(value, dict):
        return "{" + ", ".join(f"{_canonical(k)}: {_canonical(v)}" for k, v in value.items()) + "}"
    if isinstance(value, list):
        return "[" + ", ".join(_canonical(item) for item in value) + "]"
    if isinstance(value, tuple):
        inner = ", ".join(_canonical(item) for item in value)
        return f"({inner},)" if len(value) == 1 else f"({inner})"
    return repr(value) if isinstance(value, str) else str(value)


class BufferedSink:
    """Thread-safe sink buffering standard and warning lines separately.

    Example:
        ```python
        sink = BufferedSink()
        sink.record_line(LineKind.WARNING, "careful")
        ```
    """

    def __init__(self) -> None:
        """Initialize empty buffers.

        Example:
            ```python
            sink = BufferedSink()
            ```
        """
        self._lock = threading.Lock()
        self._lines: dict[LineKind, list[str]] = {LineKind.STANDARD: [], LineKind.WARNING: []}

    def record_line(self, kind: LineKind, text: str) -> None:
        """Append a line to the buffer for its kind.

        Example:
            ```python
            sink.record_line(LineKind.STANDARD, "42")
            ```
        """
        with self._lock:
            self._lines[kind].append(text)

    def text(self, kind: LineKind) -> str:
        """Return all lines of one kind joined by newlines.

        Example:
            ```python
            out = sink.text(LineKind.STANDARD)
            ```
        """
        with self._lock:
            return "\n".join(self._lines[kind])


class SandboxConsole:
    """Console-like object injected into sandboxed snippets.

    Example:
        ```python
        console = SandboxConsole(sink)
        console.log("value", 1)
        ```
    """

    def __init__(self, sink: OutputSink) -> None:
        """Bind the console to a sink.

        Example:
            ```python
            console = SandboxConsole(BufferedSink())
            ```
        """
        self._sink = sink

    def _emit(self, kind: LineKind, args: tuple[Any, ...]) -> None:
        """Render arguments space-separated and record them.

        Example:
            ```python
            console._emit(LineKind.STANDARD, ("a", 1))
            ```
        """
        self._sink.record_line(kind, " ".join(render_value(arg) for arg in args))

    def log(self, *args: Any) -> None:
        """Record a standard line.

        Example:
            ```python
            console.log("done")
            ```
        """
        self._emit(LineKind.STANDARD, args)

    info = log
    debug = log

    def warn(self, *args: Any) -> None:
        """Record a warning line.

        Example:
            ```python
            console.warn("deprecated")
            ```
        """
        self._emit(LineKind.WARNING, args)

    warning = warn
    error = warn


class SinkPrinter:
    """`print` replacement that writes complete lines through a sink.

    Text is buffered per line kind until `end` (or an embedded newline)
    completes a line, so `print("a", end="")` followed by `print("b")` records
    `"ab"`. Passing `file=console` (any object with a `warn` method) routes the
    text to the warning buffer.

    Example:
        ```python
        printer = SinkPrinter(sink)
        exec_globals["print"] = printer
        printer.flush()
        ```
    """

    def __init__(self, sink: OutputSink) -> None:
        self._sink = sink
        self._lock = threading.Lock()
        self._pending: dict[LineKind, str] = {LineKind.STANDARD: "", LineKind.WARNING: ""}

    def __call__(
        self,
        *args: Any,
        sep: str | None = " ",
        end: str | None = "\n",
        file: Any = None,
        flush: bool = False,
    ) -> None:
        separator = " " if sep is None else sep
        text = separator.join(render_value(arg) for arg in args) + ("\n" if end is None else end)
        kind = LineKind.WARNING if file is not None and hasattr(file, "warn") else LineKind.STANDARD
        with self._lock:
            *lines, rest = (self._pending[kind] + text).split("\n")
            self._pending[kind] = rest
        for line in lines:
            self._sink.record_line(kind, line)

    def flush(self) -> None:
        """Record any unterminated trailing text as a final line.

        Example:
            ```python
            printer.flush()
            ```
        """
        with self._lock:
            pending = [(kind, text) for kind, text in self._pending.items() if text]
            for kind in self._pending:
                self._pending[kind] = ""
        for kind, text in pending:
            self._sink.record_line(kind, text)
