from __future__ import annotations

import argparse
import json
import subprocess
import sys
import tempfile
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter
from snippet_runner import DockerEngine, Orchestrator, load_settings
from snippet_runner.errors import NoBackendAvailableError
from snippet_runner.execution.capabilities import PREFERENCE_ORDER
from snippet_runner.execution.docker_engine import docker_is_available
from snippet_runner.execution.lifecycle import LifecycleManager
from snippet_runner.execution.processes import ProcessRegistry
from snippet_runner.execution.types import ExecutionResult
from snippet_runner.logging_config import setup_logging
from snippet_runner.settings import RunnerSettings

_CONSOLE = Console(no_color=False)


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="snr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for snippet-runner operations.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="snr",
        description=(
            "snippet-runner CLI\n"
            "Run untrusted snippets with the strongest isolation this host offers:\n"
            "Firecracker microVM, then Docker container, then in-process sandbox."
        ),
        epilog=(
            "Quick Examples:\n"
            "  snr run hello.py\n"
            "  echo 'print(6 * 7)' | snr run - --json\n"
            "  snr capabilities\n"
            "  snr cleanup\n\n"
            "Configuration Examples:\n"
            "  snr --config /etc/snippet-runner.toml capabilities\n"
            "  SNIPPET_RUNNER_TIMEOUT_SECONDS=2 snr run slow.py"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to a TOML settings file.\n"
            "Values go in the runner table; SNIPPET_RUNNER_* variables override it."
        ),
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level for diagnostics on stderr (default: WARNING).",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Execute one snippet through the orchestrator.",
        description=(
            "Execute a snippet file (or stdin with '-') once.\n"
            "Exit status is 0 on success and 1 on any failure."
        ),
        epilog=(
            "Examples:\n"
            "  snr run hello.py\n"
            "  snr run - --json < hello.py"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("file", nargs="?", default="-", help="Snippet file, or '-' for stdin (default).")
    run_cmd.add_argument(
        "--json",
        action="store_true",
        help="Print the result record as JSON instead of a panel.",
    )

    sub.add_parser(
        "capabilities",
        help="Show which isolation backends this host supports.",
        description=(
            "Probe every backend once and show the result.\n"
            "Includes the reason a backend was rejected and the backend that would be selected."
        ),
        formatter_class=_HELP_FORMATTER,
    )

    sub.add_parser(
        "cleanup",
        help="Remove residual scratch artifacts and managed containers.",
        description=(
            "Empty the scratch directory and force-remove containers\n"
            "labeled as managed by snippet-runner."
        ),
        epilog=(
            "Example:\n"
            "  snr cleanup"
        ),
        formatter_class=_HELP_FORMATTER,
    )

    return parser


def _read_source(path: str) -> str:
    """Read snippet source from a file path or stdin.

    Example:
        ```python
        source = _read_source("-")
        ```
    """
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def _print_result(result: ExecutionResult) -> None:
    """Render one execution result in a rich panel.

    Example:
        ```python
        _print_result(result)
        ```
    """
    style = "green" if result.success else "red"
    title = f"{result.mode.value} | {result.execution_id}"
    if result.from_cache:
        title += " | cached"
    body = Text(result.output) if result.output else Text("(no output)", style="dim")
    _CONSOLE.print(Panel(body, title=title, border_style=style))
    if result.error:
        label = result.error_kind.value if result.error_kind else "stderr"
        _CONSOLE.print(Panel(Text(result.error), title=label, border_style="yellow" if result.success else "red"))


def _print_capabilities(orchestrator: Orchestrator) -> None:
    """Render probe results and the selected backend.

    Example:
        ```python
        _print_capabilities(orchestrator)
        ```
    """
    caps = orchestrator.capabilities
    table = Table(title="Isolation Backends")
    table.add_column("Backend", style="cyan")
    table.add_column("Available")
    table.add_column("Reason")
    for mode in PREFERENCE_ORDER:
        available = caps.supports(mode)
        table.add_row(
            mode.value,
            "[green]yes[/green]" if available else "[red]no[/red]",
            Text(caps.reasons.get(mode, "")),
        )
    _CONSOLE.print(table)
    _CONSOLE.print(Panel.fit(f"Selected backend: {orchestrator.mode.value}", style="bold green"))


def _cleanup(settings: RunnerSettings) -> dict[str, Any]:
    """Remove residual artifacts and managed containers left by earlier runs.

    Example:
        ```python
        summary = _cleanup(RunnerSettings())
        ```
    """
    engine = DockerEngine(settings, ProcessRegistry())
    summary = LifecycleManager(ProcessRegistry(), settings.scratch_dir).shutdown()
    removed_containers = 0
    available, _ = docker_is_available(settings.docker_binary, settings.probe_timeout_seconds)
    if available:
        removed_containers = engine.remove_stale_containers()
    return {
        "removed_artifacts": summary.removed_artifacts,
        "removed_containers": removed_containers,
    }


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `snr` CLI command handler.

    Example:
        ```python
        code = main(["capabilities"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    setup_logging(args.log_level, rich_console=True)
    try:
        settings = load_settings(args.config)
    except (OSError, ValueError) as exc:
        _CONSOLE.print(Panel.fit(f"Invalid configuration: {exc}", style="bold red"))
        return 2

    if args.command == "cleanup":
        try:
            summary = _cleanup(settings)
        except (RuntimeError, OSError, subprocess.TimeoutExpired) as exc:
            _CONSOLE.print(Panel.fit(Text(f"Cleanup failed: {exc}"), border_style="red"))
            return 1
        _CONSOLE.print(Panel.fit(Pretty(summary), title="Cleanup Summary", border_style="green"))
        return 0

    if args.command == "run":
        try:
            source = _read_source(args.file)
        except OSError as exc:
            _CONSOLE.print(Panel.fit(f"Cannot read {args.file}: {exc}", style="bold red"))
            return 1

    # Concurrent invocations share the scratch root; each one empties only its own directory.
    settings.scratch_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="snr-", dir=settings.scratch_dir) as private:
        try:
            orchestrator = Orchestrator(settings.with_overrides({"scratch_dir": private}))
        except NoBackendAvailableError as exc:
            _CONSOLE.print(Panel.fit(str(exc), style="bold red"))
            return 1

        with orchestrator:
            if args.command == "capabilities":
                _print_capabilities(orchestrator)
                return 0
            if args.command == "run":
                result = orchestrator.execute(source)
                if args.json:
                    print(json.dumps(result.to_dict()))
                else:
                    _print_result(result)
                return 0 if result.success else 1

    parser.error("Unhandled command")
