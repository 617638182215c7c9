from __future__ import annotations

import os
import tempfile
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Mapping

ENV_PREFIX = "SNIPPET_RUNNER_"


def _default_settings_path() -> Path:
    """Return bundled default settings TOML path.

    Example:
        ```python
        path = _default_settings_path()
        ```
    """
    return Path(__file__).with_name("default_settings.toml")


def _read_settings_toml(path: Path) -> dict[str, Any]:
    """Read a settings TOML file and return its `[runner]` table.

    Example:
        ```python
        raw = _read_settings_toml(Path("/etc/snippet-runner.toml"))
        ```
    """
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    table = raw.get("runner", raw)
    if not isinstance(table, dict):
        raise ValueError("Runner settings must be a TOML table")
    return table


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings field.

    Comma-separated strings are accepted so the field can come from the
    environment.

    Example:
        ```python
        blocked = _list_of_str("os,sys", "blocked_imports")
        ```
    """
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


def _as_bool(value: Any, field_name: str) -> bool:
    """Coerce TOML booleans and environment strings to bool.

    Example:
        ```python
        enabled = _as_bool("yes", "prefetch_image")
        ```
    """
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"'{field_name}' must be a boolean")


def _coerce(value: Any, convert: Callable[[Any], Any], field_name: str) -> Any:
    """Apply a converter, re-raising failures with the field name.

    Example:
        ```python
        slots = _coerce("3", int, "max_concurrent")
        ```
    """
    try:
        return convert(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for '{field_name}': {value!r}") from exc


_DEFAULT_RAW = _read_settings_toml(_default_settings_path())


@dataclass(slots=True)
class RunnerSettings:
    """Environment-provided configuration consumed by the orchestrator.

    Example:
        ```python
        settings = RunnerSettings(max_concurrent=2, timeout_seconds=3)
        ```
    """

    max_concurrent: int = int(_DEFAULT_RAW.get("max_concurrent", 3))
    memory_limit_mb: int = int(_DEFAULT_RAW.get("memory_limit_mb", 128))
    timeout_seconds: float = float(_DEFAULT_RAW.get("timeout_seconds", 5.0))
    timeout_grace_seconds: float = float(_DEFAULT_RAW.get("timeout_grace_seconds", 2.0))
    boot_grace_seconds: float = float(_DEFAULT_RAW.get("boot_grace_seconds", 0.5))
    probe_timeout_seconds: float = float(_DEFAULT_RAW.get("probe_timeout_seconds", 5.0))
    cache_capacity: int = int(_DEFAULT_RAW.get("cache_capacity", 100))
    kernel_image_path: Path = Path(_DEFAULT_RAW.get("kernel_image_path", "/var/lib/firecracker/vmlinux"))
    rootfs_path: Path = Path(_DEFAULT_RAW.get("rootfs_path", "/var/lib/firecracker/rootfs.ext4"))
    firecracker_binary: str = str(_DEFAULT_RAW.get("firecracker_binary", "firecracker"))
    docker_binary: str = str(_DEFAULT_RAW.get("docker_binary", "docker"))
    container_image: str = str(_DEFAULT_RAW.get("container_image", "python:3.12-slim"))
    container_cpus: float = float(_DEFAULT_RAW.get("container_cpus", 0.5))
    prefetch_image: bool = bool(_DEFAULT_RAW.get("prefetch_image", True))
    scratch_dir: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "snippet-runner"
    )
    blocked_imports: list[str] = field(
        default_factory=lambda: _list_of_str(_DEFAULT_RAW.get("blocked_imports"), "blocked_imports")
    )
    sandbox_mode: str = str(_DEFAULT_RAW.get("sandbox_mode", "allow"))
    allowed_imports: list[str] = field(
        default_factory=lambda: _list_of_str(_DEFAULT_RAW.get("allowed_imports"), "allowed_imports")
    )
    blocked_builtins: list[str] = field(
        default_factory=lambda: _list_of_str(_DEFAULT_RAW.get("blocked_builtins"), "blocked_builtins")
    )
    allowed_builtins: list[str] = field(
        default_factory=lambda: _list_of_str(_DEFAULT_RAW.get("allowed_builtins"), "allowed_builtins")
    )

    def __post_init__(self) -> None:
        """Validate numeric limits after dataclass initialization.

        Example:
            ```python
            RunnerSettings(max_concurrent=1)
            ```
        """
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.cache_capacity < 0:
            raise ValueError("cache_capacity must not be negative")
        if self.memory_limit_mb < 16:
            raise ValueError("memory_limit_mb must be at least 16")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.container_cpus <= 0:
            raise ValueError("container_cpus must be positive")
        if self.sandbox_mode not in {"allow", "restrict"}:
            raise ValueError("sandbox_mode must be 'allow' or 'restrict'")
        for name in ("timeout_grace_seconds", "boot_grace_seconds", "probe_timeout_seconds"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        self.kernel_image_path = Path(self.kernel_image_path)
        self.rootfs_path = Path(self.rootfs_path)
        self.scratch_dir = Path(self.scratch_dir)

    def with_overrides(self, raw: Mapping[str, Any]) -> "RunnerSettings":
        """Return a copy with the known keys of `raw` applied.

        Unknown keys are ignored so a shared TOML file may carry other tables.

        Example:
            ```python
            settings = RunnerSettings().with_overrides({"timeout_seconds": "2.5"})
            ```
        """
        known = {f.name for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, value in raw.items():
            if key not in known:
                continue
            changes[key] = _coerce(value, _CONVERTERS[key], key)
        return replace(self, **changes)

    @classmethod
    def from_file(cls, config_path: str | Path) -> "RunnerSettings":
        """Create settings from defaults overlaid with a TOML file.

        Example:
            ```python
            settings = RunnerSettings.from_file("/etc/snippet-runner.toml")
            ```
        """
        return cls().with_overrides(_read_settings_toml(Path(config_path)))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RunnerSettings":
        """Create settings from defaults overlaid with `SNIPPET_RUNNER_*` variables.

        Example:
            ```python
            settings = RunnerSettings.from_env({"SNIPPET_RUNNER_MAX_CONCURRENT": "5"})
            ```
        """
        return cls().with_overrides(_env_overrides(os.environ if environ is None else environ))


_CONVERTERS: dict[str, Callable[[Any], Any]] = {
    "max_concurrent": int,
    "memory_limit_mb": int,
    "timeout_seconds": float,
    "timeout_grace_seconds": float,
    "boot_grace_seconds": float,
    "probe_timeout_seconds": float,
    "cache_capacity": int,
    "kernel_image_path": Path,
    "rootfs_path": Path,
    "firecracker_binary": str,
    "docker_binary": str,
    "container_image": str,
    "container_cpus": float,
    "prefetch_image": lambda value: _as_bool(value, "prefetch_image"),
    "scratch_dir": Path,
    "sandbox_mode": str,
    "allowed_imports": lambda value: _list_of_str(value, "allowed_imports"),
    "blocked_imports": lambda value: _list_of_str(value, "blocked_imports"),
    "blocked_builtins": lambda value: _list_of_str(value, "blocked_builtins"),
    "allowed_builtins": lambda value: _list_of_str(value, "allowed_builtins"),
}


def _env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    """Collect prefixed environment variables as lower-case field names.

    Example:
        ```python
        raw = _env_overrides({"SNIPPET_RUNNER_TIMEOUT_SECONDS": "3"})
        ```
    """
    out: dict[str, str] = {}
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX):
            out[key[len(ENV_PREFIX):].lower()] = value
    return out


def load_settings(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunnerSettings:
    """Layer bundled defaults, an optional TOML file and the environment.

    Example:
        ```python
        settings = load_settings("/etc/snippet-runner.toml")
        ```
    """
    settings = RunnerSettings()
    if config_path is not None:
        settings = settings.with_overrides(_read_settings_toml(Path(config_path)))
    return settings.with_overrides(_env_overrides(os.environ if environ is None else environ))
