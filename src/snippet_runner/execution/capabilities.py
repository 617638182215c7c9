from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Sequence

from ..errors import NoBackendAvailableError
from .engine import ExecutionEngine
from .types import BackendMode

logger = logging.getLogger(__name__)

# Descending isolation strength.
PREFERENCE_ORDER = (BackendMode.MICROVM, BackendMode.CONTAINER, BackendMode.SANDBOX)


@dataclass(frozen=True, slots=True)
class CapabilitySet:
    """Write-once record of which backends are usable on this host.

    Example:
        ```python
        caps = CapabilitySet(microvm=False, container=True, sandbox=True)
        ```
    """

    microvm: bool = False
    container: bool = False
    sandbox: bool = False
    reasons: Mapping[BackendMode, str] = field(default_factory=lambda: MappingProxyType({}))

    def supports(self, mode: BackendMode) -> bool:
        """Return the capability bit for a backend mode.

        Example:
            ```python
            if caps.supports(BackendMode.CONTAINER):
                ...
            ```
        """
        return bool(getattr(self, mode.value))

    def available_modes(self) -> list[BackendMode]:
        """Return usable modes, strongest first.

        Example:
            ```python
            modes = caps.available_modes()
            ```
        """
        return [mode for mode in PREFERENCE_ORDER if self.supports(mode)]


def probe_capabilities(engines: Sequence[ExecutionEngine]) -> CapabilitySet:
    """Probe every engine once; a failing probe only clears its bit.

    Example:
        ```python
        caps = probe_capabilities([microvm, docker, sandbox])
        ```
    """
    bits = {mode: False for mode in PREFERENCE_ORDER}
    reasons: dict[BackendMode, str] = {}
    for engine in engines:
        try:
            available, reason = engine.probe()
        except Exception as exc:
            available, reason = False, f"probe raised {type(exc).__name__}: {exc}"
        if available:
            bits[engine.mode] = True
            logger.info("Backend %s is available", engine.mode.value)
        else:
            reasons[engine.mode] = reason or "unavailable"
            logger.warning("Backend %s is not available: %s", engine.mode.value, reasons[engine.mode])
    return CapabilitySet(
        microvm=bits[BackendMode.MICROVM],
        container=bits[BackendMode.CONTAINER],
        sandbox=bits[BackendMode.SANDBOX],
        reasons=MappingProxyType(reasons),
    )


def select_engine(
    capabilities: CapabilitySet,
    engines: Sequence[ExecutionEngine],
) -> ExecutionEngine:
    """Pick the strongest capable engine: microVM, then container, then sandbox.

    Example:
        ```python
        engine = select_engine(caps, [microvm, docker, sandbox])
        ```
    """
    by_mode = {engine.mode: engine for engine in engines}
    for mode in capabilities.available_modes():
        engine = by_mode.get(mode)
        if engine is not None:
            logger.info("Selected %s backend for all executions", mode.value)
            return engine
    raise NoBackendAvailableError("No usable execution backend was found on this host")
