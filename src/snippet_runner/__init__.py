from .execution.docker_engine import DockerEngine
from .execution.microvm_engine import MicroVMEngine
from .execution.sandbox_engine import SandboxEngine
from .execution.types import BackendMode, ErrorKind, ExecutionResult
from .orchestrator import Orchestrator
from .settings import RunnerSettings, load_settings

__all__ = [
    "BackendMode",
    "DockerEngine",
    "ErrorKind",
    "ExecutionResult",
    "MicroVMEngine",
    "Orchestrator",
    "RunnerSettings",
    "SandboxEngine",
    "load_settings",
]
