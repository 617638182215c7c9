from .engine import ExecutionEngine
from .types import BackendMode, ErrorKind, ExecutionOutcome, ExecutionRequest, ExecutionResult

__all__ = [
    "BackendMode",
    "ErrorKind",
    "ExecutionEngine",
    "ExecutionOutcome",
    "ExecutionRequest",
    "ExecutionResult",
]
