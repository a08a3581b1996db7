"""Child process runner and the named pipes connecting it to the supervisor."""

from .executor import CellExecutor, CommandExecutionError, ExecutionResult, ExecutionStatus
from .pipes import PipeBridge, ResourceError

__all__ = [
    "CellExecutor",
    "CommandExecutionError",
    "ExecutionResult",
    "ExecutionStatus",
    "PipeBridge",
    "ResourceError",
]
