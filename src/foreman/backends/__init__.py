from foreman.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from foreman.backends.cli import CliBackend, build_backend_command
from foreman.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CliBackend",
    "ResilientBackend",
    "RetryPolicy",
    "build_backend_command",
]
