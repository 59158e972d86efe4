from specstudio.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    CommandLineBackend,
)
from specstudio.backends.claude import ClaudeCodeBackend
from specstudio.backends.codex import CodexBackend
from specstudio.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CommandLineBackend",
    "ResilientBackend",
    "RetryPolicy",
]
