from issueflow.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    ExecutorBackend,
)
from issueflow.backends.claude import ClaudeCodeBackend

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "ExecutorBackend",
]
