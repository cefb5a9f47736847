from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when an executor process fails before producing an envelope."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when executor execution exceeds its wall-clock budget."""


class BackendProcessError(BackendExecutionError):
    """Raised when the executor process cannot be started or inspected."""


class ExecutorBackend(ABC):
    name: str = "executor"

    @abstractmethod
    async def invoke(
        self,
        instruction: str,
        schema: dict[str, Any],
        *,
        agent: str | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        """Run one instruction and return the executor's JSON envelope.

        The envelope carries at least ``is_error`` and, depending on how well
        the executor followed the schema, ``structured_output`` and/or a
        free-text ``result``.
        """
