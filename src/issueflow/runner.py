from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from importlib import resources
from pathlib import Path
from typing import Any

from issueflow.backends.base import BackendExecutionError, BackendTimeoutError, ExecutorBackend
from issueflow.rate_limit import RateLimiter
from issueflow.stages import (
    ErrorKind,
    Stage,
    StageError,
    StageResult,
    TimeoutClass,
    extract_result,
    timeout_class_for,
)

logger = logging.getLogger(__name__)

StageEventHook = Callable[[dict[str, Any]], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class StageTimeouts:
    implementation_seconds: float = 3600.0
    review_seconds: float = 1800.0
    light_seconds: float = 900.0

    def for_class(self, timeout_class: TimeoutClass) -> float:
        if timeout_class is TimeoutClass.IMPLEMENTATION:
            return self.implementation_seconds
        if timeout_class is TimeoutClass.REVIEW:
            return self.review_seconds
        return self.light_seconds


class SchemaLoader:
    """Finds output schemas in an override directory, then in package data."""

    def __init__(self, schema_dir: Path | None = None) -> None:
        self.schema_dir = schema_dir

    def load(self, name: str) -> dict[str, Any] | None:
        filename = f"{name}.json"
        if self.schema_dir is not None:
            candidate = self.schema_dir / filename
            if candidate.is_file():
                return self._parse(candidate.read_text(encoding="utf-8"))
        try:
            resource = resources.files("issueflow.schemas").joinpath(filename)
            if not resource.is_file():
                return None
            return self._parse(resource.read_text(encoding="utf-8"))
        except (FileNotFoundError, ModuleNotFoundError):
            return None

    @staticmethod
    def _parse(raw: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None


class StageRunner:
    def __init__(
        self,
        backend: ExecutorBackend,
        *,
        log_dir: Path,
        timeouts: StageTimeouts | None = None,
        rate_limiter: RateLimiter | None = None,
        schemas: SchemaLoader | None = None,
        default_model: str | None = None,
        event_hook: StageEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.log_dir = log_dir
        self.timeouts = timeouts or StageTimeouts()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.schemas = schemas or SchemaLoader()
        self.default_model = default_model or None
        self.event_hook = event_hook
        self.invocations = 0

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def timeout_for(self, stage: Stage) -> float:
        if stage.timeout is not None:
            return stage.timeout
        return self.timeouts.for_class(timeout_class_for(stage.name))

    def _append_log(self, stage: Stage, attempt: int, record: dict[str, Any]) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        entry = {
            "at": _utcnow_iso(),
            "stage": stage.name,
            "tag": stage.tag,
            "agent": stage.agent,
            "attempt": attempt,
            **record,
        }
        with (self.log_dir / f"{stage.log_name}.log").open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False) + "\n")

    async def _attempt(
        self,
        stage: Stage,
        schema: dict[str, Any],
        timeout: float,
        attempt: int,
    ) -> StageResult:
        self.invocations += 1
        self._emit({"event": "stage_start", "stage": stage.log_name, "attempt": attempt})
        try:
            envelope = await asyncio.wait_for(
                self.backend.invoke(
                    stage.instruction,
                    schema,
                    agent=stage.agent,
                    model=stage.model or self.default_model,
                ),
                timeout=timeout,
            )
        except (TimeoutError, BackendTimeoutError):
            self._append_log(stage, attempt, {"timeout_seconds": timeout, "timed_out": True})
            self._emit({"event": "stage_timeout", "stage": stage.log_name, "attempt": attempt})
            logger.warning("Stage %s timed out after %.0fs", stage.log_name, timeout)
            return StageError(
                kind=ErrorKind.TIMEOUT,
                message=f"Stage {stage.log_name} timed out after {timeout:.0f}s",
            )
        except BackendExecutionError as exc:
            self._append_log(
                stage,
                attempt,
                {"error": str(exc), "exit_code": exc.exit_code, "retriable": exc.retriable},
            )
            logger.error("Stage %s could not run: %s", stage.log_name, exc)
            return StageError(kind=ErrorKind.PROCESS_ERROR, message=str(exc))

        self._append_log(stage, attempt, {"envelope": envelope})
        return extract_result(envelope)

    async def run(self, stage: Stage) -> StageResult:
        schema = self.schemas.load(stage.schema)
        if schema is None:
            logger.error("Output schema %r not found for stage %s", stage.schema, stage.log_name)
            return StageError(
                kind=ErrorKind.SCHEMA_NOT_FOUND,
                message=f"Output schema '{stage.schema}' not found.",
            )

        timeout = self.timeout_for(stage)
        logger.info("Running stage %s (timeout %.0fs)", stage.log_name, timeout)
        result = await self._attempt(stage, schema, timeout, attempt=1)

        if self.rate_limiter.is_rate_limited(result):
            delay = self.rate_limiter.wait_time(result)
            self._emit(
                {"event": "stage_rate_limited", "stage": stage.log_name, "delay_seconds": delay}
            )
            await self.rate_limiter.backoff(result)
            result = await self._attempt(stage, schema, timeout, attempt=2)
            if self.rate_limiter.is_rate_limited(result):
                logger.error("Stage %s is still rate limited after one retry", stage.log_name)
                result = StageError(
                    kind=ErrorKind.RATE_LIMITED,
                    message=f"Stage {stage.log_name} still rate limited after one retry",
                    envelope=result.envelope,
                )

        self._emit(
            {
                "event": "stage_finished",
                "stage": stage.log_name,
                "ok": result.ok,
                "kind": None if result.ok else getattr(result, "kind", None),
            }
        )
        return result
