"""Stage descriptors and the normalised outcome of one executor invocation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    TIMEOUT = "timeout"
    SCHEMA_NOT_FOUND = "schema_not_found"
    NO_STRUCTURED_OUTPUT = "no_structured_output"
    EXECUTOR_ERROR = "executor_error"
    PROCESS_ERROR = "process_error"
    RATE_LIMITED = "rate_limited"


class TimeoutClass(StrEnum):
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    LIGHT = "light"


_IMPLEMENTATION_PREFIXES = ("implement", "fix", "simplify")
_REVIEW_PREFIXES = ("review", "pr_review", "validate")


def timeout_class_for(stage_name: str) -> TimeoutClass:
    name = stage_name.lower()
    if name.startswith(_IMPLEMENTATION_PREFIXES):
        return TimeoutClass.IMPLEMENTATION
    if name.startswith(_REVIEW_PREFIXES):
        return TimeoutClass.REVIEW
    return TimeoutClass.LIGHT


@dataclass(slots=True)
class Stage:
    name: str
    instruction: str
    schema: str
    agent: str | None = None
    model: str | None = None
    timeout: float | None = None
    tag: str | None = None

    @property
    def log_name(self) -> str:
        if self.tag:
            return f"{self.name}-{self.tag}"
        return self.name


@dataclass(slots=True)
class StageSuccess:
    payload: dict[str, Any]
    envelope: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return True

    @property
    def status(self) -> str:
        return str(self.payload.get("status", "success"))

    @property
    def summary(self) -> str:
        return str(self.payload.get("summary", ""))


@dataclass(slots=True)
class StageError:
    kind: str
    message: str = ""
    envelope: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False

    @property
    def timed_out(self) -> bool:
        return self.kind == ErrorKind.TIMEOUT


StageResult = StageSuccess | StageError


def executor_flagged_error(envelope: dict[str, Any]) -> bool:
    if envelope.get("is_error") is True:
        return True
    subtype = envelope.get("subtype")
    return isinstance(subtype, str) and subtype.startswith("error")


def extract_result(envelope: dict[str, Any]) -> StageResult:
    """Normalise an executor envelope into a ``StageResult``.

    A schema-shaped ``structured_output`` wins. Executors do not always honour
    the schema, so a clean exit with free text becomes a synthetic success.
    """
    structured = envelope.get("structured_output")
    if isinstance(structured, dict):
        return StageSuccess(payload=structured, envelope=envelope)

    text = envelope.get("result")
    flagged = executor_flagged_error(envelope)
    if not flagged and isinstance(text, str) and text.strip():
        return StageSuccess(
            payload={"status": "success", "summary": text.strip()},
            envelope=envelope,
        )
    if flagged:
        subtype = envelope.get("subtype")
        kind = subtype if isinstance(subtype, str) and subtype.startswith("error") else None
        return StageError(
            kind=kind or ErrorKind.EXECUTOR_ERROR,
            message=str(text or "Executor reported an error without details."),
            envelope=envelope,
        )
    return StageError(
        kind=ErrorKind.NO_STRUCTURED_OUTPUT,
        message="Executor returned neither structured output nor a text result.",
        envelope=envelope,
    )


def result_text(result: StageResult) -> str:
    parts: list[str] = []
    text = result.envelope.get("result")
    if isinstance(text, str):
        parts.append(text)
    if isinstance(result, StageError) and result.message and result.message != text:
        parts.append(result.message)
    if isinstance(result, StageSuccess) and result.summary and result.summary != text:
        parts.append(result.summary)
    return "\n".join(parts)
