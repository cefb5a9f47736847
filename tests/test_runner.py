import asyncio
import json
from pathlib import Path
from typing import Any

from issueflow.backends.base import BackendProcessError, BackendTimeoutError, ExecutorBackend
from issueflow.rate_limit import RateLimiter
from issueflow.runner import SchemaLoader, StageRunner, StageTimeouts
from issueflow.stages import ErrorKind, Stage, StageError, StageSuccess


class ScriptedBackend(ExecutorBackend):
    name = "scripted"

    def __init__(self, responses: list[dict[str, Any] | Exception]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def invoke(
        self,
        instruction: str,
        schema: dict[str, Any],
        *,
        agent: str | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        self.calls.append(
            {"instruction": instruction, "schema": schema, "agent": agent, "model": model}
        )
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class SlowBackend(ExecutorBackend):
    async def invoke(
        self,
        instruction: str,
        schema: dict[str, Any],
        *,
        agent: str | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        _ = instruction, schema, agent, model
        await asyncio.sleep(5)
        return {"is_error": False, "structured_output": {"status": "success"}}


def _runner(backend: ExecutorBackend, log_dir: Path, **kwargs: Any) -> StageRunner:
    slept: list[float] = kwargs.pop("slept", [])

    async def fake_sleep(seconds: float) -> None:
        slept.append(seconds)

    return StageRunner(
        backend,
        log_dir=log_dir,
        rate_limiter=RateLimiter(default_seconds=30, buffer_seconds=5, sleep=fake_sleep),
        **kwargs,
    )


def _stage(name: str = "implement", **kwargs: Any) -> Stage:
    return Stage(name=name, instruction="do the thing", schema=kwargs.pop("schema", name), **kwargs)


def test_structured_output_is_returned_and_logged(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        [{"is_error": False, "structured_output": {"status": "success", "summary": "done"}}]
    )
    runner = _runner(backend, tmp_path, default_model="sonnet")

    result = asyncio.run(runner.run(_stage(tag="task1")))

    assert isinstance(result, StageSuccess)
    assert result.summary == "done"
    assert backend.calls[0]["model"] == "sonnet"
    assert backend.calls[0]["schema"]["required"] == ["status", "summary"]
    log_lines = (tmp_path / "implement-task1.log").read_text(encoding="utf-8").splitlines()
    assert len(log_lines) == 1
    assert json.loads(log_lines[0])["envelope"]["structured_output"]["summary"] == "done"


def test_missing_schema_never_invokes_executor(tmp_path: Path) -> None:
    backend = ScriptedBackend([])
    runner = _runner(backend, tmp_path)

    result = asyncio.run(runner.run(_stage(schema="does_not_exist")))

    assert isinstance(result, StageError)
    assert result.kind == ErrorKind.SCHEMA_NOT_FOUND
    assert backend.calls == []
    assert runner.invocations == 0


def test_schema_override_directory_is_preferred(tmp_path: Path) -> None:
    schema_dir = tmp_path / "schemas"
    schema_dir.mkdir()
    (schema_dir / "docs.json").write_text('{"type": "object", "title": "custom"}', encoding="utf-8")
    backend = ScriptedBackend([{"is_error": False, "result": "updated docs"}])
    runner = _runner(backend, tmp_path / "logs", schemas=SchemaLoader(schema_dir))

    result = asyncio.run(runner.run(_stage("docs")))

    assert isinstance(result, StageSuccess)
    assert backend.calls[0]["schema"]["title"] == "custom"


def test_timeout_returns_timeout_error_without_retry(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    runner = _runner(SlowBackend(), tmp_path, event_hook=events.append)

    result = asyncio.run(runner.run(_stage(timeout=0.05)))

    assert isinstance(result, StageError)
    assert result.timed_out
    assert runner.invocations == 1
    assert [event["event"] for event in events] == [
        "stage_start",
        "stage_timeout",
        "stage_finished",
    ]
    assert "timed_out" in (tmp_path / "implement.log").read_text(encoding="utf-8")


def test_rate_limit_is_retried_exactly_once(tmp_path: Path) -> None:
    limited = {"is_error": True, "result": "API Error: rate limit exceeded, retry after 20"}
    backend = ScriptedBackend([limited, limited])
    slept: list[float] = []
    events: list[dict[str, Any]] = []
    runner = _runner(backend, tmp_path, slept=slept, event_hook=events.append)

    result = asyncio.run(runner.run(_stage("run_tests")))

    assert isinstance(result, StageError)
    assert result.kind == ErrorKind.RATE_LIMITED
    assert len(backend.calls) == 2
    assert slept == [25]
    assert any(event["event"] == "stage_rate_limited" for event in events)
    assert len((tmp_path / "run_tests.log").read_text(encoding="utf-8").splitlines()) == 2


def test_rate_limit_retry_result_is_used(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        [
            {"is_error": False, "structured_output": {"status": "rate_limit"}},
            {"is_error": False, "structured_output": {"status": "success", "summary": "ok"}},
        ]
    )
    runner = _runner(backend, tmp_path)

    result = asyncio.run(runner.run(_stage("docs")))

    assert isinstance(result, StageSuccess)
    assert result.summary == "ok"


def test_backend_errors_become_process_errors(tmp_path: Path) -> None:
    backend = ScriptedBackend([BackendProcessError("binary missing", backend="scripted")])
    runner = _runner(backend, tmp_path)

    result = asyncio.run(runner.run(_stage("publish")))

    assert isinstance(result, StageError)
    assert result.kind == ErrorKind.PROCESS_ERROR
    assert "binary missing" in result.message


def test_timeouts_follow_stage_class(tmp_path: Path) -> None:
    runner = _runner(
        ScriptedBackend([]),
        tmp_path,
        timeouts=StageTimeouts(implementation_seconds=100, review_seconds=50, light_seconds=10),
    )

    assert runner.timeout_for(_stage("fix")) == 100
    assert runner.timeout_for(_stage("pr_review")) == 50
    assert runner.timeout_for(_stage("publish")) == 10
    assert runner.timeout_for(_stage("publish", timeout=3)) == 3


def test_structured_rate_limit_after_retry_becomes_error(tmp_path: Path) -> None:
    limited = {"is_error": False, "structured_output": {"status": "rate_limit"}}
    backend = ScriptedBackend([limited, limited])
    events: list[dict[str, Any]] = []
    runner = _runner(backend, tmp_path, event_hook=events.append)

    result = asyncio.run(runner.run(_stage("implement")))

    assert isinstance(result, StageError)
    assert result.kind == ErrorKind.RATE_LIMITED
    assert not result.timed_out
    assert len(backend.calls) == 2
    assert events[-1] == {
        "event": "stage_finished",
        "stage": "implement",
        "ok": False,
        "kind": ErrorKind.RATE_LIMITED,
    }


def test_backend_timeout_is_reported_as_stage_timeout(tmp_path: Path) -> None:
    backend = ScriptedBackend([BackendTimeoutError("exceeded 60s", backend="scripted")])
    runner = _runner(backend, tmp_path)

    result = asyncio.run(runner.run(_stage("review")))

    assert isinstance(result, StageError)
    assert result.timed_out
    assert "timed_out" in (tmp_path / "review.log").read_text(encoding="utf-8")
