import asyncio

from issueflow.batch import BatchController
from issueflow.controller import RunExitCode, RunSummary
from issueflow.state import RunStatus


def _summary(issue: str, code: RunExitCode) -> RunSummary:
    status = RunStatus.COMPLETED if code is RunExitCode.SUCCESS else RunStatus.FAILED
    return RunSummary(
        run_id=f"run-{issue}",
        issue=issue,
        status=status,
        exit_code=code,
        started_at="2026-01-01T00:00:00+00:00",
        ended_at="2026-01-01T00:01:00+00:00",
        total_tasks=1,
        completed_tasks=1 if code is RunExitCode.SUCCESS else 0,
    )


def _scripted(codes: dict[str, RunExitCode], seen: list[str]):
    async def run_issue(issue: str) -> RunSummary:
        seen.append(issue)
        return _summary(issue, codes.get(issue, RunExitCode.SUCCESS))

    return run_issue


def test_batch_runs_every_issue_when_failures_are_interleaved() -> None:
    seen: list[str] = []
    codes = {"1": RunExitCode.STAGE_ERROR, "3": RunExitCode.ITERATION_CAP}
    controller = BatchController(_scripted(codes, seen), max_consecutive_failures=2)

    summary = asyncio.run(controller.run(["1", "2", "3", "4"]))

    assert seen == ["1", "2", "3", "4"]
    assert not summary.halted
    assert summary.exit_code is RunExitCode.ITERATION_CAP


def test_batch_halts_after_consecutive_failures() -> None:
    seen: list[str] = []
    codes = {"1": RunExitCode.STAGE_ERROR, "2": RunExitCode.CONFIG_ERROR}
    controller = BatchController(_scripted(codes, seen), max_consecutive_failures=2)

    summary = asyncio.run(controller.run(["1", "2", "3", "4"]))

    assert seen == ["1", "2"]
    assert summary.halted
    assert summary.skipped == ["3", "4"]
    assert summary.exit_code is RunExitCode.CONFIG_ERROR


def test_empty_batch_succeeds() -> None:
    summary = asyncio.run(BatchController(_scripted({}, [])).run([]))

    assert summary.exit_code is RunExitCode.SUCCESS
    assert summary.results == {}
