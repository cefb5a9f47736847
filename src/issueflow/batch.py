from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from issueflow.controller import RunExitCode, RunSummary

logger = logging.getLogger(__name__)

RunFactory = Callable[[str], Awaitable[RunSummary]]


@dataclass(slots=True)
class BatchSummary:
    results: dict[str, RunExitCode] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    halted: bool = False

    @property
    def exit_code(self) -> RunExitCode:
        if not self.results:
            return RunExitCode.SUCCESS
        return max(self.results.values())


class BatchController:
    """Runs issues one after another and stops after repeated failures."""

    def __init__(self, run_issue: RunFactory, *, max_consecutive_failures: int = 3) -> None:
        self.run_issue = run_issue
        self.max_consecutive_failures = max(1, max_consecutive_failures)

    async def run(self, issues: list[str]) -> BatchSummary:
        summary = BatchSummary()
        consecutive_failures = 0
        for index, issue in enumerate(issues):
            result = await self.run_issue(issue)
            summary.results[issue] = result.exit_code
            if result.exit_code is RunExitCode.SUCCESS:
                consecutive_failures = 0
                continue
            consecutive_failures += 1
            logger.warning(
                "Issue %s ended with exit code %d (%d consecutive failure(s))",
                issue,
                int(result.exit_code),
                consecutive_failures,
            )
            if consecutive_failures >= self.max_consecutive_failures:
                summary.halted = True
                summary.skipped = list(issues[index + 1 :])
                logger.error(
                    "Stopping batch after %d consecutive failures; %d issue(s) not attempted",
                    consecutive_failures,
                    len(summary.skipped),
                )
                break
        return summary
