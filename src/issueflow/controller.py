from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import IntEnum
from functools import partial
from pathlib import Path
from typing import Any

from issueflow.caps import extract_size_label, get_max_review_attempts, max_iterations
from issueflow.config import IssueflowConfig
from issueflow.loops import (
    LoopContext,
    LoopOutcome,
    LoopResult,
    run_quality_loop,
    run_review_loop,
    run_test_loop,
)
from issueflow.runner import StageRunner
from issueflow.specialists import SpecialistSet
from issueflow.stages import ErrorKind, StageError, StageResult, StageSuccess
from issueflow.state import (
    RunStatus,
    Task,
    TaskStatus,
    WorkflowRun,
    WorkflowStage,
    WorkflowStateError,
    WorkflowStateStore,
    assign_feature_branch,
    begin_stage,
    complete_stage,
    is_past,
    mark_terminal,
    update_task,
)
from issueflow.tracker import IssueTracker, TrackerError
from issueflow.vcs import GitRepository, VcsError

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class RunExitCode(IntEnum):
    SUCCESS = 0
    STAGE_ERROR = 1
    ITERATION_CAP = 2
    CONFIG_ERROR = 3


@dataclass(slots=True)
class RunSummary:
    run_id: str
    issue: str
    status: RunStatus
    exit_code: RunExitCode
    started_at: str
    ended_at: str
    total_tasks: int
    completed_tasks: int
    pr_url: str | None = None
    failure_reason: str | None = None


class RunHalted(Exception):
    """Stops the pipeline with an exit code; ``persisted`` means the terminal state is written."""

    def __init__(
        self,
        exit_code: RunExitCode,
        reason: str,
        *,
        persisted: bool = False,
    ) -> None:
        super().__init__(reason)
        self.exit_code = exit_code
        self.reason = reason
        self.persisted = persisted


_LOOP_EXIT_CODES = {
    LoopOutcome.CAP_EXCEEDED: RunExitCode.ITERATION_CAP,
    LoopOutcome.CONVERGENCE_FAILED: RunExitCode.ITERATION_CAP,
    LoopOutcome.BRANCH_MISMATCH: RunExitCode.STAGE_ERROR,
    LoopOutcome.STAGE_FAILED: RunExitCode.STAGE_ERROR,
}


def exit_code_for(error: StageError) -> RunExitCode:
    if error.kind == ErrorKind.SCHEMA_NOT_FOUND:
        return RunExitCode.CONFIG_ERROR
    return RunExitCode.STAGE_ERROR


def branch_name_for(prefix: str, issue: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", str(issue)).strip("-") or "issue"
    return f"{prefix.strip('/')}/issue-{slug}" if prefix.strip("/") else f"issue-{slug}"


def tasks_from_payload(payload: dict[str, Any]) -> list[Task]:
    tasks: list[Task] = []
    for position, item in enumerate(payload.get("tasks") or [], start=1):
        if not isinstance(item, dict):
            continue
        description = str(item.get("description", "")).strip()
        if not description:
            continue
        raw_id = item.get("id")
        task_id = raw_id if isinstance(raw_id, int) and raw_id > 0 else position
        agent = item.get("agent")
        tasks.append(
            Task(
                id=task_id,
                description=description,
                agent=str(agent) if agent else None,
            )
        )
    if len({task.id for task in tasks}) != len(tasks):
        for position, task in enumerate(tasks, start=1):
            task.id = position
    return tasks


def _set_issue(run: WorkflowRun, title: str, body: str) -> WorkflowRun:
    run.issue_title = title
    run.issue_body = body
    return run


def _set_tasks(run: WorkflowRun, tasks: list[Task]) -> WorkflowRun:
    run.tasks = tasks
    return run


def _count_attempt(run: WorkflowRun, task_id: int) -> WorkflowRun:
    for task in run.tasks:
        if task.id == task_id:
            task.review_attempts += 1
    return run


def _set_pr_url(run: WorkflowRun, pr_url: str) -> WorkflowRun:
    run.pr_url = pr_url
    return run


class RunController:
    """Walks one run through the fixed stage pipeline, skipping completed stages."""

    def __init__(
        self,
        *,
        store: WorkflowStateStore,
        runner: StageRunner,
        vcs: GitRepository,
        tracker: IssueTracker,
        config: IssueflowConfig,
        specialists: SpecialistSet | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.vcs = vcs
        self.tracker = tracker
        self.config = config
        self.specialists = specialists or SpecialistSet()
        self._handlers = {
            WorkflowStage.INTAKE: self._intake,
            WorkflowStage.VALIDATE: self._validate,
            WorkflowStage.IMPLEMENT: self._implement,
            WorkflowStage.TEST_LOOP: self._test_loop,
            WorkflowStage.DOCS: self._docs,
            WorkflowStage.PUBLISH: self._publish,
            WorkflowStage.REVIEW_LOOP: self._review_loop,
            WorkflowStage.FINALIZE: self._finalize,
        }

    async def execute(self) -> RunSummary:
        started_at = _utcnow_iso()
        exit_code = RunExitCode.SUCCESS
        run = self.store.read()
        if run.status.terminal:
            raise WorkflowStateError(f"Run {run.run_id} is already {run.status}.")
        try:
            if run.feature_branch:
                self.vcs.ensure_branch(run.feature_branch, start_point=run.base_branch)
            for stage in WorkflowStage:
                run = self.store.read()
                if is_past(run, stage):
                    logger.info("Stage %s already completed; skipping", stage)
                    continue
                self.store.transform(partial(begin_stage, stage=stage))
                logger.info("Entering stage %s", stage)
                await self._handlers[stage]()
                self.store.transform(partial(complete_stage, stage=stage))
        except RunHalted as halt:
            exit_code = halt.exit_code
            self._fail(halt.reason, persisted=halt.persisted)
        except (VcsError, TrackerError, WorkflowStateError) as exc:
            exit_code = RunExitCode.STAGE_ERROR
            self._fail(str(exc))
        return self._summary(started_at, exit_code)

    def _fail(self, reason: str, *, persisted: bool = False) -> None:
        logger.error("Run halted: %s", reason)
        try:
            if persisted:
                run = self.store.read()
            else:
                run = self.store.transform(
                    lambda current: mark_terminal(current, RunStatus.FAILED, reason)
                )
        except WorkflowStateError as exc:
            logger.error("Could not record failure in %s: %s", self.store.path, exc)
            return
        self.tracker.comment(
            run.issue,
            f"issueflow run `{run.run_id}` stopped ({run.status}): {run.failure_reason or reason}",
        )

    def _summary(self, started_at: str, exit_code: RunExitCode) -> RunSummary:
        run = self.store.read()
        return RunSummary(
            run_id=run.run_id,
            issue=run.issue,
            status=run.status,
            exit_code=exit_code,
            started_at=started_at,
            ended_at=_utcnow_iso(),
            total_tasks=len(run.tasks),
            completed_tasks=sum(1 for task in run.tasks if task.status is TaskStatus.COMPLETED),
            pr_url=run.pr_url,
            failure_reason=run.failure_reason,
        )

    def _issue_context(self, run: WorkflowRun) -> dict[str, Any]:
        return {"number": run.issue, "title": run.issue_title, "body": run.issue_body}

    def _loop_context(self) -> LoopContext:
        run = self.store.read()
        loops = self.config.loops
        return LoopContext(
            runner=self.runner,
            store=self.store,
            vcs=self.vcs,
            specialists=self.specialists,
            base_branch=run.base_branch,
            feature_branch=run.feature_branch or self.vcs.current_branch(),
            history_dir=Path(run.log_dir),
            issue=self._issue_context(run),
            repeat_ratio_threshold=loops.repeat_ratio_threshold,
            signature_repeat_limit=loops.test_signature_repeat_limit,
            strict_branch_check=self.config.workflow.strict_branch_check,
        )

    @staticmethod
    def _require(result: StageResult, what: str) -> StageSuccess:
        if isinstance(result, StageError):
            raise RunHalted(
                exit_code_for(result),
                f"{what} failed: {result.kind}: {result.message}",
            )
        if result.status == "failed":
            raise RunHalted(RunExitCode.STAGE_ERROR, f"{what} reported failure: {result.summary}")
        return result

    @staticmethod
    def _check_loop(result: LoopResult, what: str) -> None:
        if result.outcome.succeeded:
            if result.outcome is LoopOutcome.CONVERGED_WITH_WARNING:
                logger.warning(
                    "%s converged without approval after %d iteration(s)",
                    what,
                    result.iterations,
                )
            return
        code = _LOOP_EXIT_CODES[result.outcome]
        if result.error is not None:
            code = exit_code_for(result.error)
        reason = result.reason or f"{what} ended with {result.outcome}"
        raise RunHalted(code, reason, persisted=True)

    async def _intake(self) -> None:
        run = self.store.read()
        issue = self.tracker.fetch(run.issue)
        prefix = self.config.workflow.branch_prefix
        branch = run.feature_branch or branch_name_for(prefix, run.issue)
        self.store.transform(lambda current: _set_issue(current, issue.title, issue.body))
        self.store.transform(partial(assign_feature_branch, branch=branch))
        self.vcs.ensure_branch(branch, start_point=run.base_branch)

        result = await self.runner.run(
            self.specialists.planner.stage(
                "Break this issue into implementation tasks.",
                {"issue": issue.to_context()},
            )
        )
        parsed = self._require(result, "Issue parsing")
        tasks = tasks_from_payload(parsed.payload)
        if not tasks:
            raise RunHalted(RunExitCode.STAGE_ERROR, "Issue parsing produced no tasks.")
        self.store.transform(lambda current: _set_tasks(current, tasks))
        self.tracker.comment(
            run.issue,
            f"issueflow picked up this issue on `{branch}` with {len(tasks)} task(s).",
        )

    async def _validate(self) -> None:
        run = self.store.read()
        result = await self.runner.run(
            self.specialists.plan_validator.stage(
                "Validate the task plan against the issue.",
                {
                    "issue": self._issue_context(run),
                    "tasks": [
                        {"id": task.id, "description": task.description} for task in run.tasks
                    ],
                },
            )
        )
        validated = self._require(result, "Plan validation")
        if str(validated.payload.get("verdict", "approved")).lower() != "approved":
            logger.warning(
                "Plan validation requested changes; continuing with the parsed plan: %s",
                validated.summary or validated.payload.get("findings"),
            )

    async def _implement(self) -> None:
        run = self.store.read()
        for task in run.tasks:
            if task.settled:
                logger.info("Task %d already %s; skipping", task.id, task.status)
                continue
            await self._implement_task(task)

        run = self.store.read()
        if not any(task.status is TaskStatus.COMPLETED for task in run.tasks):
            raise RunHalted(RunExitCode.STAGE_ERROR, "No task could be implemented.")

    async def _implement_task(self, task: Task) -> None:
        run = self.store.read()
        label = extract_size_label(task.description)
        attempts_allowed = get_max_review_attempts(label)
        task_context = {"id": task.id, "description": task.description, "agent": task.agent}
        context = {
            "issue": self._issue_context(run),
            "task": task_context,
            "branch": run.feature_branch,
        }
        self.store.transform(partial(update_task, task_id=task.id, status=TaskStatus.IN_PROGRESS))

        implemented = False
        for attempt in range(1, attempts_allowed + 1):
            self.store.transform(partial(_count_attempt, task_id=task.id))
            result = await self.runner.run(
                self.specialists.implementer.stage(
                    "Implement this task.",
                    context,
                    tag=f"task{task.id}-attempt{attempt}",
                    agent=task.agent,
                )
            )
            if isinstance(result, StageError) and result.kind == ErrorKind.SCHEMA_NOT_FOUND:
                raise RunHalted(RunExitCode.CONFIG_ERROR, result.message)
            if isinstance(result, StageError) and result.kind == ErrorKind.RATE_LIMITED:
                raise RunHalted(RunExitCode.STAGE_ERROR, result.message)
            if result.ok and result.status != "failed":
                implemented = True
                break
            logger.warning(
                "Task %d attempt %d/%d did not succeed", task.id, attempt, attempts_allowed
            )

        if not implemented:
            self.store.transform(partial(update_task, task_id=task.id, status=TaskStatus.FAILED))
            self.tracker.comment(
                run.issue,
                f"Task {task.id} failed after {attempts_allowed} attempt(s): {task.description}",
            )
            return

        cap = max_iterations(label, self.vcs.diff_line_count(run.base_branch))
        outcome = await run_quality_loop(self._loop_context(), task_context, cap)
        self._check_loop(outcome, f"Quality loop for task {task.id}")
        self.store.transform(partial(update_task, task_id=task.id, status=TaskStatus.COMPLETED))

    async def _test_loop(self) -> None:
        outcome = await run_test_loop(self._loop_context(), self.config.loops.max_test_iterations)
        self._check_loop(outcome, "Test loop")

    async def _docs(self) -> None:
        run = self.store.read()
        result = await self.runner.run(
            self.specialists.documenter.stage(
                "Update documentation for this branch.",
                {"issue": self._issue_context(run), "branch": run.feature_branch},
            )
        )
        self._require(result, "Documentation")

    async def _publish(self) -> None:
        run = self.store.read()
        branch = run.feature_branch or self.vcs.current_branch()
        self.vcs.push(branch)
        result = await self.runner.run(
            self.specialists.publisher.stage(
                "Open a pull request for this branch.",
                {
                    "issue": self._issue_context(run),
                    "branch": branch,
                    "base_branch": run.base_branch,
                },
            )
        )
        published = self._require(result, "Publishing")
        pr_url = str(published.payload.get("pr_url") or "").strip()
        if not pr_url:
            raise RunHalted(RunExitCode.STAGE_ERROR, "Publishing returned no pull request URL.")
        self.store.transform(partial(_set_pr_url, pr_url=pr_url))
        self.tracker.comment(run.issue, f"Pull request opened: {pr_url}")

    async def _review_loop(self) -> None:
        run = self.store.read()
        outcome = await run_review_loop(
            self._loop_context(),
            self.config.loops.max_review_iterations,
            pr_url=run.pr_url,
        )
        self._check_loop(outcome, "Review loop")

    async def _finalize(self) -> None:
        run = self.store.transform(lambda current: mark_terminal(current, RunStatus.COMPLETED))
        completed = sum(1 for task in run.tasks if task.status is TaskStatus.COMPLETED)
        self.tracker.comment(
            run.issue,
            f"issueflow run `{run.run_id}` completed: {completed}/{len(run.tasks)} task(s), "
            f"pull request {run.pr_url or 'n/a'}.",
        )
