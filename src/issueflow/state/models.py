from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class WorkflowStateError(RuntimeError):
    """Raised when the persisted workflow document is missing or inconsistent."""


class WorkflowStage(StrEnum):
    INTAKE = "intake"
    VALIDATE = "validate"
    IMPLEMENT = "implement"
    TEST_LOOP = "test_loop"
    DOCS = "docs"
    PUBLISH = "publish"
    REVIEW_LOOP = "review_loop"
    FINALIZE = "finalize"

    @property
    def order(self) -> int:
        return list(WorkflowStage).index(self)


class StageStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class RunStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    TEST_CONVERGENCE_FAILED = "test_convergence_failed"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.IN_PROGRESS


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class LoopKind(StrEnum):
    QUALITY = "quality"
    TEST = "test"
    REVIEW = "review"


@dataclass(slots=True)
class StageRecord:
    status: StageStatus = StageStatus.PENDING
    started_at: str | None = None
    completed_at: str | None = None


@dataclass(slots=True)
class Task:
    id: int
    description: str
    agent: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    review_attempts: int = 0

    @property
    def settled(self) -> bool:
        return self.status in {TaskStatus.COMPLETED, TaskStatus.FAILED}


@dataclass(slots=True)
class WorkflowRun:
    run_id: str
    issue: str
    base_branch: str
    log_dir: str
    feature_branch: str | None = None
    current_stage: WorkflowStage | None = None
    status: RunStatus = RunStatus.IN_PROGRESS
    stages: dict[WorkflowStage, StageRecord] = field(
        default_factory=lambda: {stage: StageRecord() for stage in WorkflowStage}
    )
    tasks: list[Task] = field(default_factory=list)
    quality_iteration: int = 0
    test_iteration: int = 0
    review_iteration: int = 0
    issue_title: str = ""
    issue_body: str = ""
    pr_url: str | None = None
    failure_reason: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    @classmethod
    def new(cls, issue: str, base_branch: str, log_root: Path) -> WorkflowRun:
        run_id = f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        return cls(
            run_id=run_id,
            issue=str(issue),
            base_branch=base_branch,
            log_dir=str(log_root / run_id),
        )

    def iteration(self, kind: LoopKind) -> int:
        return int(getattr(self, f"{kind.value}_iteration"))

    def in_progress_stages(self) -> list[WorkflowStage]:
        return [
            stage
            for stage, record in self.stages.items()
            if record.status is StageStatus.IN_PROGRESS
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "issue": self.issue,
            "base_branch": self.base_branch,
            "feature_branch": self.feature_branch,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "status": self.status.value,
            "stages": {stage.value: asdict(record) for stage, record in self.stages.items()},
            "tasks": [asdict(task) for task in self.tasks],
            "quality_iteration": self.quality_iteration,
            "test_iteration": self.test_iteration,
            "review_iteration": self.review_iteration,
            "issue_title": self.issue_title,
            "issue_body": self.issue_body,
            "pr_url": self.pr_url,
            "failure_reason": self.failure_reason,
            "log_dir": self.log_dir,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowRun:
        try:
            stages = {stage: StageRecord() for stage in WorkflowStage}
            for name, record in dict(payload.get("stages") or {}).items():
                stages[WorkflowStage(name)] = StageRecord(
                    status=StageStatus(record.get("status", StageStatus.PENDING)),
                    started_at=record.get("started_at"),
                    completed_at=record.get("completed_at"),
                )
            tasks = [
                Task(
                    id=int(item["id"]),
                    description=str(item["description"]),
                    agent=item.get("agent"),
                    status=TaskStatus(item.get("status", TaskStatus.PENDING)),
                    review_attempts=int(item.get("review_attempts", 0)),
                )
                for item in payload.get("tasks") or []
            ]
            current_stage = payload.get("current_stage")
            return cls(
                run_id=str(payload["run_id"]),
                issue=str(payload["issue"]),
                base_branch=str(payload["base_branch"]),
                log_dir=str(payload["log_dir"]),
                feature_branch=payload.get("feature_branch"),
                current_stage=WorkflowStage(current_stage) if current_stage else None,
                status=RunStatus(payload.get("status", RunStatus.IN_PROGRESS)),
                stages=stages,
                tasks=tasks,
                quality_iteration=int(payload.get("quality_iteration", 0)),
                test_iteration=int(payload.get("test_iteration", 0)),
                review_iteration=int(payload.get("review_iteration", 0)),
                issue_title=str(payload.get("issue_title", "")),
                issue_body=str(payload.get("issue_body", "")),
                pr_url=payload.get("pr_url"),
                failure_reason=payload.get("failure_reason"),
                created_at=str(payload.get("created_at") or _utcnow_iso()),
                updated_at=str(payload.get("updated_at") or _utcnow_iso()),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise WorkflowStateError(f"Malformed workflow document: {exc}") from exc


# Transforms below mutate and return the run they are given. The store hands
# them a freshly read document, so callers never share state with the file.


def is_past(run: WorkflowRun, stage: WorkflowStage) -> bool:
    return run.stages[stage].status is StageStatus.COMPLETED


def begin_stage(run: WorkflowRun, stage: WorkflowStage) -> WorkflowRun:
    if is_past(run, stage):
        raise WorkflowStateError(f"Stage {stage} already completed; it cannot be re-entered.")
    others = [item for item in run.in_progress_stages() if item is not stage]
    if others:
        raise WorkflowStateError(
            f"Cannot start {stage}: {', '.join(others)} is still in progress."
        )
    record = run.stages[stage]
    record.status = StageStatus.IN_PROGRESS
    record.started_at = record.started_at or _utcnow_iso()
    run.current_stage = stage
    return run


def complete_stage(run: WorkflowRun, stage: WorkflowStage) -> WorkflowRun:
    record = run.stages[stage]
    record.status = StageStatus.COMPLETED
    record.completed_at = _utcnow_iso()
    return run


def assign_feature_branch(run: WorkflowRun, branch: str) -> WorkflowRun:
    if run.feature_branch and run.feature_branch != branch:
        raise WorkflowStateError(
            f"Feature branch already assigned ({run.feature_branch}); refusing to change it."
        )
    run.feature_branch = branch
    return run


def bump_iteration(run: WorkflowRun, kind: LoopKind) -> WorkflowRun:
    attribute = f"{kind.value}_iteration"
    setattr(run, attribute, getattr(run, attribute) + 1)
    return run


def mark_terminal(run: WorkflowRun, status: RunStatus, reason: str | None = None) -> WorkflowRun:
    run.status = status
    if reason:
        run.failure_reason = reason
    return run


def update_task(run: WorkflowRun, task_id: int, **changes: Any) -> WorkflowRun:
    for task in run.tasks:
        if task.id == task_id:
            if task.settled and changes.get("status") not in (None, task.status):
                raise WorkflowStateError(f"Task {task_id} is already {task.status}.")
            for key, value in changes.items():
                setattr(task, key, value)
            return run
    raise WorkflowStateError(f"Unknown task id: {task_id}")


def prepare_for_resume(run: WorkflowRun) -> WorkflowRun:
    if run.status is RunStatus.COMPLETED:
        raise WorkflowStateError(f"Run {run.run_id} already completed; nothing to resume.")
    for record in run.stages.values():
        if record.status is StageStatus.IN_PROGRESS:
            record.status = StageStatus.PENDING
    for task in run.tasks:
        if task.status is TaskStatus.IN_PROGRESS:
            task.status = TaskStatus.PENDING
    run.status = RunStatus.IN_PROGRESS
    run.failure_reason = None
    return run
