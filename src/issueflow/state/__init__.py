from issueflow.state.models import (
    LoopKind,
    RunStatus,
    StageRecord,
    StageStatus,
    Task,
    TaskStatus,
    WorkflowRun,
    WorkflowStage,
    WorkflowStateError,
    assign_feature_branch,
    begin_stage,
    bump_iteration,
    complete_stage,
    is_past,
    mark_terminal,
    prepare_for_resume,
    update_task,
)
from issueflow.state.store import WorkflowStateStore

__all__ = [
    "LoopKind",
    "RunStatus",
    "StageRecord",
    "StageStatus",
    "Task",
    "TaskStatus",
    "WorkflowRun",
    "WorkflowStage",
    "WorkflowStateError",
    "WorkflowStateStore",
    "assign_feature_branch",
    "begin_stage",
    "bump_iteration",
    "complete_stage",
    "is_past",
    "mark_terminal",
    "prepare_for_resume",
    "update_task",
]
