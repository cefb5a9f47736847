"""Generic bounded refinement loop and its quality, test and review variants."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from issueflow.convergence import (
    ConvergenceDetector,
    FindingsHistory,
    RepeatRatioDetector,
    SignatureRepeatDetector,
    dedupe,
)
from issueflow.runner import StageRunner
from issueflow.scope import classify, is_testable
from issueflow.specialists import SpecialistSet
from issueflow.stages import Stage, StageError, StageResult, StageSuccess
from issueflow.state import (
    LoopKind,
    RunStatus,
    WorkflowStateStore,
    bump_iteration,
    mark_terminal,
)
from issueflow.vcs import GitRepository

logger = logging.getLogger(__name__)

UNLISTED_FAILURE = "unlisted test failure"


class LoopOutcome(StrEnum):
    APPROVED = "approved"
    CONVERGED_WITH_WARNING = "converged_with_warning"
    SKIPPED = "skipped"
    CAP_EXCEEDED = "cap_exceeded"
    CONVERGENCE_FAILED = "convergence_failed"
    BRANCH_MISMATCH = "branch_mismatch"
    STAGE_FAILED = "stage_failed"

    @property
    def succeeded(self) -> bool:
        return self in {
            LoopOutcome.APPROVED,
            LoopOutcome.CONVERGED_WITH_WARNING,
            LoopOutcome.SKIPPED,
        }


@dataclass(slots=True)
class IterationVerdict:
    verdict: str
    findings: list[str] = field(default_factory=list)
    display_findings: list[str] = field(default_factory=list)
    approved: bool = False
    timed_out: bool = False
    converge_check: bool = True
    fix_context: dict[str, Any] = field(default_factory=dict)
    error: StageError | None = None

    @classmethod
    def timeout(cls) -> IterationVerdict:
        return cls(verdict="timeout", timed_out=True)

    @classmethod
    def failed(cls, error: StageError) -> IterationVerdict:
        return cls(verdict="error", findings=[error.message] if error.message else [], error=error)


@dataclass(slots=True)
class LoopResult:
    outcome: LoopOutcome
    iterations: int = 0
    reason: str | None = None
    error: StageError | None = None


IterationStep = Callable[[int], Awaitable[IterationVerdict]]
FixBuilder = Callable[[IterationVerdict, list[str]], Stage]
AfterFix = Callable[[], Awaitable[None]]


@dataclass(slots=True)
class LoopSpec:
    kind: LoopKind
    prefix: str
    cap: int
    execute: IterationStep
    build_fix: FixBuilder
    detector: ConvergenceDetector | None = None
    after_fix: AfterFix | None = None


class BranchGuard:
    """Checks the working tree is still on the run's feature branch."""

    def __init__(self, vcs: GitRepository, expected: str, *, strict: bool = True) -> None:
        self.vcs = vcs
        self.expected = expected
        self.strict = strict

    def check(self) -> bool:
        current = self.vcs.current_branch()
        if current == self.expected:
            return True
        if self.strict:
            logger.error(
                "On branch %s, expected %s; refusing to dispatch a fix", current, self.expected
            )
            return False
        logger.warning("On branch %s, expected %s; dispatching fix anyway", current, self.expected)
        return True


class RefinementLoop:
    def __init__(
        self,
        spec: LoopSpec,
        *,
        store: WorkflowStateStore,
        runner: StageRunner,
        history_dir: Path,
        branch_guard: BranchGuard | None = None,
    ) -> None:
        self.spec = spec
        self.store = store
        self.runner = runner
        self.history = FindingsHistory.for_prefix(history_dir, spec.prefix)
        self.branch_guard = branch_guard

    def _terminate(self, status: RunStatus, reason: str) -> None:
        self.store.transform(lambda run: mark_terminal(run, status, reason))

    async def run(self) -> LoopResult:
        spec = self.spec
        local = 0
        while True:
            local += 1
            self.store.transform(lambda run: bump_iteration(run, spec.kind))
            if local > spec.cap:
                reason = f"{spec.prefix} loop exceeded its cap of {spec.cap} iteration(s)"
                logger.error(reason)
                self._terminate(RunStatus.MAX_ITERATIONS_EXCEEDED, reason)
                return LoopResult(LoopOutcome.CAP_EXCEEDED, local - 1, reason)

            logger.info("%s loop iteration %d/%d", spec.prefix, local, spec.cap)
            verdict = await spec.execute(local)

            if verdict.timed_out:
                logger.warning("%s iteration %d timed out; retrying", spec.prefix, local)
                continue
            if verdict.error is not None:
                error = verdict.error
                reason = f"{spec.prefix} stage failed: {error.kind}: {error.message}"
                self.history.append(local, verdict.findings, verdict.verdict)
                self._terminate(RunStatus.FAILED, reason)
                return LoopResult(LoopOutcome.STAGE_FAILED, local, reason, verdict.error)

            if spec.detector is not None and verdict.converge_check:
                stop = spec.detector.observe(self.history, local, verdict.findings, verdict.verdict)
            else:
                self.history.append(local, verdict.findings, verdict.verdict)
                stop = False

            if verdict.approved:
                return LoopResult(LoopOutcome.APPROVED, local)
            if stop:
                if spec.detector is not None and spec.detector.fatal:
                    reason = f"{spec.prefix} loop keeps producing the same failures"
                    logger.error(reason)
                    self._terminate(RunStatus.TEST_CONVERGENCE_FAILED, reason)
                    return LoopResult(LoopOutcome.CONVERGENCE_FAILED, local, reason)
                logger.warning(
                    "%s loop stopped early: findings are repeating; accepting current state",
                    spec.prefix,
                )
                return LoopResult(LoopOutcome.CONVERGED_WITH_WARNING, local)

            if self.branch_guard is not None and not self.branch_guard.check():
                reason = f"Working tree left branch {self.branch_guard.expected} before a fix"
                self._terminate(RunStatus.FAILED, reason)
                return LoopResult(LoopOutcome.BRANCH_MISMATCH, local, reason)

            cumulative = self.history.cumulative_findings()
            fix = await self.runner.run(spec.build_fix(verdict, cumulative))
            if isinstance(fix, StageError):
                if fix.timed_out:
                    logger.warning("%s fix stage timed out; retrying", spec.prefix)
                    continue
                reason = f"{spec.prefix} fix failed: {fix.kind}: {fix.message}"
                self._terminate(RunStatus.FAILED, reason)
                return LoopResult(LoopOutcome.STAGE_FAILED, local, reason, fix)
            if spec.after_fix is not None:
                await spec.after_fix()


def format_finding(item: Any) -> str:
    if isinstance(item, dict):
        description = str(item.get("description", "")).strip()
        location = str(item.get("file") or "").strip()
        severity = str(item.get("severity") or "").strip()
        text = f"{location}: {description}" if location else description
        return f"[{severity}] {text}" if severity else text
    return str(item).strip()


def finding_description(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("description", "")).strip()
    return str(item).strip()


def findings_from(payload: dict[str, Any]) -> list[str]:
    """Finding descriptions, the key convergence and history match on."""
    items = payload.get("findings")
    if not isinstance(items, list):
        return []
    return dedupe(finding_description(item) for item in items)


def display_findings_from(payload: dict[str, Any]) -> list[str]:
    items = payload.get("findings")
    if not isinstance(items, list):
        return []
    return dedupe(format_finding(item) for item in items)


def failure_key(failure: dict[str, Any]) -> str:
    test = str(failure.get("test", "")).strip()
    location = str(failure.get("file") or "").strip()
    return f"{location}::{test}" if location else test


def attributable_failures(
    failures: Iterable[dict[str, Any]],
    changed_files: Iterable[str],
) -> list[dict[str, Any]]:
    """Keep failures in files this branch touched; unlocated ones are kept."""
    changed = {path.strip().removeprefix("./") for path in changed_files}
    kept: list[dict[str, Any]] = []
    for failure in failures:
        location = str(failure.get("file") or "").strip().removeprefix("./")
        if not location or location in changed:
            kept.append(failure)
    return kept


def _review_verdict(result: StageResult) -> IterationVerdict:
    if isinstance(result, StageError):
        if result.timed_out:
            return IterationVerdict.timeout()
        return IterationVerdict.failed(result)
    verdict = str(result.payload.get("verdict", "changes_requested")).lower()
    return IterationVerdict(
        verdict=verdict,
        findings=findings_from(result.payload),
        display_findings=display_findings_from(result.payload),
        approved=verdict == "approved",
    )


@dataclass(slots=True)
class LoopContext:
    """Everything a loop variant needs to build and run its stages."""

    runner: StageRunner
    store: WorkflowStateStore
    vcs: GitRepository
    specialists: SpecialistSet
    base_branch: str
    feature_branch: str
    history_dir: Path
    issue: dict[str, Any] = field(default_factory=dict)
    repeat_ratio_threshold: float = 0.5
    signature_repeat_limit: int = 3
    strict_branch_check: bool = True

    def branch_guard(self) -> BranchGuard:
        return BranchGuard(self.vcs, self.feature_branch, strict=self.strict_branch_check)

    def loop(self, spec: LoopSpec) -> RefinementLoop:
        return RefinementLoop(
            spec,
            store=self.store,
            runner=self.runner,
            history_dir=self.history_dir,
            branch_guard=self.branch_guard(),
        )

    def fix_stage(self, tag: str, verdict: IterationVerdict, cumulative: list[str]) -> Stage:
        context = {
            "issue": self.issue,
            "branch": self.feature_branch,
            "current_findings": verdict.display_findings or verdict.findings,
            "cumulative_findings": cumulative,
            **verdict.fix_context,
        }
        return self.specialists.fixer.stage(
            "Address every finding below, then commit on the current branch.",
            context,
            tag=tag,
        )


async def run_quality_loop(ctx: LoopContext, task: dict[str, Any], cap: int) -> LoopResult:
    """Simplify then review one task's changes until approved or repeating."""
    task_id = task["id"]
    prefix = f"quality_task{task_id}"
    context = {"issue": ctx.issue, "task": task, "branch": ctx.feature_branch}

    async def execute(iteration: int) -> IterationVerdict:
        tag = f"task{task_id}-iter{iteration}"
        simplified = await ctx.runner.run(
            ctx.specialists.simplifier.stage("Simplify this task's changes.", context, tag=tag)
        )
        if isinstance(simplified, StageError):
            if simplified.timed_out:
                return IterationVerdict.timeout()
            return IterationVerdict.failed(simplified)
        review = await ctx.runner.run(
            ctx.specialists.critic.stage("Review this task's changes.", context, tag=tag)
        )
        return _review_verdict(review)

    spec = LoopSpec(
        kind=LoopKind.QUALITY,
        prefix=prefix,
        cap=cap,
        execute=execute,
        build_fix=lambda verdict, cumulative: ctx.fix_stage(
            f"quality-task{task_id}", verdict, cumulative
        ),
        detector=RepeatRatioDetector(ctx.repeat_ratio_threshold),
    )
    return await ctx.loop(spec).run()


async def run_test_loop(ctx: LoopContext, cap: int) -> LoopResult:
    """Run tests, fix attributable failures, then audit test coverage."""
    scope = classify(ctx.vcs, ctx.base_branch)
    if not is_testable(scope):
        logger.info("Change scope is %s; skipping the test loop", scope)
        return LoopResult(LoopOutcome.SKIPPED, 0, f"change scope {scope}")

    context = {"issue": ctx.issue, "branch": ctx.feature_branch, "change_scope": str(scope)}

    async def execute(iteration: int) -> IterationVerdict:
        tag = f"iter{iteration}"
        tested = await ctx.runner.run(
            ctx.specialists.tester.stage("Run the relevant tests.", context, tag=tag)
        )
        if isinstance(tested, StageError):
            if tested.timed_out:
                return IterationVerdict.timeout()
            return IterationVerdict.failed(tested)
        if str(tested.payload.get("verdict", "")).lower() == "failed":
            return _test_failure_verdict(ctx, tested)

        audited = await ctx.runner.run(
            ctx.specialists.test_auditor.stage(
                "Judge whether the tests cover this change.", context, tag=tag
            )
        )
        if isinstance(audited, StageError):
            if audited.timed_out:
                return IterationVerdict.timeout()
            return IterationVerdict.failed(audited)
        verdict = str(audited.payload.get("verdict", "changes_requested")).lower()
        return IterationVerdict(
            verdict=f"validation_{verdict}",
            findings=findings_from(audited.payload),
            display_findings=display_findings_from(audited.payload),
            approved=verdict in {"approved", "passed"},
            converge_check=False,
        )

    spec = LoopSpec(
        kind=LoopKind.TEST,
        prefix="test",
        cap=cap,
        execute=execute,
        build_fix=lambda verdict, cumulative: ctx.fix_stage("tests", verdict, cumulative),
        detector=SignatureRepeatDetector(ctx.signature_repeat_limit),
    )
    return await ctx.loop(spec).run()


def _test_failure_verdict(ctx: LoopContext, tested: StageSuccess) -> IterationVerdict:
    failures = [item for item in tested.payload.get("failures") or [] if isinstance(item, dict)]
    if not failures:
        logger.warning("Tests failed without listing any failure; sending the run to the fixer")
        return IterationVerdict(
            verdict="failed",
            findings=[UNLISTED_FAILURE],
            fix_context={"failures": [], "tester_summary": tested.summary},
        )
    kept = attributable_failures(failures, ctx.vcs.changed_files(ctx.base_branch))
    if not kept:
        logger.info(
            "All %d failing test(s) predate this branch; treating the test run as passing",
            len(failures),
        )
        return IterationVerdict(verdict="preexisting_failures", approved=True, converge_check=False)
    return IterationVerdict(
        verdict="failed",
        findings=dedupe(failure_key(item) for item in kept),
        fix_context={"failures": kept},
    )


async def run_review_loop(ctx: LoopContext, cap: int, pr_url: str | None = None) -> LoopResult:
    """Review the whole pull request, fix, and push until approved."""
    context = {"issue": ctx.issue, "branch": ctx.feature_branch, "pr_url": pr_url}

    async def execute(iteration: int) -> IterationVerdict:
        review = await ctx.runner.run(
            ctx.specialists.pr_critic.stage(
                "Review the pull request against the issue and for code quality.",
                context,
                tag=f"iter{iteration}",
            )
        )
        return _review_verdict(review)

    async def push() -> None:
        ctx.vcs.push(ctx.feature_branch)

    spec = LoopSpec(
        kind=LoopKind.REVIEW,
        prefix="review",
        cap=cap,
        execute=execute,
        build_fix=lambda verdict, cumulative: ctx.fix_stage("review", verdict, cumulative),
        detector=RepeatRatioDetector(ctx.repeat_ratio_threshold),
        after_fix=push,
    )
    return await ctx.loop(spec).run()


__all__ = [
    "BranchGuard",
    "IterationVerdict",
    "LoopContext",
    "LoopOutcome",
    "LoopResult",
    "LoopSpec",
    "RefinementLoop",
    "attributable_failures",
    "display_findings_from",
    "failure_key",
    "finding_description",
    "findings_from",
    "format_finding",
    "run_quality_loop",
    "run_review_loop",
    "run_test_loop",
]
