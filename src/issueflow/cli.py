from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from issueflow import __version__
from issueflow.backends import ClaudeCodeBackend, ExecutorBackend
from issueflow.batch import BatchController
from issueflow.config import ConfigError, IssueflowConfig, load_config, save_config
from issueflow.controller import RunController, RunExitCode, RunSummary
from issueflow.rate_limit import RateLimiter
from issueflow.runner import SchemaLoader, StageRunner, StageTimeouts
from issueflow.specialists import SpecialistSet
from issueflow.state import RunStatus, WorkflowRun, WorkflowStateError, WorkflowStateStore
from issueflow.tracker import GitHubIssueTracker, IssueTracker
from issueflow.vcs import GitRepository

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "issueflow.toml"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class _ExitCodeGroup(click.Group):
    """Reports usage errors with the configuration exit code."""

    def make_context(self, info_name, args, parent=None, **extra):  # type: ignore[override]
        try:
            return super().make_context(info_name, args, parent=parent, **extra)
        except click.UsageError as exc:
            exc.exit_code = int(RunExitCode.CONFIG_ERROR)
            raise

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except click.UsageError as exc:
            exc.exit_code = int(RunExitCode.CONFIG_ERROR)
            raise


def _config_failure(message: str) -> click.ClickException:
    error = click.ClickException(message)
    error.exit_code = int(RunExitCode.CONFIG_ERROR)
    return error


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: IssueflowConfig
    vcs: GitRepository
    tracker: IssueTracker
    specialists: SpecialistSet


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _build_backend(config: IssueflowConfig, repo_root: Path) -> ExecutorBackend:
    executor = config.executor
    return ClaudeCodeBackend(
        executor.binary,
        working_directory=repo_root,
        skip_permissions=executor.skip_permissions,
        process_timeout=max(
            executor.implementation_timeout_seconds,
            executor.review_timeout_seconds,
            executor.light_timeout_seconds,
        ),
    )


def _build_tracker(config: IssueflowConfig, repo_root: Path, quiet: bool) -> IssueTracker:
    return GitHubIssueTracker(repo_root, quiet=quiet or config.workflow.quiet)


def _event_recorder(log_dir: Path) -> Callable[[dict[str, Any]], None]:
    events_path = log_dir / "events.jsonl"

    def record(event: dict[str, Any]) -> None:
        payload = dict(event)
        payload["at"] = _utcnow_iso()
        try:
            events_path.parent.mkdir(parents=True, exist_ok=True)
            with events_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("Could not record event to %s: %s", events_path, exc)

    return record


def _load_runtime(repo_root: Path, config_value: str, *, quiet: bool = False) -> Runtime:
    config_path = _resolve_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise _config_failure(str(exc)) from exc
    vcs = GitRepository(repo_root)
    if not vcs.is_repository():
        raise _config_failure(f"{repo_root} is not a git repository.")
    prompt_dir = config.executor.prompt_dir
    specialists = SpecialistSet.build(
        model=config.executor.model or None,
        prompt_dir=_resolve_path(repo_root, prompt_dir) if prompt_dir else None,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        vcs=vcs,
        tracker=_build_tracker(config, repo_root, quiet),
        specialists=specialists,
    )


def _build_controller(runtime: Runtime, store: WorkflowStateStore) -> RunController:
    config = runtime.config
    run = store.read()
    log_dir = Path(run.log_dir)
    schema_dir = config.executor.schema_dir
    runner = StageRunner(
        _build_backend(config, runtime.repo_root),
        log_dir=log_dir,
        timeouts=StageTimeouts(
            implementation_seconds=config.executor.implementation_timeout_seconds,
            review_seconds=config.executor.review_timeout_seconds,
            light_seconds=config.executor.light_timeout_seconds,
        ),
        rate_limiter=RateLimiter(
            default_seconds=config.rate_limit.default_wait_seconds,
            buffer_seconds=config.rate_limit.buffer_seconds,
        ),
        schemas=SchemaLoader(_resolve_path(runtime.repo_root, schema_dir) if schema_dir else None),
        default_model=config.executor.model or None,
        event_hook=_event_recorder(log_dir),
    )
    return RunController(
        store=store,
        runner=runner,
        vcs=runtime.vcs,
        tracker=runtime.tracker,
        config=config,
        specialists=runtime.specialists,
    )


def _store_for(runtime: Runtime, issue: str) -> WorkflowStateStore:
    return WorkflowStateStore(runtime.config.state_path_for(runtime.repo_root, issue))


def _start_run(runtime: Runtime, issue: str, base_branch: str | None) -> WorkflowStateStore:
    store = _store_for(runtime, issue)
    if store.exists():
        try:
            existing = store.read()
        except WorkflowStateError as exc:
            raise click.ClickException(str(exc)) from exc
        if existing.status is RunStatus.IN_PROGRESS:
            raise click.ClickException(
                f"Issue {issue} has an unfinished run ({existing.run_id}); use `issueflow resume`."
            )
    run = WorkflowRun.new(
        issue,
        base_branch or runtime.config.workflow.base_branch,
        runtime.config.log_root_for(runtime.repo_root),
    )
    store.create(run)
    return store


async def _execute(runtime: Runtime, store: WorkflowStateStore) -> RunSummary:
    return await _build_controller(runtime, store).execute()


def _echo_summary(summary: RunSummary) -> None:
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Issue: {summary.issue}")
    click.echo(f"Status: {summary.status}")
    click.echo(f"Tasks: {summary.completed_tasks}/{summary.total_tasks}")
    if summary.pr_url:
        click.echo(f"Pull request: {summary.pr_url}")
    if summary.failure_reason:
        click.echo(f"Reason: {summary.failure_reason}")


@click.group(cls=_ExitCodeGroup)
@click.version_option(__version__, prog_name="issueflow")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Drive an issue to a reviewed pull request through an AI executor."""
    setup_logging(verbose)


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise _config_failure(str(exc)) from exc
    save_config(config_path, config)
    config.log_root_for(repo_root).mkdir(parents=True, exist_ok=True)
    click.echo(f"Initialized issueflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Executor: {config.executor.binary}")


@cli.command("run")
@click.argument("issue")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.option("--base-branch", default=None, help="Override [workflow].base_branch.")
@click.option("--quiet", is_flag=True, default=False, help="Do not comment on the issue.")
@click.pass_context
def run_command(
    ctx: click.Context,
    issue: str,
    config_value: str,
    base_branch: str | None,
    quiet: bool,
) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value, quiet=quiet)
    store = _start_run(runtime, issue, base_branch)
    try:
        summary = asyncio.run(_execute(runtime, store))
    except WorkflowStateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)
    ctx.exit(int(summary.exit_code))


@cli.command("resume")
@click.argument("issue")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.option("--state", "state_value", default=None, help="Path to a workflow document.")
@click.option(
    "--mirror",
    "mirror_value",
    default=None,
    help="status.json mirror to fall back to when the workflow document is gone.",
)
@click.option("--quiet", is_flag=True, default=False, help="Do not comment on the issue.")
@click.pass_context
def resume_command(
    ctx: click.Context,
    issue: str,
    config_value: str,
    state_value: str | None,
    mirror_value: str | None,
    quiet: bool,
) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value, quiet=quiet)
    if state_value:
        store = WorkflowStateStore(_resolve_path(runtime.repo_root, state_value))
    else:
        store = _store_for(runtime, issue)
    mirror = _resolve_path(runtime.repo_root, mirror_value) if mirror_value else None
    try:
        run = store.load_for_resume(mirror=mirror)
        click.echo(f"Resuming {run.run_id} at {run.current_stage or 'intake'}")
        summary = asyncio.run(_execute(runtime, store))
    except WorkflowStateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)
    ctx.exit(int(summary.exit_code))


@cli.command("batch")
@click.argument("issues", nargs=-1, required=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.option("--quiet", is_flag=True, default=False, help="Do not comment on the issues.")
@click.pass_context
def batch_command(
    ctx: click.Context,
    issues: tuple[str, ...],
    config_value: str,
    quiet: bool,
) -> None:
    runtime = _load_runtime(Path.cwd().resolve(), config_value, quiet=quiet)

    async def run_issue(issue: str) -> RunSummary:
        store = _store_for(runtime, issue)
        if store.exists() and store.read().status is RunStatus.IN_PROGRESS:
            store.load_for_resume()
        else:
            store = _start_run(runtime, issue, None)
        summary = await _execute(runtime, store)
        click.echo(f"#{issue}: {summary.status} (exit {int(summary.exit_code)})")
        return summary

    controller = BatchController(
        run_issue,
        max_consecutive_failures=runtime.config.batch.max_consecutive_failures,
    )
    try:
        result = asyncio.run(controller.run(list(issues)))
    except WorkflowStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if result.halted:
        click.echo(f"Batch halted; not attempted: {', '.join(result.skipped) or 'none'}")
    ctx.exit(int(result.exit_code))


@cli.command("status")
@click.argument("issue")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(issue: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_path(repo_root, config_value))
    except ConfigError as exc:
        raise _config_failure(str(exc)) from exc
    store = WorkflowStateStore(config.state_path_for(repo_root, issue))
    if not store.exists():
        raise click.ClickException(f"No workflow document for issue {issue}.")
    try:
        run = store.read()
    except WorkflowStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(run.to_dict(), ensure_ascii=False, indent=2))
