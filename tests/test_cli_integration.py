import json
from pathlib import Path

from click.testing import CliRunner
from support import FakeTracker, RoutingBackend, init_git_repo, pipeline_routes, structured

from issueflow.cli import cli

NO_TASKS = structured({"status": "success", "tasks": []})


def _patch_runtime(monkeypatch, backends: list[RoutingBackend]) -> FakeTracker:
    """Serve the backends in order, one per controller built; the last one repeats."""
    tracker = FakeTracker()

    def build_backend(config, repo_root):
        _ = config, repo_root
        return backends.pop(0) if len(backends) > 1 else backends[0]

    monkeypatch.setattr("issueflow.cli._build_backend", build_backend)
    monkeypatch.setattr("issueflow.cli._build_tracker", lambda config, repo_root, quiet: tracker)
    return tracker


def _repo(tmp_path: Path, monkeypatch) -> Path:
    repo = tmp_path / "repo"
    init_git_repo(repo, with_remote=True)
    monkeypatch.chdir(repo)
    return repo


def test_cli_run_and_status(tmp_path: Path, monkeypatch) -> None:
    repo = _repo(tmp_path, monkeypatch)
    tracker = _patch_runtime(monkeypatch, [RoutingBackend(pipeline_routes())])
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert (repo / "issueflow.toml").exists()

    run_result = runner.invoke(cli, ["run", "42"])
    assert run_result.exit_code == 0, run_result.output
    assert "Run ID:" in run_result.output
    assert "Pull request: https://github.com/acme/app/pull/7" in run_result.output

    status_result = runner.invoke(cli, ["status", "42"])
    assert status_result.exit_code == 0
    assert '"status": "completed"' in status_result.output
    assert list((repo / ".issueflow" / "logs").glob("*/events.jsonl"))
    assert tracker.comments


def test_cli_invalid_config_exits_with_config_code(tmp_path: Path, monkeypatch) -> None:
    repo = _repo(tmp_path, monkeypatch)
    _patch_runtime(monkeypatch, [RoutingBackend(pipeline_routes())])
    (repo / "issueflow.toml").write_text("[mystery]\nvalue = 1\n", encoding="utf-8")
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "42"])

    assert result.exit_code == 3
    assert "mystery" in result.output


def test_cli_unknown_option_exits_with_config_code(tmp_path: Path, monkeypatch) -> None:
    _repo(tmp_path, monkeypatch)
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "42", "--no-such-flag"])

    assert result.exit_code == 3


def test_cli_outside_git_repository_exits_with_config_code(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "42"])

    assert result.exit_code == 3
    assert "not a git repository" in result.output


def test_cli_failed_run_can_be_resumed(tmp_path: Path, monkeypatch) -> None:
    _repo(tmp_path, monkeypatch)
    failing = RoutingBackend(pipeline_routes(**{"Planner specialist": [NO_TASKS]}))
    healthy = RoutingBackend(pipeline_routes())
    _patch_runtime(monkeypatch, [failing, healthy])
    runner = CliRunner()

    first = runner.invoke(cli, ["run", "42"])
    assert first.exit_code == 1
    assert "Status: failed" in first.output

    resumed = runner.invoke(cli, ["resume", "42"])
    assert resumed.exit_code == 0, resumed.output
    assert "Resuming run-" in resumed.output
    assert "Status: completed" in resumed.output
    assert healthy.count("Planner specialist") == 1


def test_cli_run_refuses_unfinished_run(tmp_path: Path, monkeypatch) -> None:
    repo = _repo(tmp_path, monkeypatch)
    _patch_runtime(monkeypatch, [RoutingBackend(pipeline_routes())])
    runner = CliRunner()
    assert runner.invoke(cli, ["run", "42"]).exit_code == 0

    state = repo / ".issueflow" / "runs" / "issue-42.json"
    document = json.loads(state.read_text(encoding="utf-8"))
    document["status"] = "in_progress"
    state.write_text(json.dumps(document), encoding="utf-8")
    result = runner.invoke(cli, ["run", "42"])

    assert result.exit_code == 1
    assert "issueflow resume" in result.output


def test_cli_batch_halts_after_consecutive_failures(tmp_path: Path, monkeypatch) -> None:
    _repo(tmp_path, monkeypatch)
    backend = RoutingBackend(pipeline_routes(**{"Planner specialist": [NO_TASKS]}))
    _patch_runtime(monkeypatch, [backend])
    runner = CliRunner()

    result = runner.invoke(cli, ["batch", "1", "2", "3", "4"])

    assert result.exit_code == 1
    assert "#1: failed (exit 1)" in result.output
    assert "#4:" not in result.output
    assert "Batch halted; not attempted: 4" in result.output
    assert backend.count("Planner specialist") == 3
