import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

from issueflow.backends.base import ExecutorBackend
from issueflow.tracker import Issue, IssueTracker

Response = dict[str, Any] | Callable[[str], dict[str, Any]]


def structured(payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": "result", "is_error": False, "structured_output": payload}


class RoutingBackend(ExecutorBackend):
    """Answers each call by the specialist brief that opens the instruction.

    The last response for a route repeats once the earlier ones are used up.
    """

    name = "routing"

    def __init__(self, routes: dict[str, list[Response]]) -> None:
        self.routes = {marker: list(responses) for marker, responses in routes.items()}
        self.calls: list[tuple[str, str]] = []

    def count(self, marker: str) -> int:
        return sum(1 for called, _ in self.calls if called == marker)

    def instructions(self, marker: str) -> list[str]:
        return [instruction for called, instruction in self.calls if called == marker]

    async def invoke(
        self,
        instruction: str,
        schema: dict[str, Any],
        *,
        agent: str | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        _ = schema, agent, model
        for marker, responses in self.routes.items():
            if instruction.startswith(f"You are the {marker}"):
                self.calls.append((marker, instruction))
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                return response(instruction) if callable(response) else response
        raise AssertionError(f"Unexpected instruction: {instruction[:80]!r}")


class FakeVcs:
    def __init__(
        self,
        branch: str = "issueflow/issue-1",
        changed: list[str] | None = None,
        diff_lines: int = 0,
    ) -> None:
        self.branch = branch
        self.changed = list(changed or [])
        self.diff_lines = diff_lines
        self.pushes: list[str] = []

    def is_repository(self) -> bool:
        return True

    def current_branch(self) -> str:
        return self.branch

    def ensure_branch(self, name: str, *, start_point: str) -> None:
        _ = start_point
        self.branch = name

    def changed_files(self, base_ref: str) -> list[str]:
        _ = base_ref
        return list(self.changed)

    def diff_line_count(self, base_ref: str) -> int:
        _ = base_ref
        return self.diff_lines

    def push(self, branch: str) -> None:
        self.pushes.append(branch)


class FakeTracker(IssueTracker):
    def __init__(self, issues: dict[str, Issue] | None = None, *, quiet: bool = False) -> None:
        super().__init__(quiet=quiet)
        self.issues = issues or {}
        self.comments: list[tuple[str, str]] = []

    def fetch(self, issue: str) -> Issue:
        if issue not in self.issues:
            return Issue(number=issue, title=f"Issue {issue}", body="Make it work.")
        return self.issues[issue]

    def _post_comment(self, issue: str, body: str) -> None:
        self.comments.append((issue, body))


def run_git(args: list[str], cwd: Path) -> str:
    proc = subprocess.run(["git", *args], cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout


def init_git_repo(repo_path: Path, *, with_remote: bool = False) -> None:
    repo_path.mkdir(parents=True, exist_ok=True)
    run_git(["init", "-b", "main"], repo_path)
    run_git(["config", "user.email", "test@example.com"], repo_path)
    run_git(["config", "user.name", "Test User"], repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    run_git(["add", "README.md"], repo_path)
    run_git(["commit", "-m", "seed"], repo_path)
    if with_remote:
        remote = repo_path.parent / f"{repo_path.name}-remote.git"
        run_git(["init", "--bare", str(remote)], repo_path.parent)
        run_git(["remote", "add", "origin", str(remote)], repo_path)


def commit_file(repo_path: Path, relative: str, content: str, message: str) -> None:
    target = repo_path / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    run_git(["add", relative], repo_path)
    run_git(["commit", "-m", message], repo_path)


OK = {"status": "success", "summary": "ok"}
PR_URL = "https://github.com/acme/app/pull/7"


def pipeline_routes(**overrides: list[Response]) -> dict[str, list[Response]]:
    """Responses that carry one single-task issue through every stage."""
    routes: dict[str, list[Response]] = {
        "Planner specialist": [
            structured(
                {
                    "status": "success",
                    "tasks": [{"id": 1, "description": "**(S)** Add greeting module"}],
                }
            )
        ],
        "Plan Validator": [structured({"status": "success", "verdict": "approved"})],
        "Coder/Engineer": [structured(OK)],
        "Simplifier": [structured(OK)],
        "Critic/Code Reviewer": [structured({"verdict": "approved", "findings": []})],
        "Tester/QA": [structured({"verdict": "passed", "failures": []})],
        "Test Auditor": [structured({"verdict": "approved"})],
        "Documenter": [structured(OK)],
        "Publisher": [structured({"status": "success", "pr_url": PR_URL, "pr_number": 7})],
        "Pull Request Reviewer": [structured({"verdict": "approved", "findings": []})],
        "Fixer": [structured(OK)],
    }
    routes.update(overrides)
    return routes
