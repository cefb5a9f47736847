from __future__ import annotations

import subprocess
from pathlib import Path


class VcsError(RuntimeError):
    """Raised when a git operation fails."""


class GitRepository:
    def __init__(self, repo_root: Path, *, remote: str = "origin") -> None:
        self.repo_root = repo_root.resolve()
        self.remote = remote

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise VcsError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_repository(self) -> bool:
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def branch_exists(self, name: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{name}"],
            check=False,
        )
        return proc.returncode == 0

    def ensure_branch(self, name: str, *, start_point: str) -> None:
        if self.current_branch() == name:
            return
        if self.branch_exists(name):
            self._run_git(["checkout", name])
            return
        self._run_git(["checkout", "-b", name, start_point])

    def changed_files(self, base_ref: str) -> list[str]:
        # Three-dot: only what this branch changed since the merge-base.
        proc = self._run_git(["diff", "--name-only", f"{base_ref}...HEAD"])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def diff_line_count(self, base_ref: str) -> int:
        proc = self._run_git(["diff", "--numstat", f"{base_ref}...HEAD"])
        total = 0
        for line in proc.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            added, deleted = parts[0], parts[1]
            # Binary files report "-" for both counts.
            if added.isdigit():
                total += int(added)
            if deleted.isdigit():
                total += int(deleted)
        return total

    def push(self, branch: str) -> None:
        self._run_git(["push", "--set-upstream", self.remote, branch])
