from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class TrackerError(RuntimeError):
    """Raised when an issue cannot be fetched."""


@dataclass(slots=True)
class Issue:
    number: str
    title: str
    body: str

    def to_context(self) -> dict[str, str]:
        return {"number": self.number, "title": self.title, "body": self.body}


class IssueTracker(ABC):
    def __init__(self, *, quiet: bool = False) -> None:
        self.quiet = quiet

    @abstractmethod
    def fetch(self, issue: str) -> Issue:
        raise NotImplementedError

    @abstractmethod
    def _post_comment(self, issue: str, body: str) -> None:
        raise NotImplementedError

    def comment(self, issue: str, body: str) -> bool:
        """Post a progress comment. Failures are logged, never raised."""
        if self.quiet:
            return False
        try:
            self._post_comment(issue, body)
        except (TrackerError, OSError, subprocess.SubprocessError) as exc:
            logger.warning("Could not comment on issue %s: %s", issue, exc)
            return False
        return True


class GitHubIssueTracker(IssueTracker):
    """Issue access through the ``gh`` CLI."""

    def __init__(
        self,
        repo_root: Path,
        *,
        binary: str = "gh",
        quiet: bool = False,
        timeout: float = 60.0,
    ) -> None:
        super().__init__(quiet=quiet)
        self.repo_root = repo_root
        self.binary = binary
        self.timeout = timeout

    def _run_gh(self, args: list[str]) -> str:
        try:
            proc = subprocess.run(
                [self.binary, *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise TrackerError(f"`{self.binary}` is not installed or not on PATH.") from exc
        except subprocess.TimeoutExpired as exc:
            raise TrackerError(f"`{self.binary} {args[0]}` timed out") from exc
        if proc.returncode != 0:
            raise TrackerError(proc.stderr.strip() or proc.stdout.strip() or "gh failed")
        return proc.stdout

    def fetch(self, issue: str) -> Issue:
        raw = self._run_gh(["issue", "view", str(issue), "--json", "number,title,body"])
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TrackerError(f"Unexpected `gh issue view` output for #{issue}") from exc
        return Issue(
            number=str(payload.get("number", issue)),
            title=str(payload.get("title") or ""),
            body=str(payload.get("body") or ""),
        )

    def _post_comment(self, issue: str, body: str) -> None:
        self._run_gh(["issue", "comment", str(issue), "--body", body])
