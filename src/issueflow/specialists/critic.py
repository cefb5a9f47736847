from __future__ import annotations

from issueflow.specialists.base import Specialist


class CodeCritic(Specialist):
    role = "critic"
    stage_name = "review"
    schema = "review"
    brief = """
You are the Critic/Code Reviewer specialist.
Find correctness, maintainability, and security issues in the task's changes.
Reply with verdict "approved" or "changes_requested" and one finding per issue.
""".strip()


class PullRequestCritic(Specialist):
    role = "pr_critic"
    stage_name = "pr_review"
    schema = "pr_review"
    brief = """
You are the Pull Request Reviewer.
Review the whole change set against the issue requirements and for code quality.
Reply with verdict "approved" or "changes_requested" and one finding per issue.
""".strip()
