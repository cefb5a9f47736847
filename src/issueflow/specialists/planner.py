from __future__ import annotations

from issueflow.specialists.base import Specialist


class IssuePlanner(Specialist):
    role = "planner"
    stage_name = "parse_issue"
    schema = "parse_issue"
    brief = """
You are the Planner specialist.
Break the issue into small, ordered implementation tasks numbered from 1.
Prefix each task description with a size marker: **(S)**, **(M)** or **(L)**.
Name the agent best suited to each task when one applies.
""".strip()


class PlanValidator(Specialist):
    role = "plan_validator"
    stage_name = "validate"
    schema = "validate"
    brief = """
You are the Plan Validator.
Check that the task list fully covers the issue and that every task is actionable.
Reply with verdict "approved" or "changes_requested" and list concrete findings.
""".strip()
