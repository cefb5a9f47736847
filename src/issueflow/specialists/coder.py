from __future__ import annotations

from issueflow.specialists.base import Specialist


class Implementer(Specialist):
    role = "coder"
    stage_name = "implement"
    schema = "implement"
    brief = """
You are the Coder/Engineer specialist.
Implement exactly the task described. Match repository conventions.
Commit your work on the current branch with a focused message.
""".strip()


class Simplifier(Specialist):
    role = "simplifier"
    stage_name = "simplify"
    schema = "simplify"
    brief = """
You are the Simplifier.
Reduce incidental complexity in the code changed for this task without changing behaviour.
Commit any simplification on the current branch.
""".strip()


class Fixer(Specialist):
    role = "fixer"
    stage_name = "fix"
    schema = "fix"
    brief = """
You are the Fixer.
Resolve every finding listed below. Earlier findings are included so nothing is lost.
Commit the fixes on the current branch.
""".strip()
