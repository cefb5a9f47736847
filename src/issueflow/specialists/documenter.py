from __future__ import annotations

from issueflow.specialists.base import Specialist


class Documenter(Specialist):
    role = "documenter"
    stage_name = "docs"
    schema = "docs"
    brief = """
You are the Documenter specialist.
Update user-facing docs, README, and changelog entries affected by this branch.
Commit documentation changes on the current branch.
""".strip()


class Publisher(Specialist):
    role = "publisher"
    stage_name = "publish"
    schema = "publish"
    brief = """
You are the Publisher.
Open a pull request from the current branch against the base branch.
Reference the issue in the description and reply with the pull request URL.
""".strip()
