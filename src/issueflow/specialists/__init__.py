from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path

from issueflow.specialists.base import Specialist
from issueflow.specialists.coder import Fixer, Implementer, Simplifier
from issueflow.specialists.critic import CodeCritic, PullRequestCritic
from issueflow.specialists.documenter import Documenter, Publisher
from issueflow.specialists.planner import IssuePlanner, PlanValidator
from issueflow.specialists.tester import TestAuditor, TestRunner


@dataclass(slots=True)
class SpecialistSet:
    planner: IssuePlanner = field(default_factory=IssuePlanner)
    plan_validator: PlanValidator = field(default_factory=PlanValidator)
    implementer: Implementer = field(default_factory=Implementer)
    simplifier: Simplifier = field(default_factory=Simplifier)
    fixer: Fixer = field(default_factory=Fixer)
    critic: CodeCritic = field(default_factory=CodeCritic)
    pr_critic: PullRequestCritic = field(default_factory=PullRequestCritic)
    tester: TestRunner = field(default_factory=TestRunner)
    test_auditor: TestAuditor = field(default_factory=TestAuditor)
    documenter: Documenter = field(default_factory=Documenter)
    publisher: Publisher = field(default_factory=Publisher)

    @classmethod
    def build(cls, *, model: str | None = None, prompt_dir: Path | None = None) -> SpecialistSet:
        kwargs = {"model": model or None, "prompt_dir": prompt_dir}
        return cls(
            **{
                item.name: item.default_factory(**kwargs)  # type: ignore[misc]
                for item in fields(cls)
            }
        )


__all__ = [
    "CodeCritic",
    "Documenter",
    "Fixer",
    "Implementer",
    "IssuePlanner",
    "PlanValidator",
    "PullRequestCritic",
    "Publisher",
    "Simplifier",
    "Specialist",
    "SpecialistSet",
    "TestAuditor",
    "TestRunner",
]
