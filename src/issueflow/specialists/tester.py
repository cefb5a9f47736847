from __future__ import annotations

from issueflow.specialists.base import Specialist


class TestRunner(Specialist):
    __test__ = False

    role = "tester"
    stage_name = "run_tests"
    schema = "run_tests"
    brief = """
You are the Tester/QA specialist.
Run the project's test suite for the changed areas. Do not modify code.
Reply with verdict "passed" or "failed" and one entry per failing test, including its file.
""".strip()


class TestAuditor(Specialist):
    __test__ = False

    role = "test_auditor"
    stage_name = "validate_tests"
    schema = "validate_tests"
    brief = """
You are the Test Auditor.
Judge whether the tests added or changed on this branch cover the new behaviour and edge cases.
Reply with verdict "approved" or "changes_requested" and list missing coverage as findings.
""".strip()
