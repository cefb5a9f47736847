"""Cross-iteration history and early-stop detection for refinement loops."""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def dedupe(findings: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for item in findings:
        key = item.strip()
        if not key or key in seen:
            continue
        seen.add(key)
        ordered.append(key)
    return ordered


class FindingsHistory:
    """Append-only JSON-lines file of ``{iteration, findings, verdict}`` entries."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def for_prefix(cls, log_dir: Path, prefix: str) -> FindingsHistory:
        return cls(log_dir / f"{prefix}_history.jsonl")

    def entries(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        entries: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                entries.append(payload)
        return entries

    def append(
        self,
        iteration: int,
        findings: list[str],
        verdict: str,
        **extra: Any,
    ) -> dict[str, Any]:
        entry = {
            "iteration": iteration,
            "findings": list(findings),
            "verdict": verdict,
            "at": _utcnow_iso(),
            **extra,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
        return entry

    def cumulative_findings(self) -> list[str]:
        collected: list[str] = []
        for entry in self.entries():
            findings = entry.get("findings")
            if isinstance(findings, list):
                collected.extend(str(item) for item in findings)
        return dedupe(collected)


def repeat_ratio(current: list[str], previous: list[str]) -> float:
    if not current:
        return 0.0
    previous_set = {item.strip() for item in previous}
    repeated = sum(1 for item in current if item.strip() in previous_set)
    return repeated / len(current)


def failure_signature(failures: Iterable[str]) -> str:
    canonical = "\n".join(sorted({item.strip() for item in failures if item.strip()}))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ConvergenceDetector(ABC):
    # When true, convergence aborts the run instead of soft-approving the loop.
    fatal: bool = False

    @abstractmethod
    def should_stop_early(self, current: list[str], history: list[dict[str, Any]]) -> bool:
        """Decide from prior history (excluding ``current``) whether to stop."""

    def history_extra(self, current: list[str]) -> dict[str, Any]:
        return {}

    def observe(
        self,
        history: FindingsHistory,
        iteration: int,
        findings: list[str],
        verdict: str,
    ) -> bool:
        prior = history.entries()
        # Recorded even when stopping so later diagnostics see every iteration.
        history.append(iteration, findings, verdict, **self.history_extra(findings))
        return self.should_stop_early(findings, prior)


class RepeatRatioDetector(ConvergenceDetector):
    fatal = False

    def __init__(self, threshold: float = 0.5) -> None:
        self.threshold = threshold

    def should_stop_early(self, current: list[str], history: list[dict[str, Any]]) -> bool:
        if not history or not current:
            return False
        previous = history[-1].get("findings")
        if not isinstance(previous, list):
            return False
        return repeat_ratio(current, [str(item) for item in previous]) >= self.threshold


class SignatureRepeatDetector(ConvergenceDetector):
    fatal = True

    def __init__(self, repeat_limit: int = 3) -> None:
        self.repeat_limit = max(2, repeat_limit)

    def history_extra(self, current: list[str]) -> dict[str, Any]:
        return {"signature": failure_signature(current)}

    def occurrences(self, current: list[str], history: list[dict[str, Any]]) -> int:
        signature = failure_signature(current)
        return 1 + sum(1 for entry in history if entry.get("signature") == signature)

    def should_stop_early(self, current: list[str], history: list[dict[str, Any]]) -> bool:
        if not history or not current:
            return False
        return self.occurrences(current, history) >= self.repeat_limit
