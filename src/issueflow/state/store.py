from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from issueflow.state.models import (
    WorkflowRun,
    WorkflowStateError,
    prepare_for_resume,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("run_id", "issue", "base_branch", "log_dir")
MIRROR_FILENAME = "status.json"

RunTransform = Callable[[WorkflowRun], WorkflowRun | None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _atomic_write(path: Path, serialized: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        handle.write(serialized)
        handle.flush()
        os.fsync(handle.fileno())
        temp_path = handle.name
    try:
        os.replace(temp_path, path)
    except OSError:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class WorkflowStateStore:
    """Sole owner of a run's JSON document.

    Every change is read-whole-document, apply transform, atomic replace, and
    each write is mirrored to ``<log_dir>/status.json``. There is no
    cross-process locking; two processes on one file is last-writer-wins.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def _load_payload(self, path: Path) -> dict:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise WorkflowStateError(f"No workflow document at {path}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise WorkflowStateError(f"Unreadable workflow document {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise WorkflowStateError(f"Workflow document {path} is not a JSON object.")
        return payload

    def read(self) -> WorkflowRun:
        return WorkflowRun.from_dict(self._load_payload(self.path))

    def write(self, run: WorkflowRun) -> WorkflowRun:
        run.updated_at = _utcnow_iso()
        serialized = json.dumps(run.to_dict(), ensure_ascii=False, indent=2) + "\n"
        _atomic_write(self.path, serialized)
        mirror = Path(run.log_dir) / MIRROR_FILENAME
        try:
            _atomic_write(mirror, serialized)
        except OSError as exc:
            logger.warning("Could not mirror workflow state to %s: %s", mirror, exc)
        return run

    def create(self, run: WorkflowRun) -> WorkflowRun:
        return self.write(run)

    def transform(self, fn: RunTransform) -> WorkflowRun:
        run = self.read()
        updated = fn(run)
        return self.write(updated if updated is not None else run)

    def load_for_resume(self, mirror: Path | None = None) -> WorkflowRun:
        """Validate a prior document and make it ready to re-enter the pipeline.

        Falls back to a ``status.json`` mirror when the primary file is gone.
        """
        source = self.path
        if not source.exists() and mirror is not None and mirror.exists():
            logger.warning("Primary state %s missing; resuming from mirror %s", source, mirror)
            source = mirror
        payload = self._load_payload(source)
        missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
        if missing:
            raise WorkflowStateError(
                f"Workflow document {source} is missing required field(s): {', '.join(missing)}"
            )
        run = prepare_for_resume(WorkflowRun.from_dict(payload))
        return self.write(run)
