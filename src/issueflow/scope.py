"""Coarse classification of the files a run has changed."""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum
from pathlib import Path, PurePosixPath

from issueflow.vcs import GitRepository


class ChangeScope(StrEnum):
    APPLICATION = "application"
    SCRIPT = "script"
    CONFIG = "config"
    MIXED = "mixed"


SCRIPT_SUFFIXES = {".sh", ".bash", ".zsh", ".bats", ".fish"}
CONFIG_SUFFIXES = {
    ".md",
    ".markdown",
    ".rst",
    ".txt",
    ".json",
    ".jsonc",
    ".yaml",
    ".yml",
    ".toml",
    ".ini",
    ".cfg",
    ".lock",
}
CONFIG_FILENAMES = {
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "uv.lock",
    "cargo.lock",
    "gemfile.lock",
    "license",
    "changelog",
    "readme",
}


def bucket_for(path: str) -> ChangeScope:
    """Bucket one path. Unknown extensions count as application code."""
    name = PurePosixPath(path.replace("\\", "/")).name.lower()
    suffix = PurePosixPath(name).suffix
    if name in CONFIG_FILENAMES or (name.startswith(".") and name.endswith("ignore")):
        return ChangeScope.CONFIG
    if suffix in CONFIG_SUFFIXES:
        return ChangeScope.CONFIG
    if suffix in SCRIPT_SUFFIXES:
        return ChangeScope.SCRIPT
    return ChangeScope.APPLICATION


def classify_paths(paths: Iterable[str]) -> ChangeScope:
    buckets = {bucket_for(path) for path in paths}
    has_application = ChangeScope.APPLICATION in buckets
    has_script = ChangeScope.SCRIPT in buckets
    if has_application and has_script:
        return ChangeScope.MIXED
    if has_application:
        return ChangeScope.APPLICATION
    if has_script:
        return ChangeScope.SCRIPT
    return ChangeScope.CONFIG


def classify(workdir: Path | GitRepository, base_branch: str) -> ChangeScope:
    repo = GitRepository(workdir) if isinstance(workdir, Path) else workdir
    return classify_paths(repo.changed_files(base_branch))


def is_testable(scope: ChangeScope) -> bool:
    return scope is not ChangeScope.CONFIG
