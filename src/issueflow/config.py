from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any


class ConfigError(ValueError):
    """Raised when the configuration file cannot be loaded."""


@dataclass(slots=True)
class ExecutorConfig:
    binary: str = "claude"
    model: str = ""
    implementation_timeout_seconds: float = 3600.0
    review_timeout_seconds: float = 1800.0
    light_timeout_seconds: float = 900.0
    schema_dir: str = ""
    prompt_dir: str = ""
    skip_permissions: bool = True


@dataclass(slots=True)
class RateLimitConfig:
    default_wait_seconds: float = 300.0
    buffer_seconds: float = 60.0


@dataclass(slots=True)
class LoopsConfig:
    max_test_iterations: int = 5
    max_review_iterations: int = 3
    repeat_ratio_threshold: float = 0.5
    test_signature_repeat_limit: int = 3


@dataclass(slots=True)
class WorkflowConfig:
    base_branch: str = "main"
    branch_prefix: str = "issueflow"
    state_path: str = ".issueflow/runs/issue-{issue}.json"
    log_root: str = ".issueflow/logs"
    quiet: bool = False
    strict_branch_check: bool = True


@dataclass(slots=True)
class BatchConfig:
    max_consecutive_failures: int = 3


_SECTIONS: dict[str, type] = {
    "executor": ExecutorConfig,
    "rate_limit": RateLimitConfig,
    "loops": LoopsConfig,
    "workflow": WorkflowConfig,
    "batch": BatchConfig,
}


@dataclass(slots=True)
class IssueflowConfig:
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    loops: LoopsConfig = field(default_factory=LoopsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)

    @classmethod
    def default(cls) -> IssueflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssueflowConfig:
        unknown_sections = sorted(set(data) - set(_SECTIONS))
        if unknown_sections:
            raise ConfigError(f"Unknown config section(s): {', '.join(unknown_sections)}")
        sections: dict[str, Any] = {}
        for name, section_type in _SECTIONS.items():
            payload = data.get(name, {})
            if not isinstance(payload, dict):
                raise ConfigError(f"Config section [{name}] must be a table.")
            sections[name] = _build_section(name, section_type, payload)
        return cls(**sections)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {
            name: {item.name: getattr(getattr(self, name), item.name) for item in fields(section)}
            for name, section in _SECTIONS.items()
        }

    def state_path_for(self, repo_root: Path, issue: str) -> Path:
        path = Path(self.workflow.state_path.format(issue=issue))
        if not path.is_absolute():
            path = repo_root / path
        return path

    def log_root_for(self, repo_root: Path) -> Path:
        path = Path(self.workflow.log_root)
        if not path.is_absolute():
            path = repo_root / path
        return path


def _build_section(name: str, section_type: type, payload: dict[str, Any]) -> Any:
    defaults = section_type()
    known = {item.name: getattr(defaults, item.name) for item in fields(section_type)}
    unknown = sorted(set(payload) - set(known))
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for key, value in payload.items():
        default = known[key]
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"[{name}].{key} must be a boolean.")
        elif isinstance(default, int):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"[{name}].{key} must be an integer.")
        elif isinstance(default, float):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"[{name}].{key} must be a number.")
            value = float(value)
        elif isinstance(default, str) and not isinstance(value, str):
            raise ConfigError(f"[{name}].{key} must be a string.")
        values[key] = value
    return section_type(**{**known, **values})


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: IssueflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in _SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> IssueflowConfig:
    if not path.exists():
        return IssueflowConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Could not read config {path}: {exc}") from exc
    return IssueflowConfig.from_dict(data)


def save_config(path: Path, config: IssueflowConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
