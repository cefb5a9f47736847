import tomllib
from pathlib import Path

import pytest

from issueflow import __version__
from issueflow.config import ConfigError, IssueflowConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "issueflow.toml"
    config = IssueflowConfig.default()
    config.executor.binary = "/opt/claude/bin/claude"
    config.executor.model = "sonnet"
    config.executor.implementation_timeout_seconds = 1200.0
    config.rate_limit.buffer_seconds = 15.0
    config.loops.max_test_iterations = 7
    config.loops.repeat_ratio_threshold = 0.75
    config.workflow.base_branch = "develop"
    config.workflow.strict_branch_check = False
    config.batch.max_consecutive_failures = 5

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.executor.binary == "/opt/claude/bin/claude"
    assert loaded.executor.model == "sonnet"
    assert loaded.executor.implementation_timeout_seconds == 1200.0
    assert loaded.executor.skip_permissions is True
    assert loaded.rate_limit.buffer_seconds == 15.0
    assert loaded.rate_limit.default_wait_seconds == 300.0
    assert loaded.loops.max_test_iterations == 7
    assert loaded.loops.repeat_ratio_threshold == 0.75
    assert loaded.workflow.base_branch == "develop"
    assert loaded.workflow.strict_branch_check is False
    assert loaded.batch.max_consecutive_failures == 5


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == IssueflowConfig.default()


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(IssueflowConfig.default())

    for section in ("[executor]", "[rate_limit]", "[loops]", "[workflow]", "[batch]"):
        assert section in rendered
    assert "max_review_iterations = 3" in rendered
    assert 'state_path = ".issueflow/runs/issue-{issue}.json"' in rendered
    assert "strict_branch_check = true" in rendered


def test_integer_values_are_accepted_for_float_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "issueflow.toml"
    config_path.write_text("[rate_limit]\ndefault_wait_seconds = 120\n", encoding="utf-8")

    loaded = load_config(config_path)

    assert loaded.rate_limit.default_wait_seconds == 120.0
    assert isinstance(loaded.rate_limit.default_wait_seconds, float)


@pytest.mark.parametrize(
    "content",
    [
        "[unknown]\nkey = 1\n",
        "[loops]\nmax_cycles = 4\n",
        "[loops]\nmax_test_iterations = \"five\"\n",
        "[workflow]\nquiet = 1\n",
        "loops = 3\n",
        "[executor\nbinary = 'claude'\n",
    ],
)
def test_invalid_config_raises_config_error(tmp_path: Path, content: str) -> None:
    config_path = tmp_path / "issueflow.toml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_path)


def test_state_and_log_paths_resolve_against_repo_root(tmp_path: Path) -> None:
    config = IssueflowConfig.default()

    assert config.state_path_for(tmp_path, "17") == tmp_path / ".issueflow/runs/issue-17.json"
    assert config.log_root_for(tmp_path) == tmp_path / ".issueflow/logs"

    config.workflow.log_root = str(tmp_path / "elsewhere")
    assert config.log_root_for(Path("/unused")) == tmp_path / "elsewhere"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
