import tomllib
from pathlib import Path

import pytest

from taskpilot import __version__
from taskpilot.config import TaskpilotConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "taskpilot.toml"
    config = TaskpilotConfig.default()
    config.backend.primary_command = ["model-cli", "--json"]
    config.backend.fallback_command = ["other-cli"]
    config.backend.max_retries = 3
    config.loop.mistake_limit = 5
    config.loop.max_requests = 40
    config.tools.mode = "architect"
    config.tools.always_allow = ["execute_command"]
    config.checkpoints.storage = "directory"
    config.modes["review"] = ["read"]
    config.state.directory = "state"
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.backend.primary_command == ["model-cli", "--json"]
    assert loaded.backend.fallback_command == ["other-cli"]
    assert loaded.backend.max_retries == 3
    assert loaded.backend.timeout_seconds == 300.0
    assert loaded.loop.mistake_limit == 5
    assert loaded.loop.max_requests == 40
    assert loaded.tools.mode == "architect"
    assert loaded.tools.always_allow == ["execute_command"]
    assert loaded.checkpoints.storage == "directory"
    assert loaded.modes["review"] == ["read"]
    assert loaded.state_dir(tmp_path) == tmp_path / "state"
    assert loaded.logging.level == "DEBUG"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(TaskpilotConfig.default())

    for section in ("backend", "loop", "tools", "checkpoints", "modes", "state", "logging"):
        assert f"[{section}]" in rendered
    assert "retry_backoff_seconds = 0.5" in rendered
    assert 'primary_command = ["claude", "-p"' in rendered
    assert tomllib.loads(rendered)["loop"]["context_window"] == 128_000


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.tools.mode == "code"
    assert config.checkpoints.storage == "git"
    assert config.state_dir(tmp_path) == tmp_path / ".taskpilot"


@pytest.mark.parametrize(
    "text",
    [
        '[tools]\nmode = "debug"\n',
        '[checkpoints]\nstorage = "tape"\n',
        "[loop]\nmistake_limit = 0\n",
        "[backend]\nprimary_command = []\n",
    ],
)
def test_invalid_config_is_rejected(tmp_path: Path, text: str) -> None:
    config_path = tmp_path / "taskpilot.toml"
    config_path.write_text(text, encoding="utf-8")

    with pytest.raises(ValueError):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
