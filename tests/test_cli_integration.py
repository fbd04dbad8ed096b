import re
import subprocess
from collections.abc import AsyncIterator, Sequence
from pathlib import Path

from click.testing import CliRunner

from taskpilot.backends import ModelBackend
from taskpilot.cli import cli
from taskpilot.config import load_config, save_config


class FakeBackend(ModelBackend):
    def __init__(self, replies: list[str]) -> None:
        self.replies = list(replies)

    async def stream(
        self, system_prompt: str, messages: Sequence[dict[str, str]]
    ) -> AsyncIterator[str]:
        _ = system_prompt, messages
        yield self.replies.pop(0)


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _use_offline_token_counts(config_path: Path) -> None:
    config = load_config(config_path)
    config.loop.token_encoding = "chars"
    save_config(config_path, config)


def _extract_task_id(run_output: str) -> str:
    match = re.search(r"^Task ([0-9a-f]+): completed$", run_output, re.MULTILINE)
    if match is None:
        raise AssertionError(f"No completed task in run output:\n{run_output}")
    return match.group(1)


def test_cli_run_inspect_and_restore(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    backend = FakeBackend(
        [
            "<write_to_file>\n<path>hello.txt</path>\n<content>\nhi\n</content>\n</write_to_file>",
            "<attempt_completion>\n<result>Wrote hello.txt</result>\n</attempt_completion>",
        ]
    )

    monkeypatch.chdir(repo)
    monkeypatch.setattr("taskpilot.cli._build_backend", lambda runtime: backend)

    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert "Checkpoints: git" in init_result.output
    _use_offline_token_counts(repo / "taskpilot.toml")

    run_result = runner.invoke(cli, ["run", "Write a greeting", "--yes"])
    assert run_result.exit_code == 0, run_result.output
    assert "Wrote hello.txt" in run_result.output
    task_id = _extract_task_id(run_result.output)
    assert (repo / "hello.txt").read_text(encoding="utf-8") == "hi"

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    assert task_id in status_result.output

    detail_result = runner.invoke(cli, ["status", task_id])
    assert detail_result.exit_code == 0
    assert '"state": "completed"' in detail_result.output

    checkpoints_result = runner.invoke(cli, ["checkpoints", task_id])
    assert checkpoints_result.exit_code == 0
    lines = checkpoints_result.output.strip().splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("task start")
    start_ref = lines[0].split()[0]

    diff_result = runner.invoke(cli, ["diff", task_id, start_ref])
    assert diff_result.exit_code == 0
    assert diff_result.output.strip() == "hello.txt"

    restore_result = runner.invoke(cli, ["restore", task_id, start_ref])
    assert restore_result.exit_code == 0
    assert f"Restored {start_ref}" in restore_result.output
    assert not (repo / "hello.txt").exists()
    assert (repo / "README.md").read_text(encoding="utf-8") == "seed\n"

    all_result = runner.invoke(cli, ["checkpoints", task_id, "--all"])
    assert "(unreachable)" in all_result.output


def test_cli_reports_missing_state(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    assert "No tasks found." in status_result.output

    missing_result = runner.invoke(cli, ["status", "ghost"])
    assert missing_result.exit_code != 0
    assert "No saved task" in missing_result.output

    restore_result = runner.invoke(cli, ["restore", "ghost", "cp-0001"])
    assert restore_result.exit_code != 0
    assert "not found" in restore_result.output
