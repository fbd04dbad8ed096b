import subprocess
from pathlib import Path

import pytest

from taskpilot.errors import CheckpointError
from taskpilot.state import CheckpointManager, build_checkpoint_manager
from taskpilot.state import checkpoints as checkpoints_module


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _workspace(tmp_path: Path) -> Path:
    workspace = tmp_path / "workspace"
    (workspace / "src").mkdir(parents=True)
    (workspace / "a.txt").write_text("a\n", encoding="utf-8")
    (workspace / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    return workspace


def _manager(workspace: Path, storage: str) -> CheckpointManager:
    return build_checkpoint_manager(
        "task-1",
        workspace=workspace,
        state_dir=workspace / ".taskpilot",
        storage=storage,
    )


def _tree(workspace: Path) -> dict[str, bytes]:
    return {
        path.relative_to(workspace).as_posix(): path.read_bytes()
        for path in sorted(workspace.rglob("*"))
        if path.is_file()
        and ".taskpilot" not in path.relative_to(workspace).parts
        and ".git" not in path.relative_to(workspace).parts
    }


@pytest.mark.parametrize("storage", ["git", "directory"])
def test_restore_right_after_save_leaves_files_identical(tmp_path: Path, storage: str) -> None:
    workspace = _workspace(tmp_path)
    (workspace / "emptydir").mkdir()
    (workspace / "src" / "nested" / "empty").mkdir(parents=True)
    manager = _manager(workspace, storage)
    before = _tree(workspace)

    ref = manager.save("start")
    manager.restore(ref)

    assert _tree(workspace) == before
    assert (workspace / "emptydir").is_dir()
    assert (workspace / "src" / "nested" / "empty").is_dir()


@pytest.mark.parametrize("storage", ["git", "directory"])
def test_restore_rolls_back_mutation_and_invalidates_later_refs(
    tmp_path: Path, storage: str
) -> None:
    workspace = _workspace(tmp_path)
    manager = _manager(workspace, storage)
    first = manager.save("start")

    (workspace / "a.txt").write_text("changed\n", encoding="utf-8")
    (workspace / "src" / "new.py").write_text("x = 1\n", encoding="utf-8")
    second = manager.save("write_to_file")
    assert second.seq > first.seq

    restored = manager.restore(first)

    assert restored.ref_id == first.ref_id
    assert (workspace / "a.txt").read_text(encoding="utf-8") == "a\n"
    assert not (workspace / "src" / "new.py").exists()
    assert manager.is_reachable(first)
    assert not manager.is_reachable(second)
    assert [ref.ref_id for ref in manager.list()] == [first.ref_id]
    with pytest.raises(CheckpointError, match="unreachable"):
        manager.restore(second)


@pytest.mark.parametrize("storage", ["git", "directory"])
def test_save_without_changes_is_coalesced(tmp_path: Path, storage: str) -> None:
    workspace = _workspace(tmp_path)
    manager = _manager(workspace, storage)

    first = manager.save("start")
    again = manager.save("read_file")

    assert again == first
    assert len(manager.list()) == 1


@pytest.mark.parametrize("storage", ["git", "directory"])
def test_diff_lists_files_changed_since_checkpoint(tmp_path: Path, storage: str) -> None:
    workspace = _workspace(tmp_path)
    manager = _manager(workspace, storage)
    ref = manager.save("start")

    (workspace / "a.txt").write_text("edited\n", encoding="utf-8")
    (workspace / "b.txt").write_text("b\n", encoding="utf-8")

    assert manager.diff(ref) == ["a.txt", "b.txt"]


@pytest.mark.parametrize("storage", ["git", "directory"])
def test_restore_removes_directories_created_after_checkpoint(
    tmp_path: Path, storage: str
) -> None:
    workspace = _workspace(tmp_path)
    manager = _manager(workspace, storage)
    ref = manager.save("start")

    (workspace / "build" / "out").mkdir(parents=True)
    (workspace / "build" / "out" / "app.bin").write_bytes(b"\x00\x01")
    (workspace / "scratch").mkdir()
    manager.save("execute_command")
    manager.restore(ref)

    assert not (workspace / "build").exists()
    assert not (workspace / "scratch").exists()


@pytest.mark.parametrize("storage", ["git", "directory"])
def test_restore_rolls_back_files_the_project_ignores(tmp_path: Path, storage: str) -> None:
    workspace = _workspace(tmp_path)
    (workspace / ".gitignore").write_text("*.log\ndist/\n", encoding="utf-8")
    (workspace / "app.log").write_text("before\n", encoding="utf-8")
    manager = _manager(workspace, storage)
    ref = manager.save("start", force=True)

    (workspace / "app.log").write_text("after\n", encoding="utf-8")
    (workspace / "dist").mkdir()
    (workspace / "dist" / "bundle.js").write_text("built\n", encoding="utf-8")
    manager.save("write_to_file")
    assert "app.log" in manager.diff(ref)
    manager.restore(ref)

    assert (workspace / "app.log").read_text(encoding="utf-8") == "before\n"
    assert not (workspace / "dist").exists()


def test_index_survives_a_new_manager(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    manager = _manager(workspace, "directory")
    first = manager.save("start")
    (workspace / "a.txt").write_text("changed\n", encoding="utf-8")
    second = manager.save("edit")
    manager.restore(first)

    reloaded = _manager(workspace, "directory")

    assert reloaded.get(first.ref_id) == first
    assert not reloaded.is_reachable(second.ref_id)
    assert reloaded.latest == first


def test_shadow_repository_leaves_workspace_git_untouched(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    _run(["git", "init"], cwd=workspace)
    _run(["git", "config", "user.email", "test@example.com"], cwd=workspace)
    _run(["git", "config", "user.name", "Test User"], cwd=workspace)
    _run(["git", "add", "a.txt"], cwd=workspace)
    _run(["git", "commit", "-m", "first"], cwd=workspace)
    head_before = _run(["git", "rev-parse", "HEAD"], cwd=workspace)

    manager = _manager(workspace, "git")
    first = manager.save("start")
    (workspace / "a.txt").write_text("changed\n", encoding="utf-8")
    manager.save("edit")
    manager.restore(first)

    assert _run(["git", "rev-parse", "HEAD"], cwd=workspace) == head_before
    assert _run(["git", "log", "--oneline"], cwd=workspace).count("\n") == 0
    assert (workspace / ".taskpilot" / "checkpoints" / "task-1" / "git" / "HEAD").exists()


def test_restore_keeps_state_directory(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    manager = _manager(workspace, "git")
    first = manager.save("start")
    notes = workspace / ".taskpilot" / "notes.txt"
    notes.write_text("keep me\n", encoding="utf-8")

    manager.restore(first)

    assert notes.read_text(encoding="utf-8") == "keep me\n"


def test_failed_directory_restore_leaves_workspace_unchanged(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    workspace = _workspace(tmp_path)
    manager = _manager(workspace, "directory")
    first = manager.save("start")
    (workspace / "a.txt").write_text("changed\n", encoding="utf-8")
    (workspace / "c.txt").write_text("c\n", encoding="utf-8")
    manager.save("edit")
    before = _tree(workspace)

    def _broken_copy(*args: object, **kwargs: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(checkpoints_module.shutil, "copy2", _broken_copy)
    with pytest.raises(CheckpointError, match="unchanged"):
        manager.restore(first)

    assert _tree(workspace) == before
    assert len(manager.list()) == 2


def test_unknown_checkpoint_is_an_error(tmp_path: Path) -> None:
    manager = _manager(_workspace(tmp_path), "directory")

    with pytest.raises(CheckpointError, match="not found"):
        manager.restore("cp-9999")


def test_unsupported_storage_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(CheckpointError, match="Unsupported"):
        _manager(_workspace(tmp_path), "tape")
