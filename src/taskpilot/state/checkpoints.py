from __future__ import annotations

import filecmp
import fnmatch
import json
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from taskpilot.errors import CheckpointError

LOGGER = logging.getLogger(__name__)

DEFAULT_EXCLUDES = [".taskpilot/", "__pycache__/", "node_modules/", ".venv/", "*.pyc"]
ALWAYS_EXCLUDED = [".git/"]
EMPTY_DIRS_KEY = "Empty-Dirs:"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def is_excluded(relative_path: str, patterns: Iterable[str]) -> bool:
    normalized = relative_path.replace("\\", "/").strip("/")
    parts = normalized.split("/")
    name = parts[-1]
    for pattern in [*ALWAYS_EXCLUDED, *patterns]:
        if pattern.endswith("/"):
            directory = pattern.rstrip("/")
            if any(fnmatch.fnmatch(part, directory) for part in parts):
                return True
            continue
        if fnmatch.fnmatch(normalized, pattern) or fnmatch.fnmatch(name, pattern):
            return True
    return False


def scan_workspace(root: Path, exclude: Iterable[str]) -> tuple[list[str], list[str]]:
    """Return the checkpointed files and the empty directories under ``root``."""
    patterns = list(exclude)
    files: list[str] = []
    empty_dirs: list[str] = []
    for directory, dirnames, filenames in os.walk(root):
        relative_dir = Path(directory).relative_to(root).as_posix()
        prefix = "" if relative_dir == "." else f"{relative_dir}/"
        dirnames[:] = [name for name in dirnames if not is_excluded(f"{prefix}{name}/", patterns)]
        kept = [name for name in filenames if not is_excluded(f"{prefix}{name}", patterns)]
        files.extend(f"{prefix}{name}" for name in kept)
        if prefix and not dirnames and not kept:
            empty_dirs.append(relative_dir)
    return sorted(files), sorted(empty_dirs)


@dataclass(slots=True, frozen=True)
class CheckpointRef:
    ref_id: str
    commit: str
    task_id: str
    seq: int
    created_at: str
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.ref_id,
            "commit": self.commit,
            "task_id": self.task_id,
            "seq": self.seq,
            "created_at": self.created_at,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CheckpointRef:
        return cls(
            ref_id=str(payload["id"]),
            commit=str(payload["commit"]),
            task_id=str(payload["task_id"]),
            seq=int(payload["seq"]),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            label=payload.get("label"),
        )


class CheckpointStorage(ABC):
    @abstractmethod
    def snapshot(self, message: str, *, force: bool = False) -> str | None:
        """Capture the workspace. Returns None when nothing changed and not forced."""

    @abstractmethod
    def rollback(self, commit: str) -> None:
        """Restore the workspace to ``commit``; all-or-nothing."""

    @abstractmethod
    def changed_files(self, commit: str) -> list[str]:
        """Paths that differ between ``commit`` and the current workspace."""


class ShadowGitStorage(CheckpointStorage):
    """Commits the workspace into a git repository kept outside the workspace's own.

    The index is rebuilt from a workspace scan on every snapshot, so the
    project's own ``.gitignore`` rules never hide files from a checkpoint.
    Empty directories are listed in the commit message.
    """

    def __init__(
        self,
        workspace: Path,
        git_dir: Path,
        *,
        exclude: Iterable[str] = DEFAULT_EXCLUDES,
    ) -> None:
        self.workspace = workspace.resolve()
        self.git_dir = git_dir.resolve()
        self.exclude = list(exclude)
        self._initialized = False

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["GIT_DIR"] = str(self.git_dir)
        env["GIT_WORK_TREE"] = str(self.workspace)
        for key in ("GIT_INDEX_FILE", "GIT_OBJECT_DIRECTORY", "GIT_ALTERNATE_OBJECT_DIRECTORIES"):
            env.pop(key, None)
        return env

    def _run_git(
        self, args: list[str], check: bool = True, input: str | None = None
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                [
                    "git",
                    "--no-pager",
                    "-c",
                    "user.name=taskpilot",
                    "-c",
                    "user.email=taskpilot@localhost",
                    "-c",
                    "commit.gpgsign=false",
                    "-c",
                    "core.autocrlf=false",
                    *args,
                ],
                cwd=self.workspace,
                env=self._env(),
                input=input,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise CheckpointError("git executable not found; checkpoints unavailable.") from exc
        if check and proc.returncode != 0:
            raise CheckpointError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _ensure_repo(self) -> None:
        if self._initialized:
            return
        exclude_file = self.git_dir / "info" / "exclude"
        if not (self.git_dir / "HEAD").exists():
            self.git_dir.mkdir(parents=True, exist_ok=True)
            self._run_git(["init", "--quiet"])
            self._run_git(["config", "core.bare", "false"])
            self._run_git(["config", "core.worktree", str(self.workspace)])
            self._run_git(["config", "core.excludesFile", str(exclude_file)])
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        patterns = [*ALWAYS_EXCLUDED, *self.exclude]
        exclude_file.write_text("\n".join(patterns) + "\n", encoding="utf-8")
        self._initialized = True

    def _has_head(self) -> bool:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        return proc.returncode == 0

    def head(self) -> str | None:
        self._ensure_repo()
        if not self._has_head():
            return None
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def _stage(self) -> list[str]:
        files, empty_dirs = scan_workspace(self.workspace, self.exclude)
        self._run_git(["read-tree", "--empty"])
        if files:
            self._run_git(
                [
                    "--literal-pathspecs",
                    "add",
                    "--force",
                    "--pathspec-from-file=-",
                    "--pathspec-file-nul",
                ],
                input="\0".join(files),
            )
        return empty_dirs

    def _empty_dirs(self, commit: str) -> list[str]:
        body = self._run_git(["log", "-1", "--format=%B", commit]).stdout
        for line in body.splitlines():
            if line.startswith(EMPTY_DIRS_KEY):
                return [str(item) for item in json.loads(line[len(EMPTY_DIRS_KEY) :])]
        return []

    def snapshot(self, message: str, *, force: bool = False) -> str | None:
        self._ensure_repo()
        empty_dirs = self._stage()
        if self._has_head() and not force:
            proc = self._run_git(["diff", "--cached", "--quiet", "HEAD"], check=False)
            if proc.returncode not in (0, 1):
                raise CheckpointError(proc.stderr.strip() or "git diff failed")
            if proc.returncode == 0 and empty_dirs == self._empty_dirs("HEAD"):
                return None
        body = f"{message}\n\n{EMPTY_DIRS_KEY} {json.dumps(empty_dirs, ensure_ascii=False)}"
        self._run_git(["commit", "--quiet", "--allow-empty", "--no-verify", "-m", body])
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def _reset_to(self, commit: str) -> None:
        self._run_git(["reset", "--hard", "--quiet", commit])
        protected: list[str] = []
        for pattern in [*ALWAYS_EXCLUDED, *self.exclude]:
            protected.extend(["-e", pattern])
        self._run_git(["clean", "-f", "-d", "-x", "-q", *protected])
        for relative in self._empty_dirs(commit):
            try:
                (self.workspace / relative).mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise CheckpointError(f"Cannot recreate directory {relative}: {exc}") from exc

    def rollback(self, commit: str) -> None:
        self._ensure_repo()
        found = self._run_git(["cat-file", "-e", f"{commit}^{{commit}}"], check=False)
        if found.returncode != 0:
            raise CheckpointError(f"Checkpoint commit not found: {commit}")
        safety = self.snapshot("taskpilot: pre-restore safety snapshot") or self.head()
        try:
            self._reset_to(commit)
        except CheckpointError as exc:
            if safety is not None:
                try:
                    self._reset_to(safety)
                except CheckpointError as recovery_exc:
                    raise CheckpointError(
                        f"Restore failed ({exc}) and workspace recovery failed: {recovery_exc}"
                    ) from recovery_exc
            raise CheckpointError(f"Restore failed; workspace left unchanged: {exc}") from exc

    def changed_files(self, commit: str) -> list[str]:
        self._ensure_repo()
        self._stage()
        proc = self._run_git(["diff", "--cached", "--name-only", commit])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]


class DirectorySnapshotStorage(CheckpointStorage):
    """Copies workspace files into numbered snapshot directories. Used without git."""

    def __init__(
        self,
        workspace: Path,
        snapshot_root: Path,
        *,
        exclude: Iterable[str] = DEFAULT_EXCLUDES,
    ) -> None:
        self.workspace = workspace.resolve()
        self.snapshot_root = snapshot_root.resolve()
        self.exclude = list(exclude)

    def _workspace_files(self) -> list[str]:
        return scan_workspace(self.workspace, self.exclude)[0]

    def _snapshot_dirs(self) -> list[Path]:
        if not self.snapshot_root.exists():
            return []
        return sorted(
            path for path in self.snapshot_root.iterdir() if path.is_dir() and path.name.isdigit()
        )

    def _snapshot_files(self, snapshot_dir: Path) -> list[str]:
        return sorted(
            path.relative_to(snapshot_dir).as_posix()
            for path in snapshot_dir.rglob("*")
            if path.is_file()
        )

    def _snapshot_empty_dirs(self, snapshot_dir: Path) -> list[str]:
        return sorted(
            path.relative_to(snapshot_dir).as_posix()
            for path in snapshot_dir.rglob("*")
            if path.is_dir() and not any(path.iterdir())
        )

    def _differs(self, snapshot_dir: Path) -> list[str]:
        files, empty_dirs = scan_workspace(self.workspace, self.exclude)
        current = set(files)
        stored = set(self._snapshot_files(snapshot_dir))
        changed = sorted(current ^ stored)
        for relative in sorted(current & stored):
            if not filecmp.cmp(self.workspace / relative, snapshot_dir / relative, shallow=False):
                changed.append(relative)
        stored_dirs = set(self._snapshot_empty_dirs(snapshot_dir))
        changed.extend(f"{relative}/" for relative in set(empty_dirs) ^ stored_dirs)
        return sorted(changed)

    def snapshot(self, message: str, *, force: bool = False) -> str | None:
        existing = self._snapshot_dirs()
        if existing and not force and not self._differs(existing[-1]):
            return None
        next_id = int(existing[-1].name) + 1 if existing else 1
        target = self.snapshot_root / f"{next_id:06d}"
        files, empty_dirs = scan_workspace(self.workspace, self.exclude)
        try:
            target.mkdir(parents=True, exist_ok=False)
            for relative in files:
                destination = target / relative
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(self.workspace / relative, destination)
            for relative in empty_dirs:
                (target / relative).mkdir(parents=True, exist_ok=True)
            (self.snapshot_root / f"{next_id:06d}.msg").write_text(message, encoding="utf-8")
        except OSError as exc:
            shutil.rmtree(target, ignore_errors=True)
            raise CheckpointError(f"Snapshot failed: {exc}") from exc
        return target.name

    def _move_tree(self, files: list[str], source: Path, destination: Path) -> None:
        for relative in files:
            target = destination / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source / relative), str(target))

    def rollback(self, commit: str) -> None:
        snapshot_dir = self.snapshot_root / commit
        if not snapshot_dir.is_dir():
            raise CheckpointError(f"Checkpoint snapshot not found: {commit}")
        staging = self.snapshot_root / f".staging-{uuid4().hex[:8]}"
        current = self._workspace_files()
        keep_dirs = self._snapshot_empty_dirs(snapshot_dir)
        restored: list[str] = []
        try:
            self._move_tree(current, self.workspace, staging)
            for relative in self._snapshot_files(snapshot_dir):
                destination = self.workspace / relative
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(snapshot_dir / relative, destination)
                restored.append(relative)
            for relative in keep_dirs:
                (self.workspace / relative).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            for relative in restored:
                (self.workspace / relative).unlink(missing_ok=True)
            try:
                moved = self._snapshot_files(staging) if staging.exists() else []
                self._move_tree(moved, staging, self.workspace)
            except OSError as recovery_exc:
                raise CheckpointError(
                    f"Restore failed ({exc}); staged files remain in {staging}: {recovery_exc}"
                ) from recovery_exc
            shutil.rmtree(staging, ignore_errors=True)
            raise CheckpointError(f"Restore failed; workspace left unchanged: {exc}") from exc
        shutil.rmtree(staging, ignore_errors=True)
        self._prune_empty_dirs(set(keep_dirs))

    def _prune_empty_dirs(self, keep: set[str]) -> None:
        for directory, dirnames, filenames in os.walk(self.workspace, topdown=False):
            path = Path(directory)
            if path == self.workspace or any(path.iterdir()):
                continue
            relative = path.relative_to(self.workspace).as_posix()
            if relative in keep or is_excluded(f"{relative}/", self.exclude):
                continue
            try:
                path.rmdir()
            except OSError:
                LOGGER.debug("prune_skipped", extra={"path": str(path)})

    def changed_files(self, commit: str) -> list[str]:
        snapshot_dir = self.snapshot_root / commit
        if not snapshot_dir.is_dir():
            raise CheckpointError(f"Checkpoint snapshot not found: {commit}")
        return self._differs(snapshot_dir)


class CheckpointManager:
    """Labels, orders and invalidates checkpoints for one task."""

    def __init__(self, task_id: str, storage: CheckpointStorage, index_file: Path) -> None:
        self.task_id = task_id
        self.storage = storage
        self.index_file = index_file
        self._refs: list[CheckpointRef] = []
        self._unreachable: set[str] = set()
        self._load_index()

    def _load_index(self) -> None:
        if not self.index_file.exists():
            return
        try:
            payload = json.loads(self.index_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CheckpointError(f"Checkpoint index is corrupt: {self.index_file}") from exc
        for item in payload.get("checkpoints", []):
            if isinstance(item, dict):
                self._refs.append(CheckpointRef.from_dict(item))
        self._unreachable = {str(item) for item in payload.get("unreachable", [])}

    def _write_index(self) -> None:
        self.index_file.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "task_id": self.task_id,
            "checkpoints": [ref.to_dict() for ref in self._refs],
            "unreachable": sorted(self._unreachable),
        }
        temp_file = self.index_file.with_suffix(".tmp")
        temp_file.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(temp_file, self.index_file)

    @property
    def latest(self) -> CheckpointRef | None:
        reachable = self.list()
        return reachable[-1] if reachable else None

    def list(self, *, include_unreachable: bool = False) -> list[CheckpointRef]:
        if include_unreachable:
            return list(self._refs)
        return [ref for ref in self._refs if ref.ref_id not in self._unreachable]

    def is_reachable(self, ref: CheckpointRef | str) -> bool:
        ref_id = ref if isinstance(ref, str) else ref.ref_id
        if ref_id in self._unreachable:
            return False
        return any(item.ref_id == ref_id for item in self._refs)

    def get(self, ref_id: str) -> CheckpointRef:
        for ref in self._refs:
            if ref.ref_id == ref_id or ref.commit.startswith(ref_id):
                return ref
        raise CheckpointError(f"Checkpoint not found: {ref_id}")

    def save(self, label: str | None = None, *, force: bool = False) -> CheckpointRef:
        latest = self.latest
        commit = self.storage.snapshot(
            f"checkpoint: {label or 'snapshot'} ({self.task_id})",
            force=force or latest is None,
        )
        if commit is None and latest is not None:
            return latest
        if commit is None:
            raise CheckpointError("Storage produced no snapshot for the first checkpoint.")
        seq = self._refs[-1].seq + 1 if self._refs else 1
        ref = CheckpointRef(
            ref_id=f"cp-{seq:04d}-{commit[:8]}",
            commit=commit,
            task_id=self.task_id,
            seq=seq,
            created_at=_utcnow_iso(),
            label=label,
        )
        self._refs.append(ref)
        self._write_index()
        LOGGER.info(
            "checkpoint_saved",
            extra={"task_id": self.task_id, "checkpoint": ref.ref_id, "label": label},
        )
        return ref

    def restore(self, ref: CheckpointRef | str) -> CheckpointRef:
        target = self.get(ref) if isinstance(ref, str) else self.get(ref.ref_id)
        if target.ref_id in self._unreachable:
            raise CheckpointError(
                f"Checkpoint {target.ref_id} is unreachable; a restore discarded it."
            )
        self.storage.rollback(target.commit)
        for item in self._refs:
            if item.seq > target.seq:
                self._unreachable.add(item.ref_id)
        self._write_index()
        LOGGER.info(
            "checkpoint_restored",
            extra={"task_id": self.task_id, "checkpoint": target.ref_id},
        )
        return target

    def diff(self, ref: CheckpointRef | str) -> list[str]:
        target = self.get(ref) if isinstance(ref, str) else ref
        return self.storage.changed_files(target.commit)


def build_checkpoint_manager(
    task_id: str,
    *,
    workspace: Path,
    state_dir: Path,
    storage: str = "git",
    exclude: Iterable[str] = DEFAULT_EXCLUDES,
) -> CheckpointManager:
    task_dir = state_dir / "checkpoints" / task_id
    if storage == "git":
        backend: CheckpointStorage = ShadowGitStorage(
            workspace, task_dir / "git", exclude=exclude
        )
    elif storage == "directory":
        backend = DirectorySnapshotStorage(workspace, task_dir / "snapshots", exclude=exclude)
    else:
        raise CheckpointError(f"Unsupported checkpoint storage: {storage}")
    return CheckpointManager(task_id, backend, task_dir / "index.json")
