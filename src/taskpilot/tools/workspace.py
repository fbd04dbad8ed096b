from __future__ import annotations

import asyncio
import fnmatch
import os
import re
from collections.abc import Mapping
from pathlib import Path

from taskpilot.cancellation import CancellationToken
from taskpilot.errors import ToolExecutionError
from taskpilot.state.checkpoints import DEFAULT_EXCLUDES, is_excluded
from taskpilot.tools.registry import ExecutorOutput, ToolExecutor

MAX_READ_CHARS = 200_000
MAX_LIST_ENTRIES = 500
MAX_SEARCH_MATCHES = 300

SEARCH_MARKER = "<<<<<<< SEARCH"
DIVIDER_MARKER = "======="
REPLACE_MARKER = ">>>>>>> REPLACE"


class Workspace:
    """Filesystem root every workspace tool is confined to."""

    def __init__(self, root: Path, *, exclude: list[str] | None = None) -> None:
        self.root = root.resolve()
        self.exclude = list(DEFAULT_EXCLUDES if exclude is None else exclude)

    def resolve(self, relative: str) -> Path:
        candidate = (self.root / relative.strip()).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ToolExecutionError(f"Path escapes the workspace: {relative}")
        return candidate

    def relative(self, path: Path) -> str:
        relative = path.relative_to(self.root).as_posix()
        return relative or "."

    def files(self) -> list[str]:
        found: list[str] = []
        for directory, dirnames, filenames in os.walk(self.root):
            current = Path(directory)
            dirnames[:] = [
                name
                for name in dirnames
                if not is_excluded(f"{self.relative(current / name)}/", self.exclude)
            ]
            for name in filenames:
                relative = self.relative(current / name)
                if not is_excluded(relative, self.exclude):
                    found.append(relative)
        return sorted(found)


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _read_text(path: Path, display: str) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ToolExecutionError(f"{display} is not a UTF-8 text file.") from exc
    except OSError as exc:
        raise ToolExecutionError(f"Cannot read {display}: {exc}") from exc


def parse_search_replace(diff: str) -> list[tuple[str, str]]:
    blocks: list[tuple[str, str]] = []
    search: list[str] = []
    replace: list[str] = []
    state = "outside"
    for line in diff.splitlines():
        marker = line.strip()
        if state == "outside":
            if marker == SEARCH_MARKER:
                state = "search"
                search, replace = [], []
            continue
        if state == "search":
            if marker == DIVIDER_MARKER:
                state = "replace"
            else:
                search.append(line)
            continue
        if marker == REPLACE_MARKER:
            blocks.append(("\n".join(search), "\n".join(replace)))
            state = "outside"
        else:
            replace.append(line)
    if state != "outside":
        raise ToolExecutionError(
            f"Unterminated SEARCH/REPLACE block; end each block with '{REPLACE_MARKER}'."
        )
    if not blocks:
        raise ToolExecutionError(
            f"No SEARCH/REPLACE blocks found. Start each block with '{SEARCH_MARKER}'."
        )
    return blocks


def apply_search_replace(original: str, blocks: list[tuple[str, str]]) -> str:
    updated = original
    for index, (search, replace) in enumerate(blocks, start=1):
        if not search:
            if updated:
                raise ToolExecutionError(
                    f"Block {index} has an empty SEARCH section but the file is not empty."
                )
            updated = replace
            continue
        if search not in updated:
            raise ToolExecutionError(
                f"Block {index}: SEARCH text not found in the file. "
                "Read the file again and copy the exact lines."
            )
        updated = updated.replace(search, replace, 1)
    return updated


class ReadFileExecutor(ToolExecutor):
    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    async def execute(
        self, params: Mapping[str, str], cancel: CancellationToken
    ) -> ExecutorOutput:
        cancel.raise_if_cancelled()
        path = self.workspace.resolve(params["path"])
        if not path.is_file():
            raise ToolExecutionError(f"File not found: {params['path']}")
        text = _read_text(path, params["path"])
        if len(text) > MAX_READ_CHARS:
            text = f"{text[:MAX_READ_CHARS]}\n[... truncated at {MAX_READ_CHARS} characters]"
        return ExecutorOutput(success=True, content=text)


class WriteFileExecutor(ToolExecutor):
    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    async def execute(
        self, params: Mapping[str, str], cancel: CancellationToken
    ) -> ExecutorOutput:
        cancel.raise_if_cancelled()
        path = self.workspace.resolve(params["path"])
        content = params["content"]
        if path.is_dir():
            raise ToolExecutionError(f"{params['path']} is a directory.")
        try:
            if path.exists() and path.read_bytes() == content.encode("utf-8"):
                return ExecutorOutput(
                    success=True, content=f"{params['path']} already has this content."
                )
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ToolExecutionError(f"Cannot write {params['path']}: {exc}") from exc
        return ExecutorOutput(
            success=True,
            content=f"Wrote {len(content)} characters to {params['path']}.",
            side_effect=True,
        )


class ReplaceInFileExecutor(ToolExecutor):
    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    async def execute(
        self, params: Mapping[str, str], cancel: CancellationToken
    ) -> ExecutorOutput:
        cancel.raise_if_cancelled()
        path = self.workspace.resolve(params["path"])
        if not path.is_file():
            raise ToolExecutionError(f"File not found: {params['path']}")
        original = _read_text(path, params["path"])
        updated = apply_search_replace(original, parse_search_replace(params["diff"]))
        if updated == original:
            return ExecutorOutput(success=True, content="No changes; the file is unchanged.")
        try:
            path.write_text(updated, encoding="utf-8")
        except OSError as exc:
            raise ToolExecutionError(f"Cannot write {params['path']}: {exc}") from exc
        return ExecutorOutput(
            success=True, content=f"Applied edits to {params['path']}.", side_effect=True
        )


class ListFilesExecutor(ToolExecutor):
    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    async def execute(
        self, params: Mapping[str, str], cancel: CancellationToken
    ) -> ExecutorOutput:
        cancel.raise_if_cancelled()
        base = self.workspace.resolve(params.get("path") or ".")
        if not base.is_dir():
            raise ToolExecutionError(f"Directory not found: {params.get('path')}")
        entries: list[str] = []
        if _truthy(params.get("recursive")):
            for directory, dirnames, filenames in os.walk(base):
                current = Path(directory)
                dirnames[:] = sorted(
                    name
                    for name in dirnames
                    if not is_excluded(
                        f"{self.workspace.relative(current / name)}/", self.workspace.exclude
                    )
                )
                for name in dirnames:
                    entries.append(f"{self.workspace.relative(current / name)}/")
                for name in sorted(filenames):
                    entries.append(self.workspace.relative(current / name))
        else:
            for child in sorted(base.iterdir()):
                entry = f"{self.workspace.relative(child)}{'/' if child.is_dir() else ''}"
                if not is_excluded(entry, self.workspace.exclude):
                    entries.append(entry)
        truncated = len(entries) > MAX_LIST_ENTRIES
        listing = "\n".join(sorted(entries)[:MAX_LIST_ENTRIES]) or "(empty)"
        if truncated:
            listing = f"{listing}\n[... {len(entries) - MAX_LIST_ENTRIES} more entries]"
        return ExecutorOutput(success=True, content=listing)


class SearchFilesExecutor(ToolExecutor):
    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    def _search(self, base: Path, pattern: re.Pattern[str], file_pattern: str) -> list[str]:
        matches: list[str] = []
        for directory, dirnames, filenames in os.walk(base):
            current = Path(directory)
            dirnames[:] = sorted(
                name
                for name in dirnames
                if not is_excluded(
                    f"{self.workspace.relative(current / name)}/", self.workspace.exclude
                )
            )
            for name in sorted(filenames):
                if file_pattern and not fnmatch.fnmatch(name, file_pattern):
                    continue
                path = current / name
                try:
                    lines = path.read_text(encoding="utf-8").splitlines()
                except (UnicodeDecodeError, OSError):
                    continue
                for number, line in enumerate(lines, start=1):
                    if pattern.search(line):
                        matches.append(f"{self.workspace.relative(path)}:{number}: {line.strip()}")
                        if len(matches) >= MAX_SEARCH_MATCHES:
                            return matches
        return matches

    async def execute(
        self, params: Mapping[str, str], cancel: CancellationToken
    ) -> ExecutorOutput:
        cancel.raise_if_cancelled()
        base = self.workspace.resolve(params.get("path") or ".")
        try:
            pattern = re.compile(params["regex"])
        except re.error as exc:
            raise ToolExecutionError(f"Invalid regex: {exc}") from exc
        matches = await asyncio.to_thread(
            self._search, base, pattern, (params.get("file_pattern") or "").strip()
        )
        if not matches:
            return ExecutorOutput(success=True, content="No matches found.")
        return ExecutorOutput(success=True, content="\n".join(matches))
