from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from taskpilot.errors import ToolPermissionError, UnknownTool

if TYPE_CHECKING:
    from taskpilot.cancellation import CancellationToken

REGISTRY_VERSION = "1"

GROUP_READ = "read"
GROUP_EDIT = "edit"
GROUP_COMMAND = "command"
GROUP_CONTROL = "control"
TOOL_GROUPS = {GROUP_READ, GROUP_EDIT, GROUP_COMMAND, GROUP_CONTROL}

DEFAULT_MODES: dict[str, list[str]] = {
    "code": [GROUP_READ, GROUP_EDIT, GROUP_COMMAND],
    "architect": [GROUP_READ, GROUP_EDIT],
    "ask": [GROUP_READ],
}

# Parameters whose value may contain markup; they close on the last matching tag.
RAW_PARAMETERS = {"content", "diff"}


@dataclass(slots=True, frozen=True)
class ToolDescriptor:
    name: str
    group: str
    description: str
    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    mutating: bool = False
    requires_diff: bool = False

    @property
    def parameters(self) -> tuple[str, ...]:
        return (*self.required, *self.optional)


@dataclass(slots=True)
class ExecutorOutput:
    success: bool
    content: str
    side_effect: bool = False


class ToolExecutor(ABC):
    @abstractmethod
    async def execute(
        self, params: Mapping[str, str], cancel: CancellationToken
    ) -> ExecutorOutput:
        """Run the tool. Must return promptly once ``cancel`` fires."""


BUILTIN_TOOLS: tuple[ToolDescriptor, ...] = (
    ToolDescriptor(
        name="read_file",
        group=GROUP_READ,
        description="Read the contents of a file relative to the workspace root.",
        required=("path",),
    ),
    ToolDescriptor(
        name="list_files",
        group=GROUP_READ,
        description="List files in a directory. Set recursive to true to descend.",
        required=("path",),
        optional=("recursive",),
    ),
    ToolDescriptor(
        name="search_files",
        group=GROUP_READ,
        description="Search files under a directory for a regular expression.",
        required=("path", "regex"),
        optional=("file_pattern",),
    ),
    ToolDescriptor(
        name="write_to_file",
        group=GROUP_EDIT,
        description="Write complete content to a file, creating it if needed.",
        required=("path", "content"),
        mutating=True,
    ),
    ToolDescriptor(
        name="replace_in_file",
        group=GROUP_EDIT,
        description=(
            "Edit a file with SEARCH/REPLACE blocks: <<<<<<< SEARCH, exact old text, "
            "=======, new text, >>>>>>> REPLACE."
        ),
        required=("path", "diff"),
        mutating=True,
        requires_diff=True,
    ),
    ToolDescriptor(
        name="execute_command",
        group=GROUP_COMMAND,
        description="Run a shell command in the workspace root.",
        required=("command",),
        mutating=True,
    ),
    ToolDescriptor(
        name="ask_followup_question",
        group=GROUP_CONTROL,
        description="Ask the user a question when you need information to proceed.",
        required=("question",),
    ),
    ToolDescriptor(
        name="attempt_completion",
        group=GROUP_CONTROL,
        description="Present the final result once the task is done.",
        required=("result",),
    ),
    ToolDescriptor(
        name="new_task",
        group=GROUP_CONTROL,
        description="Delegate a bounded sub-goal to a new sub-task in the given mode.",
        required=("message",),
        optional=("mode",),
    ),
)


@dataclass(slots=True)
class ToolRegistry:
    """Closed set of tool descriptors resolved at startup."""

    descriptors: dict[str, ToolDescriptor] = field(default_factory=dict)
    modes: dict[str, list[str]] = field(default_factory=lambda: dict(DEFAULT_MODES))
    version: str = REGISTRY_VERSION

    @classmethod
    def default(
        cls,
        *,
        diff_enabled: bool = True,
        modes: Mapping[str, Iterable[str]] | None = None,
    ) -> ToolRegistry:
        descriptors = {
            tool.name: tool
            for tool in BUILTIN_TOOLS
            if diff_enabled or not tool.requires_diff
        }
        mode_map = {name: list(groups) for name, groups in (modes or DEFAULT_MODES).items()}
        for name, groups in mode_map.items():
            unknown = [group for group in groups if group not in TOOL_GROUPS]
            if unknown:
                raise ValueError(f"Mode '{name}' references unknown tool groups: {unknown}")
        return cls(descriptors=descriptors, modes=mode_map)

    def names(self) -> list[str]:
        return sorted(self.descriptors)

    def parameter_names(self) -> set[str]:
        names: set[str] = set()
        for tool in self.descriptors.values():
            names.update(tool.parameters)
        return names

    def __contains__(self, name: object) -> bool:
        return name in self.descriptors

    def resolve(self, name: str) -> ToolDescriptor:
        tool = self.descriptors.get(name)
        if tool is None:
            raise UnknownTool(f"Unknown tool '{name}'.", tool=name)
        return tool

    def allowed_groups(self, mode: str) -> set[str]:
        groups = self.modes.get(mode)
        if groups is None:
            raise ToolPermissionError(f"Unknown mode '{mode}'.")
        return {*groups, GROUP_CONTROL}

    def is_allowed(self, name: str, mode: str) -> bool:
        tool = self.descriptors.get(name)
        if tool is None:
            return False
        return tool.group in self.allowed_groups(mode)

    def tools_for_mode(self, mode: str) -> list[ToolDescriptor]:
        groups = self.allowed_groups(mode)
        return [
            self.descriptors[name]
            for name in self.names()
            if self.descriptors[name].group in groups
        ]
