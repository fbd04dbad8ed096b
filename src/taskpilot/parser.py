"""Streaming parser for tool invocations embedded in model output.

Invocations use XML-style markup::

    <read_file>
    <path>src/app.py</path>
    </read_file>

Anything outside an invocation is free text. The parser re-reads the whole
buffer on every chunk, so the block list it exposes is always a consistent
snapshot; the last block is flagged ``partial`` until its closing tag arrives.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from taskpilot.errors import MalformedInvocation, MissingParameter, UnknownTool
from taskpilot.tools.registry import RAW_PARAMETERS, ToolRegistry

OPEN_TAG_PATTERN = re.compile(r"<([a-z][a-z0-9_]*)>")
TOOL_NAME_PATTERN = re.compile(r"[a-z][a-z0-9]*(?:_[a-z0-9]+)+")
TRAILING_TAG_FRAGMENT = re.compile(r"<[a-z_/]*$")


@dataclass(slots=True)
class TextBlock:
    content: str
    partial: bool = False


@dataclass(slots=True)
class ToolInvocation:
    name: str
    params: dict[str, str] = field(default_factory=dict)
    partial: bool = False
    closed: bool = False

    @property
    def ready(self) -> bool:
        return self.closed and not self.partial

    def summary(self, limit: int = 200) -> str:
        parts = []
        for key, value in self.params.items():
            rendered = value if len(value) <= limit else f"{value[:limit]}..."
            parts.append(f"{key}={rendered!r}")
        return f"{self.name}({', '.join(parts)})"


Block = TextBlock | ToolInvocation


def _is_tool_tag(name: str, tool_names: set[str], param_names: set[str]) -> bool:
    if name in tool_names:
        return True
    if name in param_names:
        return False
    return TOOL_NAME_PATTERN.fullmatch(name) is not None


def _clean_value(name: str, value: str) -> str:
    if name in RAW_PARAMETERS:
        if value.startswith("\n"):
            value = value[1:]
        if value.endswith("\n"):
            value = value[:-1]
        return value
    return value.strip()


def _parse_params(body: str) -> tuple[dict[str, str], bool]:
    """Return the parameters found in a tool body and whether all of them closed."""
    params: dict[str, str] = {}
    position = 0
    while True:
        match = OPEN_TAG_PATTERN.search(body, position)
        if match is None:
            return params, True
        name = match.group(1)
        value_start = match.end()
        close_tag = f"</{name}>"
        if name in RAW_PARAMETERS:
            value_end = body.rfind(close_tag)
            if value_end < value_start:
                value_end = -1
        else:
            value_end = body.find(close_tag, value_start)
        if value_end == -1:
            params[name] = _clean_value(name, TRAILING_TAG_FRAGMENT.sub("", body[value_start:]))
            return params, False
        params[name] = _clean_value(name, body[value_start:value_end])
        position = value_end + len(close_tag)


def parse_message(
    text: str,
    *,
    tool_names: Iterable[str],
    param_names: Iterable[str] = (),
    final: bool = True,
) -> list[Block]:
    tools = set(tool_names)
    params = set(param_names)
    blocks: list[Block] = []
    text_start = 0
    position = 0

    while True:
        match = OPEN_TAG_PATTERN.search(text, position)
        if match is None:
            break
        name = match.group(1)
        if not _is_tool_tag(name, tools, params):
            position = match.end()
            continue

        leading = text[text_start:match.start()].strip()
        if leading:
            blocks.append(TextBlock(content=leading))

        close_tag = f"</{name}>"
        body_start = match.end()
        body_end = text.find(close_tag, body_start)
        if body_end == -1:
            values, _ = _parse_params(text[body_start:])
            blocks.append(ToolInvocation(name=name, params=values, partial=True, closed=False))
            return blocks

        values, params_closed = _parse_params(text[body_start:body_end])
        blocks.append(
            ToolInvocation(name=name, params=values, partial=False, closed=params_closed)
        )
        position = text_start = body_end + len(close_tag)

    trailing = text[text_start:]
    if not final:
        trailing = TRAILING_TAG_FRAGMENT.sub("", trailing)
    trailing = trailing.strip()
    if trailing:
        blocks.append(TextBlock(content=trailing, partial=not final))
    return blocks


class StreamingParser:
    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry
        self._tool_names = set(registry.names())
        self._param_names = registry.parameter_names()
        self._chunks: list[str] = []
        self.blocks: list[Block] = []
        self.finished = False

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    def feed(self, chunk: str) -> list[Block]:
        if self.finished:
            raise RuntimeError("Parser already finished.")
        self._chunks.append(chunk)
        self.blocks = self._parse(final=False)
        return self.blocks

    def finish(self) -> list[Block]:
        self.finished = True
        self.blocks = self._parse(final=True)
        return self.blocks

    def _parse(self, *, final: bool) -> list[Block]:
        return parse_message(
            self.text,
            tool_names=self._tool_names,
            param_names=self._param_names,
            final=final,
        )


def invocations(blocks: Iterable[Block]) -> list[ToolInvocation]:
    return [block for block in blocks if isinstance(block, ToolInvocation)]


def validate(invocation: ToolInvocation, registry: ToolRegistry) -> None:
    """Raise a ``ParseError`` unless ``invocation`` may be dispatched."""
    if invocation.name not in registry:
        raise UnknownTool(
            f"Tool '{invocation.name}' does not exist. "
            f"Available tools: {', '.join(registry.names())}.",
            tool=invocation.name,
        )
    if not invocation.ready:
        raise MalformedInvocation(
            f"The '{invocation.name}' invocation was not closed properly. "
            f"End it with </{invocation.name}> and close every parameter tag.",
            tool=invocation.name,
        )
    descriptor = registry.resolve(invocation.name)
    for parameter in descriptor.required:
        value = invocation.params.get(parameter)
        if value is None or (parameter not in RAW_PARAMETERS and not value.strip()):
            raise MissingParameter(
                f"Missing value for required parameter '{parameter}' of '{invocation.name}'.",
                tool=invocation.name,
                parameter=parameter,
            )
