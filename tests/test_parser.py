import pytest

from taskpilot.errors import MalformedInvocation, MissingParameter, UnknownTool
from taskpilot.parser import (
    StreamingParser,
    TextBlock,
    ToolInvocation,
    invocations,
    parse_message,
    validate,
)
from taskpilot.tools import ToolRegistry


def _registry() -> ToolRegistry:
    return ToolRegistry.default()


def _parse(text: str, *, final: bool = True) -> list[TextBlock | ToolInvocation]:
    registry = _registry()
    return parse_message(
        text,
        tool_names=registry.names(),
        param_names=registry.parameter_names(),
        final=final,
    )


def test_text_and_invocation_are_split_into_blocks() -> None:
    blocks = _parse("Let me look.\n<read_file>\n<path>src/app.py</path>\n</read_file>")

    assert blocks[0] == TextBlock(content="Let me look.")
    invocation = blocks[1]
    assert isinstance(invocation, ToolInvocation)
    assert invocation.name == "read_file"
    assert invocation.params == {"path": "src/app.py"}
    assert invocation.ready


def test_streaming_feed_exposes_partial_then_complete_invocation() -> None:
    parser = StreamingParser(_registry())

    blocks = parser.feed("<read_file>\n<pa")
    assert len(blocks) == 1
    assert isinstance(blocks[0], ToolInvocation)
    assert blocks[0].partial
    assert blocks[0].params == {}

    blocks = parser.feed("th>src/a")
    assert blocks[0].params == {"path": "src/a"}
    assert blocks[0].partial

    parser.feed("pp.py</path>\n</read_file>")
    final = parser.finish()
    assert invocations(final)[0].params == {"path": "src/app.py"}
    assert invocations(final)[0].ready


def test_trailing_tag_fragment_is_hidden_while_streaming() -> None:
    parser = StreamingParser(_registry())

    blocks = parser.feed("Checking the file <read_")

    assert blocks == [TextBlock(content="Checking the file", partial=True)]


def test_feed_after_finish_is_rejected() -> None:
    parser = StreamingParser(_registry())
    parser.feed("done")
    parser.finish()

    with pytest.raises(RuntimeError):
        parser.feed("more")


def test_content_keeps_markup_and_inner_whitespace() -> None:
    text = (
        "<write_to_file>\n<path>index.html</path>\n<content>\n"
        "<p>  hi  </p>\n</content>\n</write_to_file>"
    )

    invocation = invocations(_parse(text))[0]

    assert invocation.params["content"] == "<p>  hi  </p>"
    assert invocation.params["path"] == "index.html"


def test_parameter_tags_are_not_mistaken_for_tools() -> None:
    blocks = _parse(
        "<search_files>\n<path>.</path>\n<regex>TODO</regex>\n"
        "<file_pattern>*.py</file_pattern>\n</search_files>"
    )

    assert len(blocks) == 1
    assert blocks[0].params == {"path": ".", "regex": "TODO", "file_pattern": "*.py"}


def test_multiple_invocations_are_all_reported() -> None:
    text = (
        "<read_file><path>a.txt</path></read_file>\n"
        "<read_file><path>b.txt</path></read_file>"
    )

    found = invocations(_parse(text))

    assert [item.params["path"] for item in found] == ["a.txt", "b.txt"]


def test_validate_rejects_unknown_tool() -> None:
    invocation = invocations(_parse("<delete_everything>\n</delete_everything>"))[0]

    with pytest.raises(UnknownTool) as exc_info:
        validate(invocation, _registry())

    assert exc_info.value.code == "unknown_tool"
    assert exc_info.value.tool == "delete_everything"


def test_validate_rejects_missing_parameter() -> None:
    invocation = invocations(_parse("<read_file>\n</read_file>"))[0]

    with pytest.raises(MissingParameter) as exc_info:
        validate(invocation, _registry())

    assert exc_info.value.parameter == "path"


@pytest.mark.parametrize(
    "text",
    [
        "<read_file><path>a.txt</read_file>",
        "<read_file><path>a.txt</path>",
    ],
)
def test_validate_rejects_unclosed_invocation(text: str) -> None:
    invocation = invocations(_parse(text))[0]

    with pytest.raises(MalformedInvocation):
        validate(invocation, _registry())


def test_diff_tool_is_absent_when_diffs_are_disabled() -> None:
    registry = ToolRegistry.default(diff_enabled=False)
    invocation = ToolInvocation(
        name="replace_in_file", params={"path": "a", "diff": "x"}, closed=True
    )

    assert "replace_in_file" not in registry
    with pytest.raises(UnknownTool):
        validate(invocation, registry)
