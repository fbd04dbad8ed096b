from __future__ import annotations

from importlib import resources

from taskpilot.tools.registry import ToolDescriptor

FALLBACK_SYSTEM_PROMPT = (
    "You are taskpilot, an autonomous software engineer. Use exactly one XML-style "
    "tool invocation per message and call attempt_completion when the task is done."
)

SUMMARY_SYSTEM_PROMPT = (
    "You condense earlier parts of a working session between a user and an autonomous "
    "coding agent. Keep decisions, file paths, commands, errors and open questions. "
    "Drop pleasantries. Answer with the summary only."
)


def _load_base_prompt() -> str:
    try:
        prompt_path = resources.files("taskpilot.prompts").joinpath("system.md")
        return prompt_path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        return FALLBACK_SYSTEM_PROMPT


def _describe_tool(tool: ToolDescriptor) -> str:
    lines = [f"## {tool.name}", tool.description]
    for parameter in tool.required:
        lines.append(f"- {parameter} (required)")
    for parameter in tool.optional:
        lines.append(f"- {parameter} (optional)")
    return "\n".join(lines)


def build_system_prompt(tools: list[ToolDescriptor], *, mode: str, workspace: str) -> str:
    sections = [
        _load_base_prompt(),
        f"# Mode\n\nYou are in '{mode}' mode. Only the tools below are available.",
        "# Tools\n\n" + "\n\n".join(_describe_tool(tool) for tool in tools),
        f"# Workspace\n\nWorkspace root: {workspace}",
    ]
    return "\n\n".join(sections)


def environment_details(workspace: str, files: list[str], limit: int = 200) -> str:
    shown = files[:limit]
    listing = "\n".join(shown) if shown else "(no files)"
    if len(files) > limit:
        listing = f"{listing}\n[... {len(files) - limit} more files]"
    return (
        f"<environment_details>\nWorkspace: {workspace}\n\nFiles:\n{listing}\n"
        "</environment_details>"
    )


def no_tool_used() -> str:
    return (
        "[ERROR] You did not use a tool in your previous response. Every response must "
        "contain exactly one tool invocation. If the task is done, call attempt_completion; "
        "if you need the user's input, call ask_followup_question."
    )


def invalid_invocation(error: str) -> str:
    return f"[ERROR] Your tool invocation could not be run: {error}\nFix it and try again."


def repetition_detected(tool: str, occurrences: int) -> str:
    return (
        f"[ERROR] You have called '{tool}' with the same arguments {occurrences} times in a "
        "row without making progress. It was not run again. Try a different approach, "
        "re-read the relevant files, or ask the user for help."
    )


def mistake_guidance_question(limit: int, reason: str) -> str:
    return (
        f"The agent has made {limit} consecutive mistakes (last: {reason}). "
        "What guidance should it follow to get back on track?"
    )


def guidance(text: str) -> str:
    return f"<user_guidance>\n{text}\n</user_guidance>"


def ignored_invocations(names: list[str]) -> str:
    return (
        "Only one tool may be used per message; these additional invocations were "
        f"ignored: {', '.join(names)}."
    )


def completion_rejected(feedback: str) -> str:
    return (
        "The user is not satisfied with the result and gave this feedback:\n"
        f"<feedback>\n{feedback or '(no feedback given)'}\n</feedback>"
    )


def followup_answer(question: str, answer: str) -> str:
    return f"Question: {question}\n<answer>\n{answer}\n</answer>"


def subtask_result(mode: str, state: str, result: str) -> str:
    return (
        f"Sub-task in '{mode}' mode finished with state '{state}'.\n"
        f"<result>\n{result}\n</result>"
    )


def interrupted_result() -> str:
    return "The task was interrupted before this tool produced a result; it may not have run."


def resumption(elapsed: str) -> str:
    return (
        f"[TASK RESUMPTION] This task was interrupted {elapsed}. It may or may not be "
        "complete. The workspace may have changed since then; re-read files before editing "
        "them, and continue where you left off."
    )


def request_limit_question(count: int) -> str:
    return f"The task has made {count} model requests. Continue?"


def backend_retry_question(error: str) -> str:
    return f"The model request failed: {error}\nRetry the request?"


def summary_request(transcript: str) -> str:
    return f"Summarize this part of the session:\n\n{transcript}"


def truncation_notice(count: int) -> str:
    return (
        f"[NOTE] {count} earlier turns were removed to stay within the context window. "
        "Re-read files if you need details from that part of the session."
    )
