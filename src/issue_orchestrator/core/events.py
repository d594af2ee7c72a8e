"""Translation of agent stream-json events into progress log lines.

Each event type maps to a formatter returning zero or more log lines. Event
types with no entry produce nothing, and tools with no entry in
``TOOL_FORMATTERS`` fall back to ``[tool] <Name>``, so new event kinds
from newer agent versions are ignored rather than breaking a run.
"""

from collections.abc import Callable
from typing import Any

CLAUDE_TEXT_LIMIT = 300
BASH_COMMAND_LIMIT = 200


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _pattern_in_path(tag: str, tool_input: dict) -> str:
    pattern = tool_input.get("pattern") or ""
    path = tool_input.get("path")
    return f"[{tag}] {pattern} {f'in {path}' if path else ''}".strip()


TOOL_FORMATTERS: dict[str, Callable[[dict], str]] = {
    "Read": lambda i: f"[read] {i.get('file_path') or ''}",
    "Edit": lambda i: f"[edit] {i.get('file_path') or ''}",
    "Write": lambda i: f"[write] {i.get('file_path') or ''}",
    "Bash": lambda i: f"[bash] {str(i.get('command') or '')[:BASH_COMMAND_LIMIT]}",
    "Glob": lambda i: _pattern_in_path("glob", i),
    "Grep": lambda i: _pattern_in_path("grep", i),
    "Task": lambda i: f"[task] {i.get('description') or i.get('prompt') or 'subagent'}",
    "TodoWrite": lambda i: "[todo] updating task list",
    "WebFetch": lambda i: f"[fetch] {i.get('url') or ''}",
    "WebSearch": lambda i: f"[search] {i.get('query') or ''}",
}


def format_tool_use(name: str, tool_input: Any) -> str:
    formatter = TOOL_FORMATTERS.get(name)
    if formatter is None or not isinstance(tool_input, dict):
        return f"[tool] {name}"
    return formatter(tool_input)


def _format_system(event: dict) -> list[str]:
    if event.get("subtype") != "init":
        return []
    tools = event.get("tools") or []
    return [f"[init] Session started — model: {event.get('model')}, tools: {len(tools)}"]


def _format_assistant(event: dict) -> list[str]:
    message = event.get("message") or {}
    lines = []
    for block in message.get("content") or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            # Collapsed to one line; log entries are single-line
            text = " ".join((block.get("text") or "").split())
            if text:
                lines.append(f"[claude] {_truncate(text, CLAUDE_TEXT_LIMIT)}")
        elif block.get("type") == "tool_use":
            lines.append(format_tool_use(block.get("name") or "unknown", block.get("input")))
    return lines


def _format_tool_use_summary(event: dict) -> list[str]:
    summary = (event.get("summary") or "").strip()
    return [f"[summary] {summary}"] if summary else []


def _format_result(event: dict) -> list[str]:
    status = "error" if event.get("is_error") else "success"
    cost = event.get("total_cost_usd")
    cost_text = f"{cost:.2f}" if isinstance(cost, (int, float)) else "?"
    return [f"[result] {status} — turns: {event.get('num_turns')}, cost: ${cost_text}"]


EVENT_FORMATTERS: dict[str, Callable[[dict], list[str]]] = {
    "system": _format_system,
    "assistant": _format_assistant,
    "tool_use_summary": _format_tool_use_summary,
    "result": _format_result,
}


def format_event(event: dict) -> list[str]:
    """Progress log lines for one agent event (possibly none)."""
    formatter = EVENT_FORMATTERS.get(event.get("type"))
    if formatter is None:
        return []
    return formatter(event)
