"""Titles, kinds and content for engine tool invocations shown to ACP clients."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from acp.helpers import text_block, tool_content, tool_diff_content
from acp.schema import PlanEntry, ToolCallLocation

from zai_acp.agent.bridge.correlation import FileContentCache, ToolInvocationRecord

ACP_TOOL_PREFIX = "mcp__acp__"
PLAN_TOOL_NAME = "TodoWrite"
EXIT_PLAN_TOOL_NAME = "ExitPlanMode"

EDIT_TOOL_NAMES: frozenset[str] = frozenset(
    {
        "Edit",
        "MultiEdit",
        "Write",
        "NotebookEdit",
        f"{ACP_TOOL_PREFIX}Edit",
        f"{ACP_TOOL_PREFIX}Write",
    }
)

_PLAN_STATUSES = {"pending", "in_progress", "completed"}
_PLAN_PRIORITIES = {"high", "medium", "low"}


@dataclass
class ToolInfo:
    title: str
    kind: str = "other"
    content: List[Any] = field(default_factory=list)
    locations: List[ToolCallLocation] = field(default_factory=list)


def is_edit_tool(tool_name: str) -> bool:
    return tool_name in EDIT_TOOL_NAMES


def _text_content(text: str) -> Any:
    return tool_content(text_block(text))


def _fenced(text: str, language: str = "") -> str:
    fence = "```"
    while fence in text:
        fence += "`"
    return f"{fence}{language}\n{text.rstrip()}\n{fence}"


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _edit_info(path: str, tool_input: Dict[str, Any], file_cache: FileContentCache | None) -> ToolInfo:
    edits = tool_input.get("edits")
    if not isinstance(edits, list):
        edits = [tool_input]
    current = file_cache.get(path) if file_cache is not None else None
    content: List[Any] = []
    for edit in edits:
        if not isinstance(edit, dict):
            continue
        old_string = _str(edit.get("old_string"))
        new_string = _str(edit.get("new_string"))
        if current is not None and old_string and old_string in current:
            updated = (
                current.replace(old_string, new_string)
                if edit.get("replace_all")
                else current.replace(old_string, new_string, 1)
            )
            content.append(tool_diff_content(path, updated, current))
            current = updated
        else:
            content.append(tool_diff_content(path, new_string, old_string or None))
    return ToolInfo(
        title=f"Edit `{path}`" if path else "Edit",
        kind="edit",
        content=content,
        locations=[ToolCallLocation(path=path)] if path else [],
    )


def tool_info(
    tool_name: str,
    tool_input: Dict[str, Any] | None,
    file_cache: FileContentCache | None = None,
) -> ToolInfo:
    """Describe a tool invocation for a `tool_call` notification or permission request."""
    data = tool_input if isinstance(tool_input, dict) else {}
    name = tool_name.removeprefix(ACP_TOOL_PREFIX)

    if name == "Task":
        description = _str(data.get("description")) or "Task"
        prompt = _str(data.get("prompt"))
        return ToolInfo(title=description, kind="think", content=[_text_content(prompt)] if prompt else [])

    if name == "Bash":
        command = _str(data.get("command"))
        description = _str(data.get("description"))
        return ToolInfo(
            title=f"`{command}`" if command else "Terminal",
            kind="execute",
            content=[_text_content(description)] if description else [],
        )

    if name == "BashOutput":
        return ToolInfo(title="Tail Logs", kind="execute")

    if name == "KillShell":
        return ToolInfo(title="Kill Process", kind="execute")

    if name in {"Read", "NotebookRead"}:
        path = _str(data.get("file_path") or data.get("notebook_path"))
        offset = data.get("offset")
        limit = data.get("limit")
        suffix = ""
        if isinstance(offset, int) and isinstance(limit, int):
            suffix = f" ({offset} - {offset + limit - 1})"
        elif isinstance(offset, int):
            suffix = f" (from line {offset})"
        elif isinstance(limit, int):
            suffix = f" (1 - {limit})"
        line = offset if isinstance(offset, int) else None
        return ToolInfo(
            title=f"Read {path}{suffix}" if path else "Read File",
            kind="read",
            locations=[ToolCallLocation(path=path, line=line)] if path else [],
        )

    if name == "LS":
        path = _str(data.get("path"))
        return ToolInfo(
            title=f"List the `{path}` directory's contents" if path else "List the current directory's contents",
            kind="search",
            locations=[ToolCallLocation(path=path)] if path else [],
        )

    if name == "Write":
        path = _str(data.get("file_path"))
        new_text = _str(data.get("content"))
        old_text = file_cache.get(path) if file_cache is not None and path else None
        return ToolInfo(
            title=f"Write {path}" if path else "Write",
            kind="edit",
            content=[tool_diff_content(path, new_text, old_text)] if path else [_text_content(new_text)],
            locations=[ToolCallLocation(path=path)] if path else [],
        )

    if name in {"Edit", "MultiEdit"}:
        return _edit_info(_str(data.get("file_path")), data, file_cache)

    if name == "NotebookEdit":
        path = _str(data.get("notebook_path"))
        source = _str(data.get("new_source"))
        return ToolInfo(
            title=f"Edit Notebook {path}" if path else "Edit Notebook",
            kind="edit",
            content=[_text_content(source)] if source else [],
            locations=[ToolCallLocation(path=path)] if path else [],
        )

    if name == "Glob":
        pattern = _str(data.get("pattern"))
        path = _str(data.get("path"))
        title = "Find"
        if path:
            title += f" `{path}`"
        if pattern:
            title += f" `{pattern}`"
        return ToolInfo(title=title, kind="search", locations=[ToolCallLocation(path=path)] if path else [])

    if name == "Grep":
        pattern = _str(data.get("pattern"))
        path = _str(data.get("path"))
        title = f'grep "{pattern}"' if pattern else "grep"
        if path:
            title += f" {path}"
        return ToolInfo(title=title, kind="search")

    if name == "WebFetch":
        url = _str(data.get("url"))
        prompt = _str(data.get("prompt"))
        return ToolInfo(
            title=f"Fetch {url}" if url else "Fetch",
            kind="fetch",
            content=[_text_content(prompt)] if prompt else [],
        )

    if name == "WebSearch":
        query = _str(data.get("query"))
        return ToolInfo(title=f'"{query}"' if query else "Web Search", kind="fetch")

    if name == PLAN_TOOL_NAME:
        todos = data.get("todos")
        summary = ", ".join(
            _str(todo.get("content")) for todo in todos or [] if isinstance(todo, dict) and todo.get("content")
        )
        return ToolInfo(title=f"Update TODOs: {summary}" if summary else "Update TODOs", kind="think")

    if name == EXIT_PLAN_TOOL_NAME:
        plan = _str(data.get("plan"))
        return ToolInfo(title="Ready to code?", kind="switch_mode", content=[_text_content(plan)] if plan else [])

    if tool_name.startswith("mcp__"):
        parts = tool_name.split("__", 2)
        server = parts[1] if len(parts) > 1 else ""
        tool = parts[2] if len(parts) > 2 else ""
        return ToolInfo(
            title=f"mcp: {server}/{tool}" if tool else f"mcp: {server}",
            kind="other",
            content=[_text_content(_fenced(json.dumps(data, indent=2, default=str), "json"))] if data else [],
        )

    return ToolInfo(title=tool_name or "Unknown Tool", kind="other")


def _result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        if content.get("type") == "text":
            return _str(content.get("text"))
        return json.dumps(content, indent=2, default=str)
    if isinstance(content, list):
        parts = [_result_text(item) for item in content]
        return "\n".join(part for part in parts if part)
    return str(content)


def tool_update_from_result(record: ToolInvocationRecord, block: Dict[str, Any]) -> Dict[str, Any]:
    """Extra `tool_call_update` fields for a tool result block."""
    text = _result_text(block.get("content"))
    name = record.name.removeprefix(ACP_TOOL_PREFIX)
    if block.get("is_error"):
        return {"content": [_text_content(_fenced(text))]} if text else {}
    if name in {"Edit", "MultiEdit", "Write", "NotebookEdit", EXIT_PLAN_TOOL_NAME}:
        # Diffs were attached when the call started.
        return {}
    if not text:
        return {}
    if name in {"Bash", "BashOutput", "KillShell"}:
        return {"content": [_text_content(_fenced(text, "console"))]}
    if name in {"Read", "NotebookRead"}:
        return {"content": [_text_content(_fenced(text))]}
    return {"content": [_text_content(text)]}


def plan_entries(todos: Iterable[Any]) -> List[PlanEntry]:
    entries: List[PlanEntry] = []
    for todo in todos:
        if not isinstance(todo, dict):
            continue
        content = _str(todo.get("content")).strip()
        if not content:
            continue
        status = todo.get("status") if todo.get("status") in _PLAN_STATUSES else "pending"
        priority = todo.get("priority") if todo.get("priority") in _PLAN_PRIORITIES else "medium"
        entries.append(PlanEntry(content=content, status=status, priority=priority))
    return entries
