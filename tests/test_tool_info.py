from __future__ import annotations

from zai_acp.agent.bridge.correlation import FileContentCache, ToolInvocationRecord
from zai_acp.agent.bridge.tool_info import is_edit_tool, plan_entries, tool_info, tool_update_from_result


def test_bash_title_and_kind():
    info = tool_info("Bash", {"command": "ls -la", "description": "List files"})

    assert info.title == "`ls -la`"
    assert info.kind == "execute"
    assert info.content[0].content.text == "List files"


def test_read_title_includes_range():
    info = tool_info("mcp__acp__Read", {"file_path": "/src/a.py", "offset": 10, "limit": 5})

    assert info.title == "Read /src/a.py (10 - 14)"
    assert info.kind == "read"
    assert info.locations[0].path == "/src/a.py"
    assert info.locations[0].line == 10


def test_edit_uses_cached_file_for_full_diff():
    files = FileContentCache()
    files.remember("/src/a.py", "x = 1\ny = 2\n")

    info = tool_info("Edit", {"file_path": "/src/a.py", "old_string": "y = 2", "new_string": "y = 3"}, files)

    assert info.kind == "edit"
    diff = info.content[0]
    assert diff.path == "/src/a.py"
    assert diff.old_text == "x = 1\ny = 2\n"
    assert diff.new_text == "x = 1\ny = 3\n"


def test_edit_without_cache_diffs_fragments():
    info = tool_info("Edit", {"file_path": "/src/a.py", "old_string": "a", "new_string": "b"})

    diff = info.content[0]
    assert diff.old_text == "a"
    assert diff.new_text == "b"


def test_write_diff_against_cached_content():
    files = FileContentCache()
    files.remember("/notes.md", "old")

    info = tool_info("Write", {"file_path": "/notes.md", "content": "new"}, files)

    assert info.title == "Write /notes.md"
    assert info.content[0].old_text == "old"
    assert info.content[0].new_text == "new"


def test_search_tools():
    assert tool_info("Glob", {"pattern": "*.py", "path": "/src"}).title == "Find `/src` `*.py`"
    assert tool_info("Grep", {"pattern": "TODO", "path": "/src"}).title == 'grep "TODO" /src'
    assert tool_info("WebSearch", {"query": "glm"}).kind == "fetch"


def test_mcp_tool_title():
    info = tool_info("mcp__github__create_issue", {"title": "bug"})

    assert info.title == "mcp: github/create_issue"
    assert '"title": "bug"' in info.content[0].content.text


def test_unknown_tool_falls_back_to_name():
    info = tool_info("Mystery", {})
    assert info.title == "Mystery"
    assert info.kind == "other"


def test_exit_plan_mode_shows_plan():
    info = tool_info("ExitPlanMode", {"plan": "1. do it"})
    assert info.kind == "switch_mode"
    assert info.content[0].content.text == "1. do it"


def test_edit_tool_classification():
    assert is_edit_tool("Edit")
    assert is_edit_tool("mcp__acp__Write")
    assert not is_edit_tool("Bash")
    assert not is_edit_tool("Read")


def test_bash_result_is_fenced_console():
    record = ToolInvocationRecord(tool_use_id="t1", name="Bash")

    fields = tool_update_from_result(record, {"type": "tool_result", "content": "ok\n"})

    assert fields["content"][0].content.text == "```console\nok\n```"


def test_edit_result_adds_nothing():
    record = ToolInvocationRecord(tool_use_id="t1", name="Edit")
    assert tool_update_from_result(record, {"type": "tool_result", "content": "done"}) == {}


def test_error_result_is_fenced():
    record = ToolInvocationRecord(tool_use_id="t1", name="Edit")

    fields = tool_update_from_result(record, {"type": "tool_result", "content": "boom", "is_error": True})

    assert fields["content"][0].content.text == "```\nboom\n```"


def test_plan_entries_normalize_fields():
    entries = plan_entries(
        [
            {"content": "Write tests", "status": "in_progress", "priority": "high"},
            {"content": "Ship", "status": "weird"},
            {"content": "  "},
            "not a todo",
        ]
    )

    assert [(e.content, e.status, e.priority) for e in entries] == [
        ("Write tests", "in_progress", "high"),
        ("Ship", "pending", "medium"),
    ]
