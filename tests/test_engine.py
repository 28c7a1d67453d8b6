from __future__ import annotations

from types import SimpleNamespace

import pytest
from claude_agent_sdk import HookMatcher

from zai_acp.agent.bridge.engine import ClaudeEngine, EngineConfig
from zai_acp.agent.bridge.errors import EngineNotConnectedError


def test_to_options_sets_bridge_defaults(monkeypatch):
    monkeypatch.setenv("CLAUDE_CODE_EXECUTABLE", "/opt/claude/cli.js")
    config = EngineConfig(cwd="/work", model="glm-4.7", max_thinking_tokens=15000, system_prompt="be brief")

    options = config.to_options()

    assert options.cwd == "/work"
    assert options.permission_mode == "default"
    assert options.include_partial_messages is True
    assert options.setting_sources == ["user", "project", "local"]
    assert options.model == "glm-4.7"
    assert options.max_thinking_tokens == 15000
    assert options.system_prompt == "be brief"
    assert str(options.cli_path) == "/opt/claude/cli.js"


def test_extra_options_merge_with_bridge_values():
    own_hook = HookMatcher(hooks=[])
    user_hook = HookMatcher(matcher="Bash", hooks=[])
    config = EngineConfig(
        cwd="/work",
        mcp_servers={"acp": {"type": "stdio", "command": "acp-mcp"}},
        disallowed_tools=["Read"],
        hooks={"PostToolUse": [own_hook]},
        extra_options={
            "mcpServers": {"acp": {"type": "stdio", "command": "other"}, "extra": {"type": "http", "url": "u"}},
            "disallowedTools": ["WebFetch"],
            "hooks": {"PostToolUse": [user_hook], "PreToolUse": [user_hook]},
            "maxTurns": 7,
        },
    )

    options = config.to_options()

    assert options.mcp_servers["acp"]["command"] == "acp-mcp"
    assert "extra" in options.mcp_servers
    assert options.disallowed_tools == ["Read", "WebFetch"]
    assert options.hooks["PostToolUse"] == [user_hook, own_hook]
    assert options.hooks["PreToolUse"] == [user_hook]
    assert options.max_turns == 7


def test_reserved_and_unknown_options_are_ignored(caplog):
    config = EngineConfig(
        cwd="/work",
        extra_options={"cwd": "/elsewhere", "permissionMode": "bypassPermissions", "warpDrive": True},
    )

    with caplog.at_level("WARNING", logger="zai_acp.agent.bridge.engine"):
        options = config.to_options()

    assert options.cwd == "/work"
    assert options.permission_mode == "default"
    ignored = [record.event_fields["option"] for record in caplog.records if record.msg == "engine.options.ignored"]
    assert sorted(ignored) == ["cwd", "permissionMode", "warpDrive"]


@pytest.mark.asyncio
async def test_engine_calls_before_connect_fail():
    engine = ClaudeEngine(EngineConfig(cwd="/work"))

    assert engine.connected is False
    with pytest.raises(EngineNotConnectedError):
        await engine.interrupt()
    with pytest.raises(EngineNotConnectedError):
        engine.events()
    await engine.close()


@pytest.mark.asyncio
async def test_thinking_budget_without_control_channel_fails_cleanly():
    engine = ClaudeEngine(EngineConfig(cwd="/work"))
    engine._client = SimpleNamespace(_query=SimpleNamespace())

    with pytest.raises(EngineNotConnectedError):
        await engine.set_max_thinking_tokens(8000)

    engine._client = SimpleNamespace()
    with pytest.raises(EngineNotConnectedError):
        await engine.set_max_thinking_tokens(8000)


@pytest.mark.asyncio
async def test_thinking_budget_sends_control_request():
    sent = []

    async def send(request):
        sent.append(request)

    engine = ClaudeEngine(EngineConfig(cwd="/work"))
    engine._client = SimpleNamespace(_query=SimpleNamespace(_send_control_request=send))

    await engine.set_max_thinking_tokens(8000)

    assert sent == [{"subtype": "set_max_thinking_tokens", "max_thinking_tokens": 8000}]
