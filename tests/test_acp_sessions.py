from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from acp import RequestError
from acp.schema import AvailableCommandsUpdate, CurrentModeUpdate

from zai_acp.agent.acp.sessions import (
    BUILT_IN_TOOLS,
    build_mcp_servers,
    build_system_prompt,
    thinking_budget_for,
    tool_restrictions,
)
from zai_acp.agent.bridge.session_state import SessionState
from tests.utils import AUTH_REQUIRED, INTERNAL_ERROR, INVALID_PARAMS, FakeEngine, make_agent, updates_of


@pytest.mark.asyncio
async def test_new_session_without_credential_requires_auth(tmp_path: Path):
    agent, _, factory = make_agent(tmp_path, api_key=None)

    with pytest.raises(RequestError) as excinfo:
        await agent.new_session(cwd=str(tmp_path), mcp_servers=[])

    assert excinfo.value.code == AUTH_REQUIRED
    assert excinfo.value.data["authMethods"][0]["id"] == "z-ai-api-key"
    assert factory.created == []


@pytest.mark.asyncio
async def test_new_session_with_broken_engine_login_requires_auth(tmp_path: Path):
    (Path.home() / ".claude.json.backup").write_text("{}")
    agent, _, _ = make_agent(tmp_path)

    with pytest.raises(RequestError) as excinfo:
        await agent.new_session(cwd=str(tmp_path), mcp_servers=[])

    assert excinfo.value.code == AUTH_REQUIRED


@pytest.mark.asyncio
async def test_new_session_requires_absolute_cwd(tmp_path: Path):
    agent, _, _ = make_agent(tmp_path)

    with pytest.raises(RequestError):
        await agent.new_session(cwd="relative/dir", mcp_servers=[])


@pytest.mark.asyncio
async def test_new_session_connects_engine_and_reports_models(tmp_path: Path):
    engine = FakeEngine(commands=[{"name": "review", "description": "Review code", "argumentHint": "<pr>"}])
    agent, conn, factory = make_agent(tmp_path, engine)

    response = await agent.new_session(cwd=str(tmp_path), mcp_servers=[])
    await asyncio.sleep(0.01)

    session = agent._sessions.require(response.session_id)
    assert engine.connected
    assert session.state is SessionState.READY
    assert response.models.current_model_id == "glm-4.7"
    assert [model.model_id for model in response.models.available_models] == ["glm-4.5-air"]
    assert response.modes.current_mode_id == "default"
    assert engine.models_set == ["glm-4.7"]
    assert engine.thinking_budgets == [15000]
    assert factory.created[0].config.cwd == str(tmp_path)

    commands = updates_of(conn, AvailableCommandsUpdate)
    assert [command.name for command in commands[0].available_commands] == ["review"]


@pytest.mark.asyncio
async def test_engine_start_failure_is_internal_error(tmp_path: Path):
    agent, _, _ = make_agent(tmp_path, FakeEngine(connect_error=RuntimeError("no cli")))

    with pytest.raises(RequestError) as excinfo:
        await agent.new_session(cwd=str(tmp_path), mcp_servers=[])

    assert excinfo.value.code == INTERNAL_ERROR
    assert len(agent._sessions) == 0


@pytest.mark.asyncio
async def test_set_session_model_round_trips_thinking_budget(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("MAX_THINKING_TOKENS", "8000")
    engine = FakeEngine()
    agent, _, _ = make_agent(tmp_path, engine)
    response = await agent.new_session(cwd=str(tmp_path), mcp_servers=[])
    session = agent._sessions.require(response.session_id)

    await agent.set_session_model(model_id="glm-4.5-air", session_id=response.session_id)
    assert session.model_id == "glm-4.5-air"
    assert session.max_thinking_tokens is None

    await agent.set_session_model(model_id="glm-4.7", session_id=response.session_id)
    assert session.max_thinking_tokens == 8000
    assert engine.models_set[-2:] == ["glm-4.5-air", "glm-4.7"]
    assert engine.thinking_budgets[-2:] == [None, 8000]


@pytest.mark.asyncio
async def test_set_session_mode_updates_engine_and_client(tmp_path: Path):
    engine = FakeEngine()
    agent, conn, _ = make_agent(tmp_path, engine)
    response = await agent.new_session(cwd=str(tmp_path), mcp_servers=[])

    await agent.set_session_mode(mode_id="acceptEdits", session_id=response.session_id)

    assert agent._sessions.require(response.session_id).permission_mode.value == "acceptEdits"
    assert engine.modes_set == ["acceptEdits"]
    modes = updates_of(conn, CurrentModeUpdate)
    assert modes[-1].current_mode_id == "acceptEdits"


@pytest.mark.asyncio
async def test_set_session_mode_rejects_unknown_mode(tmp_path: Path):
    agent, _, _ = make_agent(tmp_path)
    response = await agent.new_session(cwd=str(tmp_path), mcp_servers=[])

    with pytest.raises(RequestError):
        await agent.set_session_mode(mode_id="yolo", session_id=response.session_id)


@pytest.mark.asyncio
async def test_unknown_session_is_invalid_params(tmp_path: Path):
    agent, _, _ = make_agent(tmp_path)

    with pytest.raises(RequestError) as excinfo:
        await agent.set_session_model(model_id="glm-4.7", session_id="missing")

    assert excinfo.value.code == INVALID_PARAMS


@pytest.mark.asyncio
async def test_close_and_list_sessions(tmp_path: Path):
    agent, _, factory = make_agent(tmp_path)
    first = await agent.new_session(cwd=str(tmp_path), mcp_servers=[])
    second = await agent.new_session(cwd=str(tmp_path), mcp_servers=[])

    listed = await agent.list_sessions()
    assert {info.session_id for info in listed.sessions} == {first.session_id, second.session_id}

    await agent.close_session(session_id=first.session_id)

    assert factory.created[0].closed
    listed = await agent.list_sessions()
    assert [info.session_id for info in listed.sessions] == [second.session_id]
    with pytest.raises(RequestError):
        await agent.close_session(session_id=first.session_id)


@pytest.mark.asyncio
async def test_fork_session_copies_parameters(tmp_path: Path):
    agent, _, factory = make_agent(tmp_path)
    original = await agent.new_session(
        cwd=str(tmp_path),
        mcp_servers=[],
        systemPrompt={"append": "Be brief."},
    )

    forked = await agent.fork_session(cwd=str(tmp_path), session_id=original.session_id)

    assert forked.session_id != original.session_id
    assert factory.created[1].config.system_prompt == {
        "type": "preset",
        "preset": "claude_code",
        "append": "Be brief.",
    }


def test_thinking_budget_for_models(monkeypatch):
    assert thinking_budget_for("glm-4.7") == 15000
    assert thinking_budget_for("claude-opus-4") == 15000
    assert thinking_budget_for("glm-4.5-air") is None
    monkeypatch.setenv("MAX_THINKING_TOKENS", "not-a-number")
    assert thinking_budget_for("glm-4.6") == 15000


def test_build_mcp_servers_translates_transports():
    servers = build_mcp_servers(
        [
            {"name": "files", "command": "files-mcp", "args": ["--root", "/"], "env": [{"name": "A", "value": "1"}]},
            {"type": "http", "name": "remote", "url": "https://mcp.example", "headers": []},
            {"command": "nameless"},
        ]
    )

    assert servers == {
        "files": {"type": "stdio", "command": "files-mcp", "args": ["--root", "/"], "env": {"A": "1"}},
        "remote": {"type": "http", "url": "https://mcp.example"},
    }


def test_build_system_prompt():
    assert build_system_prompt({}) == {"type": "preset", "preset": "claude_code"}
    assert build_system_prompt({"systemPrompt": "custom"}) == "custom"


def test_tool_restrictions():
    class Fs:
        read_text_file = True
        write_text_file = True

    class Caps:
        fs = Fs()
        terminal = True

    assert tool_restrictions(Caps(), {}, {}) == ([], [])
    allowed, disallowed = tool_restrictions(Caps(), {}, {"acp": {}})
    assert "mcp__acp__Read" in allowed
    assert {"Read", "Write", "Edit", "Bash"} <= set(disallowed)
    assert tool_restrictions(None, {"disableBuiltInTools": True}, {}) == ([], list(BUILT_IN_TOOLS))
