from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from acp import PROTOCOL_VERSION, RequestError
from acp.schema import ClientCapabilities

from zai_acp.agent.acp import auth_flow
from zai_acp.agent.acp.auth_flow import extract_api_key
from zai_acp.agent.acp.auth_methods import AUTH_METHOD_ID, default_auth_methods, setup_command
from zai_acp.agent.bridge.session_state import SessionState
from zai_acp.api_key import KeyValidation
from tests.utils import AUTH_REQUIRED, INVALID_PARAMS, FakeEngine, make_agent, make_store, result_message


@pytest.mark.asyncio
async def test_initialize_reports_capabilities_and_auth(tmp_path: Path):
    agent, _, _ = make_agent(tmp_path)

    response = await agent.initialize(protocol_version=PROTOCOL_VERSION)

    assert response.protocol_version == PROTOCOL_VERSION
    assert response.agent_info.name == "z-ai-acp"
    capabilities = response.agent_capabilities
    assert capabilities.prompt_capabilities.image is True
    assert capabilities.prompt_capabilities.embedded_context is True
    assert capabilities.mcp_capabilities.http is True
    assert capabilities.field_meta["extMethods"] == ["model/list", "model/set", "prompt/analyze"]
    assert [method.id for method in response.auth_methods] == [AUTH_METHOD_ID]


def test_terminal_auth_meta_only_for_capable_clients(monkeypatch):
    monkeypatch.setenv("ZAI_ACP_SETUP_COMMAND", "z-ai-acp --setup")
    plain = default_auth_methods(ClientCapabilities())
    capable = default_auth_methods(ClientCapabilities(_meta={"terminal-auth": True}))

    assert plain[0].field_meta is None
    assert capable[0].field_meta["terminal-auth"] == {
        "command": "z-ai-acp",
        "args": ["--setup"],
        "label": "Z.AI API Key Setup",
    }


def test_setup_command_defaults_to_module_run():
    command, args = setup_command()
    assert args == ["-m", "zai_acp", "--setup"]
    assert command


def test_extract_api_key_accepts_known_fields():
    assert extract_api_key({"apiKey": " abc "}) == "abc"
    assert extract_api_key({"token": "t"}) == "t"
    assert extract_api_key({"other": "x"}) is None
    assert extract_api_key(None) is None


@pytest.mark.asyncio
async def test_authenticate_with_meta_key_stores_and_recovers(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(auth_flow, "validate_api_key", AsyncMock(return_value=KeyValidation(is_valid=True)))
    engine = FakeEngine(turns=[[result_message("success", is_error=True, result="401")]])
    agent, _, _ = make_agent(tmp_path, engine)
    session_id = (await agent.new_session(cwd="/tmp", mcp_servers=[])).session_id
    with pytest.raises(RequestError):
        await agent.prompt(prompt=[{"type": "text", "text": "hi"}], session_id=session_id)

    await agent.authenticate(method_id=AUTH_METHOD_ID, apiKey="new-key")

    assert agent._credentials.get() == "new-key"
    assert make_store(tmp_path, api_key=None).reload() == "new-key"
    session = agent._sessions.require(session_id)
    assert not session.auth_required
    assert session.state is SessionState.AUTH_RECOVERED


@pytest.mark.asyncio
async def test_authenticate_rejects_invalid_key(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(
        auth_flow,
        "validate_api_key",
        AsyncMock(return_value=KeyValidation(is_valid=False, error="bad key")),
    )
    agent, _, _ = make_agent(tmp_path, api_key=None)

    with pytest.raises(RequestError) as excinfo:
        await agent.authenticate(method_id=AUTH_METHOD_ID, apiKey="nope")

    assert excinfo.value.code == AUTH_REQUIRED
    assert "bad key" in excinfo.value.data["message"]
    assert agent._credentials.get() is None


@pytest.mark.asyncio
async def test_authenticate_without_key_requires_auth(tmp_path: Path):
    agent, _, _ = make_agent(tmp_path, api_key=None)

    with pytest.raises(RequestError) as excinfo:
        await agent.authenticate(method_id=AUTH_METHOD_ID)

    assert excinfo.value.code == AUTH_REQUIRED


@pytest.mark.asyncio
async def test_authenticate_unknown_method(tmp_path: Path):
    agent, _, _ = make_agent(tmp_path)

    with pytest.raises(RequestError) as excinfo:
        await agent.authenticate(method_id="oauth")

    assert excinfo.value.code == INVALID_PARAMS


@pytest.mark.asyncio
async def test_authenticate_through_client_terminal(tmp_path: Path):
    agent, conn, _ = make_agent(tmp_path, api_key=None)
    await agent.initialize(protocol_version=PROTOCOL_VERSION, client_capabilities=ClientCapabilities(terminal=True))

    async def finish_setup(**_):
        make_store(tmp_path, api_key=None).save("typed-key")
        return SimpleNamespace(exit_code=0)

    conn.create_terminal.return_value = SimpleNamespace(terminal_id="term-9")
    conn.wait_for_terminal_exit.side_effect = finish_setup

    await agent.authenticate(method_id=AUTH_METHOD_ID)

    assert agent._credentials.get() == "typed-key"
    conn.release_terminal.assert_awaited_once()


@pytest.mark.asyncio
async def test_terminal_setup_that_stores_nothing_requires_auth(tmp_path: Path):
    agent, conn, _ = make_agent(tmp_path, api_key=None)
    await agent.initialize(protocol_version=PROTOCOL_VERSION, client_capabilities=ClientCapabilities(terminal=True))
    conn.create_terminal.return_value = SimpleNamespace(terminal_id="term-9")
    conn.wait_for_terminal_exit.return_value = SimpleNamespace(exit_code=1)

    with pytest.raises(RequestError) as excinfo:
        await agent.authenticate(method_id=AUTH_METHOD_ID)

    assert excinfo.value.code == AUTH_REQUIRED
    conn.release_terminal.assert_awaited_once()


@pytest.mark.asyncio
async def test_meta_key_validation_uses_http(tmp_path: Path, monkeypatch):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, request.headers.get("x-api-key")))
        return httpx.Response(200, json={"data": []})

    real_validate = auth_flow.validate_api_key

    async def validate(api_key: str):
        return await real_validate(api_key, transport=httpx.MockTransport(handler))

    monkeypatch.setattr(auth_flow, "validate_api_key", validate)
    agent, _, _ = make_agent(tmp_path, api_key=None)

    await agent.authenticate(method_id=AUTH_METHOD_ID, field_meta={"apiKey": "k-123"})

    assert seen == [("GET", "/api/anthropic/v1/models", "k-123")]
    assert agent._credentials.get() == "k-123"
