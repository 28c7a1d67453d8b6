from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List
from unittest.mock import AsyncMock

from acp import RequestPermissionResponse
from acp.agent.connection import AgentSideConnection
from acp.schema import AllowedOutcome
from claude_agent_sdk import AssistantMessage, ResultMessage, TextBlock
from claude_agent_sdk.types import StreamEvent

from zai_acp.agent.acp_agent import ZaiAcpAgent
from zai_acp.agent.bridge.engine import EngineConfig
from zai_acp.settings import AUTH_TOKEN_ENV, CredentialStore

DEFAULT_MODELS: List[Dict[str, Any]] = [
    {"value": "glm-4.7", "displayName": "GLM-4.7", "description": "Flagship model"},
    {"value": "glm-4.5-air", "displayName": "GLM-4.5-Air", "description": "Fast model"},
]


class Call:
    """Script step that runs a coroutine inside the event stream without yielding an event."""

    def __init__(self, fn: Callable[["FakeEngine"], Awaitable[Any]]) -> None:
        self.fn = fn


class FakeEngine:
    """Scripted stand-in for the Claude engine; each `events()` call plays one turn."""

    def __init__(
        self,
        turns: List[List[Any]] | None = None,
        *,
        models: List[Dict[str, Any]] | None = None,
        commands: List[Dict[str, Any]] | None = None,
        connect_error: Exception | None = None,
        connect_gate: asyncio.Event | None = None,
    ) -> None:
        self.turns = list(turns or [])
        self.models = DEFAULT_MODELS if models is None else models
        self.commands = commands or []
        self.connect_error = connect_error
        self.connect_gate = connect_gate
        self.config: EngineConfig | None = None
        self.sent: List[Dict[str, Any]] = []
        self.results: List[Any] = []
        self.models_set: List[str | None] = []
        self.thinking_budgets: List[int | None] = []
        self.modes_set: List[str] = []
        self.connected = False
        self.closed = False
        self.interrupts = 0
        self.interrupted = asyncio.Event()

    async def connect(self) -> None:
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def send(self, message: Dict[str, Any]) -> None:
        self.sent.append(message)

    def events(self):
        return self._play(self.turns.pop(0) if self.turns else [])

    async def _play(self, script: List[Any]):
        for step in script:
            if isinstance(step, Call):
                self.results.append(await step.fn(self))
                continue
            yield step

    async def interrupt(self) -> None:
        self.interrupts += 1
        self.interrupted.set()

    async def set_model(self, model: str | None) -> None:
        self.models_set.append(model)

    async def set_max_thinking_tokens(self, tokens: int | None) -> None:
        self.thinking_budgets.append(tokens)

    async def set_permission_mode(self, mode: str) -> None:
        self.modes_set.append(mode)

    async def supported_models(self) -> List[Dict[str, Any]]:
        return list(self.models)

    async def supported_commands(self) -> List[Dict[str, Any]]:
        return list(self.commands)

    async def close(self) -> None:
        self.closed = True


class FakeEngineFactory:
    """Hands out prepared engines in order, then fresh ones."""

    def __init__(self, *engines: FakeEngine) -> None:
        self.engines = list(engines)
        self.created: List[FakeEngine] = []

    def __call__(self, config: EngineConfig) -> FakeEngine:
        engine = self.engines.pop(0) if self.engines else FakeEngine()
        engine.config = config
        self.created.append(engine)
        return engine


def make_store(tmp_path: Path, api_key: str | None = "test-key") -> CredentialStore:
    environ: Dict[str, str] = {AUTH_TOKEN_ENV: api_key} if api_key else {}
    return CredentialStore(path=tmp_path / "managed-settings.json", environ=environ)


def make_conn() -> AsyncMock:
    conn = AsyncMock(spec=AgentSideConnection)

    # Default permission responder for tests (can be overridden per test).
    async def _default_perm(**_: Any) -> RequestPermissionResponse:
        return RequestPermissionResponse(outcome=AllowedOutcome(option_id="allow", outcome="selected"))

    conn.request_permission = AsyncMock(side_effect=_default_perm)
    return conn


def make_agent(
    tmp_path: Path,
    *engines: FakeEngine,
    conn: AsyncMock | None = None,
    api_key: str | None = "test-key",
    drain_timeout_s: float = 1.0,
) -> tuple[ZaiAcpAgent, AsyncMock, FakeEngineFactory]:
    """Build an agent over scripted engines and a mocked client connection."""
    conn = conn or make_conn()
    factory = FakeEngineFactory(*engines)
    agent = ZaiAcpAgent(
        conn,
        engine_factory=factory,
        credential_store=make_store(tmp_path, api_key),
        drain_timeout_s=drain_timeout_s,
    )
    return agent, conn, factory


def result_message(subtype: str = "success", *, is_error: bool = False, result: str | None = "done") -> ResultMessage:
    return ResultMessage(
        subtype=subtype,
        duration_ms=1,
        duration_api_ms=1,
        is_error=is_error,
        num_turns=1,
        session_id="engine-session",
        result=result,
    )


def assistant_message(*content: Any, model: str = "glm-4.7") -> AssistantMessage:
    return AssistantMessage(content=list(content), model=model)


def assistant_text(text: str, model: str = "glm-4.7") -> AssistantMessage:
    return assistant_message(TextBlock(text=text), model=model)


def stream_event(event: Dict[str, Any]) -> StreamEvent:
    return StreamEvent(uuid="evt", session_id="engine-session", event=event)


def text_delta(text: str) -> StreamEvent:
    return stream_event({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}})


def updates_of(conn: AsyncMock, kind: type | None = None) -> List[Any]:
    updates = [call.kwargs["update"] for call in conn.session_update.call_args_list]
    if kind is None:
        return updates
    return [update for update in updates if isinstance(update, kind)]


# JSON-RPC error codes raised through `acp.RequestError`.
AUTH_REQUIRED = -32000
INVALID_REQUEST = -32600
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
