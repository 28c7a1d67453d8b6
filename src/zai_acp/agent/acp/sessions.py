"""Session lifecycle handlers for ACP sessions."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Coroutine

from acp import NewSessionResponse, RequestError, SetSessionModeResponse, SetSessionModelResponse
from acp.schema import ListSessionsResponse, ModelInfo, SessionInfo, SessionModelState

from zai_acp.agent.acp.auth_flow import MANUAL_SETUP_HINT, auth_required_error
from zai_acp.agent.acp.auth_methods import request_meta
from zai_acp.agent.bridge.analyzer import map_model_to_glm
from zai_acp.agent.bridge.engine import EngineConfig
from zai_acp.agent.bridge.errors import BridgeError
from zai_acp.agent.bridge.session_state import Session
from zai_acp.agent.bridge.tool_info import ACP_TOOL_PREFIX
from zai_acp.agent.bridge.translator import EventTranslator
from zai_acp.agent.slash import available_commands_update, available_slash_commands
from zai_acp.log_utils import log_context, log_event
from zai_acp.session_modes import DEFAULT_MODE, build_mode_state, parse_mode
from zai_acp.settings import engine_login_broken

logger = logging.getLogger(__name__)

MAX_THINKING_TOKENS_ENV = "MAX_THINKING_TOKENS"
DEFAULT_MAX_THINKING_TOKENS = 15000
THINKING_MODEL_MARKERS: tuple[str, ...] = ("opus", "glm-4.7", "glm-4.6")
ACP_SERVER_NAME = "acp"

BUILT_IN_TOOLS: tuple[str, ...] = (
    f"{ACP_TOOL_PREFIX}Read",
    f"{ACP_TOOL_PREFIX}Write",
    f"{ACP_TOOL_PREFIX}Edit",
    f"{ACP_TOOL_PREFIX}Bash",
    f"{ACP_TOOL_PREFIX}BashOutput",
    f"{ACP_TOOL_PREFIX}KillShell",
    "Read",
    "Write",
    "Edit",
    "Bash",
    "BashOutput",
    "KillShell",
    "Glob",
    "Grep",
    "Task",
    "TodoWrite",
    "ExitPlanMode",
    "WebSearch",
    "WebFetch",
    "AskUserQuestion",
    "SlashCommand",
    "Skill",
    "NotebookEdit",
)


def thinking_budget_for(model_id: str) -> int | None:
    """Extended thinking budget for high-capability models, None otherwise."""
    lowered = model_id.lower()
    if not any(marker in lowered for marker in THINKING_MODEL_MARKERS):
        return None
    raw = os.getenv(MAX_THINKING_TOKENS_ENV)
    if raw:
        try:
            return int(raw)
        except ValueError:
            log_event(logger, "acp.session.thinking_budget.invalid", level=logging.WARNING, value=raw)
    return DEFAULT_MAX_THINKING_TOKENS


def _dump(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    dumper = getattr(value, "model_dump", None)
    if callable(dumper):
        return dumper(by_alias=False, exclude_none=True)
    return {}


def _pairs(items: Any) -> dict[str, str]:
    return {str(item["name"]): str(item["value"]) for item in map(_dump, items or []) if "name" in item}


def mcp_server_config(server: Any) -> tuple[str, dict[str, Any]] | None:
    """Translate one ACP MCP server descriptor into the engine's config shape."""
    data = _dump(server)
    name = data.get("name")
    if not name:
        return None
    server_type = data.get("type")
    if server_type in ("http", "sse"):
        config: dict[str, Any] = {"type": server_type, "url": data.get("url")}
        headers = _pairs(data.get("headers"))
        if headers:
            config["headers"] = headers
        return str(name), config
    config = {"type": "stdio", "command": data.get("command"), "args": list(data.get("args") or [])}
    env = _pairs(data.get("env"))
    if env:
        config["env"] = env
    return str(name), config


def build_mcp_servers(mcp_servers: list[Any] | None) -> dict[str, dict[str, Any]]:
    servers: dict[str, dict[str, Any]] = {}
    for server in mcp_servers or []:
        entry = mcp_server_config(server)
        if entry is not None:
            servers[entry[0]] = entry[1]
    return servers


def build_system_prompt(meta: dict[str, Any]) -> str | dict[str, Any]:
    prompt: dict[str, Any] = {"type": "preset", "preset": "claude_code"}
    custom = meta.get("systemPrompt")
    if isinstance(custom, str):
        return custom
    if isinstance(custom, dict) and isinstance(custom.get("append"), str):
        prompt["append"] = custom["append"]
    return prompt


def tool_restrictions(
    client_capabilities: Any | None,
    meta: dict[str, Any],
    mcp_servers: dict[str, Any],
) -> tuple[list[str], list[str]]:
    """Allowed and disallowed engine tools for the client's capabilities.

    Built-in file and shell tools are swapped for the client-backed `acp`
    server's tools only when that server is configured.
    """
    if meta.get("disableBuiltInTools") is True:
        return [], list(BUILT_IN_TOOLS)
    if ACP_SERVER_NAME not in mcp_servers:
        return [], []
    allowed: list[str] = []
    disallowed: list[str] = []
    fs = getattr(client_capabilities, "fs", None)
    if getattr(fs, "read_text_file", False):
        allowed.append(f"{ACP_TOOL_PREFIX}Read")
        disallowed.append("Read")
    if getattr(fs, "write_text_file", False):
        disallowed.extend(["Write", "Edit"])
    if getattr(client_capabilities, "terminal", False):
        allowed.extend([f"{ACP_TOOL_PREFIX}BashOutput", f"{ACP_TOOL_PREFIX}KillShell"])
        disallowed.extend(["Bash", "BashOutput", "KillShell"])
    return allowed, disallowed


class SessionLifecycleMixin:
    async def new_session(
        self,
        cwd: str,
        mcp_servers: list[Any] | None = None,
        **kwargs: Any,
    ) -> NewSessionResponse:
        """Create a session backed by a connected engine (Session Setup / creation)."""
        meta = request_meta(kwargs)
        self._require_credential()
        cwd_path = self._require_absolute_cwd(cwd)
        session = await self._open_session(cwd_path, list(mcp_servers or []), meta)
        return NewSessionResponse(
            session_id=session.session_id,
            modes=build_mode_state(session.permission_mode),
            models=self._model_state(session),
        )

    async def fork_session(
        self,
        cwd: str,
        session_id: str,
        mcp_servers: list[Any] | None = None,
        **kwargs: Any,
    ) -> NewSessionResponse:
        """Start a fresh session with the same parameters as `session_id`."""
        with log_context(session_id=session_id):
            log_event(logger, "acp.session.fork")
        return await self._new_session_like(cwd, session_id, mcp_servers, kwargs)

    async def resume_session(
        self,
        cwd: str,
        session_id: str,
        mcp_servers: list[Any] | None = None,
        **kwargs: Any,
    ) -> NewSessionResponse:
        """Engine transcripts are not persisted, so resuming opens a new session."""
        with log_context(session_id=session_id):
            log_event(logger, "acp.session.resume")
        return await self._new_session_like(cwd, session_id, mcp_servers, kwargs)

    async def _new_session_like(
        self,
        cwd: str,
        session_id: str,
        mcp_servers: list[Any] | None,
        kwargs: dict[str, Any],
    ) -> NewSessionResponse:
        source = self._sessions.get(session_id)
        meta = request_meta(kwargs)
        if source is not None:
            if mcp_servers is None:
                mcp_servers = source.mcp_servers
            if not meta:
                meta = source.meta
        return await self.new_session(cwd, mcp_servers, **meta)

    async def close_session(self, session_id: str, **_: Any) -> None:
        session = await self._sessions.remove(session_id)
        if session is None:
            raise RequestError.invalid_params({"message": "Session not found", "sessionId": session_id})
        with log_context(session_id=session_id):
            log_event(logger, "acp.session.close")
        await session.close()

    async def list_sessions(self, cursor: str | None = None, cwd: str | None = None, **_: Any) -> ListSessionsResponse:
        """Return known sessions; minimal implementation without paging."""
        sessions = [
            SessionInfo(session_id=session.session_id, cwd=str(session.cwd))
            for session in self._sessions
            if cwd is None or str(session.cwd) == cwd
        ]
        return ListSessionsResponse(sessions=sessions, next_cursor=None)

    async def set_session_mode(self, mode_id: str, session_id: str, **_: Any) -> SetSessionModeResponse | None:
        """Update the session's permission mode and broadcast it (Session Modes)."""
        session = self._sessions.require(session_id)
        mode = parse_mode(mode_id)
        if mode is None:
            raise RequestError.invalid_params({"message": f"Invalid mode: {mode_id}", "sessionId": session_id})
        with log_context(session_id=session_id):
            log_event(logger, "acp.session.set_mode", mode=mode.value)
        session.permission_mode = mode
        session.engine_config.permission_mode = mode.value
        if session.engine is not None:
            await session.engine.set_permission_mode(mode.value)
        await self._send_mode_update(session_id, mode.value)
        return SetSessionModeResponse()

    async def set_session_model(self, model_id: str, session_id: str, **_: Any) -> SetSessionModelResponse | None:
        """Switch the backing model and its thinking budget.

        Claude model names are accepted and resolved to their GLM counterpart.
        """
        session = self._sessions.require(session_id)
        requested, model_id = model_id, map_model_to_glm(model_id)
        with log_context(session_id=session_id):
            log_event(logger, "acp.session.set_model", model=model_id, requested=requested)
        if session.engine is not None:
            await session.engine.set_model(model_id)
        else:
            session.engine_config.model = model_id
        session.model_id = model_id
        await self._apply_thinking_budget(session, thinking_budget_for(model_id))
        return SetSessionModelResponse()

    async def _apply_thinking_budget(self, session: Session, budget: int | None) -> None:
        session.max_thinking_tokens = budget
        session.engine_config.max_thinking_tokens = budget
        if session.engine is not None:
            await session.engine.set_max_thinking_tokens(budget)
        with log_context(session_id=session.session_id):
            log_event(logger, "acp.session.thinking_budget", model=session.model_id or "", tokens=budget)

    def _require_credential(self) -> None:
        if self._credentials.has_credential() and not engine_login_broken():
            return
        log_event(logger, "acp.session.auth_required", level=logging.WARNING)
        raise auth_required_error(f"Z.AI API key required.\n\n{MANUAL_SETUP_HINT}", self._client_capabilities)

    @staticmethod
    def _require_absolute_cwd(cwd: str) -> Path:
        path = Path(cwd or "").expanduser()
        if not path.is_absolute():
            raise RequestError.invalid_request({"message": "cwd must be an absolute path"})
        return path

    async def _open_session(self, cwd: Path, mcp_servers: list[Any], meta: dict[str, Any]) -> Session:
        session_id = str(uuid.uuid4())
        with log_context(session_id=session_id):
            log_event(logger, "acp.session.new", cwd=str(cwd), mcp_servers=len(mcp_servers))

        servers = build_mcp_servers(mcp_servers)
        claude_code = meta.get("claudeCode") if isinstance(meta.get("claudeCode"), dict) else {}
        user_options = dict(claude_code.get("options") or {})
        user_servers = user_options.get("mcpServers") or user_options.get("mcp_servers") or {}
        allowed, disallowed = tool_restrictions(self._client_capabilities, meta, {**user_servers, **servers})

        session = Session(
            session_id=session_id,
            cwd=cwd,
            engine_config=EngineConfig(
                cwd=str(cwd),
                permission_mode=DEFAULT_MODE.value,
                system_prompt=build_system_prompt(meta),
                mcp_servers=servers,
                allowed_tools=allowed,
                disallowed_tools=disallowed,
                extra_options=user_options,
            ),
            mcp_servers=mcp_servers,
            meta=dict(meta),
        )
        session.translator = EventTranslator(
            session_id,
            session.cache,
            file_cache=session.file_cache,
            hooks=session.hooks,
            emit=self._send_update,
        )
        session.engine_config.can_use_tool = self._can_use_tool_for(session)
        session.engine_config.hooks = session.hooks.matchers()

        await self._start_engine(session)
        try:
            commands = await self._load_models_and_commands(session)
        except Exception:
            await session.close()
            raise
        await self._sessions.add(session)
        self._schedule(self._advertise_commands(session_id, commands))
        return session

    async def _start_engine(self, session: Session) -> None:
        engine = self._engine_factory(session.engine_config)
        try:
            await engine.connect()
        except Exception as exc:  # noqa: BLE001
            with log_context(session_id=session.session_id):
                log_event(logger, "acp.engine.connect_failed", level=logging.ERROR, error=str(exc))
            raise RequestError.internal_error({"message": f"Failed to start the engine: {exc}"}) from exc
        try:
            session.attach_engine(engine)
        except BridgeError as exc:
            await engine.close()
            raise RequestError.invalid_request({"message": str(exc), "sessionId": session.session_id}) from exc

    async def _load_models_and_commands(self, session: Session) -> list[Any]:
        engine = session.engine
        if engine is None:
            return []
        models = await engine.supported_models()
        if models:
            # The engine does not report its selected model; the first entry becomes current.
            current = str(models[0].get("value"))
            await engine.set_model(current)
            session.model_id = current
            budget = thinking_budget_for(current)
            if budget is not None:
                await self._apply_thinking_budget(session, budget)
            session.available_models = [
                ModelInfo(
                    model_id=str(model.get("value")),
                    name=str(model.get("displayName") or model.get("value")),
                    description=model.get("description"),
                )
                for model in models[1:]
                if model.get("value") and str(model.get("value")) != current
            ]
        return available_slash_commands(await engine.supported_commands())

    @staticmethod
    def _model_state(session: Session) -> SessionModelState | None:
        if session.model_id is None:
            return None
        return SessionModelState(available_models=list(session.available_models), current_model_id=session.model_id)

    async def _advertise_commands(self, session_id: str, commands: list[Any]) -> None:
        # Yield so the session/new response is written before the first update.
        await asyncio.sleep(0)
        await self._send_update(available_commands_update(session_id, commands))

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[None]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_event(logger, "acp.background.failed", level=logging.ERROR, error=str(exc))
