"""Upstream engine boundary over the Claude Agent SDK client."""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Protocol

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient

from zai_acp.agent.bridge.errors import EngineNotConnectedError
from zai_acp.log_utils import log_event

logger = logging.getLogger(__name__)

ENGINE_EXECUTABLE_ENV = "CLAUDE_CODE_EXECUTABLE"
SETTING_SOURCES = ["user", "project", "local"]
# Fields the bridge controls; client-supplied values are dropped.
RESERVED_OPTIONS = frozenset({"cwd", "include_partial_messages", "permission_mode", "can_use_tool"})

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


class Engine(Protocol):
    async def connect(self) -> None: ...

    async def send(self, message: Dict[str, Any]) -> None: ...

    def events(self) -> AsyncIterator[Any]: ...

    async def interrupt(self) -> None: ...

    async def set_model(self, model: str | None) -> None: ...

    async def set_max_thinking_tokens(self, tokens: int | None) -> None: ...

    async def set_permission_mode(self, mode: str) -> None: ...

    async def supported_models(self) -> List[Dict[str, Any]]: ...

    async def supported_commands(self) -> List[Dict[str, Any]]: ...

    async def close(self) -> None: ...


def _snake_case(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def _log_stderr(line: str) -> None:
    log_event(logger, "engine.stderr", level=logging.DEBUG, line=line.rstrip())


@dataclass
class EngineConfig:
    """Inputs for one engine connection; kept on the session for late creation."""

    cwd: str
    permission_mode: str = "default"
    system_prompt: str | Dict[str, Any] | None = None
    mcp_servers: Dict[str, Any] = field(default_factory=dict)
    model: str | None = None
    max_thinking_tokens: int | None = None
    allowed_tools: List[str] = field(default_factory=list)
    disallowed_tools: List[str] = field(default_factory=list)
    can_use_tool: Callable[..., Any] | None = None
    hooks: Dict[str, Any] | None = None
    extra_options: Dict[str, Any] = field(default_factory=dict)

    def to_options(self) -> ClaudeAgentOptions:
        kwargs: Dict[str, Any] = {
            "cwd": self.cwd,
            "permission_mode": self.permission_mode,
            "mcp_servers": dict(self.mcp_servers),
            "allowed_tools": list(self.allowed_tools),
            "disallowed_tools": list(self.disallowed_tools),
            "include_partial_messages": True,
            "setting_sources": list(SETTING_SOURCES),
            "stderr": _log_stderr,
        }
        if self.system_prompt is not None:
            kwargs["system_prompt"] = self.system_prompt
        if self.model:
            kwargs["model"] = self.model
        if self.max_thinking_tokens is not None:
            kwargs["max_thinking_tokens"] = self.max_thinking_tokens
        if self.can_use_tool is not None:
            kwargs["can_use_tool"] = self.can_use_tool
        if self.hooks:
            kwargs["hooks"] = self.hooks
        executable = os.getenv(ENGINE_EXECUTABLE_ENV)
        if executable:
            kwargs["cli_path"] = executable

        known = {item.name for item in dataclasses.fields(ClaudeAgentOptions)}
        for key, value in self.extra_options.items():
            name = _snake_case(key)
            if name not in known or name in RESERVED_OPTIONS:
                log_event(logger, "engine.options.ignored", level=logging.WARNING, option=key)
                continue
            if name == "mcp_servers" and isinstance(value, dict):
                kwargs[name] = {**value, **kwargs[name]}
            elif name == "hooks" and isinstance(value, dict):
                kwargs[name] = _merge_hooks(value, kwargs.get("hooks") or {})
            elif name in ("allowed_tools", "disallowed_tools") and isinstance(value, list):
                kwargs[name] = [*kwargs.get(name, []), *value]
            else:
                kwargs[name] = value
        return ClaudeAgentOptions(**kwargs)


def _merge_hooks(user: Dict[str, Any], own: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, List[Any]] = {event: list(matchers or []) for event, matchers in user.items()}
    for event, matchers in own.items():
        merged.setdefault(event, []).extend(matchers)
    return merged


EngineFactory = Callable[[EngineConfig], Engine]


async def _single_message(message: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
    yield message


class ClaudeEngine:
    """`Engine` backed by one long-lived `ClaudeSDKClient` subprocess."""

    def __init__(self, config: EngineConfig) -> None:
        self._config = config
        self._client: ClaudeSDKClient | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _require(self) -> ClaudeSDKClient:
        if self._client is None:
            raise EngineNotConnectedError("engine is not connected")
        return self._client

    async def connect(self) -> None:
        if self._client is not None:
            return
        client = ClaudeSDKClient(options=self._config.to_options())
        await client.connect()
        self._client = client
        log_event(logger, "engine.connect", cwd=self._config.cwd, model=self._config.model or "")

    async def send(self, message: Dict[str, Any]) -> None:
        # Streaming input keeps stdin open so control requests keep working mid-turn.
        await self._require().query(_single_message(message))

    def events(self) -> AsyncIterator[Any]:
        return self._require().receive_response()

    async def interrupt(self) -> None:
        await self._require().interrupt()

    async def set_model(self, model: str | None) -> None:
        self._config.model = model
        await self._require().set_model(model)

    async def set_max_thinking_tokens(self, tokens: int | None) -> None:
        self._config.max_thinking_tokens = tokens
        client = self._require()
        # The Python client has no public setter; the CLI accepts the control request directly.
        query = getattr(client, "_query", None)
        try:
            send = query._send_control_request
        except AttributeError as exc:
            raise EngineNotConnectedError("engine control channel is not available") from exc
        await send({"subtype": "set_max_thinking_tokens", "max_thinking_tokens": tokens})

    async def set_permission_mode(self, mode: str) -> None:
        self._config.permission_mode = mode
        await self._require().set_permission_mode(mode)

    async def _server_info(self) -> Dict[str, Any]:
        info = await self._require().get_server_info()
        return info if isinstance(info, dict) else {}

    async def supported_models(self) -> List[Dict[str, Any]]:
        models = (await self._server_info()).get("models")
        return [model for model in models or [] if isinstance(model, dict)]

    async def supported_commands(self) -> List[Dict[str, Any]]:
        commands = (await self._server_info()).get("commands")
        return [command for command in commands or [] if isinstance(command, dict)]

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.disconnect()
            log_event(logger, "engine.close", cwd=self._config.cwd)


def claude_engine_factory(config: EngineConfig) -> Engine:
    return ClaudeEngine(config)
