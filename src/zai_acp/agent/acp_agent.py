"""Core ACP agent that bridges ACP sessions onto Claude Agent SDK engines.

Session lifecycle, prompt turns, permission mediation, auth and extension
methods live in the `zai_acp.agent.acp` mixins; this class wires their shared
state. Process entrypoints live in agent.py.
"""

from __future__ import annotations

import asyncio
from typing import Any

from acp import Agent
from acp.agent.connection import AgentSideConnection

from zai_acp import __version__
from zai_acp.agent.acp.extensions import ExtensionsMixin
from zai_acp.agent.acp.initialization import InitializationMixin
from zai_acp.agent.acp.permissions import PermissionMixin
from zai_acp.agent.acp.prompts import DEFAULT_DRAIN_TIMEOUT_S, PromptMixin
from zai_acp.agent.acp.sessions import SessionLifecycleMixin
from zai_acp.agent.acp.updates import SessionUpdateMixin
from zai_acp.agent.bridge.engine import EngineFactory, claude_engine_factory
from zai_acp.agent.bridge.session_state import SessionRegistry
from zai_acp.settings import CredentialStore


class ZaiAcpAgent(
    InitializationMixin,
    SessionLifecycleMixin,
    PromptMixin,
    PermissionMixin,
    SessionUpdateMixin,
    ExtensionsMixin,
    Agent,
):
    """Implements ACP session, prompt, permission and auth flows over GLM."""

    def __init__(
        self,
        conn: AgentSideConnection | None = None,
        *,
        engine_factory: EngineFactory | None = None,
        credential_store: CredentialStore | None = None,
        agent_name: str = "z-ai-acp",
        agent_title: str = "Z.AI ACP Agent",
        agent_version: str = __version__,
        drain_timeout_s: float = DEFAULT_DRAIN_TIMEOUT_S,
    ) -> None:
        self._conn: AgentSideConnection | None = conn
        self._agent_name = agent_name
        self._agent_title = agent_title
        self._agent_version = agent_version
        self._engine_factory: EngineFactory = engine_factory or claude_engine_factory
        self._credentials = credential_store or CredentialStore()
        self._drain_timeout_s = drain_timeout_s
        self._sessions = SessionRegistry()
        self._client_capabilities: Any | None = None
        self._client_info: Any | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def on_connect(self, conn: AgentSideConnection) -> None:  # type: ignore[override]
        """Capture connection when wiring via run_agent/connect_to_agent."""
        self._conn = conn
