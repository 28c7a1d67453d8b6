"""Initialization and auth handlers for the ACP agent."""

from __future__ import annotations

import logging
from typing import Any

from acp import AuthenticateResponse, InitializeResponse, PROTOCOL_VERSION, RequestError
from acp.schema import (
    AgentCapabilities,
    Implementation,
    McpCapabilities,
    PromptCapabilities,
    SessionCapabilities,
    SessionListCapabilities,
)

from zai_acp.agent.acp.auth_flow import (
    MANUAL_SETUP_HINT,
    auth_required_error,
    authenticate_with_meta_key,
    run_setup_terminal,
)
from zai_acp.agent.acp.auth_methods import (
    client_supports_terminal,
    default_auth_methods,
    find_auth_method,
    request_meta,
)
from zai_acp.agent.acp.extensions import EXT_METHOD_NAMES
from zai_acp.log_utils import log_context, log_event

logger = logging.getLogger(__name__)


def agent_capabilities() -> AgentCapabilities:
    """Prompt and MCP capabilities advertised to every client."""
    capabilities = AgentCapabilities(
        load_session=False,
        prompt_capabilities=PromptCapabilities(image=True, embedded_context=True, audio=False),
        mcp_capabilities=McpCapabilities(http=True, sse=True),
        session_capabilities=SessionCapabilities(list=SessionListCapabilities()),
    )
    capabilities.field_meta = {"extMethods": list(EXT_METHOD_NAMES)}
    return capabilities


class InitializationMixin:
    async def initialize(
        self,
        protocol_version: int,
        client_capabilities: Any | None = None,
        client_info: Any | None = None,
        **_: Any,
    ) -> InitializeResponse:
        """Remember the client's capabilities and advertise ours plus the key setup method."""
        log_event(
            logger,
            "acp.initialize.request",
            protocol_version=protocol_version,
            client=getattr(client_info, "name", None),
            terminal=client_supports_terminal(client_capabilities),
        )
        # Older or newer clients get our version back and decide whether to continue.
        if protocol_version != PROTOCOL_VERSION:
            log_event(
                logger,
                "acp.initialize.version_mismatch",
                level=logging.WARNING,
                requested=protocol_version,
                supported=PROTOCOL_VERSION,
            )
        self._client_capabilities = client_capabilities
        self._client_info = client_info
        return InitializeResponse(
            protocol_version=PROTOCOL_VERSION,
            agent_capabilities=agent_capabilities(),
            agent_info=Implementation(name=self._agent_name, title=self._agent_title, version=self._agent_version),
            auth_methods=default_auth_methods(client_capabilities),
        )

    async def authenticate(self, method_id: str, **kwargs: Any) -> AuthenticateResponse | None:
        """Configure the Z.AI key through a client terminal or from `_meta`."""
        log_event(logger, "acp.authenticate.request", method_id=method_id)
        if find_auth_method(default_auth_methods(self._client_capabilities), method_id) is None:
            raise RequestError.invalid_params({"message": f"Unknown auth method: {method_id}"})

        if client_supports_terminal(self._client_capabilities):
            await run_setup_terminal(self._conn, "")
            if self._credentials.reload() is None:
                raise auth_required_error(
                    f"The API key was not configured. Please try again.\n\n{MANUAL_SETUP_HINT}",
                    self._client_capabilities,
                )
        else:
            await authenticate_with_meta_key(self._credentials, request_meta(kwargs))

        self._mark_sessions_recovered()
        return AuthenticateResponse()

    def _mark_sessions_recovered(self) -> None:
        for session in self._sessions.awaiting_auth():
            session.recover_auth()
            with log_context(session_id=session.session_id):
                log_event(logger, "acp.session.auth_recovered")
