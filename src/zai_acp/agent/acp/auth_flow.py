"""ACP authenticate flow helpers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from acp import RequestError

from zai_acp.agent.acp.auth_methods import auth_method_payload, default_auth_methods, setup_command
from zai_acp.agent.bridge.session_state import await_with_cancel
from zai_acp.api_key import validate_api_key
from zai_acp.log_utils import log_event
from zai_acp.settings import AUTH_TOKEN_ENV, CredentialStore

logger = logging.getLogger(__name__)

API_KEY_META_KEYS: tuple[str, ...] = ("apiKey", "input", "value", "api-key", "API_KEY", "token")
TERMINAL_OUTPUT_LIMIT = 32_000

API_KEY_URL = "https://z.ai"
MANUAL_SETUP_HINT = (
    "To configure the key manually, add it to your editor's agent server settings:\n"
    "{\n"
    '  "agent_servers": {\n'
    '    "Z AI Agent": {\n'
    f'      "env": {{ "{AUTH_TOKEN_ENV}": "your-api-key-here" }}\n'
    "    }\n"
    "  }\n"
    "}\n\n"
    f"Get your API key from: {API_KEY_URL}"
)


def extract_api_key(meta: Mapping[str, Any] | None) -> str | None:
    """Find a key in authenticate `_meta` under any of the accepted field names."""
    if not meta:
        return None
    for key in API_KEY_META_KEYS:
        value = meta.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def auth_required_error(message: str, client_capabilities: Any | None = None) -> RequestError:
    return RequestError.auth_required(
        {
            "message": message,
            "authMethods": [auth_method_payload(method) for method in default_auth_methods(client_capabilities)],
        }
    )


async def run_setup_terminal(
    conn: Any,
    session_id: str,
    *,
    cwd: str | None = None,
    cancel_event: asyncio.Event | None = None,
) -> int | None:
    """Run the interactive key setup in a client terminal and wait for it to exit.

    Returns the exit code, or None when the wait was cancelled or the process
    ended without one.
    """
    command, args = setup_command()
    created = await conn.create_terminal(
        command=command,
        session_id=session_id,
        args=args,
        cwd=cwd,
        output_byte_limit=TERMINAL_OUTPUT_LIMIT,
    )
    # Older connections return the response model, newer ones a terminal handle.
    terminal_id = getattr(created, "terminal_id", None) or getattr(created, "id")
    log_event(logger, "acp.auth.terminal.started", terminal_id=terminal_id, command=command)
    try:
        waiter = conn.wait_for_terminal_exit(session_id=session_id, terminal_id=terminal_id)
        if cancel_event is None:
            exit_status = await waiter
        else:
            cancelled, exit_status = await await_with_cancel(waiter, cancel_event)
            if cancelled:
                log_event(logger, "acp.auth.terminal.cancelled", terminal_id=terminal_id)
                return None
    finally:
        await conn.release_terminal(session_id=session_id, terminal_id=terminal_id)
    exit_code = getattr(exit_status, "exit_code", None)
    log_event(logger, "acp.auth.terminal.exited", terminal_id=terminal_id, exit_code=exit_code)
    return exit_code


async def authenticate_with_meta_key(store: CredentialStore, meta: Mapping[str, Any] | None) -> str:
    """Validate and store a key supplied in authenticate `_meta`."""
    api_key = extract_api_key(meta)
    if api_key is None:
        raise auth_required_error(f"Z.AI API key required.\n\n{MANUAL_SETUP_HINT}")
    validation = await validate_api_key(api_key)
    if not validation.is_valid:
        log_event(logger, "acp.auth.key.invalid", level=logging.WARNING, error=validation.error or "")
        raise auth_required_error(
            f"API key validation failed: {validation.error or 'the key is not valid'}\n\n"
            f"Get your API key from: {API_KEY_URL}"
        )
    store.save(api_key)
    log_event(logger, "acp.auth.key.saved")
    return api_key
