"""Auth method advertised during ACP initialization."""

from __future__ import annotations

import os
import shlex
import sys
from typing import Any, Iterable

from acp.schema import AuthMethod

AUTH_METHOD_ID = "z-ai-api-key"
AUTH_METHOD_NAME = "Setup Z.AI API Key"
AUTH_METHOD_DESCRIPTION = "Enter your Z.AI API key. Get one at https://z.ai"
SETUP_COMMAND_ENV = "ZAI_ACP_SETUP_COMMAND"
SETUP_FLAG = "--setup"
TERMINAL_AUTH_META = "terminal-auth"


def normalize_method_id(method_id: str) -> str:
    return method_id.strip().lower()


def _meta_of(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    meta = value.get("_meta") if isinstance(value, dict) else getattr(value, "field_meta", None)
    return meta if isinstance(meta, dict) else {}


def client_supports_terminal_auth(client_capabilities: Any | None) -> bool:
    return _meta_of(client_capabilities).get(TERMINAL_AUTH_META) is True


def client_supports_terminal(client_capabilities: Any | None) -> bool:
    if client_capabilities is None:
        return False
    if isinstance(client_capabilities, dict):
        return bool(client_capabilities.get("terminal"))
    return bool(getattr(client_capabilities, "terminal", False))


def setup_command() -> tuple[str, list[str]]:
    """Command and arguments that run the interactive key setup."""
    override = os.getenv(SETUP_COMMAND_ENV)
    if override:
        parts = shlex.split(override)
        if parts:
            return parts[0], parts[1:]
    return sys.executable, ["-m", "zai_acp", SETUP_FLAG]


def default_auth_methods(client_capabilities: Any | None = None) -> list[AuthMethod]:
    field_meta: dict[str, Any] | None = None
    if client_supports_terminal_auth(client_capabilities):
        command, args = setup_command()
        field_meta = {
            TERMINAL_AUTH_META: {
                "command": command,
                "args": args,
                "label": "Z.AI API Key Setup",
            }
        }
    return [
        AuthMethod(
            id=AUTH_METHOD_ID,
            name=AUTH_METHOD_NAME,
            description=AUTH_METHOD_DESCRIPTION,
            _meta=field_meta,
        )
    ]


def find_auth_method(methods: Iterable[AuthMethod], method_id: str) -> AuthMethod | None:
    normalized = normalize_method_id(method_id)
    for method in methods:
        if normalize_method_id(method.id) == normalized:
            return method
    return None


def auth_method_payload(method: AuthMethod) -> dict[str, Any]:
    return method.model_dump(by_alias=True, exclude_none=True)


def request_meta(kwargs: dict[str, Any]) -> dict[str, Any]:
    """ACP passes `_meta` entries as keyword arguments; some transports nest them."""
    nested = kwargs.get("field_meta") or kwargs.get("_meta")
    if isinstance(nested, dict):
        return nested
    return dict(kwargs)
