"""Bridge error types and upstream failure classification."""

from __future__ import annotations

import logging
from typing import Any

from zai_acp.log_utils import log_event, payload_text

AUTH_ERROR_SIGNATURES: tuple[str, ...] = (
    "401",
    "403",
    "authentication",
    "Unauthorized",
    "invalid_api_key",
    "Invalid API",
    "API key",
)
LOGIN_REQUIRED_MARKER = "Please run /login"


class BridgeError(RuntimeError):
    """Base error for failures inside the bridge."""


class EngineNotConnectedError(BridgeError):
    """Raised when an engine call is made before `connect()`."""


def is_auth_error(text: str | None) -> bool:
    if not text:
        return False
    return any(signature in text for signature in AUTH_ERROR_SIGNATURES)


def needs_login(text: str | None) -> bool:
    return bool(text) and LOGIN_REQUIRED_MARKER in text


def unreachable(value: Any, logger: logging.Logger, *, where: str) -> None:
    """Log an unrecognized protocol variant with its full payload."""
    log_event(
        logger,
        "acp.translate.unreachable",
        level=logging.ERROR,
        where=where,
        payload=payload_text(value),
    )
