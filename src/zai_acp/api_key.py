"""API key validation against the Anthropic-compatible Z.AI endpoint."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from zai_acp.log_utils import log_event
from zai_acp.settings import BASE_URL_ENV, DEFAULT_BASE_URL

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
VALIDATION_TIMEOUT_S = 15.0
PROBE_MODEL = "claude-3-5-haiku-20241022"
INVALID_KEY_MESSAGE = "The API key was rejected by the Z.AI endpoint. Check the key and try again."


@dataclass(frozen=True)
class KeyValidation:
    is_valid: bool
    error: str | None = None


async def validate_api_key(
    api_key: str,
    *,
    base_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> KeyValidation:
    """Check a key with `GET /v1/models`, probing `/v1/messages` when listing is unavailable."""
    base = (base_url or os.getenv(BASE_URL_ENV) or DEFAULT_BASE_URL).rstrip("/")
    headers = {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}
    async with httpx.AsyncClient(timeout=VALIDATION_TIMEOUT_S, transport=transport) as client:
        try:
            response = await client.get(f"{base}/v1/models", headers=headers)
        except httpx.HTTPError as exc:
            log_event(logger, "api_key.validate.models_failed", level=logging.WARNING, error=str(exc))
            return await _probe_messages(client, base, headers)

        if response.is_success:
            return KeyValidation(is_valid=True)
        if response.status_code in (401, 403):
            return KeyValidation(is_valid=False, error=INVALID_KEY_MESSAGE)
        if response.status_code == 404:
            return await _probe_messages(client, base, headers)
        return KeyValidation(is_valid=False, error=f"API request failed (status {response.status_code})")


async def _probe_messages(client: httpx.AsyncClient, base: str, headers: dict[str, str]) -> KeyValidation:
    body: dict[str, Any] = {
        "model": PROBE_MODEL,
        "max_tokens": 1,
        "messages": [{"role": "user", "content": "hi"}],
    }
    try:
        response = await client.post(f"{base}/v1/messages", headers=headers, json=body)
    except httpx.HTTPError as exc:
        # A network failure says nothing about the key itself.
        log_event(logger, "api_key.validate.probe_failed", level=logging.WARNING, error=str(exc))
        return KeyValidation(is_valid=True)
    if response.status_code in (401, 403):
        return KeyValidation(is_valid=False, error=INVALID_KEY_MESSAGE)
    return KeyValidation(is_valid=True)
