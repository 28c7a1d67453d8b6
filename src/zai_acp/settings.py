"""Managed settings file and API key storage.

The managed settings file uses the same layout the engine reads from
`managed-settings.json`: an `env` block that seeds the process environment,
permission lists, and a `z_ai` block describing the GLM endpoint. The API key
lives in `env.ANTHROPIC_AUTH_TOKEN` so the engine subprocess inherits it.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, MutableMapping

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from zai_acp.log_utils import log_event
from zai_acp.paths import (
    claude_config_backup_file,
    claude_config_file,
    default_managed_settings_path,
    env_file,
)

logger = logging.getLogger(__name__)

AUTH_TOKEN_ENV = "ANTHROPIC_AUTH_TOKEN"
BASE_URL_ENV = "ANTHROPIC_BASE_URL"
SETTINGS_PATH_ENV = "CLAUDE_CODE_SETTINGS_PATH"
DEFAULT_BASE_URL = "https://api.z.ai/api/anthropic"


class PermissionSettings(BaseModel):
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class ZaiSettings(BaseModel):
    enabled: bool = False
    api_endpoint: str | None = None
    model_mapping: Dict[str, str] = Field(default_factory=dict)


class ManagedSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    permissions: PermissionSettings | None = None
    env: Dict[str, str] = Field(default_factory=dict)
    z_ai: ZaiSettings | None = None


def default_managed_settings() -> ManagedSettings:
    """Settings written the first time a key is saved."""
    return ManagedSettings(
        permissions=PermissionSettings(allow=["*"], deny=[]),
        env={
            BASE_URL_ENV: DEFAULT_BASE_URL,
            "API_TIMEOUT_MS": "3000000",
            "Z_AI_MODEL_MAPPING": "true",
        },
        z_ai=ZaiSettings(
            enabled=True,
            api_endpoint=DEFAULT_BASE_URL,
            model_mapping={
                "claude-3-5-sonnet-20241022": "glm-4.6",
                "claude-3-5-haiku-20241022": "glm-4.5-air",
                "claude-3-opus-20240229": "glm-4.6",
            },
        ),
    )


def managed_settings_path() -> Path:
    custom = os.getenv(SETTINGS_PATH_ENV)
    if custom:
        return Path(custom).expanduser()
    return default_managed_settings_path()


def load_managed_settings(path: Path | None = None) -> ManagedSettings | None:
    target = path or managed_settings_path()
    if not target.exists():
        return None
    try:
        return ManagedSettings.model_validate_json(target.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as exc:
        log_event(logger, "settings.load_failed", level=logging.WARNING, path=str(target), error=str(exc))
        return None


def write_managed_settings(settings: ManagedSettings, path: Path | None = None) -> Path:
    target = path or managed_settings_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = settings.model_dump(mode="json", exclude_none=True)
    target.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return target


def apply_environment_settings(
    settings: ManagedSettings,
    environ: MutableMapping[str, str] | None = None,
) -> None:
    """Seed the environment from settings without overriding explicit variables."""
    env = os.environ if environ is None else environ
    for key, value in settings.env.items():
        if key not in env:
            env[key] = value

    z_ai = settings.z_ai
    if z_ai is None or not z_ai.enabled:
        return
    if z_ai.api_endpoint and BASE_URL_ENV not in env:
        env[BASE_URL_ENV] = z_ai.api_endpoint
    if z_ai.model_mapping:
        env["Z_AI_MODEL_MAPPING_CONFIG"] = json.dumps(z_ai.model_mapping)
    env["Z_AI_ENABLED"] = "true"


def load_runtime_env() -> None:
    """Load `.env` files from the app config dir, then the working directory."""
    load_dotenv(env_file(), override=False)
    load_dotenv(override=False)


def engine_login_broken() -> bool:
    """True when the engine left a backup account file but lost the original."""
    return claude_config_backup_file().exists() and not claude_config_file().exists()


@dataclass
class CredentialStore:
    """Get, save and clear the bearer token used by the engine."""

    path: Path | None = None
    environ: MutableMapping[str, str] = field(default_factory=lambda: os.environ)

    def settings_path(self) -> Path:
        return self.path or managed_settings_path()

    def get(self) -> str | None:
        token = (self.environ.get(AUTH_TOKEN_ENV) or "").strip()
        return token or None

    def has_credential(self) -> bool:
        return self.get() is not None

    def save(self, api_key: str) -> Path:
        target = self.settings_path()
        settings = load_managed_settings(target) or default_managed_settings()
        settings.env[AUTH_TOKEN_ENV] = api_key
        written = write_managed_settings(settings, target)
        self.environ[AUTH_TOKEN_ENV] = api_key
        log_event(logger, "settings.api_key.saved", path=str(written))
        return written

    def clear(self) -> None:
        target = self.settings_path()
        settings = load_managed_settings(target)
        if settings is not None and AUTH_TOKEN_ENV in settings.env:
            del settings.env[AUTH_TOKEN_ENV]
            write_managed_settings(settings, target)
        self.environ.pop(AUTH_TOKEN_ENV, None)
        log_event(logger, "settings.api_key.cleared", path=str(target))

    def reload(self) -> str | None:
        """Pick up a key written by an out-of-band setup run."""
        settings = load_managed_settings(self.settings_path())
        token = (settings.env.get(AUTH_TOKEN_ENV) or "").strip() if settings else ""
        if token:
            self.environ[AUTH_TOKEN_ENV] = token
            return token
        return self.get()
