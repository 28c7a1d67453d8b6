"""Shared app directory helpers based on platformdirs."""

from __future__ import annotations

from pathlib import Path

from platformdirs import PlatformDirs

APP_NAME = "z-ai-acp"
MANAGED_SETTINGS_FILE = "managed-settings.json"
ENV_FILE_NAME = ".env"


def _platform_dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=False)


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def config_dir() -> Path:
    return ensure_dir(Path(_platform_dirs().user_config_path))


def log_dir() -> Path:
    return ensure_dir(Path(_platform_dirs().user_log_path))


def default_managed_settings_path() -> Path:
    return config_dir() / MANAGED_SETTINGS_FILE


def env_file() -> Path:
    return config_dir() / ENV_FILE_NAME


def claude_config_file() -> Path:
    """The engine's own account file; a lone `.backup` copy means a broken login."""
    return Path.home() / ".claude.json"


def claude_config_backup_file() -> Path:
    return Path.home() / ".claude.json.backup"
