from __future__ import annotations

import os
from pathlib import Path

from zai_acp import paths
from zai_acp.settings import engine_login_broken, managed_settings_path


def test_platform_dirs_use_xdg_homes() -> None:
    expected_config = Path(os.environ["XDG_CONFIG_HOME"]) / "z-ai-acp"
    expected_state = Path(os.environ["XDG_STATE_HOME"]) / "z-ai-acp"

    assert paths.config_dir() == expected_config
    assert paths.log_dir().is_relative_to(expected_state)
    assert paths.default_managed_settings_path() == expected_config / "managed-settings.json"
    assert paths.env_file() == expected_config / ".env"


def test_managed_settings_path_honours_override(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CLAUDE_CODE_SETTINGS_PATH", str(tmp_path / "custom.json"))
    assert managed_settings_path() == tmp_path / "custom.json"


def test_engine_login_broken_needs_lone_backup() -> None:
    assert not engine_login_broken()

    paths.claude_config_backup_file().write_text("{}")
    assert engine_login_broken()

    paths.claude_config_file().write_text("{}")
    assert not engine_login_broken()
