"""Permission modes mapped to ACP session-mode endpoints.

See: https://agentclientprotocol.com/protocol/session-modes
"""

from __future__ import annotations

import os
from enum import Enum

from acp.schema import SessionMode, SessionModeState


class PermissionMode(str, Enum):
    ASK = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    DONT_ASK = "dontAsk"
    BYPASS = "bypassPermissions"


DEFAULT_MODE = PermissionMode.ASK

_MODE_INFO: dict[PermissionMode, tuple[str, str]] = {
    PermissionMode.ASK: ("Default", "Standard behavior, prompts for dangerous operations"),
    PermissionMode.ACCEPT_EDITS: ("Accept Edits", "Auto-accept file edit operations"),
    PermissionMode.PLAN: ("Plan Mode", "Planning mode, no actual tool execution"),
    PermissionMode.DONT_ASK: ("Don't Ask", "Don't prompt for permissions, deny if not pre-approved"),
    PermissionMode.BYPASS: ("Bypass Permissions", "Bypass all permission checks"),
}


def is_root() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return bool(geteuid is not None and geteuid() == 0)


def bypass_allowed() -> bool:
    """Bypass-all is refused by the engine when running with elevated privileges."""
    return not is_root()


def available_modes(*, allow_bypass: bool | None = None) -> list[PermissionMode]:
    if allow_bypass is None:
        allow_bypass = bypass_allowed()
    return [mode for mode in PermissionMode if allow_bypass or mode is not PermissionMode.BYPASS]


def parse_mode(mode_id: str, *, allow_bypass: bool | None = None) -> PermissionMode | None:
    for mode in available_modes(allow_bypass=allow_bypass):
        if mode.value == mode_id:
            return mode
    return None


def build_mode_state(current_mode: PermissionMode, *, allow_bypass: bool | None = None) -> SessionModeState:
    modes = [
        SessionMode(id=mode.value, name=_MODE_INFO[mode][0], description=_MODE_INFO[mode][1])
        for mode in available_modes(allow_bypass=allow_bypass)
    ]
    return SessionModeState(available_modes=modes, current_mode_id=current_mode.value)
