"""Slash command helpers mapped to ACP slash-commands.

See: https://agentclientprotocol.com/protocol/slash-commands
"""

from __future__ import annotations

from typing import Any, Iterable

from acp.helpers import session_notification
from acp.schema import (
    AvailableCommand,
    AvailableCommandInput,
    AvailableCommandsUpdate,
    SessionNotification,
    UnstructuredCommandInput,
)

# Commands that only make sense in the engine's own terminal UI.
UNSUPPORTED_COMMANDS: frozenset[str] = frozenset(
    {
        "context",
        "cost",
        "login",
        "logout",
        "output-style:new",
        "release-notes",
        "todos",
    }
)
MCP_SUFFIX = " (MCP)"


def command_name(engine_name: str) -> str:
    if engine_name.endswith(MCP_SUFFIX):
        return f"mcp:{engine_name[: -len(MCP_SUFFIX)]}"
    return engine_name


def available_slash_commands(engine_commands: Iterable[Any]) -> list[AvailableCommand]:
    commands: list[AvailableCommand] = []
    for entry in engine_commands:
        if not isinstance(entry, dict) or not entry.get("name"):
            continue
        name = command_name(str(entry["name"]).lstrip("/"))
        if name in UNSUPPORTED_COMMANDS:
            continue
        hint = entry.get("argumentHint") or entry.get("argument_hint")
        commands.append(
            AvailableCommand(
                name=name,
                description=str(entry.get("description") or ""),
                input=AvailableCommandInput(root=UnstructuredCommandInput(hint=str(hint))) if hint else None,
            )
        )
    return commands


def available_commands_update(session_id: str, commands: list[AvailableCommand]) -> SessionNotification:
    update = AvailableCommandsUpdate(session_update="available_commands_update", available_commands=commands)
    return session_notification(session_id, update)
