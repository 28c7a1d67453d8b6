"""Session update emission helpers."""

from __future__ import annotations

from acp.helpers import session_notification, text_block, update_agent_message
from acp.schema import CurrentModeUpdate, SessionNotification


class SessionUpdateMixin:
    async def _send_update(self, note: SessionNotification) -> None:
        """Emit a session/update notification to the client."""
        if self._conn is None:
            raise RuntimeError("Connection not established")
        sender = getattr(self._conn, "session_update", None)
        if sender is None:
            raise RuntimeError("Connection missing session_update handler")
        await sender(session_id=note.session_id, update=note.update)

    async def _send_text(self, session_id: str, text: str) -> None:
        await self._send_update(session_notification(session_id, update_agent_message(text_block(text))))

    async def _send_mode_update(self, session_id: str, mode_id: str) -> None:
        await self._send_update(
            session_notification(
                session_id,
                CurrentModeUpdate(session_update="current_mode_update", current_mode_id=mode_id),
            )
        )
