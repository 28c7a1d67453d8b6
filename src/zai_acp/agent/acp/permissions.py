"""Permission handling for engine tool requests."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, Dict

from acp.schema import ToolCallUpdate
from claude_agent_sdk import PermissionResultDeny, ToolPermissionContext

from zai_acp.agent.bridge.mediator import (
    AutoAllow,
    ExitPlanRequest,
    PermissionResult,
    auto_allow,
    cancelled_result,
    decide,
    exit_plan_target,
    resolve_exit_plan,
    resolve_tool,
    selected_option,
)
from zai_acp.agent.bridge.session_state import Session, SessionState, await_with_cancel
from zai_acp.agent.bridge.tool_info import tool_info
from zai_acp.log_utils import log_context, log_event
from zai_acp.session_modes import parse_mode

logger = logging.getLogger(__name__)

CanUseTool = Callable[[str, Dict[str, Any], ToolPermissionContext], Awaitable[PermissionResult]]


class PermissionMixin:
    def _can_use_tool_for(self, session: Session) -> CanUseTool:
        """Engine `can_use_tool` callback bound to one session."""

        async def can_use_tool(
            tool_name: str,
            tool_input: Dict[str, Any],
            context: ToolPermissionContext,
        ) -> PermissionResult:
            return await self._mediate_permission(session, tool_name, tool_input, context)

        return can_use_tool

    def _permission_tool_call_id(self, session: Session, tool_name: str, tool_input: Dict[str, Any], context: Any) -> str:
        tool_use_id = getattr(context, "tool_use_id", None)
        if tool_use_id:
            return str(tool_use_id)
        record = session.cache.find_latest(tool_name, tool_input)
        if record is not None:
            return record.tool_use_id
        return f"permission-{uuid.uuid4()}"

    async def _mediate_permission(
        self,
        session: Session,
        tool_name: str,
        tool_input: Dict[str, Any],
        context: Any,
    ) -> PermissionResult:
        if session.state is SessionState.CLOSED:
            return PermissionResultDeny(message="Session not found", interrupt=True)
        suggestions = list(getattr(context, "suggestions", None) or [])
        tool_call_id = self._permission_tool_call_id(session, tool_name, tool_input, context)
        decision = decide(session.permission_mode, tool_name, tool_input, suggestions)

        with log_context(session_id=session.session_id, tool_call_id=tool_call_id):
            log_event(
                logger,
                "acp.permission.request",
                tool=tool_name,
                mode=session.permission_mode.value,
                decision=type(decision).__name__,
            )
            if isinstance(decision, AutoAllow):
                return auto_allow(decision, tool_input)

            info = tool_info(tool_name, tool_input, session.file_cache)
            tool_call = ToolCallUpdate(
                tool_call_id=tool_call_id,
                title=info.title,
                kind=info.kind,
                raw_input=tool_input,
                content=info.content or None,
                locations=info.locations or None,
            )
            cancelled, response = await await_with_cancel(
                self._conn.request_permission(
                    options=list(decision.options),
                    session_id=session.session_id,
                    tool_call=tool_call,
                ),
                session.cancel_event,
            )
            if cancelled:
                log_event(logger, "acp.permission.cancelled")
                return cancelled_result()

            log_event(logger, "acp.permission.outcome", option=selected_option(response) or "cancelled")
            if isinstance(decision, ExitPlanRequest):
                result = resolve_exit_plan(response, tool_input, suggestions)
                target = exit_plan_target(response)
                mode = parse_mode(target) if target else None
                if mode is not None:
                    session.permission_mode = mode
                    session.engine_config.permission_mode = mode.value
                    await self._send_mode_update(session.session_id, mode.value)
                return result
            return resolve_tool(response, tool_name, tool_input, suggestions)
