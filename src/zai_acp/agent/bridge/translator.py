"""Translate engine events into ACP `session/update` notifications.

Engine output arrives either as raw Anthropic stream events (dicts) or as SDK
message dataclasses. Both are reduced to dict content blocks and mapped by a
single function with an explicit branch per block type; anything else is
logged as an unrecognized variant.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal

from acp.helpers import session_notification, text_block
from acp.schema import (
    AgentMessageChunk,
    AgentPlanUpdate,
    AgentThoughtChunk,
    ImageContentBlock,
    SessionNotification,
    ToolCallProgress,
    ToolCallStart,
    UserMessageChunk,
)
from claude_agent_sdk import TextBlock, ThinkingBlock, ToolResultBlock, ToolUseBlock

from zai_acp.agent.bridge.correlation import (
    BLOCK_KINDS,
    CorrelationCache,
    FileContentCache,
    ToolInvocationRecord,
)
from zai_acp.agent.bridge.errors import unreachable
from zai_acp.agent.bridge.hooks import ToolHookRegistry
from zai_acp.agent.bridge.tool_info import (
    ACP_TOOL_PREFIX,
    PLAN_TOOL_NAME,
    plan_entries,
    tool_info,
    tool_update_from_result,
)
from zai_acp.log_utils import log_chunks_enabled, log_context, log_event

logger = logging.getLogger(__name__)

Role = Literal["assistant", "user"]
Emit = Callable[[SessionNotification], Awaitable[None]]

TOOL_USE_TYPES = frozenset(BLOCK_KINDS)
TOOL_RESULT_TYPES = frozenset(
    {
        "tool_result",
        "tool_search_tool_result",
        "web_fetch_tool_result",
        "web_search_tool_result",
        "code_execution_tool_result",
        "bash_code_execution_tool_result",
        "text_editor_code_execution_tool_result",
        "mcp_tool_result",
    }
)
SILENT_BLOCK_TYPES = frozenset(
    {
        "document",
        "search_result",
        "redacted_thinking",
        "input_json_delta",
        "citations_delta",
        "signature_delta",
        "container_upload",
    }
)
SILENT_STREAM_EVENTS = frozenset({"message_start", "message_delta", "message_stop", "content_block_stop"})


def normalize_block(block: Any) -> Any:
    """Reduce SDK content dataclasses to the dict shape used by raw stream events."""
    if isinstance(block, dict):
        return block
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": bool(block.is_error),
        }
    return block


def _json_safe(value: Any) -> Any:
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return None


def _tool_meta(tool_name: str, **extra: Any) -> Dict[str, Any]:
    return {"claudeCode": {"toolName": tool_name, **extra}}


class EventTranslator:
    """Stateful mapper for one session, backed by its correlation and file caches."""

    def __init__(
        self,
        session_id: str,
        cache: CorrelationCache,
        file_cache: FileContentCache | None = None,
        hooks: ToolHookRegistry | None = None,
        emit: Emit | None = None,
    ) -> None:
        self.session_id = session_id
        self._cache = cache
        self._file_cache = file_cache
        self._hooks = hooks
        self._emit = emit

    def _note(self, update: Any) -> SessionNotification:
        return session_notification(self.session_id, update)

    def translate_stream_event(self, event: Any) -> List[SessionNotification]:
        event_type = event.get("type") if isinstance(event, dict) else None
        if event_type == "content_block_start":
            return self.translate_content([event.get("content_block")], "assistant")
        if event_type == "content_block_delta":
            return self.translate_content([event.get("delta")], "assistant")
        if event_type in SILENT_STREAM_EVENTS:
            return []
        unreachable(event, logger, where="stream_event")
        return []

    def translate_content(self, content: Any, role: Role) -> List[SessionNotification]:
        if isinstance(content, str):
            return [self._note(self._message_chunk(role, text_block(content)))]
        if not isinstance(content, list):
            unreachable(content, logger, where="message_content")
            return []
        notes: List[SessionNotification] = []
        for block in content:
            note = self.translate_block(normalize_block(block), role)
            if note is not None:
                notes.append(note)
        return notes

    def translate_block(self, block: Any, role: Role) -> SessionNotification | None:
        block_type = block.get("type") if isinstance(block, dict) else None
        if log_chunks_enabled():
            with log_context(session_id=self.session_id):
                log_event(logger, "acp.translate.block", level=logging.DEBUG, block_type=block_type, role=role)

        if block_type in ("text", "text_delta"):
            return self._note(self._message_chunk(role, text_block(str(block.get("text") or ""))))
        if block_type == "image":
            return self._note(self._message_chunk(role, self._image(block.get("source") or {})))
        if block_type in ("thinking", "thinking_delta"):
            return self._note(
                AgentThoughtChunk(
                    session_update="agent_thought_chunk",
                    content=text_block(str(block.get("thinking") or "")),
                )
            )
        if block_type in TOOL_USE_TYPES:
            return self._tool_use(block)
        if block_type in TOOL_RESULT_TYPES:
            return self._tool_result(block)
        if block_type in SILENT_BLOCK_TYPES:
            return None
        unreachable(block, logger, where="content_block")
        return None

    @staticmethod
    def _message_chunk(role: Role, content: Any) -> Any:
        if role == "assistant":
            return AgentMessageChunk(session_update="agent_message_chunk", content=content)
        return UserMessageChunk(session_update="user_message_chunk", content=content)

    @staticmethod
    def _image(source: Dict[str, Any]) -> ImageContentBlock:
        if source.get("type") == "base64":
            return ImageContentBlock(
                type="image",
                data=str(source.get("data") or ""),
                mime_type=str(source.get("media_type") or ""),
            )
        return ImageContentBlock(
            type="image",
            data="",
            mime_type="",
            uri=source.get("url") if source.get("type") == "url" else None,
        )

    def _tool_use(self, block: Dict[str, Any]) -> SessionNotification | None:
        tool_use_id = block.get("id")
        if not tool_use_id:
            unreachable(block, logger, where="tool_use_without_id")
            return None
        name = str(block.get("name") or "")
        tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
        record = ToolInvocationRecord(
            tool_use_id=tool_use_id,
            name=name,
            raw_input=tool_input,
            kind=BLOCK_KINDS[block["type"]],
            is_plan=name == PLAN_TOOL_NAME,
        )
        known = self._cache.record(record)

        if record.is_plan:
            todos = tool_input.get("todos")
            if isinstance(todos, list):
                return self._note(AgentPlanUpdate(session_update="plan", entries=plan_entries(todos)))
            return None

        info = tool_info(name, tool_input, self._file_cache)
        if known:
            return self._note(
                ToolCallProgress(
                    session_update="tool_call_update",
                    tool_call_id=tool_use_id,
                    title=info.title,
                    kind=info.kind,
                    content=info.content or None,
                    locations=info.locations or None,
                    raw_input=_json_safe(tool_input),
                    field_meta=_tool_meta(name),
                )
            )

        if self._hooks is not None and self._emit is not None:
            self._hooks.register(tool_use_id, self._on_post_tool_use)
        with log_context(session_id=self.session_id, tool_call_id=tool_use_id):
            log_event(logger, "acp.tool_call.start", tool=name, kind=record.kind.value)
        return self._note(
            ToolCallStart(
                session_update="tool_call",
                tool_call_id=tool_use_id,
                title=info.title,
                kind=info.kind,
                status="pending",
                content=info.content or None,
                locations=info.locations or None,
                raw_input=_json_safe(tool_input),
                field_meta=_tool_meta(name),
            )
        )

    def _tool_result(self, block: Dict[str, Any]) -> SessionNotification | None:
        tool_use_id = block.get("tool_use_id")
        if tool_use_id and self._hooks is not None:
            self._hooks.discard(tool_use_id)
        record = self._cache.lookup(tool_use_id) if tool_use_id else None
        if record is None:
            with log_context(session_id=self.session_id, tool_call_id=tool_use_id):
                log_event(logger, "acp.translate.orphan_result", level=logging.ERROR, block_type=block.get("type"))
            return None
        if record.is_plan:
            return None
        status = "failed" if block.get("is_error") else "completed"
        with log_context(session_id=self.session_id, tool_call_id=tool_use_id):
            log_event(logger, "acp.tool_call.finish", tool=record.name, status=status)
        return self._note(
            ToolCallProgress(
                session_update="tool_call_update",
                tool_call_id=tool_use_id,
                status=status,
                field_meta=_tool_meta(record.name),
                **tool_update_from_result(record, block),
            )
        )

    def post_tool_use_update(self, tool_use_id: str, tool_response: Any) -> SessionNotification | None:
        """Attach hook output to an announced tool call."""
        record = self._cache.lookup(tool_use_id)
        if record is None:
            with log_context(session_id=self.session_id, tool_call_id=tool_use_id):
                log_event(logger, "acp.translate.orphan_hook", level=logging.ERROR)
            return None
        return self._note(
            ToolCallProgress(
                session_update="tool_call_update",
                tool_call_id=tool_use_id,
                field_meta=_tool_meta(record.name, toolResponse=_json_safe(tool_response)),
            )
        )

    def remember_file(self, tool_name: str, tool_input: Any, tool_response: Any) -> None:
        """Keep the text a finished Read or Write left on disk, for later diffs."""
        if self._file_cache is None or not isinstance(tool_input, dict):
            return
        name = tool_name.removeprefix(ACP_TOOL_PREFIX)
        path = tool_input.get("file_path")
        if not isinstance(path, str) or not path:
            return
        if name == "Write" and isinstance(tool_input.get("content"), str):
            self._file_cache.remember(path, tool_input["content"])
        elif name == "Read":
            # Partial reads would leave a truncated baseline.
            if tool_input.get("offset") is not None or tool_input.get("limit") is not None:
                return
            file_info = tool_response.get("file") if isinstance(tool_response, dict) else None
            content = file_info.get("content") if isinstance(file_info, dict) else None
            if isinstance(content, str):
                self._file_cache.remember(path, content)
        elif name in {"Edit", "MultiEdit"}:
            self._file_cache.forget(path)

    async def _on_post_tool_use(self, tool_use_id: str, tool_input: Any, tool_response: Any) -> None:
        record = self._cache.lookup(tool_use_id)
        if record is not None:
            self.remember_file(record.name, tool_input, tool_response)
        note = self.post_tool_use_update(tool_use_id, tool_response)
        if note is not None and self._emit is not None:
            await self._emit(note)
