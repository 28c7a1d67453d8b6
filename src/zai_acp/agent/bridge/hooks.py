"""Engine tool-execution hooks routed back to the session that announced the call."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable

from claude_agent_sdk import HookContext, HookMatcher

from zai_acp.agent.bridge.correlation import DEFAULT_MAX_ENTRIES
from zai_acp.log_utils import log_context, log_event

logger = logging.getLogger(__name__)

PostToolUseCallback = Callable[[str, Any, Any], Awaitable[None]]


class ToolHookRegistry:
    """Per-session callbacks keyed by tool invocation id, fired by `PostToolUse`.

    A callback is dropped when its hook fires or when the tool result arrives,
    whichever comes first. Calls that never produce either (denied or
    interrupted tools) are evicted oldest first once `max_entries` is reached.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._post_tool_use: OrderedDict[str, PostToolUseCallback] = OrderedDict()

    def register(self, tool_use_id: str, on_post_tool_use: PostToolUseCallback) -> None:
        self._post_tool_use[tool_use_id] = on_post_tool_use
        self._post_tool_use.move_to_end(tool_use_id)
        while len(self._post_tool_use) > self._max_entries:
            evicted, _ = self._post_tool_use.popitem(last=False)
            with log_context(tool_call_id=evicted):
                log_event(logger, "acp.hook.post_tool_use.evicted", level=logging.DEBUG)

    def discard(self, tool_use_id: str) -> None:
        self._post_tool_use.pop(tool_use_id, None)

    def __contains__(self, tool_use_id: object) -> bool:
        return tool_use_id in self._post_tool_use

    def __len__(self) -> int:
        return len(self._post_tool_use)

    async def post_tool_use(
        self,
        hook_input: dict[str, Any],
        tool_use_id: str | None,
        context: HookContext | None,
    ) -> dict[str, Any]:
        tool_use_id = tool_use_id or hook_input.get("tool_use_id")
        callback = self._post_tool_use.pop(tool_use_id, None) if tool_use_id else None
        if callback is None:
            with log_context(tool_call_id=tool_use_id):
                log_event(logger, "acp.hook.post_tool_use.untracked", level=logging.DEBUG)
            return {}
        await callback(tool_use_id, hook_input.get("tool_input"), hook_input.get("tool_response"))
        return {}

    def matchers(self) -> dict[str, list[HookMatcher]]:
        return {"PostToolUse": [HookMatcher(matcher=None, hooks=[self.post_tool_use])]}
