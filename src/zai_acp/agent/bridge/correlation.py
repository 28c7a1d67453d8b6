"""Correlation of engine tool invocations with their later results."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

DEFAULT_MAX_ENTRIES = 4096


class InvocationKind(str, Enum):
    DIRECT = "direct"
    SERVER = "server"
    BRIDGED = "bridged"


BLOCK_KINDS: Dict[str, InvocationKind] = {
    "tool_use": InvocationKind.DIRECT,
    "server_tool_use": InvocationKind.SERVER,
    "mcp_tool_use": InvocationKind.BRIDGED,
}


@dataclass(frozen=True)
class ToolInvocationRecord:
    tool_use_id: str
    name: str
    raw_input: Dict[str, Any] = field(default_factory=dict)
    kind: InvocationKind = InvocationKind.DIRECT
    is_plan: bool = False


class CorrelationCache:
    """Per-session map from tool invocation id to its descriptor.

    Lookups do not remove entries because one invocation can be referenced by
    several updates (hook output, then the final result). With `max_entries`
    set, the least recently used entries are evicted first.
    """

    def __init__(self, max_entries: int | None = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._records: OrderedDict[str, ToolInvocationRecord] = OrderedDict()

    def record(self, record: ToolInvocationRecord) -> bool:
        """Insert or refresh a record; returns True when the id was already known."""
        known = record.tool_use_id in self._records
        self._records[record.tool_use_id] = record
        self._records.move_to_end(record.tool_use_id)
        if self._max_entries is not None:
            while len(self._records) > self._max_entries:
                self._records.popitem(last=False)
        return known

    def lookup(self, tool_use_id: str) -> ToolInvocationRecord | None:
        record = self._records.get(tool_use_id)
        if record is not None:
            self._records.move_to_end(tool_use_id)
        return record

    def find_latest(self, name: str, raw_input: Dict[str, Any] | None = None) -> ToolInvocationRecord | None:
        """Most recent record for `name`, preferring one with the same input."""
        fallback: ToolInvocationRecord | None = None
        for record in reversed(self._records.values()):
            if record.name != name:
                continue
            if raw_input is None or record.raw_input == raw_input:
                return record
            if fallback is None:
                fallback = record
        return fallback

    def __contains__(self, tool_use_id: object) -> bool:
        return tool_use_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class FileContentCache:
    """Last known text of files the client read or wrote, keyed by path."""

    def __init__(self) -> None:
        self._contents: Dict[str, str] = {}

    def remember(self, path: str, content: str) -> None:
        self._contents[path] = content

    def forget(self, path: str) -> None:
        self._contents.pop(path, None)

    def get(self, path: str) -> str | None:
        return self._contents.get(path)

    def __contains__(self, path: object) -> bool:
        return path in self._contents
