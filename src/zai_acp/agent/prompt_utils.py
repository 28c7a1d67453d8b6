"""Utilities for working with prompt blocks."""

from __future__ import annotations

import re
from typing import Any, Dict, List

MCP_COMMAND_RE = re.compile(r"^/mcp:([^:\s]+):(\S+)(\s+.*)?$", re.DOTALL)


def rewrite_mcp_command(text: str) -> str:
    """`/mcp:server:cmd args` -> `/server:cmd (MCP) args`, the engine's spelling."""
    match = MCP_COMMAND_RE.match(text)
    if not match:
        return text
    server, command, args = match.groups()
    return f"/{server}:{command} (MCP){args or ''}"


def format_uri_as_link(uri: str) -> str:
    if uri.startswith("file://"):
        path = uri[len("file://") :]
        name = path.rsplit("/", 1)[-1] or path
        return f"[@{name}]({uri})"
    if uri.startswith("zed://"):
        name = uri.rsplit("/", 1)[-1] or uri
        return f"[@{name}]({uri})"
    return uri


def _block_type(block: Any) -> str | None:
    if isinstance(block, dict):
        return block.get("type")
    return getattr(block, "type", None)


def _field(block: Any, name: str) -> Any:
    if isinstance(block, dict):
        return block.get(name)
    return getattr(block, name, None)


def _image_part(block: Any) -> Dict[str, Any] | None:
    data = _field(block, "data")
    if data:
        media_type = _field(block, "mime_type") or _field(block, "mimeType")
        return {"type": "image", "source": {"type": "base64", "data": data, "media_type": media_type}}
    uri = _field(block, "uri")
    if isinstance(uri, str) and uri.startswith("http"):
        return {"type": "image", "source": {"type": "url", "url": uri}}
    return None


def prompt_to_engine_message(blocks: List[Any], session_id: str) -> Dict[str, Any]:
    """Build the engine's streaming-input user message from ACP prompt blocks.

    Embedded text resources are sent as a link in place plus a trailing
    `<context>` block. Audio and blob resources are dropped.
    """
    content: List[Dict[str, Any]] = []
    context: List[Dict[str, Any]] = []
    for block in blocks:
        block_type = _block_type(block)
        if block_type == "text":
            content.append({"type": "text", "text": rewrite_mcp_command(str(_field(block, "text") or ""))})
        elif block_type == "resource_link":
            content.append({"type": "text", "text": format_uri_as_link(str(_field(block, "uri") or ""))})
        elif block_type == "resource":
            resource = _field(block, "resource")
            text = _field(resource, "text") if resource is not None else None
            if isinstance(text, str):
                uri = str(_field(resource, "uri") or "")
                content.append({"type": "text", "text": format_uri_as_link(uri)})
                context.append({"type": "text", "text": f'\n<context ref="{uri}">\n{text}\n</context>'})
        elif block_type == "image":
            image = _image_part(block)
            if image is not None:
                content.append(image)
    content.extend(context)
    return {
        "type": "user",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": None,
        "session_id": session_id,
    }


def extract_prompt_text(blocks: List[Any]) -> str:
    parts: List[str] = []
    for block in blocks:
        block_type = _block_type(block)
        if block_type == "text":
            text = _field(block, "text")
            if text:
                parts.append(str(text))
        elif block_type == "resource":
            resource = _field(block, "resource")
            text = _field(resource, "text") if resource is not None else None
            if isinstance(text, str) and text:
                parts.append(text)
    return "\n".join(parts)
