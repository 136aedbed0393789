"""Reduce feed content to bounded, storage-friendly snapshots."""

from __future__ import annotations

import json
from typing import Any, Mapping

from acp_feed.config import DiffLimits, PersistLimits
from acp_feed.feed.diff import build_diff_preview, tail_lines, truncate_text
from acp_feed.feed.events import safe_json_parse
from acp_feed.feed.types import ContentBlock, ToolCall

RAW_INPUT_KEYS = ("command", "args", "path", "filePath", "filepath", "query", "search", "input", "prompt")
_RESOURCE_FIELDS = ("name", "title", "description", "mimeType", "size")


def _drop_none(mapping: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in mapping.items() if value is not None}


def sanitize_blocks(blocks: list[ContentBlock], limits: PersistLimits | None = None) -> list[ContentBlock]:
    """Cap text, strip binary payloads and keep only resource metadata."""
    limits = limits or PersistLimits()
    sanitized: list[ContentBlock] = []
    for block in blocks:
        kind = block.get("type")
        if kind == "text":
            text = truncate_text(str(block.get("text") or ""), limits.max_text_chars)
            if text:
                sanitized.append({"type": "text", "text": text})
        elif kind in ("resource", "resource_link"):
            resource = block.get("resource") if isinstance(block.get("resource"), dict) else {}
            uri = resource.get("uri") or block.get("uri")
            fields = {name: resource.get(name) or block.get(name) for name in _RESOURCE_FIELDS}
            if kind == "resource":
                text_value = resource.get("text") or block.get("text")
                text = truncate_text(str(text_value), limits.max_resource_chars) if text_value else None
                nested = _drop_none({"uri": uri, **fields, "text": text})
                sanitized.append(_drop_none({"type": "resource", "uri": uri, **fields, "resource": nested}))
            else:
                fields.pop("description")
                sanitized.append(_drop_none({"type": "resource_link", "uri": uri, **fields}))
        elif kind == "image":
            sanitized.append({"type": "text", "text": "[image omitted]"})
        elif kind == "audio":
            sanitized.append({"type": "text", "text": "[audio omitted]"})
    return sanitized[: limits.max_blocks]


def sanitize_raw_input(raw_input: str | None, limits: PersistLimits | None = None) -> str | None:
    """Keep only allow-listed keys of structured tool input."""
    limits = limits or PersistLimits()
    if not raw_input:
        return None
    parsed = safe_json_parse(raw_input)
    if isinstance(parsed, dict):
        subset = {key: parsed[key] for key in RAW_INPUT_KEYS if key in parsed}
        return truncate_text(json.dumps(subset, indent=2), limits.max_tool_input_chars)
    return truncate_text(raw_input, limits.max_tool_input_chars)


def build_persisted_content(blocks: list[ContentBlock], limits: PersistLimits | None = None) -> str:
    """Plain-text summary stored alongside the envelope."""
    limits = limits or PersistLimits()
    parts: list[str] = []
    for block in blocks:
        if block.get("type") == "text" and block.get("text"):
            parts.append(str(block["text"]))
        elif block.get("type") == "resource":
            resource = block.get("resource") or {}
            if resource.get("text"):
                parts.append(str(resource["text"]))
    text = "\n\n".join(parts).strip()
    if text:
        return truncate_text(text, limits.max_message_chars)

    attachment = next((b for b in blocks if b.get("type") in ("resource", "resource_link")), None)
    if attachment is None:
        return ""
    resource = attachment.get("resource") or {}
    label = (
        attachment.get("title")
        or attachment.get("name")
        or resource.get("title")
        or resource.get("name")
        or attachment.get("uri")
        or resource.get("uri")
        or "resource"
    )
    return truncate_text(f"[attachment] {label}", limits.max_message_chars)


def build_tool_snapshot(
    call: ToolCall,
    terminal_outputs: Mapping[str, str],
    *,
    limits: PersistLimits | None = None,
    diff_limits: DiffLimits | None = None,
) -> dict[str, Any]:
    """Serialize a finished tool call: diffs become previews, terminals become tails."""
    limits = limits or PersistLimits()
    content: list[dict[str, Any]] = []

    for entry in call.content:
        if entry.get("type") != "diff":
            continue
        preview = entry.get("preview")
        if isinstance(preview, dict):
            preview_dict = preview
        else:
            before = entry.get("oldText", entry.get("original")) or ""
            after = entry.get("newText", entry.get("updated")) or ""
            preview_dict = build_diff_preview(
                str(before), str(after), path=entry.get("path"), limits=diff_limits
            ).to_dict()
        content.append(_drop_none({"type": "diff", "path": entry.get("path"), "preview": preview_dict}))

    blocks = [entry.get("content") for entry in call.content if entry.get("type") == "content"]
    for block in sanitize_blocks([b for b in blocks if isinstance(b, dict)], limits):
        content.append({"type": "content", "content": block})

    terminal_preview: list[dict[str, Any]] = []
    seen: set[str] = set()
    for entry in call.content:
        terminal_id = entry.get("terminalId") if entry.get("type") == "terminal" else None
        if not isinstance(terminal_id, str) or not terminal_id or terminal_id in seen:
            continue
        seen.add(terminal_id)
        content.append({"type": "terminal", "terminalId": terminal_id})
        lines, truncated = tail_lines(terminal_outputs.get(terminal_id, ""), limits.max_terminal_lines)
        terminal_preview.append({"terminalId": terminal_id, "lines": lines, "truncated": truncated})

    locations = None
    if isinstance(call.locations, list) and call.locations:
        locations = [
            _drop_none({"path": loc.get("path"), "line": loc.get("line")}) for loc in call.locations if isinstance(loc, dict)
        ]

    snapshot = {
        "toolCallId": call.tool_call_id,
        "title": call.title,
        "kind": call.kind,
        "status": call.status,
        "locations": locations,
        "content": content,
        "rawInput": sanitize_raw_input(call.raw_input, limits),
        "terminalPreview": terminal_preview or None,
    }
    return _drop_none(snapshot)


__all__ = [
    "RAW_INPUT_KEYS",
    "build_persisted_content",
    "build_tool_snapshot",
    "sanitize_blocks",
    "sanitize_raw_input",
]
