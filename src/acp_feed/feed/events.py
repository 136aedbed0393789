"""Coercion of incoming protocol events into wire-shaped dicts.

Events arrive either as already-decoded JSON objects or as `acp.schema`
models. Everything downstream works on the camelCase JSON shape so persisted
and live data look the same.
"""

from __future__ import annotations

import json
from typing import Any

from acp.schema import SessionNotification
from pydantic import BaseModel

from acp_feed.errors import ProtocolShapeError

MESSAGE_UPDATES = frozenset(
    {
        "agent_message_chunk",
        "user_message_chunk",
        "agent_message",
        "user_message",
        "thought_message",
        "thought_message_chunk",
        "agent_thought_chunk",
    }
)
CONFIG_UPDATES = frozenset({"config_option_update", "config_options_update", "model_update"})
TOOL_UPDATES = frozenset({"tool_call", "tool_call_update"})


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def coerce_event(event: Any) -> dict[str, Any]:
    """Return the event as a JSON-shaped dict or raise ProtocolShapeError."""
    if isinstance(event, SessionNotification):
        return {
            "type": "session_update",
            "sessionId": event.session_id,
            "update": _dump(event.update) if isinstance(event.update, BaseModel) else event.update,
        }
    if isinstance(event, BaseModel):
        event = _dump(event)
    if isinstance(event, (str, bytes)):
        try:
            event = json.loads(event)
        except ValueError as exc:
            raise ProtocolShapeError(f"undecodable event: {exc}") from exc
    if not isinstance(event, dict):
        raise ProtocolShapeError(f"unsupported event type: {type(event).__name__}")
    update = event.get("update")
    if isinstance(update, BaseModel):
        event = {**event, "update": _dump(update)}
    return event


def update_kind(update: Any) -> str | None:
    if not isinstance(update, dict):
        return None
    value = update.get("sessionUpdate") or update.get("type") or update.get("kind")
    return str(value) if value else None


def as_blocks(content: Any) -> list[dict[str, Any]]:
    """Normalize a content payload into a list of block dicts."""
    if content is None:
        return []
    items = content if isinstance(content, list) else [content]
    blocks: list[dict[str, Any]] = []
    for item in items:
        if isinstance(item, BaseModel):
            item = _dump(item)
        if isinstance(item, str):
            item = {"type": "text", "text": item}
        if isinstance(item, dict) and item.get("type"):
            if item["type"] == "text" and item.get("text") is not None and not isinstance(item["text"], str):
                raise ProtocolShapeError("text block without string text")
            blocks.append(dict(item))
    return blocks


def normalize_raw_value(value: Any) -> str | None:
    """Render raw tool input/output as text, pretty-printing structured values."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


def safe_json_parse(value: str | None) -> Any:
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed.startswith(("{", "[")):
        return None
    try:
        return json.loads(trimmed)
    except ValueError:
        return None


__all__ = [
    "CONFIG_UPDATES",
    "MESSAGE_UPDATES",
    "TOOL_UPDATES",
    "as_blocks",
    "coerce_event",
    "normalize_raw_value",
    "safe_json_parse",
    "update_kind",
]
