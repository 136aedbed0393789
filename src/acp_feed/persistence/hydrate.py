"""Rebuild a session feed from stored rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from acp_feed.feed.types import FeedItem, MessageItem, PlanItem, ToolCall, ToolCallItem, utc_now_iso
from acp_feed.log_utils import log_event
from acp_feed.persistence.envelope import PersistedEnvelope, parse_envelope

logger = logging.getLogger(__name__)


@dataclass
class HydratedState:
    feed: list[FeedItem] = field(default_factory=list)
    tool_calls: dict[str, ToolCall] = field(default_factory=dict)
    terminal_outputs: dict[str, str] = field(default_factory=dict)
    latest_plan: list[dict[str, Any]] | None = None
    saved_message_ids: set[str] = field(default_factory=set)
    saved_tool_ids: set[str] = field(default_factory=set)
    next_sequence: int = 0

    @property
    def has_history_messages(self) -> bool:
        return any(isinstance(item, MessageItem) for item in self.feed)


def _timestamp(value: Any) -> float:
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def _row_time(entry: tuple[dict[str, Any], PersistedEnvelope]) -> float:
    row, envelope = entry
    return _timestamp(row.get("timestamp") or envelope.acp.created_at)


def _row_key(entry: tuple[dict[str, Any], PersistedEnvelope]) -> str:
    row, envelope = entry
    return str(envelope.acp.feed_id or row.get("id") or "")


def order_rows(
    parsed: Iterable[tuple[dict[str, Any], PersistedEnvelope]],
) -> list[tuple[dict[str, Any], PersistedEnvelope]]:
    """Order parsed rows independently of storage read order.

    Rows with a sequence keep sequence order. A row written without one is
    placed before the first sequenced row stored later than it.
    """
    sequenced: list[tuple[dict[str, Any], PersistedEnvelope]] = []
    loose: list[tuple[dict[str, Any], PersistedEnvelope]] = []
    for entry in parsed:
        (loose if entry[1].acp.sequence is None else sequenced).append(entry)
    sequenced.sort(key=lambda entry: (entry[1].acp.sequence, _row_time(entry), _row_key(entry)))
    loose.sort(key=lambda entry: (_row_time(entry), _row_key(entry)))

    ordered: list[tuple[dict[str, Any], PersistedEnvelope]] = []
    pending = iter(loose)
    candidate = next(pending, None)
    for entry in sequenced:
        while candidate is not None and _row_time(candidate) < _row_time(entry):
            ordered.append(candidate)
            candidate = next(pending, None)
        ordered.append(entry)
    if candidate is not None:
        ordered.append(candidate)
        ordered.extend(pending)
    return ordered


def hydrate(rows: Iterable[dict[str, Any]]) -> HydratedState:
    """Parse, order and replay stored rows.

    Rows whose metadata is not a version 1 envelope are dropped. Rows are
    ordered by envelope sequence, falling back to the storage timestamp for
    rows written without one.
    """
    parsed: list[tuple[dict[str, Any], PersistedEnvelope]] = []
    dropped = 0
    for row in rows:
        envelope = parse_envelope(row.get("metadata")) if isinstance(row, dict) else None
        if envelope is None:
            dropped += 1
            continue
        parsed.append((row, envelope))
    parsed = order_rows(parsed)
    if dropped:
        log_event(logger, "feed.hydrate.dropped", level=logging.WARNING, rows=dropped)

    state = HydratedState()
    for row, envelope in parsed:
        acp = envelope.acp
        feed_id = acp.feed_id or str(row.get("id") or "")
        created_at = acp.created_at or row.get("timestamp") or utc_now_iso()
        sequence = acp.sequence if acp.sequence is not None else state.next_sequence
        state.next_sequence = max(state.next_sequence, sequence + 1)
        item = acp.item

        if acp.type == "message":
            blocks = item.get("blocks") if isinstance(item.get("blocks"), list) else []
            if not blocks and row.get("content"):
                blocks = [{"type": "text", "text": str(row["content"])}]
            if not blocks:
                continue
            role = item.get("role") or ("user" if row.get("sender") == "user" else "assistant")
            state.feed.append(
                MessageItem(
                    id=feed_id,
                    role=role,
                    blocks=blocks,
                    streaming=False,
                    message_kind=item.get("messageKind"),
                    run_duration_ms=item.get("runDurationMs"),
                    sequence=sequence,
                    created_at=created_at,
                )
            )
            state.saved_message_ids.add(feed_id)
        elif acp.type == "tool":
            tool_call_id = item.get("toolCallId")
            if not tool_call_id:
                continue
            tool_call_id = str(tool_call_id)
            state.tool_calls[tool_call_id] = ToolCall(
                tool_call_id=tool_call_id,
                title=item.get("title"),
                kind=item.get("kind"),
                status=item.get("status"),
                locations=item.get("locations"),
                content=list(item.get("content") or []),
                raw_input=item.get("rawInput"),
            )
            for preview in item.get("terminalPreview") or []:
                if isinstance(preview, dict) and preview.get("terminalId"):
                    state.terminal_outputs[str(preview["terminalId"])] = "\n".join(preview.get("lines") or [])
            if not any(isinstance(entry, ToolCallItem) and entry.tool_call_id == tool_call_id for entry in state.feed):
                state.feed.append(
                    ToolCallItem(id=feed_id, tool_call_id=tool_call_id, sequence=sequence, created_at=created_at)
                )
            state.saved_tool_ids.add(tool_call_id)
        elif acp.type == "plan":
            entries = item.get("entries")
            if not entries:
                continue
            state.latest_plan = list(entries)
            existing = next((entry for entry in state.feed if isinstance(entry, PlanItem)), None)
            if existing is None:
                state.feed.append(PlanItem(id=feed_id, entries=list(entries), sequence=sequence, created_at=created_at))
            else:
                existing.entries = list(entries)

    log_event(logger, "feed.hydrate.loaded", items=len(state.feed), tools=len(state.tool_calls))
    return state


__all__ = ["HydratedState", "hydrate", "order_rows"]
