"""Collapse runs of tool calls and thoughts ahead of assistant replies."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from acp_feed.feed.types import FeedItem, MessageItem, ToolCall, ToolCallItem


@dataclass
class FeedSegment:
    """Either a single feed item or a collapsed group of buffered items.

    Groups are keyed `tools-<assistant message id>` so a renderer can keep
    their expanded/collapsed state stable across updates.
    """

    kind: str  # item | group
    item: FeedItem | None = None
    items: list[FeedItem] = field(default_factory=list)
    group_id: str | None = None

    @property
    def tool_count(self) -> int:
        return sum(1 for entry in self.items if isinstance(entry, ToolCallItem))

    @property
    def thought_count(self) -> int:
        return sum(1 for entry in self.items if isinstance(entry, MessageItem) and entry.is_thought)


def _is_buffered(item: FeedItem) -> bool:
    return isinstance(item, ToolCallItem) or (isinstance(item, MessageItem) and item.is_thought)


def _can_collapse(buffer: list[FeedItem], reply: MessageItem, tool_calls: Mapping[str, ToolCall]) -> bool:
    if not buffer or reply.streaming:
        return False
    for entry in buffer:
        if isinstance(entry, ToolCallItem):
            call = tool_calls.get(entry.tool_call_id)
            if call is None or not call.is_terminal:
                return False
        elif isinstance(entry, MessageItem) and entry.streaming:
            return False
    return True


def group_feed(feed: Iterable[FeedItem], tool_calls: Mapping[str, ToolCall]) -> list[FeedSegment]:
    segments: list[FeedSegment] = []
    buffer: list[FeedItem] = []

    def flush_inline() -> None:
        segments.extend(FeedSegment(kind="item", item=entry) for entry in buffer)
        buffer.clear()

    for item in feed:
        if _is_buffered(item):
            buffer.append(item)
            continue
        if isinstance(item, MessageItem) and item.role == "assistant":
            if _can_collapse(buffer, item, tool_calls):
                segments.append(FeedSegment(kind="group", items=list(buffer), group_id=f"tools-{item.id}"))
                buffer.clear()
            else:
                flush_inline()
            segments.append(FeedSegment(kind="item", item=item))
            continue
        flush_inline()
        segments.append(FeedSegment(kind="item", item=item))

    flush_inline()
    return segments


__all__ = ["FeedSegment", "group_feed"]
