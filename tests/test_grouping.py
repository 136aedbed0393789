from __future__ import annotations

from acp_feed.feed.grouping import group_feed
from acp_feed.feed.types import MessageItem, ToolCall, ToolCallItem


def _tool(tool_call_id: str) -> ToolCallItem:
    return ToolCallItem(id=f"tool-{tool_call_id}", tool_call_id=tool_call_id)


def _message(item_id: str, role: str = "assistant", *, streaming: bool = False, kind: str | None = None) -> MessageItem:
    return MessageItem(id=item_id, role=role, blocks=[{"type": "text", "text": item_id}], streaming=streaming, message_kind=kind)


def test_finished_tools_collapse_before_reply() -> None:
    feed = [
        _message("u1", "user"),
        _message("th1", "system", kind="thought"),
        _tool("a"),
        _tool("b"),
        _message("m1"),
    ]
    calls = {"a": ToolCall("a", status="completed"), "b": ToolCall("b", status="failed")}

    segments = group_feed(feed, calls)

    assert [segment.kind for segment in segments] == ["item", "group", "item"]
    group = segments[1]
    assert group.group_id == "tools-m1"
    assert group.tool_count == 2
    assert group.thought_count == 1
    assert segments[2].item is feed[-1]


def test_running_tool_is_flushed_inline() -> None:
    feed = [_tool("a"), _tool("b"), _message("m1")]
    calls = {"a": ToolCall("a", status="completed"), "b": ToolCall("b", status="in_progress")}

    segments = group_feed(feed, calls)

    assert [segment.kind for segment in segments] == ["item", "item", "item"]
    assert [segment.item.id for segment in segments] == ["tool-a", "tool-b", "m1"]


def test_streaming_reply_or_thought_blocks_collapse() -> None:
    calls = {"a": ToolCall("a", status="completed")}

    streaming_reply = group_feed([_tool("a"), _message("m1", streaming=True)], calls)
    streaming_thought = group_feed([_message("th", "system", streaming=True, kind="thought"), _tool("a"), _message("m1")], calls)

    assert all(segment.kind == "item" for segment in streaming_reply)
    assert all(segment.kind == "item" for segment in streaming_thought)


def test_trailing_buffer_and_user_message_flush_inline() -> None:
    calls = {"a": ToolCall("a", status="completed"), "b": ToolCall("b", status="completed")}
    feed = [_tool("a"), _message("u1", "user"), _tool("b")]

    segments = group_feed(feed, calls)

    assert [segment.item.id for segment in segments] == ["tool-a", "u1", "tool-b"]


def test_unknown_tool_call_is_not_grouped() -> None:
    segments = group_feed([_tool("ghost"), _message("m1")], {})

    assert [segment.kind for segment in segments] == ["item", "item"]
