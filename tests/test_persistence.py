from __future__ import annotations

import itertools
import json
import logging
import os
from pathlib import Path

import pytest

from acp_feed.config import FeedConfig, PersistLimits
from acp_feed.feed.reconciler import FeedReconciler
from acp_feed.feed.types import MessageItem, PlanItem, ToolCall, ToolCallItem
from acp_feed.persistence.envelope import parse_envelope
from acp_feed.persistence.hydrate import hydrate
from acp_feed.persistence.persister import FeedPersister
from acp_feed.persistence.sanitize import (
    build_persisted_content,
    build_tool_snapshot,
    sanitize_blocks,
    sanitize_raw_input,
)
from acp_feed.persistence.store import FileFeedStore, MemoryFeedStore, conversation_id_for
from tests.utils import FailingStore, chunk, permission_event, tool_event


def _live_reconciler() -> FeedReconciler:
    reconciler = FeedReconciler()
    reconciler.apply({"type": "session_started", "sessionId": "sess-1"})
    reconciler.append_message("user", [{"type": "text", "text": "fix the bug"}])
    reconciler.apply(chunk("Looking"))
    reconciler.apply(chunk(" now"))
    reconciler.apply(tool_event("t1", title="Run tests", kind="execute", status="in_progress"))
    reconciler.apply({"type": "terminal_output", "terminalId": "term-1", "chunk": "collected 3 items\n3 passed"})
    reconciler.apply(
        tool_event("t1", status="completed", content=[{"type": "terminal", "terminalId": "term-1"}], rawInput={"command": "pytest"})
    )
    reconciler.apply({"type": "session_update", "update": {"sessionUpdate": "plan", "entries": [{"content": "run tests"}]}})
    reconciler.finish_prompt("end_turn")
    return reconciler


# --- sanitize ---------------------------------------------------------------


def test_sanitize_blocks_caps_and_strips_payloads() -> None:
    limits = PersistLimits(max_text_chars=10, max_resource_chars=5, max_blocks=3)
    blocks = [
        {"type": "text", "text": "x" * 50},
        {"type": "image", "data": "base64...", "mimeType": "image/png"},
        {"type": "resource", "resource": {"uri": "file:///a.py", "name": "a.py", "text": "print('hello world')"}},
        {"type": "audio", "data": "..."},
    ]

    sanitized = sanitize_blocks(blocks, limits)

    assert len(sanitized) == 3
    assert sanitized[0] == {"type": "text", "text": "xxxxxxx..."}
    assert sanitized[1] == {"type": "text", "text": "[image omitted]"}
    resource = sanitized[2]
    assert resource["uri"] == "file:///a.py"
    assert resource["resource"]["text"] == "pr..."
    assert "data" not in json.dumps(sanitized)


def test_resource_link_keeps_metadata_only() -> None:
    sanitized = sanitize_blocks([{"type": "resource_link", "uri": "file:///b.md", "name": "b.md", "description": "long"}])

    assert sanitized == [{"type": "resource_link", "uri": "file:///b.md", "name": "b.md"}]


def test_raw_input_is_reduced_to_allow_listed_keys() -> None:
    raw = json.dumps({"command": "ls -la", "env": {"TOKEN": "secret"}, "path": "/tmp"})

    sanitized = sanitize_raw_input(raw)

    assert sanitized is not None
    assert json.loads(sanitized) == {"command": "ls -la", "path": "/tmp"}
    assert sanitize_raw_input("plain text input") == "plain text input"
    assert sanitize_raw_input(None) is None


def test_persisted_content_falls_back_to_attachment_label() -> None:
    assert build_persisted_content([{"type": "text", "text": "hi"}, {"type": "text", "text": "there"}]) == "hi\n\nthere"
    assert build_persisted_content([{"type": "resource_link", "uri": "file:///x", "name": "notes.md"}]) == "[attachment] notes.md"
    assert build_persisted_content([]) == ""


def test_tool_snapshot_bounds_diffs_and_terminals() -> None:
    call = ToolCall(
        tool_call_id="t1",
        title="Edit",
        status="completed",
        locations=[{"path": "a.py", "line": 3, "extra": True}],
        content=[
            {"type": "diff", "path": "a.py", "oldText": "a\nb", "newText": "a\nc"},
            {"type": "terminal", "terminalId": "term-1"},
            {"type": "terminal", "terminalId": "term-1"},
            {"type": "content", "content": {"type": "image", "data": "..."}},
        ],
        raw_input='{"path": "a.py", "content": "huge"}',
    )
    terminal = "\n".join(f"line {i}" for i in range(10))

    snapshot = build_tool_snapshot(call, {"term-1": terminal}, limits=PersistLimits(max_terminal_lines=4))

    diff = snapshot["content"][0]
    assert diff["type"] == "diff"
    assert diff["preview"]["additions"] == 1
    assert "oldText" not in diff
    assert snapshot["terminalPreview"] == [{"terminalId": "term-1", "lines": ["line 6", "line 7", "line 8", "line 9"], "truncated": True}]
    assert {"type": "content", "content": {"type": "text", "text": "[image omitted]"}} in snapshot["content"]
    assert snapshot["locations"] == [{"path": "a.py", "line": 3}]
    assert json.loads(snapshot["rawInput"]) == {"path": "a.py"}
    assert "kind" not in snapshot


# --- envelope / hydrate --------------------------------------------------------


def _row(feed_id: str, kind: str, item: dict, *, sequence: int | None = None, timestamp: str = "", version: int = 1) -> dict:
    acp = {"version": version, "type": kind, "feedId": feed_id, "item": item}
    if sequence is not None:
        acp["sequence"] = sequence
    return {"id": f"acp-{feed_id}", "conversationId": "conv-t-acp", "content": "", "timestamp": timestamp, "metadata": {"acp": acp}}


def test_parse_envelope_rejects_unknown_shapes() -> None:
    assert parse_envelope(None) is None
    assert parse_envelope("not json") is None
    assert parse_envelope({"other": 1}) is None
    assert parse_envelope({"acp": {"version": 2, "type": "message"}}) is None
    assert parse_envelope({"acp": {"version": 1, "type": "unknown"}}) is None

    envelope = parse_envelope(json.dumps({"acp": {"version": 1, "type": "plan", "feedId": "plan-1"}}))
    assert envelope is not None and envelope.acp.feed_id == "plan-1"


def test_hydrate_drops_invalid_rows(caplog: pytest.LogCaptureFixture) -> None:
    rows = [
        _row("msg-1", "message", {"role": "user", "blocks": [{"type": "text", "text": "hi"}]}, sequence=0),
        _row("msg-2", "message", {"role": "assistant", "blocks": [{"type": "text", "text": "v2"}]}, sequence=1, version=2),
        {"id": "legacy", "metadata": None},
    ]

    with caplog.at_level(logging.WARNING):
        hydrated = hydrate(rows)

    assert [item.id for item in hydrated.feed] == ["msg-1"]
    assert "feed.hydrate.dropped" in caplog.text


def test_hydrate_orders_by_sequence_then_timestamp() -> None:
    text = {"role": "assistant", "blocks": [{"type": "text", "text": "x"}]}
    rows = [
        _row("b", "message", text, sequence=5),
        _row("a", "message", text, sequence=2),
        _row("late", "message", text, timestamp="2024-05-01T10:00:02Z"),
        _row("early", "message", text, timestamp="2024-05-01T10:00:01Z"),
    ]

    by_sequence = hydrate(rows[:2])
    by_time = hydrate(rows[2:])

    assert [item.id for item in by_sequence.feed] == ["a", "b"]
    assert by_sequence.next_sequence == 6
    assert [item.id for item in by_time.feed] == ["early", "late"]


def test_hydrate_order_does_not_depend_on_read_order() -> None:
    text = {"role": "assistant", "blocks": [{"type": "text", "text": "x"}]}
    rows = [
        _row("a", "message", text, sequence=1, timestamp="2024-05-01T10:00:03Z"),
        _row("b", "message", text, timestamp="2024-05-01T10:00:02Z"),
        _row("c", "message", text, sequence=2, timestamp="2024-05-01T10:00:01Z"),
        _row("d", "message", text, timestamp="2024-05-01T10:00:09Z"),
    ]

    orders = {tuple(item.id for item in hydrate(list(perm)).feed) for perm in itertools.permutations(rows)}

    assert orders == {("b", "a", "c", "d")}


def test_hydrate_message_falls_back_to_row_content() -> None:
    row = _row("msg-1", "message", {}, sequence=0)
    row["content"] = "stored text"
    row["sender"] = "user"

    hydrated = hydrate([row])

    message = hydrated.feed[0]
    assert isinstance(message, MessageItem)
    assert message.role == "user"
    assert message.blocks == [{"type": "text", "text": "stored text"}]
    assert hydrated.has_history_messages


def test_hydrate_keeps_a_single_plan_item() -> None:
    rows = [
        _row("plan-1", "plan", {"entries": [{"content": "a"}]}, sequence=0),
        _row("plan-2", "plan", {"entries": [{"content": "a"}, {"content": "b"}]}, sequence=3),
    ]

    hydrated = hydrate(rows)

    plans = [item for item in hydrated.feed if isinstance(item, PlanItem)]
    assert len(plans) == 1
    assert plans[0].id == "plan-1"
    assert len(plans[0].entries) == 2
    assert hydrated.latest_plan == plans[0].entries


# --- persister -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_replayed_feed_matches_live_order() -> None:
    store = MemoryFeedStore()
    live = _live_reconciler()
    persister = FeedPersister(store, task_id="task-1", provider_id="codex")

    persister.sync(live.state)
    await persister.flush()

    rows = await store.load(conversation_id_for("task-1"))
    assert {row["id"] for row in rows} == {f"acp-{item.id}" for item in live.state.feed}
    assert all(row["metadata"]["acp"]["sessionId"] == "sess-1" for row in rows)

    hydrated = hydrate(rows)
    assert [item.id for item in hydrated.feed] == [item.id for item in live.state.feed]
    assert hydrated.saved_tool_ids == {"t1"}
    assert hydrated.tool_calls["t1"].status == "completed"
    assert "3 passed" in hydrated.terminal_outputs["term-1"]

    replayed = FeedReconciler()
    replayed.load(hydrated)
    assert replayed.state.terminal_text("term-1").endswith("3 passed")
    assert replayed.state.next_sequence == live.state.next_sequence
    assert isinstance(replayed.state.item(replayed.state.plan_item_id or ""), PlanItem)


@pytest.mark.asyncio
async def test_saving_the_same_item_twice_keeps_one_row() -> None:
    store = MemoryFeedStore()
    persister = FeedPersister(store, task_id="task-1")
    item = MessageItem(id="msg-1", role="assistant", blocks=[{"type": "text", "text": "v1"}], sequence=0)

    persister.persist_message(item)
    item.blocks = [{"type": "text", "text": "v2"}]
    persister.persist_message(item)
    await persister.flush()

    rows = await store.load("conv-task-1-acp")
    assert len(rows) == 1
    assert rows[0]["content"] == "v2"


@pytest.mark.asyncio
async def test_sync_skips_streaming_unfinished_and_saved_items() -> None:
    store = MemoryFeedStore()
    reconciler = FeedReconciler()
    reconciler.apply(chunk("still streaming"))
    reconciler.apply(tool_event("t1", status="in_progress"))
    reconciler.apply(permission_event(3))
    persister = FeedPersister(store, task_id="task-1")

    persister.sync(reconciler.state)
    await persister.flush()
    assert await store.load("conv-task-1-acp") == []

    reconciler.finish_prompt()
    persister.sync(reconciler.state)
    persister.sync(reconciler.state)
    await persister.flush()

    rows = await store.load("conv-task-1-acp")
    assert [row["metadata"]["acp"]["type"] for row in rows] == ["message"]


@pytest.mark.asyncio
async def test_unchanged_plan_is_not_rewritten() -> None:
    store = MemoryFeedStore()
    persister = FeedPersister(store, task_id="task-1")
    plan = PlanItem(id="plan-1", entries=[{"content": "a"}])

    persister.persist_plan(plan)
    first = persister.pending_writes
    persister.persist_plan(plan)

    assert first == 1
    assert persister.pending_writes == 1
    await persister.flush()
    assert persister.pending_writes == 0


@pytest.mark.asyncio
async def test_failed_write_is_logged_and_feed_unchanged(caplog: pytest.LogCaptureFixture) -> None:
    reconciler = _live_reconciler()
    before = [item.id for item in reconciler.state.feed]
    persister = FeedPersister(FailingStore(), task_id="task-1")

    with caplog.at_level(logging.WARNING):
        persister.sync(reconciler.state)
        await persister.flush()

    assert "feed.persist.failed" in caplog.text
    assert [item.id for item in reconciler.state.feed] == before


# --- file store ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_file_store_round_trip(tmp_path: Path) -> None:
    store = FileFeedStore(tmp_path / "history")
    persister = FeedPersister(store, task_id="task/with:odd chars")
    persister.persist_message(MessageItem(id="msg-1", role="user", blocks=[{"type": "text", "text": "hi"}]))
    await persister.flush()
    persister.persist_message(MessageItem(id="msg-1", role="user", blocks=[{"type": "text", "text": "hi again"}]))
    await persister.flush()

    rows = await store.load(persister.conversation_id)

    assert len(rows) == 1
    assert rows[0]["content"] == "hi again"
    directory = store.conversation_dir(persister.conversation_id)
    assert directory.parent == tmp_path / "history"
    assert not list(directory.glob("*.tmp"))


def test_file_store_skips_unreadable_records(tmp_path: Path) -> None:
    store = FileFeedStore(tmp_path)
    store.save_sync({"id": "acp-msg-1", "conversationId": "conv-a-acp", "content": "ok"})
    (store.conversation_dir("conv-a-acp") / "broken.json").write_text("{nope", encoding="utf-8")

    rows = store.load_sync("conv-a-acp")

    assert [row["id"] for row in rows] == ["acp-msg-1"]
    assert store.load_sync("conv-missing-acp") == []


def test_file_store_cleanup_keeps_newest_conversations(tmp_path: Path) -> None:
    for index, name in enumerate(["old", "mid", "new"]):
        directory = tmp_path / name
        directory.mkdir()
        os.utime(directory, (1_000_000 + index, 1_000_000 + index))

    FileFeedStore(tmp_path, max_conversations=2)

    assert sorted(p.name for p in tmp_path.iterdir()) == ["mid", "new"]


def test_live_feed_item_ids_are_stable() -> None:
    reconciler = _live_reconciler()

    kinds = [type(item) for item in reconciler.state.feed]

    assert kinds == [MessageItem, MessageItem, ToolCallItem, PlanItem]
    assert reconciler.state.feed[2].id == "tool-t1"


def test_tool_snapshot_skips_malformed_locations_and_terminals() -> None:
    call = ToolCall(
        tool_call_id="t1",
        status="failed",
        locations="a.py",  # type: ignore[arg-type]
        content=[{"type": "terminal", "terminalId": {"id": "term-1"}}, {"type": "terminal", "terminalId": "term-2"}],
    )

    snapshot = build_tool_snapshot(call, {"term-2": "ok"})

    assert "locations" not in snapshot
    assert snapshot["content"] == [{"type": "terminal", "terminalId": "term-2"}]
    assert snapshot["terminalPreview"] == [{"terminalId": "term-2", "lines": ["ok"], "truncated": False}]


def test_config_limits_flow_into_snapshots() -> None:
    config = FeedConfig(persist=PersistLimits(max_tool_input_chars=10))
    call = ToolCall(tool_call_id="t", status="completed", raw_input="x" * 100)

    snapshot = build_tool_snapshot(call, {}, limits=config.persist)

    assert snapshot["rawInput"] == "xxxxxxx..."
