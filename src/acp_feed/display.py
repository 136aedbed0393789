"""Rich console rendering for feeds, plans and diff previews."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from acp_feed.feed.diff import DiffPreview, truncate_text
from acp_feed.feed.grouping import FeedSegment, group_feed
from acp_feed.feed.reconciler import FeedState
from acp_feed.feed.types import FeedItem, MessageItem, PermissionItem, PlanItem, ToolCall, ToolCallItem

_console = Console(highlight=False)

ROLE_STYLES = {"user": "bold cyan", "assistant": "white", "system": "magenta"}
STATUS_STYLES = {"completed": "green", "failed": "red", "cancelled": "red", "in_progress": "yellow", "pending": "yellow"}
PLAN_STYLES = {"completed": "green", "in_progress": "orange1", "pending": "orange1"}


def block_text(block: Mapping[str, Any]) -> str:
    kind = block.get("type")
    if kind == "text":
        return str(block.get("text") or "")
    if kind in ("resource", "resource_link"):
        resource = block.get("resource") or {}
        label = block.get("name") or block.get("title") or resource.get("name") or block.get("uri") or resource.get("uri")
        return f"[attachment] {label or 'resource'}"
    if kind in ("image", "audio"):
        return f"[{kind}]"
    return ""


def render_diff(preview: DiffPreview) -> Group:
    header = Text()
    if preview.path:
        header.append(preview.path, style="bold")
        header.append(" ")
    header.append(f"+{preview.additions}", style="green")
    header.append(" ")
    header.append(f"-{preview.deletions}", style="red")
    if preview.truncated:
        header.append(" (truncated)", style="dim")
    body = Text()
    for line in preview.lines:
        if line.kind == "add":
            body.append(f"+ {line.text}\n", style="green")
        elif line.kind == "del":
            body.append(f"- {line.text}\n", style="red")
        else:
            body.append(f"  {line.text}\n", style="dim")
    return Group(header, body)


def render_plan(entries: Iterable[Mapping[str, Any]]) -> Table:
    """Plan entries with a status dot."""
    table = Table(show_header=False, box=None, border_style="cyan")
    table.add_column("", width=2, style="cyan")
    table.add_column("Item", style="white")
    for entry in entries:
        status = entry.get("status") or "pending"
        table.add_row(Text("•", style=PLAN_STYLES.get(status, "orange1")), str(entry.get("content") or ""))
    return table


def render_tool_call(call: ToolCall | None, terminals: Mapping[str, str]) -> Group:
    if call is None:
        return Group(Text("Tool call (unknown)", style="dim"))
    status = call.status or "pending"
    parts: list[Any] = [
        Text(f"Tool[{status}]: {call.title or call.kind or call.tool_call_id}", style=STATUS_STYLES.get(status, "yellow"))
    ]
    for entry in call.content:
        kind = entry.get("type")
        if kind == "diff":
            preview = entry.get("preview")
            if isinstance(preview, dict):
                parts.append(render_diff(DiffPreview.from_dict(preview)))
            else:
                parts.append(Text(f"  edit {entry.get('path') or ''}", style="dim"))
        elif kind == "content" and isinstance(entry.get("content"), dict):
            text = block_text(entry["content"])
            if text:
                parts.append(Text(truncate_text(text, 400), style="dim"))
        elif kind == "terminal":
            output = terminals.get(str(entry.get("terminalId")), "")
            if output:
                parts.append(Text(output, style="dim"))
    return Group(*parts)


def render_message(item: MessageItem) -> Text:
    text = "".join(block_text(block) for block in item.blocks)
    if item.is_thought:
        return Text(text, style="#aaaaaa italic")
    label = {"user": "you", "assistant": "agent"}.get(item.role, item.role)
    rendered = Text(f"{label}: ", style=ROLE_STYLES.get(item.role, "white"))
    rendered.append(text)
    if item.run_duration_ms is not None:
        rendered.append(f"  ({item.run_duration_ms / 1000:.1f}s)", style="dim")
    return rendered


def _render_item(item: FeedItem, state: FeedState) -> Any:
    terminals = {terminal_id: buffer.text for terminal_id, buffer in state.terminals.items()}
    if isinstance(item, MessageItem):
        return render_message(item)
    if isinstance(item, ToolCallItem):
        return render_tool_call(state.tool_calls.get(item.tool_call_id), terminals)
    if isinstance(item, PlanItem):
        return render_plan(item.entries)
    if isinstance(item, PermissionItem):
        request = state.permissions.get(str(item.request_id))
        labels = ", ".join(opt["label"] for opt in request.options) if request else ""
        return Text(f"Permission requested: {labels}", style="yellow")
    return Text("")


def render_segment(segment: FeedSegment, state: FeedState) -> Any:
    if segment.kind == "group":
        title = f"{segment.tool_count} tool calls, {segment.thought_count} thoughts"
        body = Group(*(_render_item(item, state) for item in segment.items))
        return Panel(body, title=title, title_align="left", border_style="dim")
    if segment.item is None:
        return Text("")
    return _render_item(segment.item, state)


def print_feed(state: FeedState, console: Console | None = None) -> None:
    console = console or _console
    for segment in group_feed(state.feed, state.tool_calls):
        console.print(render_segment(segment, state))


def print_diff(preview: DiffPreview, console: Console | None = None) -> None:
    (console or _console).print(render_diff(preview))


__all__ = [
    "block_text",
    "print_diff",
    "print_feed",
    "render_diff",
    "render_message",
    "render_plan",
    "render_segment",
    "render_tool_call",
]
