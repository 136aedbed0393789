"""Feed item, tool call and mutation types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

ContentBlock = dict[str, Any]
ToolCallContent = dict[str, Any]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class MessageItem:
    id: str
    role: str
    blocks: list[ContentBlock]
    streaming: bool = False
    message_kind: str | None = None
    run_duration_ms: int | None = None
    sequence: int = 0
    created_at: str = ""

    type = "message"

    @property
    def is_thought(self) -> bool:
        return self.message_kind == "thought"


@dataclass
class ToolCallItem:
    id: str
    tool_call_id: str
    sequence: int = 0
    created_at: str = ""

    type = "tool"


@dataclass
class PlanItem:
    id: str
    entries: list[dict[str, Any]]
    sequence: int = 0
    created_at: str = ""

    type = "plan"


@dataclass
class PermissionItem:
    id: str
    request_id: Any
    sequence: int = 0
    created_at: str = ""

    type = "permission"


FeedItem = Union[MessageItem, ToolCallItem, PlanItem, PermissionItem]


@dataclass
class ToolCall:
    """Aggregate for a single agent-initiated action, keyed by tool_call_id."""

    tool_call_id: str
    title: str | None = None
    kind: str | None = None
    status: str | None = None
    locations: list[dict[str, Any]] | None = None
    content: list[ToolCallContent] = field(default_factory=list)
    raw_input: str | None = None
    raw_output: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class PermissionRequest:
    request_id: Any
    tool_call: dict[str, Any] | None = None
    options: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class FeedMutation:
    """One observable change produced by applying an event.

    `op` is append/update/remove; `target` names the collection that changed
    (feed, tool_call, terminal, plan, permission, config, commands, caps).
    """

    op: str
    target: str
    key: Any = None


__all__ = [
    "ContentBlock",
    "FeedItem",
    "FeedMutation",
    "MessageItem",
    "PermissionItem",
    "PermissionRequest",
    "PlanItem",
    "TERMINAL_STATUSES",
    "ToolCall",
    "ToolCallContent",
    "ToolCallItem",
    "utc_now_iso",
]
