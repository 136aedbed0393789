"""Reducer that turns ACP events into an ordered conversation feed.

`FeedReconciler.apply` takes one decoded event, mutates the session's
`FeedState` in place and returns the list of observable changes. It never
raises for malformed input: unknown shapes are logged and dropped.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from acp_feed.config import FeedConfig
from acp_feed.errors import ProtocolShapeError
from acp_feed.feed.config_options import (
    ConfigResolver,
    ResolvedControls,
    extract_current_model_id,
    extract_models,
    option_id as option_id_of,
)
from acp_feed.feed.events import (
    CONFIG_UPDATES,
    MESSAGE_UPDATES,
    TOOL_UPDATES,
    as_blocks,
    coerce_event,
    normalize_raw_value,
    update_kind,
)
from acp_feed.feed.terminal import TerminalBuffer
from acp_feed.feed.types import (
    ContentBlock,
    FeedItem,
    FeedMutation,
    MessageItem,
    PermissionItem,
    PermissionRequest,
    PlanItem,
    ToolCall,
    ToolCallItem,
    utc_now_iso,
)
from acp_feed.log_utils import log_chunks_enabled, log_event

if TYPE_CHECKING:
    from acp_feed.persistence.hydrate import HydratedState

logger = logging.getLogger(__name__)

LIFECYCLE_EVENTS = frozenset({"session_error", "session_exit"})


def _short_id() -> str:
    return uuid.uuid4().hex[:12]


def merge_blocks(base: list[ContentBlock], incoming: list[ContentBlock]) -> list[ContentBlock]:
    """Append blocks, folding text into a trailing text block."""
    merged = [dict(block) for block in base]
    for block in incoming:
        last = merged[-1] if merged else None
        if block.get("type") == "text" and last is not None and last.get("type") == "text":
            last["text"] = (last.get("text") or "") + (block.get("text") or "")
        else:
            merged.append(dict(block))
    return merged


def normalize_prompt_caps(caps: Any) -> dict[str, bool]:
    caps = caps if isinstance(caps, dict) else {}

    def _flag(*keys: str) -> bool:
        return any(bool(caps.get(key)) for key in keys)

    return {
        "image": _flag("image", "images", "supportsImage", "supportsImages"),
        "audio": _flag("audio", "supportsAudio", "supportsAudioInput"),
        "embeddedContext": _flag("embeddedContext", "embedded_context", "supportsEmbeddedContext"),
    }


def _expect(value: Any, types: type | tuple[type, ...], what: str) -> Any:
    if value is not None and not isinstance(value, types):
        raise ProtocolShapeError(f"{what} has unexpected type {type(value).__name__}")
    return value


def _normalize_permission_options(options: Any) -> list[dict[str, Any]]:
    if not isinstance(options, list):
        return []
    normalized = []
    for opt in options:
        if not isinstance(opt, dict):
            continue
        option_id = opt.get("optionId") or opt.get("id") or ""
        normalized.append(
            {
                "id": str(option_id),
                "label": str(opt.get("name") or opt.get("label") or opt.get("title") or option_id or "Allow"),
                "kind": opt.get("kind"),
            }
        )
    return normalized


@dataclass
class FeedState:
    """Per-session feed, tool-call map, terminal buffers and control surface."""

    feed: list[FeedItem] = field(default_factory=list)
    tool_calls: dict[str, ToolCall] = field(default_factory=dict)
    permissions: dict[str, PermissionRequest] = field(default_factory=dict)
    terminals: dict[str, TerminalBuffer] = field(default_factory=dict)
    plan: list[dict[str, Any]] | None = None
    plan_item_id: str | None = None
    config_options: list[dict[str, Any]] = field(default_factory=list)
    models: list[Any] = field(default_factory=list)
    current_model_id: str | None = None
    controls: ResolvedControls = field(default_factory=ResolvedControls)
    available_commands: list[dict[str, Any]] = field(default_factory=list)
    prompt_caps: dict[str, bool] = field(default_factory=lambda: normalize_prompt_caps(None))
    session_id: str | None = None
    last_assistant_message_id: str | None = None
    next_sequence: int = 0

    def item(self, item_id: str) -> FeedItem | None:
        for entry in self.feed:
            if entry.id == item_id:
                return entry
        return None

    def terminal_text(self, terminal_id: str) -> str:
        buffer = self.terminals.get(terminal_id)
        return buffer.text if buffer else ""

    @property
    def pending_permissions(self) -> bool:
        return bool(self.permissions)


class FeedReconciler:
    """Applies protocol events to a `FeedState`."""

    def __init__(
        self,
        state: FeedState | None = None,
        *,
        config: FeedConfig | None = None,
        resolver: ConfigResolver | None = None,
    ) -> None:
        self.config = config or FeedConfig()
        self.state = state or FeedState()
        self.resolver = resolver or ConfigResolver(self.config.resolver)

    # --- public entry points -----------------------------------------------

    def apply(self, event: Any) -> list[FeedMutation]:
        try:
            payload = coerce_event(event)
            return self._dispatch(payload)
        except ProtocolShapeError as exc:
            log_event(logger, "feed.event.dropped", level=logging.WARNING, reason=str(exc))
            return []

    def append_message(
        self,
        role: str,
        blocks: list[ContentBlock],
        *,
        streaming: bool | None = None,
        message_kind: str | None = None,
    ) -> list[FeedMutation]:
        if not blocks:
            return []
        if streaming is None:
            streaming = role == "assistant"
        state = self.state
        last = state.feed[-1] if state.feed else None
        if (
            isinstance(last, MessageItem)
            and last.role == role
            and last.streaming
            and last.message_kind == message_kind
        ):
            last.blocks = merge_blocks(last.blocks, blocks)
            last.streaming = streaming and last.streaming
            if role == "assistant" and message_kind != "thought":
                state.last_assistant_message_id = last.id
            return [FeedMutation("update", "feed", last.id)]

        item = MessageItem(
            id=f"msg-{_short_id()}",
            role=role,
            blocks=[dict(block) for block in blocks],
            streaming=streaming,
            message_kind=message_kind,
        )
        self._append(item)
        if role == "assistant" and message_kind != "thought":
            state.last_assistant_message_id = item.id
        return [FeedMutation("append", "feed", item.id)]

    def finish_prompt(self, stop_reason: Any = None, run_duration_ms: int | None = None) -> list[FeedMutation]:
        """Finalize streaming messages at the end of a prompt turn."""
        state = self.state
        mutations: list[FeedMutation] = []
        for item in state.feed:
            if isinstance(item, MessageItem) and item.streaming:
                item.streaming = False
                mutations.append(FeedMutation("update", "feed", item.id))
        target = state.item(state.last_assistant_message_id) if state.last_assistant_message_id else None
        if isinstance(target, MessageItem) and run_duration_ms is not None:
            target.run_duration_ms = run_duration_ms
            if FeedMutation("update", "feed", target.id) not in mutations:
                mutations.append(FeedMutation("update", "feed", target.id))
        state.last_assistant_message_id = None

        reason = str(stop_reason).strip() if stop_reason is not None else ""
        if reason and reason != "end_turn":
            stop = MessageItem(
                id=f"stop-{_short_id()}",
                role="system",
                blocks=[{"type": "text", "text": f"Stopped: {reason}"}],
                streaming=False,
            )
            self._append(stop)
            mutations.append(FeedMutation("append", "feed", stop.id))
        return mutations

    def cancel_pending(self) -> list[FeedMutation]:
        """Mark unfinished tool calls cancelled and drop every pending permission."""
        state = self.state
        mutations: list[FeedMutation] = []
        for call in state.tool_calls.values():
            if not call.is_terminal:
                call.status = "cancelled"
                mutations.append(FeedMutation("update", "tool_call", call.tool_call_id))
        for key in list(state.permissions):
            mutations.extend(self.resolve_permission(key))
        return mutations

    def resolve_permission(self, request_id: Any) -> list[FeedMutation]:
        state = self.state
        key = str(request_id)
        mutations: list[FeedMutation] = []
        if state.permissions.pop(key, None) is not None:
            mutations.append(FeedMutation("remove", "permission", key))
        feed_id = f"perm-{key}"
        before = len(state.feed)
        state.feed = [item for item in state.feed if not (isinstance(item, PermissionItem) and item.id == feed_id)]
        if len(state.feed) != before:
            mutations.append(FeedMutation("remove", "feed", feed_id))
        return mutations

    def set_option_value(self, option_id: str, value: Any) -> list[FeedMutation]:
        """Optimistically record a config option change before the agent confirms it."""
        state = self.state
        updated = []
        for option in state.config_options:
            if option_id_of(option) == option_id:
                option = {**option, "value": value, "currentValue": value}
            updated.append(option)
        state.config_options = updated
        return self._refresh_controls()

    def set_current_model(self, model_id: str) -> list[FeedMutation]:
        self.state.current_model_id = model_id
        return self._refresh_controls()

    def load(self, hydrated: "HydratedState") -> None:
        """Install hydrated history before live events are applied."""
        state = self.state
        state.feed = list(hydrated.feed)
        state.tool_calls = dict(hydrated.tool_calls)
        state.terminals = {}
        for terminal_id, text in hydrated.terminal_outputs.items():
            buffer = self._new_terminal()
            buffer.append(text)
            state.terminals[terminal_id] = buffer
        state.permissions = {}
        state.next_sequence = max(state.next_sequence, hydrated.next_sequence)
        state.plan = list(hydrated.latest_plan) if hydrated.latest_plan else None
        plan_item = next((item for item in state.feed if isinstance(item, PlanItem)), None)
        state.plan_item_id = plan_item.id if plan_item else None

    # --- dispatch --------------------------------------------------------------

    def _dispatch(self, payload: dict[str, Any]) -> list[FeedMutation]:
        event_type = payload.get("type")
        if event_type == "session_started":
            return self._on_session_started(payload)
        if event_type == "session_update":
            return self._on_session_update(payload.get("update"))
        if event_type in TOOL_UPDATES:
            return self._on_tool_call(payload)
        if event_type == "terminal_output":
            return self._on_terminal_output(payload)
        if event_type == "permission_request":
            return self._on_permission_request(payload)
        if event_type == "prompt_end":
            return self.finish_prompt(payload.get("stopReason"))
        if event_type in LIFECYCLE_EVENTS:
            # Lifecycle transitions are owned by the session controller.
            return []
        raise ProtocolShapeError(f"unknown event type: {event_type!r}")

    def _on_session_started(self, payload: dict[str, Any]) -> list[FeedMutation]:
        state = self.state
        mutations: list[FeedMutation] = []
        if payload.get("sessionId"):
            state.session_id = str(payload["sessionId"])
        capabilities = payload.get("agentCapabilities")
        if isinstance(capabilities, dict):
            caps = capabilities.get("promptCapabilities") or capabilities.get("prompt") or capabilities.get("prompt_caps")
            if caps:
                state.prompt_caps = normalize_prompt_caps(caps)
                mutations.append(FeedMutation("update", "caps"))
        mutations.extend(self._update_config(payload))
        log_event(
            logger,
            "feed.session.started",
            config_options=len(state.config_options),
            models=len(state.models),
            current_model_id=state.current_model_id,
        )
        return mutations

    def _on_session_update(self, update: Any) -> list[FeedMutation]:
        if not isinstance(update, dict):
            raise ProtocolShapeError("session_update without an update object")
        kind = update_kind(update)
        if not kind:
            raise ProtocolShapeError("session_update without an update kind")
        if log_chunks_enabled() or not kind.endswith("_chunk"):
            log_event(logger, "feed.session.update", level=logging.DEBUG, kind=kind)

        mutations = self._update_config(update)
        if kind in CONFIG_UPDATES:
            return mutations
        if kind in MESSAGE_UPDATES:
            return mutations + self._on_message(kind, update)
        if kind == "plan":
            return mutations + self._on_plan(update)
        if kind in TOOL_UPDATES:
            return mutations + self._on_tool_call(update)
        if kind == "available_commands_update":
            commands = update.get("availableCommands") or update.get("available_commands") or []
            _expect(commands, list, "available commands")
            self.state.available_commands = [cmd for cmd in commands if isinstance(cmd, dict)]
            return mutations + [FeedMutation("update", "commands")]
        if kind == "current_mode_update":
            return mutations
        raise ProtocolShapeError(f"unknown session update kind: {kind!r}")

    def _on_message(self, kind: str, update: dict[str, Any]) -> list[FeedMutation]:
        is_thought = "thought" in kind
        if kind.startswith("agent") and not is_thought:
            role = "assistant"
        elif is_thought:
            role = "system"
        else:
            role = "user"
        return self.append_message(
            role,
            as_blocks(update.get("content")),
            streaming=kind.endswith("_chunk"),
            message_kind="thought" if is_thought else None,
        )

    def _on_plan(self, update: dict[str, Any]) -> list[FeedMutation]:
        state = self.state
        raw_entries = _expect(update.get("entries"), list, "plan entries") or []
        entries = [entry for entry in raw_entries if isinstance(entry, dict)]
        state.plan = entries
        existing = state.item(state.plan_item_id) if state.plan_item_id else None
        if isinstance(existing, PlanItem):
            existing.entries = entries
            return [FeedMutation("update", "plan"), FeedMutation("update", "feed", existing.id)]
        item = PlanItem(id=f"plan-{_short_id()}", entries=entries)
        self._append(item)
        state.plan_item_id = item.id
        return [FeedMutation("update", "plan"), FeedMutation("append", "feed", item.id)]

    def _on_tool_call(self, update: dict[str, Any]) -> list[FeedMutation]:
        state = self.state
        payload = update.get("toolCall") if isinstance(update.get("toolCall"), dict) else update
        tool_call_id = payload.get("toolCallId")
        if not tool_call_id:
            raise ProtocolShapeError("tool call update without toolCallId")
        _expect(tool_call_id, (str, int), "toolCallId")
        for key in ("title", "kind", "status"):
            _expect(payload.get(key), str, f"tool call {key}")
        _expect(payload.get("locations"), list, "tool call locations")
        _expect(payload.get("content"), (list, dict), "tool call content")
        tool_call_id = str(tool_call_id)

        mutations: list[FeedMutation] = []
        existing = state.tool_calls.get(tool_call_id)
        if existing is not None and existing.is_terminal:
            log_event(logger, "feed.tool.ignored", level=logging.DEBUG, tool_call_id=tool_call_id, status=existing.status)
        else:
            call = existing or ToolCall(tool_call_id=tool_call_id)
            for attr, key in (("title", "title"), ("kind", "kind"), ("status", "status"), ("locations", "locations")):
                if payload.get(key) is not None:
                    setattr(call, attr, payload[key])
            incoming = payload.get("content")
            if incoming is not None:
                for entry in incoming if isinstance(incoming, list) else [incoming]:
                    if isinstance(entry, dict) and entry not in call.content:
                        call.content.append(entry)
            raw_input = payload.get("rawInput", payload.get("input"))
            if raw_input is not None:
                call.raw_input = normalize_raw_value(raw_input)
            raw_output = payload.get("rawOutput", payload.get("output"))
            if raw_output is not None:
                call.raw_output = normalize_raw_value(raw_output)
            state.tool_calls[tool_call_id] = call
            mutations.append(FeedMutation("append" if existing is None else "update", "tool_call", tool_call_id))

        feed_id = f"tool-{tool_call_id}"
        if not any(isinstance(item, ToolCallItem) and item.tool_call_id == tool_call_id for item in state.feed):
            self._append(ToolCallItem(id=feed_id, tool_call_id=tool_call_id))
            mutations.append(FeedMutation("append", "feed", feed_id))
        return mutations

    def _on_terminal_output(self, payload: dict[str, Any]) -> list[FeedMutation]:
        terminal_id = payload.get("terminalId")
        if not terminal_id:
            raise ProtocolShapeError("terminal_output without terminalId")
        _expect(terminal_id, (str, int), "terminalId")
        chunk = str(payload.get("chunk") or "")
        if not chunk:
            return []
        terminal_id = str(terminal_id)
        if log_chunks_enabled():
            log_event(logger, "feed.terminal.chunk", level=logging.DEBUG, terminal_id=terminal_id, size=len(chunk))
        buffer = self.state.terminals.get(terminal_id)
        if buffer is None:
            buffer = self._new_terminal()
            self.state.terminals[terminal_id] = buffer
        buffer.append(chunk)
        return [FeedMutation("update", "terminal", terminal_id)]

    def _on_permission_request(self, payload: dict[str, Any]) -> list[FeedMutation]:
        request_id = payload.get("requestId")
        if request_id is None or request_id == "":
            raise ProtocolShapeError("permission_request without requestId")
        _expect(request_id, (str, int), "requestId")
        params = payload.get("params") if isinstance(payload.get("params"), dict) else {}
        key = str(request_id)
        state = self.state
        known = key in state.permissions
        state.permissions[key] = PermissionRequest(
            request_id=request_id,
            tool_call=params.get("toolCall") if isinstance(params.get("toolCall"), dict) else None,
            options=_normalize_permission_options(params.get("options")),
        )
        log_event(logger, "feed.permission.request", request_id=key, duplicate=known)
        mutations = [FeedMutation("update" if known else "append", "permission", key)]
        feed_id = f"perm-{key}"
        if state.item(feed_id) is None:
            self._append(PermissionItem(id=feed_id, request_id=request_id))
            mutations.append(FeedMutation("append", "feed", feed_id))
        return mutations

    # --- helpers -----------------------------------------------------------------

    def _update_config(self, payload: dict[str, Any]) -> list[FeedMutation]:
        state = self.state
        changed = False
        options = payload.get("configOptions")
        if not isinstance(options, list):
            options = payload.get("config_options")
        if isinstance(options, list):
            state.config_options = [opt for opt in options if isinstance(opt, dict)]
            changed = True
        models = extract_models(payload)
        if models:
            state.models = models
            changed = True
        current = extract_current_model_id(payload)
        if current:
            state.current_model_id = current
            changed = True
        if not changed:
            return []
        return self._refresh_controls()

    def _refresh_controls(self) -> list[FeedMutation]:
        state = self.state
        state.controls = self.resolver.resolve(
            state.config_options,
            models=state.models,
            current_model_id=state.current_model_id,
        )
        return [FeedMutation("update", "config")]

    def _new_terminal(self) -> TerminalBuffer:
        return TerminalBuffer(max_lines=self.config.live_terminal_lines, slack=self.config.terminal_slack_lines)

    def _append(self, item: FeedItem) -> None:
        item.sequence = self.state.next_sequence
        self.state.next_sequence += 1
        if not item.created_at:
            item.created_at = utc_now_iso()
        self.state.feed.append(item)


__all__ = ["FeedReconciler", "FeedState", "merge_blocks", "normalize_prompt_caps"]
