"""Fire-and-forget persistence of finished feed items."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from acp_feed.config import FeedConfig
from acp_feed.errors import PersistenceError
from acp_feed.feed.reconciler import FeedState
from acp_feed.feed.types import MessageItem, PlanItem, ToolCall, utc_now_iso
from acp_feed.log_utils import log_event
from acp_feed.persistence.envelope import EnvelopeBody, PersistedEnvelope
from acp_feed.persistence.hydrate import HydratedState
from acp_feed.persistence.sanitize import build_persisted_content, build_tool_snapshot, sanitize_blocks
from acp_feed.persistence.store import FeedStore, conversation_id_for

logger = logging.getLogger(__name__)


class FeedPersister:
    """Writes messages, finished tool calls and plans to a `FeedStore`.

    Record ids derive from feed ids (`acp-<feedId>`), so saving an item again
    replaces the stored row. Writes run as background tasks; a failed write is
    logged and never touches the in-memory feed.
    """

    def __init__(
        self,
        store: FeedStore,
        *,
        task_id: str,
        provider_id: str | None = None,
        config: FeedConfig | None = None,
    ) -> None:
        self.store = store
        self.task_id = task_id
        self.provider_id = provider_id
        self.config = config or FeedConfig()
        self.conversation_id = conversation_id_for(task_id)
        self.session_id: str | None = None
        self.saved_message_ids: set[str] = set()
        self.saved_tool_ids: set[str] = set()
        self._plan_hash: str | None = None
        self._pending: set[asyncio.Task[None]] = set()

    def restore(self, hydrated: HydratedState) -> None:
        self.saved_message_ids = set(hydrated.saved_message_ids)
        self.saved_tool_ids = set(hydrated.saved_tool_ids)
        self._plan_hash = _plan_hash(hydrated.latest_plan) if hydrated.latest_plan else None

    async def load(self) -> list[dict[str, Any]]:
        try:
            return await self.store.load(self.conversation_id)
        except PersistenceError as exc:
            log_event(logger, "feed.persist.load_failed", level=logging.WARNING, error=str(exc))
            return []

    def sync(self, state: FeedState) -> None:
        """Schedule writes for everything in `state` that became persistable."""
        if state.session_id:
            self.session_id = state.session_id
        for item in state.feed:
            if isinstance(item, MessageItem) and not item.streaming and item.id not in self.saved_message_ids:
                self.persist_message(item)
        for call in state.tool_calls.values():
            if not call.is_terminal or call.tool_call_id in self.saved_tool_ids:
                continue
            terminals = {terminal_id: buffer.text for terminal_id, buffer in state.terminals.items()}
            item = state.item(f"tool-{call.tool_call_id}")
            self.persist_tool_call(
                call,
                terminals,
                sequence=item.sequence if item else None,
                created_at=item.created_at if item else None,
            )
        if state.plan and state.plan_item_id:
            plan_item = state.item(state.plan_item_id)
            if isinstance(plan_item, PlanItem):
                self.persist_plan(plan_item)

    def persist_message(self, item: MessageItem) -> None:
        limits = self.config.persist
        blocks = sanitize_blocks(item.blocks, limits)
        if not blocks:
            return
        self.saved_message_ids.add(item.id)
        payload = {"role": item.role, "blocks": blocks}
        if item.message_kind:
            payload["messageKind"] = item.message_kind
        if item.run_duration_ms is not None:
            payload["runDurationMs"] = item.run_duration_ms
        self._schedule(
            feed_id=item.id,
            kind="message",
            item=payload,
            sequence=item.sequence,
            created_at=item.created_at,
            sender="user" if item.role == "user" else "agent",
            content=build_persisted_content(blocks, limits),
        )

    def persist_tool_call(
        self,
        call: ToolCall,
        terminal_outputs: dict[str, str],
        *,
        sequence: int | None = None,
        created_at: str | None = None,
    ) -> None:
        self.saved_tool_ids.add(call.tool_call_id)
        snapshot = build_tool_snapshot(
            call, terminal_outputs, limits=self.config.persist, diff_limits=self.config.diff
        )
        self._schedule(
            feed_id=f"tool-{call.tool_call_id}",
            kind="tool",
            item=snapshot,
            sequence=sequence,
            created_at=created_at,
            sender="agent",
            content=call.title or call.kind or "Tool call",
        )

    def persist_plan(self, item: PlanItem) -> None:
        if not item.entries:
            return
        digest = _plan_hash(item.entries)
        if digest == self._plan_hash:
            return
        self._plan_hash = digest
        self._schedule(
            feed_id=item.id,
            kind="plan",
            item={"entries": item.entries},
            sequence=item.sequence,
            created_at=item.created_at,
            sender="agent",
            content="Plan updated",
        )

    async def flush(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    def build_row(
        self,
        *,
        feed_id: str,
        kind: str,
        item: dict[str, Any],
        sequence: int | None,
        created_at: str | None,
        sender: str,
        content: str,
    ) -> dict[str, Any]:
        envelope = PersistedEnvelope(
            acp=EnvelopeBody(
                type=kind,
                feed_id=feed_id,
                sequence=sequence,
                created_at=created_at or utc_now_iso(),
                provider_id=self.provider_id,
                session_id=self.session_id,
                task_id=self.task_id,
                item=item,
            )
        )
        return {
            "id": f"acp-{feed_id}",
            "conversationId": self.conversation_id,
            "content": content or "",
            "sender": sender,
            "timestamp": utc_now_iso(),
            "metadata": envelope.to_metadata(),
        }

    def _schedule(self, **kwargs: Any) -> None:
        row = self.build_row(**kwargs)
        task = asyncio.get_running_loop().create_task(self._write(row))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, row: dict[str, Any]) -> None:
        try:
            await self.store.save(row)
        except PersistenceError as exc:
            log_event(logger, "feed.persist.failed", level=logging.WARNING, record_id=row["id"], error=str(exc))
        except OSError as exc:
            error = PersistenceError(f"failed to save {row['id']}: {exc}")
            log_event(logger, "feed.persist.failed", level=logging.WARNING, record_id=row["id"], error=str(error))
        else:
            log_event(logger, "feed.persist.saved", level=logging.DEBUG, record_id=row["id"])


def _plan_hash(entries: Any) -> str:
    return json.dumps(entries, sort_keys=True, default=str)


__all__ = ["FeedPersister"]
