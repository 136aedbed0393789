"""Keyed registry of per-task session controllers."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable

from acp_feed.config import FeedConfig
from acp_feed.errors import ProtocolShapeError
from acp_feed.feed.events import coerce_event
from acp_feed.feed.types import FeedMutation
from acp_feed.log_utils import log_event
from acp_feed.persistence.store import FeedStore
from acp_feed.session.controller import SessionController, SessionTransport

logger = logging.getLogger(__name__)

SessionKey = tuple[str, str]


class SessionRegistry:
    """Owns one `SessionController` per `(task_id, provider_id)`.

    Sessions share no state; the registry only routes events and manages
    controller lifetimes.
    """

    def __init__(
        self,
        transport: SessionTransport,
        *,
        store: FeedStore | None = None,
        config: FeedConfig | None = None,
        on_mutations: Callable[[SessionController, list[FeedMutation]], None] | None = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.config = config or FeedConfig()
        self.on_mutations = on_mutations
        self._sessions: dict[SessionKey, SessionController] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, task_id: str, provider_id: str) -> SessionController | None:
        return self._sessions.get((task_id, provider_id))

    async def get_or_create(self, task_id: str, provider_id: str) -> SessionController:
        """Return the task's controller, hydrating history for new ones."""
        key = (task_id, provider_id)
        controller = self._sessions.get(key)
        if controller is None:
            controller = SessionController(
                task_id, provider_id, self.transport, store=self.store, config=self.config
            )
            self._sessions[key] = controller
            replayed = await controller.ensure_history()
            if replayed and self.on_mutations is not None:
                self.on_mutations(controller, replayed)
        else:
            await controller.ensure_history()
        return controller

    async def dispose(self, task_id: str, provider_id: str) -> bool:
        controller = self._sessions.pop((task_id, provider_id), None)
        if controller is None:
            return False
        await controller.dispose()
        return True

    async def dispose_task(self, task_id: str) -> int:
        keys = [key for key in self._sessions if key[0] == task_id]
        for key in keys:
            await self.dispose(*key)
        return len(keys)

    async def dispose_all(self) -> None:
        for key in list(self._sessions):
            await self.dispose(*key)

    def find_by_session_id(self, session_id: str) -> SessionController | None:
        for controller in self._sessions.values():
            if controller.session_id == session_id:
                return controller
        return None

    def dispatch(self, event: Any) -> list[FeedMutation]:
        """Route one event to its controller and apply it."""
        try:
            payload = coerce_event(event)
        except ProtocolShapeError as exc:
            log_event(logger, "feed.registry.dropped", level=logging.WARNING, reason=str(exc))
            return []
        controller = None
        task_id = payload.get("taskId")
        if task_id:
            provider_id = payload.get("providerId")
            if provider_id:
                controller = self.get(str(task_id), str(provider_id))
            else:
                controller = next((c for (t, _), c in self._sessions.items() if t == str(task_id)), None)
        elif payload.get("sessionId"):
            controller = self.find_by_session_id(str(payload["sessionId"]))
        if controller is None:
            log_event(
                logger,
                "feed.registry.unrouted",
                level=logging.DEBUG,
                task_id=task_id,
                event_type=payload.get("type"),
            )
            return []
        mutations = controller.handle_event(payload)
        if mutations and self.on_mutations is not None:
            self.on_mutations(controller, mutations)
        return mutations

    async def consume(self, events: AsyncIterator[Any]) -> int:
        """Drain an event stream, applying events one at a time in arrival order."""
        count = 0
        async for event in events:
            self.dispatch(event)
            count += 1
        return count


__all__ = ["SessionRegistry"]
