from __future__ import annotations

import asyncio
from typing import Any

from acp_feed.config import FeedConfig
from acp_feed.persistence.store import MemoryFeedStore
from acp_feed.session.controller import SessionController


class FakeTransport:
    """In-process transport that records calls and returns canned results."""

    def __init__(self, *, session_id: str = "sess-1", start_delay: float = 0.0) -> None:
        self.session_id = session_id
        self.start_delay = start_delay
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.results: dict[str, dict[str, Any]] = {}

    def _record(self, name: str, **kwargs: Any) -> dict[str, Any]:
        self.calls.append((name, kwargs))
        return self.results.get(name, {"success": True})

    def called(self, name: str) -> list[dict[str, Any]]:
        return [kwargs for call, kwargs in self.calls if call == name]

    async def start_session(self, *, task_id: str, provider_id: str, cwd: str) -> dict[str, Any]:
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        result = self._record("start_session", task_id=task_id, provider_id=provider_id, cwd=cwd)
        if result.get("success"):
            return {**result, "sessionId": self.session_id}
        return result

    async def send_prompt(self, *, session_id: str, prompt: list[dict[str, Any]]) -> dict[str, Any]:
        await asyncio.sleep(0)
        return self._record("send_prompt", session_id=session_id, prompt=prompt)

    async def cancel(self, *, session_id: str) -> dict[str, Any]:
        return self._record("cancel", session_id=session_id)

    async def respond_permission(self, *, session_id: str, request_id: Any, outcome: dict[str, Any]) -> dict[str, Any]:
        return self._record("respond_permission", session_id=session_id, request_id=request_id, outcome=outcome)

    async def set_config_option(self, *, session_id: str, config_id: str, value: Any) -> dict[str, Any]:
        return self._record("set_config_option", session_id=session_id, config_id=config_id, value=value)

    async def set_model(self, *, session_id: str, model_id: str) -> dict[str, Any]:
        return self._record("set_model", session_id=session_id, model_id=model_id)

    async def dispose(self, *, session_id: str) -> dict[str, Any]:
        return self._record("dispose", session_id=session_id)


class FailingStore(MemoryFeedStore):
    async def save(self, row: dict[str, Any]) -> None:
        raise OSError("disk full")


def make_controller(
    *,
    transport: FakeTransport | None = None,
    store: MemoryFeedStore | None = None,
    config: FeedConfig | None = None,
    task_id: str = "task-1",
) -> SessionController:
    return SessionController(task_id, "codex", transport or FakeTransport(), store=store, config=config)


async def running_controller(**kwargs: Any) -> SessionController:
    controller = make_controller(**kwargs)
    result = await controller.start_session("/tmp/project")
    assert result.success, result.error
    return controller


def chunk(text: str, kind: str = "agent_message_chunk") -> dict[str, Any]:
    return {"type": "session_update", "update": {"sessionUpdate": kind, "content": {"type": "text", "text": text}}}


def tool_event(tool_call_id: str, **fields: Any) -> dict[str, Any]:
    update = {"sessionUpdate": "tool_call_update", "toolCallId": tool_call_id, **fields}
    return {"type": "session_update", "update": update}


def permission_event(request_id: Any, tool_call_id: str = "t1") -> dict[str, Any]:
    return {
        "type": "permission_request",
        "requestId": request_id,
        "params": {
            "toolCall": {"toolCallId": tool_call_id},
            "options": [
                {"optionId": "allow_once", "name": "Allow once", "kind": "allow_once"},
                {"optionId": "reject_once", "name": "Reject", "kind": "reject_once"},
            ],
        },
    }


EFFORT_OPTION = {
    "id": "reasoning_effort",
    "name": "Reasoning effort",
    "type": "select",
    "currentValue": "med",
    "options": [{"value": "lo", "name": "Low"}, {"value": "med", "name": "Medium"}, {"value": "hi", "name": "High"}],
}
