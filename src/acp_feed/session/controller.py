"""Per-task session lifecycle wired to the feed reducer and persistence."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Coroutine, Protocol

from acp.schema import AllowedOutcome, DeniedOutcome

from acp_feed.config import FeedConfig
from acp_feed.errors import ConfigMismatch, ProtocolShapeError, SessionLifecycleError
from acp_feed.feed.config_options import ThinkingBudgetLevel
from acp_feed.feed.events import coerce_event
from acp_feed.feed.reconciler import FeedReconciler, FeedState
from acp_feed.feed.types import FeedMutation
from acp_feed.log_utils import log_context, log_event
from acp_feed.persistence.hydrate import hydrate
from acp_feed.persistence.persister import FeedPersister
from acp_feed.persistence.store import FeedStore

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    AWAITING_PERMISSION = "awaiting_permission"
    ERROR = "error"
    EXITED = "exited"


ACTIVE_STATUSES = frozenset({SessionStatus.STARTING, SessionStatus.RUNNING, SessionStatus.AWAITING_PERMISSION})


@dataclass(frozen=True)
class CommandResult:
    success: bool
    error: str | None = None
    session_id: str | None = None

    @classmethod
    def ok(cls, session_id: str | None = None) -> "CommandResult":
        return cls(success=True, session_id=session_id)

    @classmethod
    def fail(cls, error: str | Exception) -> "CommandResult":
        return cls(success=False, error=str(error))


class SessionTransport(Protocol):
    """Connection to the agent process. Every call returns `{success, error?, ...}`."""

    async def start_session(self, *, task_id: str, provider_id: str, cwd: str) -> dict[str, Any]: ...

    async def send_prompt(self, *, session_id: str, prompt: list[dict[str, Any]]) -> dict[str, Any]: ...

    async def cancel(self, *, session_id: str) -> dict[str, Any]: ...

    async def respond_permission(
        self, *, session_id: str, request_id: Any, outcome: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def set_config_option(self, *, session_id: str, config_id: str, value: Any) -> dict[str, Any]: ...

    async def set_model(self, *, session_id: str, model_id: str) -> dict[str, Any]: ...

    async def dispose(self, *, session_id: str) -> dict[str, Any]: ...


def _transport_error(result: Any, fallback: str) -> str | None:
    if isinstance(result, dict) and result.get("success"):
        return None
    if isinstance(result, dict) and result.get("error"):
        return str(result["error"])
    return fallback


class SessionController:
    """Owns one task's ACP session: lifecycle, feed state and history.

    Commands return a `CommandResult` instead of raising. Events are applied
    one at a time through `handle_event`, in arrival order.
    """

    def __init__(
        self,
        task_id: str,
        provider_id: str,
        transport: SessionTransport,
        *,
        store: FeedStore | None = None,
        config: FeedConfig | None = None,
    ) -> None:
        self.task_id = task_id
        self.provider_id = provider_id
        self.transport = transport
        self.config = config or FeedConfig()
        self.reconciler = FeedReconciler(config=self.config)
        self.persister = (
            FeedPersister(store, task_id=task_id, provider_id=provider_id, config=self.config) if store else None
        )
        self.status = SessionStatus.IDLE
        self.error: str | None = None
        self.prompt_in_flight = False
        self.history_ready = False
        self._history_task: asyncio.Future[list[FeedMutation]] | None = None
        self._queued_events: list[Any] = []
        self._run_started_at: float | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> FeedState:
        return self.reconciler.state

    @property
    def session_id(self) -> str | None:
        return self.state.session_id

    # --- history -------------------------------------------------------------------

    async def ensure_history(self) -> list[FeedMutation]:
        """Hydrate stored history once, before any live event is applied.

        Events handed to `handle_event` while the load is in flight are queued
        and applied after the history in arrival order. Returns their mutations.
        """
        if self.history_ready:
            return []
        if self._history_task is None:
            self._history_task = asyncio.ensure_future(self._load_history())
        return await self._history_task

    async def _load_history(self) -> list[FeedMutation]:
        mutations: list[FeedMutation] = []
        try:
            if self.persister is not None:
                hydrated = hydrate(await self.persister.load())
                self.reconciler.load(hydrated)
                self.persister.restore(hydrated)
                with self._log_context():
                    log_event(
                        logger, "feed.session.hydrated", items=len(hydrated.feed), tools=len(hydrated.tool_calls)
                    )
        finally:
            self.history_ready = True
            queued, self._queued_events = self._queued_events, []
            for event in queued:
                mutations.extend(self.handle_event(event))
        return mutations

    # --- commands ------------------------------------------------------------------

    async def start_session(self, cwd: str) -> CommandResult:
        if self.status in ACTIVE_STATUSES:
            return CommandResult.fail(f"session is already {self.status.value}")
        await self.ensure_history()
        self.status = SessionStatus.STARTING
        self.error = None
        with self._log_context():
            log_event(logger, "feed.session.start", cwd=cwd)
        try:
            result = await asyncio.wait_for(
                self.transport.start_session(task_id=self.task_id, provider_id=self.provider_id, cwd=cwd),
                timeout=self.config.start_timeout_s,
            )
        except asyncio.TimeoutError:
            return self._start_failed(
                SessionLifecycleError(f"session start timed out after {self.config.start_timeout_s:g}s")
            )
        except Exception as exc:
            return self._start_failed(SessionLifecycleError(f"session start failed: {exc}"))

        error = _transport_error(result, "session start failed")
        if error:
            return self._start_failed(SessionLifecycleError(error))
        if result.get("sessionId"):
            self.state.session_id = str(result["sessionId"])
        if self.status == SessionStatus.STARTING:
            self.status = SessionStatus.RUNNING
        with self._log_context():
            log_event(logger, "feed.session.running")
        return CommandResult.ok(self.session_id)

    async def send_prompt(self, blocks: list[dict[str, Any]]) -> CommandResult:
        # All rejections happen before the first await, so a second prompt
        # sent while one is in flight fails immediately.
        if self.status == SessionStatus.AWAITING_PERMISSION or self.state.pending_permissions:
            return CommandResult.fail("waiting for a permission response")
        if self.status != SessionStatus.RUNNING or not self.session_id:
            return CommandResult.fail(f"session is not running ({self.status.value})")
        if self.prompt_in_flight:
            return CommandResult.fail("a prompt is already running")
        if not blocks:
            return CommandResult.fail("empty prompt")

        self.reconciler.append_message("user", blocks, streaming=False)
        self.prompt_in_flight = True
        self._run_started_at = time.monotonic()
        self._persist()
        with self._log_context():
            log_event(logger, "feed.prompt.send", blocks=len(blocks))
        try:
            result = await self.transport.send_prompt(session_id=self.session_id, prompt=blocks)
        except Exception as exc:
            result = {"success": False, "error": str(exc)}
        error = _transport_error(result, "prompt failed")
        if error:
            self.prompt_in_flight = False
            self._run_started_at = None
            with self._log_context():
                log_event(logger, "feed.prompt.failed", level=logging.WARNING, error=error)
            return CommandResult.fail(error)
        return CommandResult.ok(self.session_id)

    def cancel(self) -> CommandResult:
        """Cancel the running prompt.

        In-memory effects are applied before returning; the transport cancel
        and the "cancelled" permission responses run in the background.
        """
        session_id = self.session_id
        pending = [request.request_id for request in self.state.permissions.values()]
        mutations = self.reconciler.cancel_pending()
        if self.prompt_in_flight:
            mutations.extend(self.reconciler.finish_prompt(run_duration_ms=self._elapsed_ms()))
        self.prompt_in_flight = False
        self._run_started_at = None
        if self.status == SessionStatus.AWAITING_PERMISSION:
            self.status = SessionStatus.RUNNING
        self._persist()
        with self._log_context():
            log_event(logger, "feed.prompt.cancel", permissions=len(pending), mutations=len(mutations))
        if session_id:
            self._spawn("cancel", self.transport.cancel(session_id=session_id))
            outcome = DeniedOutcome(outcome="cancelled").model_dump(by_alias=True, exclude_none=True)
            for request_id in pending:
                self._spawn(
                    "permission.cancel",
                    self.transport.respond_permission(session_id=session_id, request_id=request_id, outcome=outcome),
                )
        return CommandResult.ok(session_id)

    async def respond_permission(self, request_id: Any, option_id: str | None) -> CommandResult:
        request = self.state.permissions.get(str(request_id))
        if request is None:
            return CommandResult.fail(f"no pending permission request {request_id}")
        if not self.session_id:
            return CommandResult.fail("session is not running")
        model = (
            AllowedOutcome(option_id=option_id, outcome="selected")
            if option_id
            else DeniedOutcome(outcome="cancelled")
        )
        outcome = model.model_dump(by_alias=True, exclude_none=True)
        with self._log_context():
            log_event(logger, "feed.permission.choice", request_id=str(request_id), outcome=outcome["outcome"])
        try:
            result = await self.transport.respond_permission(
                session_id=self.session_id, request_id=request.request_id, outcome=outcome
            )
        except Exception as exc:
            result = {"success": False, "error": str(exc)}
        error = _transport_error(result, "permission response failed")
        if error:
            return CommandResult.fail(error)
        self.reconciler.resolve_permission(request_id)
        if self.status == SessionStatus.AWAITING_PERMISSION and not self.state.pending_permissions:
            self.status = SessionStatus.RUNNING
        return CommandResult.ok(self.session_id)

    async def set_config_option(self, option_id: str, value: Any, *, optimistic: bool = True) -> CommandResult:
        if not self.session_id:
            return CommandResult.fail("session is not running")
        if optimistic:
            self.reconciler.set_option_value(option_id, value)
        try:
            result = await self.transport.set_config_option(
                session_id=self.session_id, config_id=option_id, value=value
            )
        except Exception as exc:
            result = {"success": False, "error": str(exc)}
        error = _transport_error(result, "config update failed")
        if error:
            with self._log_context():
                log_event(logger, "feed.config.failed", level=logging.WARNING, option_id=option_id, error=error)
            return CommandResult.fail(error)
        return CommandResult.ok(self.session_id)

    async def set_model(self, model_id: str, *, optimistic: bool = True) -> CommandResult:
        if not self.session_id:
            return CommandResult.fail("session is not running")
        model_option = self.state.controls.model_option
        if model_option is not None and model_option.id:
            return await self.set_config_option(model_option.id, model_id, optimistic=optimistic)
        if optimistic:
            self.reconciler.set_current_model(model_id)
        try:
            result = await self.transport.set_model(session_id=self.session_id, model_id=model_id)
        except Exception as exc:
            result = {"success": False, "error": str(exc)}
        error = _transport_error(result, "model update failed")
        if error:
            with self._log_context():
                log_event(logger, "feed.model.failed", level=logging.WARNING, model_id=model_id, error=error)
            return CommandResult.fail(error)
        return CommandResult.ok(self.session_id)

    async def set_thinking_budget(self, level: ThinkingBudgetLevel | str) -> CommandResult:
        try:
            requested = level if isinstance(level, ThinkingBudgetLevel) else ThinkingBudgetLevel(str(level).lower())
        except ValueError:
            return CommandResult.fail(f"unknown reasoning effort level: {level}")
        try:
            target, key, value = self.reconciler.resolver.budget_target(self.state.controls, requested)
        except ConfigMismatch as exc:
            with self._log_context():
                log_event(logger, "feed.budget.unsupported", level=logging.INFO, requested=requested.value)
            return CommandResult.fail(f"control unsupported: {exc}")
        if target == "config":
            return await self.set_config_option(key, value)
        return await self.set_model(key)

    async def dispose(self) -> CommandResult:
        session_id = self.session_id
        if self.prompt_in_flight:
            self.cancel()
        await self.flush()
        self.status = SessionStatus.EXITED
        if not session_id:
            return CommandResult.ok()
        try:
            result = await self.transport.dispose(session_id=session_id)
        except Exception as exc:
            result = {"success": False, "error": str(exc)}
        error = _transport_error(result, "dispose failed")
        if error:
            return CommandResult.fail(error)
        return CommandResult.ok(session_id)

    async def restart(self, cwd: str) -> CommandResult:
        """Dispose the current connection and go through `starting` again."""
        if self.session_id:
            await self.dispose()
        self.state.session_id = None
        self.status = SessionStatus.IDLE
        self.error = None
        return await self.start_session(cwd)

    def clear_error(self) -> CommandResult:
        self.error = None
        if self.status == SessionStatus.ERROR:
            self.status = SessionStatus.IDLE
        return CommandResult.ok(self.session_id)

    async def flush(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self.persister is not None:
            await self.persister.flush()

    # --- events -------------------------------------------------------------------

    def handle_event(self, event: Any) -> list[FeedMutation]:
        if self._history_task is not None and not self.history_ready:
            self._queued_events.append(event)
            return []
        try:
            payload = coerce_event(event)
        except ProtocolShapeError as exc:
            log_event(logger, "feed.event.dropped", level=logging.WARNING, reason=str(exc))
            return []
        try:
            mutations = self._apply_event(payload)
        except Exception as exc:
            with self._log_context():
                log_event(
                    logger,
                    "feed.event.dropped",
                    level=logging.ERROR,
                    event_type=payload.get("type"),
                    reason=f"{type(exc).__name__}: {exc}",
                )
            return []
        self._persist()
        return mutations

    def _apply_event(self, payload: dict[str, Any]) -> list[FeedMutation]:
        event_type = payload.get("type")
        with self._log_context():
            if event_type == "session_error":
                return self._on_session_error(payload)
            if event_type == "session_exit":
                return self._on_session_exit()
            if event_type == "prompt_end":
                mutations = self.reconciler.finish_prompt(payload.get("stopReason"), self._elapsed_ms())
                self.prompt_in_flight = False
                self._run_started_at = None
                if self.status in (SessionStatus.RUNNING, SessionStatus.AWAITING_PERMISSION):
                    self.status = (
                        SessionStatus.AWAITING_PERMISSION if self.state.pending_permissions else SessionStatus.RUNNING
                    )
                log_event(logger, "feed.prompt.end", stop_reason=payload.get("stopReason"))
            else:
                mutations = self.reconciler.apply(payload)
                if event_type == "session_started" and self.status in (SessionStatus.IDLE, SessionStatus.STARTING):
                    self.status = SessionStatus.RUNNING
                if self.state.pending_permissions and self.status == SessionStatus.RUNNING:
                    self.status = SessionStatus.AWAITING_PERMISSION
        return mutations

    def _on_session_error(self, payload: dict[str, Any]) -> list[FeedMutation]:
        message = str(payload.get("error") or "ACP session error")
        if self.status == SessionStatus.EXITED:
            log_event(logger, "feed.session.error_ignored", error=message)
            return []
        log_event(logger, "feed.session.error", level=logging.WARNING, error=message)
        self.status = SessionStatus.ERROR
        self.error = message
        self.prompt_in_flight = False
        self._run_started_at = None
        return [FeedMutation("update", "status")]

    def _on_session_exit(self) -> list[FeedMutation]:
        log_event(logger, "feed.session.exit")
        self.status = SessionStatus.EXITED
        self.prompt_in_flight = False
        self._run_started_at = None
        return [FeedMutation("update", "status")]

    # --- helpers ------------------------------------------------------------------

    def _start_failed(self, exc: SessionLifecycleError) -> CommandResult:
        self.status = SessionStatus.ERROR
        self.error = str(exc)
        with self._log_context():
            log_event(logger, "feed.session.start_failed", level=logging.WARNING, error=self.error)
        return CommandResult.fail(exc)

    def _elapsed_ms(self) -> int | None:
        if self._run_started_at is None:
            return None
        return int((time.monotonic() - self._run_started_at) * 1000)

    def _persist(self) -> None:
        if self.persister is None or not self.history_ready:
            return
        try:
            self.persister.sync(self.state)
        except Exception as exc:
            with self._log_context():
                log_event(logger, "feed.persist.failed", level=logging.ERROR, error=f"{type(exc).__name__}: {exc}")

    def _spawn(self, name: str, call: Coroutine[Any, Any, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            call.close()
            with self._log_context():
                log_event(
                    logger, "feed.transport.failed", level=logging.WARNING, call=name, error="no running event loop"
                )
            return
        task = loop.create_task(self._background_call(name, call))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_call(self, name: str, call: Awaitable[Any]) -> None:
        try:
            result = await call
        except Exception as exc:
            result = {"success": False, "error": str(exc)}
        error = _transport_error(result, f"{name} failed")
        if error:
            with self._log_context():
                log_event(logger, "feed.transport.failed", level=logging.WARNING, call=name, error=error)

    def _log_context(self):
        return log_context(task_id=self.task_id, provider_id=self.provider_id, session_id=self.session_id)


__all__ = ["CommandResult", "SessionController", "SessionStatus", "SessionTransport"]
