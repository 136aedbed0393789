"""Keyed record stores for persisted feed rows.

A row is a plain dict `{id, conversationId, content, sender, timestamp,
metadata}`. Saving a row whose id already exists replaces it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from acp_feed.errors import PersistenceError
from acp_feed.log_utils import log_event

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


def conversation_id_for(task_id: str) -> str:
    return f"conv-{task_id}-acp"


class FeedStore(Protocol):
    async def save(self, row: dict[str, Any]) -> None: ...

    async def load(self, conversation_id: str) -> list[dict[str, Any]]: ...


@dataclass
class MemoryFeedStore:
    """In-process store, mainly for tests and embedding without disk."""

    conversations: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)

    async def save(self, row: dict[str, Any]) -> None:
        self.conversations.setdefault(row["conversationId"], {})[row["id"]] = dict(row)

    async def load(self, conversation_id: str) -> list[dict[str, Any]]:
        return [dict(row) for row in self.conversations.get(conversation_id, {}).values()]


@dataclass
class FileFeedStore:
    """One JSON document per record under a directory per conversation."""

    root: Path
    max_conversations: int = 200

    def __post_init__(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.cleanup()

    def conversation_dir(self, conversation_id: str) -> Path:
        return self.root / _UNSAFE_NAME.sub("_", conversation_id)

    def record_path(self, conversation_id: str, record_id: str) -> Path:
        return self.conversation_dir(conversation_id) / f"{_UNSAFE_NAME.sub('_', record_id)}.json"

    async def save(self, row: dict[str, Any]) -> None:
        await asyncio.to_thread(self.save_sync, row)

    async def load(self, conversation_id: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.load_sync, conversation_id)

    def save_sync(self, row: dict[str, Any]) -> None:
        path = self.record_path(row["conversationId"], row["id"])
        try:
            payload = json.dumps(row, indent=2, default=str)
            _atomic_write_text(path, payload)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"failed to write {path.name}: {exc}") from exc

    def load_sync(self, conversation_id: str) -> list[dict[str, Any]]:
        directory = self.conversation_dir(conversation_id)
        if not directory.is_dir():
            return []
        rows: list[dict[str, Any]] = []
        try:
            paths = sorted(directory.glob("*.json"))
        except OSError as exc:
            raise PersistenceError(f"failed to list {directory}: {exc}") from exc
        for path in paths:
            try:
                row = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                log_event(logger, "feed.store.unreadable", level=logging.WARNING, path=str(path), error=str(exc))
                continue
            if isinstance(row, dict):
                rows.append(row)
        return rows

    def cleanup(self) -> None:
        """Keep only the newest `max_conversations` conversation directories."""
        try:
            entries = [(p, p.stat().st_mtime) for p in self.root.iterdir() if p.is_dir()]
        except FileNotFoundError:
            return

        if len(entries) <= self.max_conversations:
            return

        entries.sort(key=lambda t: t[1], reverse=True)
        for path, _ in entries[self.max_conversations :]:
            shutil.rmtree(path, ignore_errors=True)


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


__all__ = ["FeedStore", "FileFeedStore", "MemoryFeedStore", "conversation_id_for"]
