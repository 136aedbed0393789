"""Versioned storage envelope wrapped around every persisted feed record."""

from __future__ import annotations

import json
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

ENVELOPE_VERSION = 1


class EnvelopeBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: Literal[1] = ENVELOPE_VERSION
    type: Literal["message", "tool", "plan"]
    feed_id: Optional[str] = Field(default=None, alias="feedId")
    sequence: Optional[int] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    provider_id: Optional[str] = Field(default=None, alias="providerId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    task_id: Optional[str] = Field(default=None, alias="taskId")
    item: dict[str, Any] = Field(default_factory=dict)


class PersistedEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    acp: EnvelopeBody

    def to_metadata(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_envelope(metadata: Any) -> PersistedEnvelope | None:
    """Parse row metadata, returning None for anything that is not a v1 envelope."""
    if metadata is None:
        return None
    if isinstance(metadata, (str, bytes)):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return None
    if not isinstance(metadata, dict) or not isinstance(metadata.get("acp"), dict):
        return None
    try:
        return PersistedEnvelope.model_validate(metadata)
    except ValidationError:
        return None


__all__ = ["ENVELOPE_VERSION", "EnvelopeBody", "PersistedEnvelope", "parse_envelope"]
