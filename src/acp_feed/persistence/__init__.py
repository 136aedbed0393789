"""Storage envelope, sanitization, hydration and record stores."""

from acp_feed.persistence.envelope import PersistedEnvelope, parse_envelope
from acp_feed.persistence.hydrate import HydratedState, hydrate
from acp_feed.persistence.persister import FeedPersister
from acp_feed.persistence.store import FeedStore, FileFeedStore, MemoryFeedStore, conversation_id_for

__all__ = [
    "FeedPersister",
    "FeedStore",
    "FileFeedStore",
    "HydratedState",
    "MemoryFeedStore",
    "PersistedEnvelope",
    "conversation_id_for",
    "hydrate",
    "parse_envelope",
]
