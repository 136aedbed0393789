"""Feed engine settings.

Reads overrides from environment variables (and a `.env` file when present).
Every limit has a default so embedding applications can build a config without
touching the environment.
"""

from __future__ import annotations

import contextlib
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from acp_feed.log_utils import parse_int


@dataclass(frozen=True)
class ResolverThresholds:
    """Scoring weights used to pick provider config options.

    Label-based detection is best-effort across providers, so the weights and
    the minimum accepted score are tunable instead of fixed.
    """

    enumerable_weight: int = 2
    choices_weight: int = 2
    known_levels_weight: int = 2
    domain_word_weight: int = 1
    min_score: int = 0


@dataclass(frozen=True)
class PersistLimits:
    max_blocks: int = 40
    max_text_chars: int = 4000
    max_resource_chars: int = 1200
    max_message_chars: int = 12000
    max_tool_input_chars: int = 4000
    max_terminal_lines: int = 120


@dataclass(frozen=True)
class DiffLimits:
    context_lines: int = 3
    max_preview_lines: int = 80
    max_source_lines: int = 400


@dataclass(frozen=True)
class FeedConfig:
    persist: PersistLimits = field(default_factory=PersistLimits)
    diff: DiffLimits = field(default_factory=DiffLimits)
    resolver: ResolverThresholds = field(default_factory=ResolverThresholds)
    live_terminal_lines: int = 60
    terminal_slack_lines: int = 10
    start_timeout_s: float = 30.0
    store_root: Path | None = None
    max_conversations: int = 200


def _env_int(name: str, default: int) -> int:
    return parse_int(os.getenv(name), default)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    with contextlib.suppress(ValueError):
        return float(value)
    return default


def load_feed_config(*, env_file: str | Path | None = None) -> FeedConfig:
    """Build a FeedConfig from `ACP_FEED_*` environment variables."""

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    defaults = FeedConfig()
    persist = PersistLimits(
        max_blocks=_env_int("ACP_FEED_MAX_BLOCKS", defaults.persist.max_blocks),
        max_text_chars=_env_int("ACP_FEED_MAX_TEXT_CHARS", defaults.persist.max_text_chars),
        max_resource_chars=_env_int("ACP_FEED_MAX_RESOURCE_CHARS", defaults.persist.max_resource_chars),
        max_message_chars=_env_int("ACP_FEED_MAX_MESSAGE_CHARS", defaults.persist.max_message_chars),
        max_tool_input_chars=_env_int("ACP_FEED_MAX_TOOL_INPUT_CHARS", defaults.persist.max_tool_input_chars),
        max_terminal_lines=_env_int("ACP_FEED_MAX_TERMINAL_LINES", defaults.persist.max_terminal_lines),
    )
    diff = DiffLimits(
        context_lines=_env_int("ACP_FEED_DIFF_CONTEXT_LINES", defaults.diff.context_lines),
        max_preview_lines=_env_int("ACP_FEED_DIFF_MAX_PREVIEW_LINES", defaults.diff.max_preview_lines),
        max_source_lines=_env_int("ACP_FEED_DIFF_MAX_SOURCE_LINES", defaults.diff.max_source_lines),
    )
    resolver = ResolverThresholds(
        enumerable_weight=_env_int("ACP_FEED_RESOLVER_ENUM_WEIGHT", defaults.resolver.enumerable_weight),
        choices_weight=_env_int("ACP_FEED_RESOLVER_CHOICES_WEIGHT", defaults.resolver.choices_weight),
        known_levels_weight=_env_int("ACP_FEED_RESOLVER_LEVELS_WEIGHT", defaults.resolver.known_levels_weight),
        domain_word_weight=_env_int("ACP_FEED_RESOLVER_WORD_WEIGHT", defaults.resolver.domain_word_weight),
        min_score=_env_int("ACP_FEED_RESOLVER_MIN_SCORE", defaults.resolver.min_score),
    )
    store_root = os.getenv("ACP_FEED_STORE_DIR")
    return FeedConfig(
        persist=persist,
        diff=diff,
        resolver=resolver,
        live_terminal_lines=_env_int("ACP_FEED_LIVE_TERMINAL_LINES", defaults.live_terminal_lines),
        terminal_slack_lines=_env_int("ACP_FEED_TERMINAL_SLACK_LINES", defaults.terminal_slack_lines),
        start_timeout_s=_env_float("ACP_FEED_START_TIMEOUT_S", defaults.start_timeout_s),
        store_root=Path(store_root) if store_root else None,
        max_conversations=_env_int("ACP_FEED_MAX_CONVERSATIONS", defaults.max_conversations),
    )


__all__ = [
    "DiffLimits",
    "FeedConfig",
    "PersistLimits",
    "ResolverThresholds",
    "load_feed_config",
]
