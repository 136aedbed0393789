"""Feed reduction: events, diffs, config normalization and grouping."""

from acp_feed.feed.config_options import ConfigResolver, ThinkingBudgetLevel
from acp_feed.feed.diff import DiffLine, DiffPreview, build_diff_preview
from acp_feed.feed.grouping import FeedSegment, group_feed
from acp_feed.feed.reconciler import FeedReconciler, FeedState
from acp_feed.feed.types import FeedItem, FeedMutation, MessageItem, PermissionItem, PlanItem, ToolCall, ToolCallItem

__all__ = [
    "ConfigResolver",
    "DiffLine",
    "DiffPreview",
    "FeedItem",
    "FeedMutation",
    "FeedReconciler",
    "FeedSegment",
    "FeedState",
    "MessageItem",
    "PermissionItem",
    "PlanItem",
    "ThinkingBudgetLevel",
    "ToolCall",
    "ToolCallItem",
    "build_diff_preview",
    "group_feed",
]
