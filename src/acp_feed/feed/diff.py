"""Bounded line diffs for file-edit tool calls.

Small inputs get an exact Myers shortest edit script. Large inputs fall back to
a common prefix/suffix span so memory and time stay bounded. Either way the
result goes through a trimming pass that keeps changed lines plus a little
context, so the preview size never depends on the input size.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from acp_feed.config import DiffLimits

ELIDED_MARKER = "..."
DEFAULT_TRUNCATE_LIMIT = 120


@dataclass(frozen=True)
class DiffLine:
    kind: str  # context | add | del
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.kind, "text": self.text}


@dataclass
class DiffPreview:
    lines: list[DiffLine] = field(default_factory=list)
    additions: int = 0
    deletions: int = 0
    truncated: bool = False
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "lines": [line.to_dict() for line in self.lines],
            "additions": self.additions,
            "deletions": self.deletions,
            "truncated": self.truncated,
        }
        if self.path:
            payload["path"] = self.path
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DiffPreview":
        lines = [
            DiffLine(kind=str(line.get("type") or "context"), text=str(line.get("text") or ""))
            for line in payload.get("lines") or []
            if isinstance(line, dict)
        ]
        return cls(
            lines=lines,
            additions=int(payload.get("additions") or 0),
            deletions=int(payload.get("deletions") or 0),
            truncated=bool(payload.get("truncated")),
            path=payload.get("path"),
        )


def split_lines(text: str) -> list[str]:
    return text.replace("\r\n", "\n").split("\n")


def truncate_text(text: str, limit: int = DEFAULT_TRUNCATE_LIMIT) -> str:
    if not text or len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


def tail_lines(text: str, max_lines: int) -> tuple[list[str], bool]:
    """Return the last `max_lines` lines and whether anything was dropped."""
    lines = split_lines(text)
    if len(lines) <= max_lines:
        return lines, False
    return lines[len(lines) - max_lines :], True


def _common_prefix(a: list[str], b: list[str]) -> int:
    limit = min(len(a), len(b))
    i = 0
    while i < limit and a[i] == b[i]:
        i += 1
    return i


def _common_suffix(a: list[str], b: list[str], prefix: int) -> int:
    limit = min(len(a), len(b)) - prefix
    i = 0
    while i < limit and a[len(a) - 1 - i] == b[len(b) - 1 - i]:
        i += 1
    return i


def _estimate_changes(old: list[str], new: list[str]) -> tuple[int, int]:
    prefix = _common_prefix(old, new)
    suffix = _common_suffix(old, new, prefix)
    additions = max(0, len(new) - prefix - suffix)
    deletions = max(0, len(old) - prefix - suffix)
    return additions, deletions


def _myers(old: list[str], new: list[str]) -> list[DiffLine]:
    n, m = len(old), len(new)
    max_d = n + m
    offset = max_d
    v = [0] * (2 * max_d + 2)
    trace: list[list[int]] = []

    for d in range(max_d + 1):
        trace.append(v[:])
        for k in range(-d, d + 1, 2):
            idx = k + offset
            if k == -d or (k != d and v[idx - 1] < v[idx + 1]):
                x = v[idx + 1]
            else:
                x = v[idx - 1] + 1
            y = x - k
            while x < n and y < m and old[x] == new[y]:
                x += 1
                y += 1
            v[idx] = x
            if x >= n and y >= m:
                return _backtrack(trace, old, new, d, offset)
    return []


def _backtrack(trace: list[list[int]], old: list[str], new: list[str], depth: int, offset: int) -> list[DiffLine]:
    result: list[DiffLine] = []
    x, y = len(old), len(new)
    for d in range(depth, 0, -1):
        # trace[d] holds the furthest-reaching x values from round d - 1.
        v = trace[d]
        k = x - y
        idx = k + offset
        inserted = k == -d or (k != d and v[idx - 1] < v[idx + 1])
        prev_k = k + 1 if inserted else k - 1
        prev_x = v[prev_k + offset]
        prev_y = prev_x - prev_k
        snake_x = prev_x if inserted else prev_x + 1
        snake_y = snake_x - k
        while x > snake_x and y > snake_y:
            result.append(DiffLine("context", old[x - 1]))
            x -= 1
            y -= 1
        if inserted:
            result.append(DiffLine("add", new[prev_y]))
        else:
            result.append(DiffLine("del", old[prev_x]))
        x, y = prev_x, prev_y
    while x > 0 and y > 0:
        result.append(DiffLine("context", old[x - 1]))
        x -= 1
        y -= 1
    result.reverse()
    return result


def _fallback_lines(old: list[str], new: list[str], context: int) -> list[DiffLine]:
    prefix = _common_prefix(old, new)
    suffix = _common_suffix(old, new, prefix)
    before = old[max(0, prefix - context) : prefix]
    after_start = max(prefix, len(old) - suffix)
    after = old[after_start : min(len(old), after_start + context)]
    removed = old[prefix : len(old) - suffix]
    added = new[prefix : len(new) - suffix]
    return (
        [DiffLine("context", text) for text in before]
        + [DiffLine("del", text) for text in removed]
        + [DiffLine("add", text) for text in added]
        + [DiffLine("context", text) for text in after]
    )


def trim_diff_lines(lines: list[DiffLine], max_lines: int, context: int) -> tuple[list[DiffLine], bool]:
    """Keep changed lines plus `context` neighbours, capped at `max_lines`."""
    if len(lines) <= max_lines:
        return lines, False

    changed = [idx for idx, line in enumerate(lines) if line.kind != "context"]
    if not changed:
        return lines[:max_lines], True

    ranges: list[list[int]] = []
    for idx in changed:
        start = max(0, idx - context)
        end = min(len(lines) - 1, idx + context)
        if ranges and start <= ranges[-1][1] + 1:
            ranges[-1][1] = max(ranges[-1][1], end)
        else:
            ranges.append([start, end])

    # Separators between ranges count toward the cap.
    total = sum(end - start + 1 for start, end in ranges) + len(ranges) - 1
    if total <= max_lines:
        output: list[DiffLine] = []
        for pos, (start, end) in enumerate(ranges):
            if pos:
                output.append(DiffLine("context", ELIDED_MARKER))
            output.extend(lines[start : end + 1])
        return output, True

    first, last = ranges[0], ranges[-1]
    if len(ranges) == 1:
        return lines[first[0] : first[1] + 1][:max_lines], True

    half = max(1, (max_lines - 1) // 2)
    head = lines[first[0] : first[1] + 1][:half]
    tail = lines[last[0] : last[1] + 1]
    tail = tail[len(tail) - half :] if len(tail) > half else tail
    return head + [DiffLine("context", ELIDED_MARKER)] + tail, True


def build_diff_preview(
    before: str,
    after: str,
    *,
    path: str | None = None,
    limits: DiffLimits | None = None,
) -> DiffPreview:
    """Compute a bounded line diff between two text snapshots."""

    limits = limits or DiffLimits()
    old = split_lines(before or "")
    new = split_lines(after or "")
    overflow = len(old) + len(new) > limits.max_source_lines * 2

    if overflow:
        diff_lines = _fallback_lines(old, new, limits.context_lines)
        additions, deletions = _estimate_changes(old, new)
    else:
        diff_lines = _myers(old, new)
        additions = sum(1 for line in diff_lines if line.kind == "add")
        deletions = sum(1 for line in diff_lines if line.kind == "del")

    trimmed, truncated = trim_diff_lines(diff_lines, limits.max_preview_lines, limits.context_lines)
    return DiffPreview(
        lines=trimmed,
        additions=additions,
        deletions=deletions,
        truncated=truncated or overflow,
        path=path,
    )


__all__ = [
    "DiffLine",
    "DiffPreview",
    "ELIDED_MARKER",
    "build_diff_preview",
    "split_lines",
    "tail_lines",
    "trim_diff_lines",
    "truncate_text",
]
