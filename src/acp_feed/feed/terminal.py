"""Rolling terminal output buffers."""

from __future__ import annotations

from dataclasses import dataclass

from acp_feed.feed.diff import split_lines, tail_lines


@dataclass
class TerminalBuffer:
    """Accumulates terminal chunks, keeping roughly the last `max_lines` lines.

    Output may grow up to `max_lines + slack` lines before it is cut back to
    `max_lines`, so a stream of small chunks does not re-split on every append.
    """

    max_lines: int = 60
    slack: int = 10
    text: str = ""

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        combined = self.text + chunk
        lines = split_lines(combined)
        if len(lines) > self.max_lines + self.slack:
            combined = "\n".join(lines[len(lines) - self.max_lines :])
        self.text = combined

    def tail(self, max_lines: int) -> tuple[list[str], bool]:
        return tail_lines(self.text, max_lines)

    @property
    def line_count(self) -> int:
        return len(split_lines(self.text)) if self.text else 0
