"""Command line tools for inspecting stored feeds and diff previews."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console

from acp_feed.config import FeedConfig, load_feed_config
from acp_feed.display import print_diff, print_feed
from acp_feed.errors import PersistenceError
from acp_feed.feed.diff import build_diff_preview
from acp_feed.feed.reconciler import FeedReconciler
from acp_feed.log_utils import build_log_config, configure_logging, log_event
from acp_feed.paths import history_dir
from acp_feed.persistence.hydrate import hydrate
from acp_feed.persistence.store import FileFeedStore, conversation_id_for

logger = logging.getLogger("acp_feed.cli")


async def replay(task_id: str, store_root: Path, config: FeedConfig, console: Console) -> int:
    """Hydrate a stored conversation and print it."""
    store = FileFeedStore(store_root, max_conversations=config.max_conversations)
    try:
        rows = await store.load(conversation_id_for(task_id))
    except PersistenceError as exc:
        console.print(f"Failed to read history: {exc}", style="red", markup=False)
        return 1
    if not rows:
        console.print(f"No stored history for task {task_id}", style="yellow", markup=False)
        return 1
    hydrated = hydrate(rows)
    reconciler = FeedReconciler(config=config)
    reconciler.load(hydrated)
    log_event(logger, "feed.cli.replay", task_id=task_id, rows=len(rows), items=len(hydrated.feed))
    print_feed(reconciler.state, console)
    return 0


def diff_files(before: Path, after: Path, config: FeedConfig, console: Console) -> int:
    try:
        old = before.read_text(encoding="utf-8", errors="replace")
        new = after.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        console.print(f"Failed to read input: {exc}", style="red", markup=False)
        return 1
    print_diff(build_diff_preview(old, new, path=str(after), limits=config.diff), console)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="acp-feed", description="Inspect ACP session feeds.")
    parser.add_argument("--env-file", type=str, help="Path to a .env file with ACP_FEED_* settings.")
    sub = parser.add_subparsers(dest="command", required=True)

    replay_parser = sub.add_parser("replay", help="Render a stored conversation feed")
    replay_parser.add_argument("--task", required=True, help="Task id whose ACP conversation to replay")
    replay_parser.add_argument("--store", type=str, help="History directory (defaults to the user data dir)")

    diff_parser = sub.add_parser("diff", help="Render a bounded diff preview of two files")
    diff_parser.add_argument("before", type=Path)
    diff_parser.add_argument("after", type=Path)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(build_log_config(log_file_name="acp_feed.log"))
    config = load_feed_config(env_file=args.env_file)
    console = Console(highlight=False)

    if args.command == "diff":
        return diff_files(args.before, args.after, config, console)

    store_root = Path(args.store) if args.store else (config.store_root or history_dir())
    try:
        return asyncio.run(replay(args.task, store_root, config, console))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
