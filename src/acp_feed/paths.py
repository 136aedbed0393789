"""Shared app directory helpers based on platformdirs."""

from __future__ import annotations

from pathlib import Path

from platformdirs import PlatformDirs

APP_NAME = "acp-feed"


def _platform_dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=False)


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def data_dir() -> Path:
    return ensure_dir(Path(_platform_dirs().user_data_path))


def history_dir() -> Path:
    """Default root for persisted conversation records."""
    return ensure_dir(data_dir() / "history")


def log_dir() -> Path:
    return ensure_dir(Path(_platform_dirs().user_log_path))
