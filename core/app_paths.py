"""Centralised helpers for managing ledger sync data directories."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

_APP_ENV_VARS: Iterable[str] = ("LEDGER_SYNC_HOME", "XDG_DATA_HOME", "LOCALAPPDATA")


def _detect_base_directory() -> Path:
    for env_var in _APP_ENV_VARS:
        value = os.environ.get(env_var)
        if value:
            base = Path(value).expanduser().resolve()
            if env_var == "LEDGER_SYNC_HOME":
                return base
            return base / "ledger-sync"
    return Path.home().resolve() / ".ledger-sync"


APP_DIR: Path = _detect_base_directory()
LOGS_DIR: Path = APP_DIR / "logs"
QUEUE_DIR: Path = APP_DIR / "queue"


def ensure_directory(path: Path) -> Path:
    """Ensure that ``path`` exists, returning the :class:`~pathlib.Path`."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_app_structure() -> None:
    """Create the base directories required for application data."""

    for directory in (APP_DIR, LOGS_DIR, QUEUE_DIR):
        ensure_directory(directory)


def data_path(*parts: str) -> Path:
    """Return a path rooted inside :data:`APP_DIR`, creating parent directories."""

    ensure_app_structure()
    target = APP_DIR.joinpath(*parts)
    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
    return target


def logs_path(*parts: str) -> Path:
    return data_path("logs", *parts)


def queue_path(*parts: str) -> Path:
    return data_path("queue", *parts)


__all__ = [
    "APP_DIR",
    "LOGS_DIR",
    "QUEUE_DIR",
    "data_path",
    "ensure_app_structure",
    "ensure_directory",
    "logs_path",
    "queue_path",
]
