"""JSON lines dead-letter queue for sync tasks that failed in the background."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence

from core import app_paths

logger = logging.getLogger(__name__)


class DeadLetterQueue:
    """Persist failed sync payloads so a later pass can replay them."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path else app_paths.queue_path("dead_letters.jsonl")
        self._lock = threading.Lock()
        if not self._path.parent.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entries: Sequence[Mapping[str, object]]) -> None:
        if not entries:
            return
        serialised = [json.dumps(entry, ensure_ascii=False, default=str) for entry in entries]
        with self._lock:
            with self._path.open("a", encoding="utf-8") as handle:
                for line in serialised:
                    handle.write(line)
                    handle.write("\n")

    def pending(self) -> List[Mapping[str, object]]:
        with self._lock:
            return self._read()

    def drain(self, handler: Callable[[Mapping[str, object]], bool]) -> int:
        """Replay queued entries through ``handler``.

        An entry is dropped when ``handler`` returns a truthy value and kept
        when it returns a falsy one or raises.  Returns the number replayed.
        """

        with self._lock:
            entries = self._read()
        if not entries:
            self._replace([])
            return 0

        remaining: List[Mapping[str, object]] = []
        replayed = 0
        for payload in entries:
            try:
                delivered = handler(payload)
            except Exception:
                logger.exception("Replaying dead letter %s failed", payload.get("task"))
                delivered = False
            if delivered:
                replayed += 1
            else:
                remaining.append(payload)

        self._replace(remaining)
        return replayed

    def _read(self) -> List[Mapping[str, object]]:
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as handle:
            lines = handle.readlines()
        entries: List[Mapping[str, object]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Dropping unreadable dead letter line in %s", self._path)
                continue
            if isinstance(payload, dict):
                entries.append(payload)
        return entries

    def _replace(self, entries: Sequence[Mapping[str, object]]) -> None:
        with self._lock:
            if not entries:
                try:
                    self._path.unlink()
                except FileNotFoundError:
                    pass
                return
            with self._path.open("w", encoding="utf-8") as handle:
                for payload in entries:
                    handle.write(json.dumps(payload, ensure_ascii=False, default=str))
                    handle.write("\n")


__all__ = ["DeadLetterQueue"]
