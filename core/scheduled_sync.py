"""Background controller that periodically rewrites the configured worksheets."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from core.dead_letter import DeadLetterQueue
from settings import MIN_SYNC_INTERVAL_SECONDS, SyncTarget

logger = logging.getLogger(__name__)


SyncJob = Callable[[str, str], Any]
ReplayHandler = Callable[[Mapping[str, object]], bool]


@dataclass
class ScheduledSyncState:
    processing: bool = False
    last_run: Optional[datetime] = None
    last_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    replayed: int = 0


def _result_payload(result: Any) -> Dict[str, Any]:
    if hasattr(result, "as_dict"):
        return result.as_dict()
    return {"success": bool(result), "message": str(result)}


class ScheduledSync:
    """Run ``job`` for every target on a daemon thread owned by the caller.

    ``start`` and ``stop`` are idempotent.  A failing tick is logged and the
    loop carries on with the next interval.
    """

    def __init__(
        self,
        job: SyncJob,
        interval_seconds: int,
        targets: Sequence[SyncTarget],
        *,
        dead_letters: Optional[DeadLetterQueue] = None,
        replay: Optional[ReplayHandler] = None,
    ) -> None:
        self._job = job
        self._interval = max(MIN_SYNC_INTERVAL_SECONDS, int(interval_seconds))
        self._targets: List[SyncTarget] = list(targets)
        self._dead_letters = dead_letters
        self._replay = replay
        self._state = ScheduledSyncState()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def interval_seconds(self) -> int:
        return self._interval

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> bool:
        if self._thread and self._thread.is_alive():
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="ledger-scheduled-sync", daemon=True)
        self._thread.start()
        logger.info(
            "Scheduled sync started every %ss for %s",
            self._interval,
            ", ".join(f"{target.collection}->{target.sheet_name}" for target in self._targets),
        )
        return True

    def stop(self, timeout: float = 2.0) -> bool:
        if not self._thread:
            return False
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Scheduled sync stopped")
        return True

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def status(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                "running": self.is_running(),
                "processing": self._state.processing,
                "interval_seconds": self._interval,
                "last_run": self._state.last_run.isoformat() if self._state.last_run else None,
                "last_results": dict(self._state.last_results),
                "replayed": self._state.replayed,
                "targets": [
                    {"collection": target.collection, "sheet_name": target.sheet_name} for target in self._targets
                ],
            }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _run(self) -> None:
        while not self._stop_event.is_set():
            start = time.monotonic()
            try:
                self.run_once()
            except Exception:
                logger.exception("Scheduled sync tick failed")
            elapsed = time.monotonic() - start
            self._stop_event.wait(max(0.0, self._interval - elapsed))

    def run_once(self) -> Dict[str, Dict[str, Any]]:
        """Run one tick synchronously and return the per-target results."""

        with self._state_lock:
            if self._state.processing:
                logger.info("Scheduled sync tick skipped; previous tick still running")
                return {}
            self._state.processing = True

        results: Dict[str, Dict[str, Any]] = {}
        replayed = 0
        try:
            for target in self._targets:
                key = f"{target.collection}->{target.sheet_name}"
                try:
                    results[key] = _result_payload(self._job(target.collection, target.sheet_name))
                except Exception as exc:
                    logger.exception("Scheduled sync of %s failed", key)
                    results[key] = {"success": False, "message": str(exc)}
            if self._dead_letters is not None and self._replay is not None:
                replayed = self._dead_letters.drain(self._replay)
                if replayed:
                    logger.info("Replayed %d dead-lettered syncs", replayed)
        finally:
            with self._state_lock:
                self._state.processing = False
                self._state.last_run = datetime.now(timezone.utc)
                self._state.last_results = results
                self._state.replayed += replayed
        return results


__all__ = ["ScheduledSync", "ScheduledSyncState"]
