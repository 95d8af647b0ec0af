"""Fire-and-forget execution of sheet syncs with a defined error sink."""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from core.dead_letter import DeadLetterQueue

logger = logging.getLogger(__name__)


class DetachedTaskRunner:
    """Run best-effort tasks off the caller's path.

    A task fails when it raises or returns a result (such as
    :class:`~core.errors.SyncResult`) whose ``success`` flag is false.
    Failures are logged with the task name and, when the task was submitted
    with a ``replay`` payload, written to the dead-letter queue.  The caller
    never sees the outcome.
    """

    def __init__(
        self,
        max_workers: int = 4,
        dead_letters: Optional[DeadLetterQueue] = None,
        *,
        synchronous: bool = False,
    ) -> None:
        self._dead_letters = dead_letters
        self._synchronous = synchronous
        self._executor: Optional[ThreadPoolExecutor] = None
        if not synchronous:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ledger-sync")

    @property
    def dead_letters(self) -> Optional[DeadLetterQueue]:
        return self._dead_letters

    def submit(
        self,
        name: str,
        func: Callable[..., Any],
        *args: Any,
        replay: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Optional[Future]:
        if self._executor is None:
            self._run(name, func, args, kwargs, replay)
            return None
        return self._executor.submit(self._run, name, func, args, kwargs, replay)

    def _run(self, name, func, args, kwargs, replay) -> None:
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            logger.exception("Detached task %s failed", name)
            self._dead_letter(name, str(exc), replay)
            return
        if getattr(result, "success", True) is False:
            message = getattr(result, "message", "")
            logger.error("Detached task %s failed: %s", name, message)
            self._dead_letter(name, message, replay)
            return
        logger.debug("Detached task %s finished", name)

    def _dead_letter(self, name: str, message: str, replay: Optional[Dict[str, Any]]) -> None:
        if self._dead_letters is None or replay is None:
            return
        entry = {
            "task": name,
            "error": message,
            "failed_at": datetime.now(timezone.utc).isoformat(),
            **replay,
        }
        try:
            self._dead_letters.append([entry])
        except OSError:
            logger.exception("Could not record dead letter for %s", name)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


__all__ = ["DetachedTaskRunner"]
