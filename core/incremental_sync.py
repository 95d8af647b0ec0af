"""Single-record push from the record store into the ledger sheet.

:class:`IncrementalSyncEngine` implements find-or-create for one record:
read the header row and the key column, then either rewrite the matching row
in place or append a new one.  Every outcome is reported as a
:class:`~core.errors.SyncResult`; nothing raised on the sheet side escapes.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from core.errors import ConfigurationError, LedgerSyncError, SyncResult
from core.formatters import (
    SheetLayout,
    format_form_row,
    format_generic_row,
    format_payment_row,
    format_user_row,
    layout_for,
)
from core.sheets_client import (
    LedgerSheetClient,
    a1_column_range,
    a1_header_range,
    a1_range,
    a1_row_range,
)
from db import FORMS, PAYMENTS, USERS, RecordStore, normalise_email

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], LedgerSheetClient]


# ---------------------------------------------------------------------------
# Row rendering shared with the full sync
# ---------------------------------------------------------------------------
def record_key(collection: str, record: Mapping[str, Any]) -> str:
    """Return the identity value written to the key column for ``record``."""

    if collection == USERS:
        return normalise_email(record.get("email"))
    return str(record.get("_id") or "")


def normalise_key(collection: str, value: Any) -> str:
    if collection == USERS:
        return normalise_email(value)
    return str(value or "").strip()


def owner_of(store: RecordStore, record: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    owner_id = record.get("ownerId")
    if not owner_id:
        return None
    try:
        return store.find_by_id(USERS, owner_id)
    except LedgerSyncError:
        logger.warning("Record %s has an unusable ownerId %r", record.get("_id"), owner_id)
        return None


def forms_of(store: RecordStore, owner_id: Any) -> List[Dict[str, Any]]:
    if not owner_id:
        return []
    return store.find(FORMS, {"ownerId": owner_id})


def render_row(
    store: RecordStore,
    collection: str,
    record: Mapping[str, Any],
    layout: SheetLayout,
    *,
    base_url: str = "",
) -> List[str]:
    """Format ``record`` for ``layout``, joining related records where needed."""

    if collection == PAYMENTS:
        owner = owner_of(store, record)
        forms = forms_of(store, record.get("ownerId"))
        return format_payment_row(record, owner, forms, base_url=base_url)
    if collection == USERS:
        return format_user_row(record)
    if collection == FORMS:
        return format_form_row(record, owner_of(store, record))
    return format_generic_row(record, layout.headers)


# ---------------------------------------------------------------------------
# Per-key guard
# ---------------------------------------------------------------------------
LockKey = Tuple[str, str, Optional[str]]


class _KeyLocks:
    """Hands out one lock per ``(spreadsheet, sheet, key)`` within this process.

    A ``None`` key guards the whole sheet.  Entries are dropped once the last
    holder releases them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[LockKey, List[Any]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, spreadsheet_id: str, sheet_name: str, key: Optional[str]) -> Iterator[None]:
        lock_key = (spreadsheet_id, sheet_name, key)
        with self._guard:
            entry = self._locks.setdefault(lock_key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[lock_key]


_KEY_LOCKS = _KeyLocks()


class IncrementalSyncEngine:
    """Push one changed record into its ledger worksheet."""

    def __init__(self, store: RecordStore, client_factory: ClientFactory, settings) -> None:
        self._store = store
        self._client_factory = client_factory
        self._settings = settings

    def sync_record(self, collection: str, record_id: Any, sheet_name: Optional[str] = None) -> SyncResult:
        if not self._settings.sheets_sync_enabled:
            return SyncResult.failed("Sheets sync is disabled")

        try:
            record = self._store.find_by_id(collection, record_id)
        except LedgerSyncError as exc:
            return SyncResult.failed(str(exc))
        if record is None:
            return SyncResult.failed(f"Record not found: {record_id}")

        target = sheet_name or self._settings.sheet_for(collection)
        try:
            client = self._client_factory()
            outcome = self._write(client, collection, record, target)
        except ConfigurationError as exc:
            logger.warning("Sheets sync not configured for %s:%s: %s", collection, record_id, exc)
            return SyncResult.failed(str(exc))
        except LedgerSyncError as exc:
            logger.error("Sync of %s:%s to %s failed: %s", collection, record_id, target, exc)
            return SyncResult.failed(str(exc))

        logger.info("%s %s:%s in %s", outcome, collection, record_id, target)
        return SyncResult.ok(f"Synced {collection}:{record_id} to {target}")

    def _write(self, client: LedgerSheetClient, collection: str, record: Mapping[str, Any], sheet_name: str) -> str:
        header_row = self._header(client, sheet_name)
        if not header_row:
            # Only one writer may seed an empty sheet; later ones see its header.
            with _KEY_LOCKS.hold(client.spreadsheet_id, sheet_name, None):
                header_row = self._header(client, sheet_name)
                if not header_row:
                    layout = self._layout(collection, record, header_row)
                    row = self._render(collection, record, layout)
                    client.values_append(a1_range(sheet_name, "A:A"), [list(layout.headers), row])
                    return "Created sheet header and appended"

        layout = self._layout(collection, record, header_row)
        row = self._render(collection, record, layout)
        key = record_key(collection, record)

        with _KEY_LOCKS.hold(client.spreadsheet_id, sheet_name, key):
            key_index = layout.key_index(header_row)
            column = client.values_get(a1_column_range(sheet_name, key_index))
            row_number = self._find_row(collection, column, key)
            if row_number is None:
                client.values_append(a1_range(sheet_name, "A:A"), [row])
                return "Appended"

            client.values_update(a1_row_range(sheet_name, row_number, columns=len(row)), [row])
            return f"Updated row {row_number} for"

    @staticmethod
    def _header(client: LedgerSheetClient, sheet_name: str) -> Sequence[str]:
        header_rows = client.values_get(a1_header_range(sheet_name))
        return header_rows[0] if header_rows else []

    def _render(self, collection: str, record: Mapping[str, Any], layout: SheetLayout) -> List[str]:
        return render_row(self._store, collection, record, layout, base_url=self._settings.public_base_url)

    @staticmethod
    def _layout(collection: str, record: Mapping[str, Any], header_row: Sequence[str]) -> SheetLayout:
        layout = layout_for(collection, [record])
        if collection in (PAYMENTS, USERS, FORMS) or not header_row:
            return layout
        # Generic sheets keep whatever column order the sheet already has.
        return SheetLayout(collection, tuple(header_row), layout.key_header, layout.legacy_key_index)

    @staticmethod
    def _find_row(collection: str, column: Sequence[Sequence[str]], key: str) -> Optional[int]:
        """Return the 1-indexed sheet row whose key cell equals ``key``."""

        if not key:
            return None
        for index, cells in enumerate(column):
            if index == 0:
                continue
            cell = cells[0] if cells else ""
            if normalise_key(collection, cell) == key:
                return index + 1
        return None


def schedule_record_sync(
    runner,
    engine: IncrementalSyncEngine,
    collection: str,
    record_id: Any,
    sheet_name: Optional[str] = None,
):
    """Submit a detached push of one record, replayable from the dead-letter queue."""

    replay: Dict[str, Any] = {"collection": collection, "record_id": str(record_id)}
    if sheet_name:
        replay["sheet_name"] = sheet_name
    return runner.submit(
        f"sync {collection}:{record_id}",
        engine.sync_record,
        collection,
        str(record_id),
        sheet_name,
        replay=replay,
    )


__all__ = [
    "IncrementalSyncEngine",
    "forms_of",
    "normalise_key",
    "owner_of",
    "record_key",
    "render_row",
    "schedule_record_sync",
]
