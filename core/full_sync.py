"""Destructive clear-and-rewrite of whole ledger worksheets."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from core.errors import ConfigurationError, LedgerSyncError
from core.formatters import (
    DUE_PAYMENT_HEADERS,
    format_due_payment_row,
    format_form_row,
    format_generic_row,
    format_payment_row,
    format_user_row,
    layout_for,
)
from core.sheets_client import LedgerSheetClient, a1_range, column_letter
from db import FORMS, PAYMENTS, USERS, RecordStore

logger = logging.getLogger(__name__)

CLEAR_RANGE = "A1:ZZ"
MAX_BATCH_CELLS = 20000
HEADER_BACKGROUND = {"red": 0.85, "green": 0.85, "blue": 0.85}


@dataclass
class FullSyncResult:
    success: bool
    message: str
    count: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "count": self.count}


def _chunk_rows(matrix: Sequence[List[Any]], max_cells: Optional[int] = None) -> Iterator[Tuple[int, List[List[Any]]]]:
    if not matrix:
        return
    max_cells = max_cells or MAX_BATCH_CELLS
    column_count = max(len(row) for row in matrix) or 1
    rows_per_chunk = max(1, max_cells // column_count)
    for start in range(0, len(matrix), rows_per_chunk):
        yield start, [list(row) for row in matrix[start : start + rows_per_chunk]]


def header_format_request(sheet_id: int, width: int) -> Dict[str, Any]:
    return {
        "repeatCell": {
            "range": {
                "sheetId": sheet_id,
                "startRowIndex": 0,
                "endRowIndex": 1,
                "startColumnIndex": 0,
                "endColumnIndex": width,
            },
            "cell": {
                "userEnteredFormat": {
                    "textFormat": {"bold": True},
                    "backgroundColor": dict(HEADER_BACKGROUND),
                }
            },
            "fields": "userEnteredFormat(textFormat,backgroundColor)",
        }
    }


class FullSync:
    """Rewrite a worksheet from the full contents of one collection."""

    def __init__(self, store: RecordStore, client_factory: Callable[[], LedgerSheetClient], settings) -> None:
        self._store = store
        self._client_factory = client_factory
        self._settings = settings

    def build_matrix(self, collection: str) -> Tuple[Sequence[str], List[List[str]]]:
        """Return the header and every formatted row for ``collection``."""

        documents = self._store.find(collection, {})
        layout = layout_for(collection, documents)
        if collection == PAYMENTS:
            users = {str(user["_id"]): user for user in self._store.find(USERS, {})}
            forms_by_owner: Dict[str, List[Mapping[str, Any]]] = {}
            for form in self._store.find(FORMS, {}):
                forms_by_owner.setdefault(str(form.get("ownerId")), []).append(form)
            rows = [
                format_payment_row(
                    payment,
                    users.get(str(payment.get("ownerId"))),
                    forms_by_owner.get(str(payment.get("ownerId")), []),
                    base_url=self._settings.public_base_url,
                )
                for payment in documents
            ]
        elif collection == USERS:
            rows = [format_user_row(user) for user in documents]
        elif collection == FORMS:
            users = {str(user["_id"]): user for user in self._store.find(USERS, {})}
            rows = [format_form_row(form, users.get(str(form.get("ownerId")))) for form in documents]
        else:
            rows = [format_generic_row(document, layout.headers) for document in documents]
        return layout.headers, rows

    def full_sync(self, collection: str, sheet_name: Optional[str] = None) -> FullSyncResult:
        target = sheet_name or self._settings.sheet_for(collection)
        try:
            headers, rows = self.build_matrix(collection)
            client = self._client_factory()
            client.values_clear(a1_range(target, CLEAR_RANGE))
            self._write(client, target, [list(headers)] + rows, start_row=1)
        except ConfigurationError as exc:
            return FullSyncResult(False, str(exc))
        except LedgerSyncError as exc:
            logger.error("Full sync of %s into %s failed: %s", collection, target, exc)
            return FullSyncResult(False, str(exc))

        self._format_header(client, target, len(headers))
        logger.info("Full sync wrote %d %s records to %s", len(rows), collection, target)
        return FullSyncResult(True, f"Synced {len(rows)} records to {target}", len(rows))

    def push_due_payments(self, records: Sequence[Any], sheet_name: Optional[str] = None) -> FullSyncResult:
        """Replace the data rows of the due-payments tab with ``records``."""

        target = sheet_name or self._settings.due_payments_sheet
        rows = [format_due_payment_row(record) for record in records]
        last_column = column_letter(len(DUE_PAYMENT_HEADERS))
        try:
            client = self._client_factory()
            client.ensure_tab(target, DUE_PAYMENT_HEADERS)
            client.values_clear(a1_range(target, f"A2:{last_column}"))
            if rows:
                self._write(client, target, rows, start_row=2)
        except ConfigurationError as exc:
            return FullSyncResult(False, str(exc))
        except LedgerSyncError as exc:
            logger.error("Writing due payments to %s failed: %s", target, exc)
            return FullSyncResult(False, str(exc))

        logger.info("Synced %d due payment records to %s", len(rows), target)
        return FullSyncResult(True, f"Successfully synced {len(rows)} due payment records", len(rows))

    @staticmethod
    def _write(client: LedgerSheetClient, sheet_name: str, matrix: Sequence[List[Any]], *, start_row: int) -> None:
        for offset, chunk in _chunk_rows(matrix):
            client.values_update(a1_range(sheet_name, f"A{start_row + offset}"), chunk)

    @staticmethod
    def _format_header(client: LedgerSheetClient, sheet_name: str, width: int) -> None:
        try:
            sheet_id = client.sheet_properties().get(sheet_name)
            if sheet_id is None:
                logger.warning("Worksheet %s has no sheetId; header left unformatted", sheet_name)
                return
            client.batch_update([header_format_request(sheet_id, width)])
        except LedgerSyncError as exc:
            logger.warning("Formatting header of %s failed: %s", sheet_name, exc)


__all__ = ["FullSync", "FullSyncResult", "header_format_request"]
