"""Sheet to store reconciliation for the allow-listed ledger columns."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.errors import ConfigurationError, LedgerSyncError, MalformedRowError
from core.formatters import PULL_RULES, extract_updates, layout_for, resolve_pull_columns
from core.sheets_client import LedgerSheetClient, a1_full_range
from db import USERS, RecordStore, email_filter, normalise_email, parse_object_id, utc_now

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10


@dataclass
class PullResult:
    success: bool = True
    message: str = ""
    updated_count: int = 0
    not_found_count: int = 0
    skipped_count: int = 0
    errors: List[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(message)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "updated": self.updated_count,
            "notFound": self.not_found_count,
            "skipped": self.skipped_count,
            "errors": list(self.errors),
        }


class PullReconciler:
    """Apply allow-listed sheet edits back onto store records."""

    def __init__(self, store: RecordStore, client_factory: Callable[[], LedgerSheetClient], settings) -> None:
        self._store = store
        self._client_factory = client_factory
        self._settings = settings

    def pull_from_sheet(self, sheet_name: Optional[str], collection: str) -> PullResult:
        target = sheet_name or self._settings.sheet_for(collection)
        if not PULL_RULES.get(collection):
            return PullResult(message=f"No pullable columns for collection {collection}")

        try:
            client = self._client_factory()
            rows = client.values_get(a1_full_range(target))
        except ConfigurationError as exc:
            return PullResult(success=False, message=str(exc))
        except LedgerSyncError as exc:
            logger.error("Reading %s for pull into %s failed: %s", target, collection, exc)
            return PullResult(success=False, message=str(exc))

        if len(rows) < 2:
            return PullResult(message="No data to pull from sheet")

        header_row = rows[0]
        result = PullResult()
        key_index = layout_for(collection).key_index(header_row)
        columns = resolve_pull_columns(header_row, collection)

        for offset, row in enumerate(rows[1:], start=2):
            self._apply_row(collection, row, key_index, header_row, columns, offset, result)

        result.message = f"Successfully pulled and updated {result.updated_count} records"
        logger.info(
            "Pulled %s into %s: %d updated, %d not found, %d skipped",
            target,
            collection,
            result.updated_count,
            result.not_found_count,
            result.skipped_count,
        )
        return result

    def _apply_row(
        self,
        collection: str,
        row: Sequence[str],
        key_index: int,
        header_row: Sequence[str],
        columns,
        row_number: int,
        result: PullResult,
    ) -> None:
        raw_key = row[key_index].strip() if key_index < len(row) else ""
        if not raw_key:
            result.skipped_count += 1
            return

        try:
            query = self._match_filter(collection, raw_key)
        except MalformedRowError as exc:
            result.skipped_count += 1
            result.record_error(f"Row {row_number}: {exc}")
            return

        updates = extract_updates(header_row, row, collection, columns=columns)
        if not updates:
            result.skipped_count += 1
            return
        updates["updatedAt"] = utc_now()

        try:
            matched = self._store.update_one(collection, query, updates)
        except Exception as exc:  # store failures are per-row
            logger.exception("Applying row %d of %s failed", row_number, collection)
            result.record_error(f"Row {row_number}: {exc}")
            return
        if matched:
            result.updated_count += 1
        else:
            result.not_found_count += 1

    @staticmethod
    def _match_filter(collection: str, raw_key: str) -> Dict[str, Any]:
        if collection == USERS:
            if "@" not in raw_key:
                raise MalformedRowError(f"Invalid email key: {raw_key!r}")
            return email_filter(normalise_email(raw_key))
        return {"_id": parse_object_id(raw_key)}


__all__ = ["MAX_REPORTED_ERRORS", "PullReconciler", "PullResult"]
