"""Google Sheets client helpers with robust A1 range handling.

This module centralises all direct interactions with the Google Sheets API
used by the ledger sync.  It provides a small, well defined surface area that
the rest of the subsystem can rely on without needing to know about HTTP
requests or googleapiclient internals:

* ``values_get`` / ``values_update`` / ``values_append`` / ``values_clear``
  map one-to-one to the ``spreadsheets.values`` endpoints.
* ``batch_update`` forwards formatting and structural requests.
* ``sheet_properties`` and ``ensure_tab`` resolve tab metadata.

All public entry points raise subclasses of
:class:`~core.errors.LedgerSyncError`.  API, auth and network failures surface as
:class:`~core.errors.TransientIOError` and are never retried here; callers
decide whether a failure is worth logging or surfacing.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableSequence, Optional, Sequence

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from core.errors import ConfigurationError, TransientIOError
from core.google_credentials import credentials_from_values, load_service_account_data

logger = logging.getLogger(__name__)

SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)
DEFAULT_LAST_COLUMN = "Z"


def _normalise_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if len(safe) >= 2 and safe[0] == safe[-1] and safe[0] in {"'", '"'}:
        safe = safe[1:-1].replace("''", "'")
    if not safe:
        raise ConfigurationError("Worksheet title must not be empty.")
    safe = safe.replace("'", "''")
    return f"'{safe}'"


def column_letter(index: int) -> str:
    """Return the spreadsheet column letter for a 1-indexed column index."""

    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: MutableSequence[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def a1_range(title: str, range_spec: str) -> str:
    return f"{_normalise_title(title)}!{range_spec}"


def a1_full_range(title: str, *, last_column: str = DEFAULT_LAST_COLUMN) -> str:
    """Return an A1 range spanning every row of columns ``A`` to ``last_column``."""

    return a1_range(title, f"A:{last_column}")


def a1_header_range(title: str) -> str:
    return a1_range(title, "1:1")


def a1_column_range(title: str, column_index: int) -> str:
    """Return the A1 range covering the whole 0-indexed ``column_index``."""

    letter = column_letter(column_index + 1)
    return a1_range(title, f"{letter}:{letter}")


def a1_row_range(title: str, row_number: int, *, columns: int) -> str:
    """Return an A1 range covering 1-indexed ``row_number`` for ``columns`` columns."""

    if row_number < 1:
        raise ValueError("Row number must be >= 1")
    last_column = column_letter(max(1, columns))
    return a1_range(title, f"A{row_number}:{last_column}{row_number}")


def _http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is not None:
        try:
            return int(status)
        except (TypeError, ValueError):
            return 0
    resp = getattr(exc, "resp", None)
    try:
        return int(getattr(resp, "status", 0) or 0)
    except (TypeError, ValueError):
        return 0


class LedgerSheetClient:
    """Concrete helper that speaks to one spreadsheet using the REST API."""

    def __init__(self, spreadsheet_id: str, service) -> None:
        if not spreadsheet_id:
            raise ConfigurationError("GOOGLE_SHEET_ID not configured")
        self._spreadsheet_id = spreadsheet_id
        self._service = service

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    # ------------------------------------------------------------------
    # Values API
    # ------------------------------------------------------------------
    def values_get(self, range_spec: str) -> List[List[str]]:
        """Return the rows stored in ``range_spec`` as lists of strings."""

        response = self._execute(
            "values.get",
            self._service.spreadsheets()
            .values()
            .get(spreadsheetId=self._spreadsheet_id, range=range_spec, majorDimension="ROWS"),
        )
        values = response.get("values", []) if isinstance(response, Mapping) else []
        return [["" if cell is None else str(cell) for cell in row] for row in values]

    def values_update(self, range_spec: str, rows: Sequence[Sequence[Any]]) -> Dict[str, Any]:
        return self._execute(
            "values.update",
            self._service.spreadsheets()
            .values()
            .update(
                spreadsheetId=self._spreadsheet_id,
                range=range_spec,
                valueInputOption="RAW",
                body={"values": [list(row) for row in rows]},
            ),
        )

    def values_append(self, range_spec: str, rows: Sequence[Sequence[Any]]) -> Dict[str, Any]:
        return self._execute(
            "values.append",
            self._service.spreadsheets()
            .values()
            .append(
                spreadsheetId=self._spreadsheet_id,
                range=range_spec,
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": [list(row) for row in rows]},
            ),
        )

    def values_clear(self, range_spec: str) -> Dict[str, Any]:
        return self._execute(
            "values.clear",
            self._service.spreadsheets()
            .values()
            .clear(spreadsheetId=self._spreadsheet_id, range=range_spec, body={}),
        )

    # ------------------------------------------------------------------
    # Spreadsheet API
    # ------------------------------------------------------------------
    def batch_update(self, requests: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
        return self._execute(
            "spreadsheets.batchUpdate",
            self._service.spreadsheets().batchUpdate(
                spreadsheetId=self._spreadsheet_id,
                body={"requests": [dict(request) for request in requests]},
            ),
        )

    def sheet_properties(self) -> Dict[str, int]:
        """Return a ``title → sheetId`` mapping for every tab."""

        metadata = self._execute(
            "spreadsheets.get",
            self._service.spreadsheets().get(spreadsheetId=self._spreadsheet_id, includeGridData=False),
        )
        result: Dict[str, int] = {}
        sheets = metadata.get("sheets", []) if isinstance(metadata, Mapping) else []
        for sheet in sheets:
            props = sheet.get("properties", {}) if isinstance(sheet, Mapping) else {}
            title = props.get("title")
            sheet_id = props.get("sheetId")
            if isinstance(title, str) and isinstance(sheet_id, int):
                result[title] = sheet_id
        return result

    def ensure_tab(self, title: str, headers: Optional[Sequence[str]] = None) -> bool:
        """Create ``title`` when missing and return ``True`` when it was added."""

        if title in self.sheet_properties():
            return False
        self.batch_update([{"addSheet": {"properties": {"title": title}}}])
        if headers:
            last_column = column_letter(len(headers))
            self.values_update(a1_range(title, f"A1:{last_column}1"), [list(headers)])
        logger.info("Created worksheet %s", title)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _execute(self, description: str, request) -> Dict[str, Any]:
        try:
            result = request.execute()
        except HttpError as exc:
            status = _http_status(exc)
            raise TransientIOError(f"Sheets API {description} failed ({status}): {exc}") from exc
        except GoogleAuthError as exc:
            raise TransientIOError(f"Sheets API {description} failed (auth): {exc}") from exc
        except (httplib2.HttpLib2Error, OSError) as exc:
            raise TransientIOError(f"Sheets API {description} failed (network): {exc}") from exc
        return result if isinstance(result, dict) else {}


def _load_credentials(settings):
    path_value = (getattr(settings, "credential_path", "") or "").strip()
    if path_value:
        path = Path(path_value).expanduser()
        if path.exists():
            payload = load_service_account_data(path)
        else:
            logger.warning("Credential file %s not found; falling back to environment", path)
            payload = credentials_from_values(settings.client_email, settings.private_key)
    else:
        payload = credentials_from_values(settings.client_email, settings.private_key)

    try:
        return service_account.Credentials.from_service_account_info(payload, scopes=list(SCOPES))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid service account credentials: {exc}") from exc


def build_client(settings) -> LedgerSheetClient:
    """Factory used by higher level modules to construct a client.

    Raises :class:`ConfigurationError` when credentials or the spreadsheet id
    are missing.
    """

    if not getattr(settings, "spreadsheet_id", ""):
        raise ConfigurationError("GOOGLE_SHEET_ID not configured")
    if not settings.has_credentials():
        raise ConfigurationError("Google Sheets credentials not configured")
    credentials = _load_credentials(settings)
    service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
    return LedgerSheetClient(settings.spreadsheet_id, service)


__all__ = [
    "LedgerSheetClient",
    "SCOPES",
    "a1_column_range",
    "a1_full_range",
    "a1_header_range",
    "a1_range",
    "a1_row_range",
    "build_client",
    "column_letter",
]
