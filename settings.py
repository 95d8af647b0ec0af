"""Application configuration helpers for the registration ledger sync."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from core import app_paths
from db import FORMS, PAYMENTS, USERS


logger = logging.getLogger(__name__)


SYNC_SETTINGS_PATH = str(app_paths.data_path("sync_settings.json"))

FINANCE_SHEET_TITLE = "**Finance (Do Not Open)**"
USERS_SHEET_TITLE = "Users"
REGISTRATIONS_SHEET_TITLE = "Registrations"
DUE_PAYMENTS_SHEET_TITLE = "Due Payments"
FALLBACK_SHEET_TITLE = "Sheet1"

DEFAULT_FEE_PER_PLAYER = 800
DEFAULT_SYNC_INTERVAL_SECONDS = 300
MIN_SYNC_INTERVAL_SECONDS = 5
MAX_SYNC_INTERVAL_SECONDS = 3600

DEFAULT_SHEET_TITLES: Mapping[str, str] = {
    USERS: USERS_SHEET_TITLE,
    PAYMENTS: FINANCE_SHEET_TITLE,
    FORMS: REGISTRATIONS_SHEET_TITLE,
}


@dataclass
class SyncTarget:
    """Represents a collection → worksheet pairing used by full syncs."""

    collection: str
    sheet_name: str


def _default_targets() -> List[SyncTarget]:
    return [SyncTarget(collection=key, sheet_name=value) for key, value in DEFAULT_SHEET_TITLES.items()]


@dataclass
class LedgerSyncSettings:
    spreadsheet_id: str = ""
    client_email: str = ""
    private_key: str = field(default="", repr=False)
    credential_path: str = ""
    mongo_uri: str = "mongodb://localhost:27017"
    database_name: str = "registrations"
    public_base_url: str = "http://localhost:3000"
    sheet_titles: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SHEET_TITLES))
    due_payments_sheet: str = DUE_PAYMENTS_SHEET_TITLE
    fee_per_player: int = DEFAULT_FEE_PER_PLAYER
    sheets_sync_enabled: bool = True
    sync_interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS
    auto_sync_targets: List[SyncTarget] = field(default_factory=_default_targets)
    dead_letter_path: str = ""

    def sheet_for(self, collection: str) -> str:
        """Return the default worksheet title for ``collection``."""

        return self.sheet_titles.get(collection) or FALLBACK_SHEET_TITLE

    def has_credentials(self) -> bool:
        if self.credential_path and os.path.exists(os.path.expanduser(self.credential_path)):
            return True
        return bool(self.client_email.strip() and self.private_key.strip())

    def to_json(self) -> Dict[str, object]:
        # The private key never leaves the environment.
        return {
            "spreadsheet_id": self.spreadsheet_id,
            "client_email": self.client_email,
            "credential_path": self.credential_path,
            "mongo_uri": self.mongo_uri,
            "database_name": self.database_name,
            "public_base_url": self.public_base_url,
            "sheet_titles": dict(self.sheet_titles),
            "due_payments_sheet": self.due_payments_sheet,
            "fee_per_player": self.fee_per_player,
            "sheets_sync_enabled": self.sheets_sync_enabled,
            "sync_interval_seconds": self.sync_interval_seconds,
            "auto_sync_targets": [
                {"collection": target.collection, "sheet_name": target.sheet_name}
                for target in self.auto_sync_targets
            ],
            "dead_letter_path": self.dead_letter_path,
        }


def _parse_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "on"}:
            return True
        if lowered in {"0", "false", "no", "n", "off"}:
            return False
    return default


def _clamp_interval(value: object, default: int) -> int:
    try:
        interval = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(MIN_SYNC_INTERVAL_SECONDS, min(MAX_SYNC_INTERVAL_SECONDS, interval))


def _parse_fee(value: object, default: int) -> int:
    try:
        fee = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return fee if fee > 0 else default


def _parse_targets(value: object) -> Optional[List[SyncTarget]]:
    if not isinstance(value, list):
        return None
    targets: List[SyncTarget] = []
    for entry in value:
        if not isinstance(entry, Mapping):
            continue
        collection = entry.get("collection")
        sheet_name = entry.get("sheet_name")
        if isinstance(collection, str) and isinstance(sheet_name, str) and collection and sheet_name:
            targets.append(SyncTarget(collection=collection, sheet_name=sheet_name))
    return targets


def _read_settings_file(path: str) -> Dict[str, object]:
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Sync settings at %s could not be read: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _apply_file_values(settings: LedgerSyncSettings, data: Mapping[str, object]) -> None:
    for key in (
        "spreadsheet_id",
        "client_email",
        "credential_path",
        "mongo_uri",
        "database_name",
        "public_base_url",
        "due_payments_sheet",
        "dead_letter_path",
    ):
        value = data.get(key)
        if isinstance(value, str):
            setattr(settings, key, value.strip())

    titles = data.get("sheet_titles")
    if isinstance(titles, Mapping):
        for collection, title in titles.items():
            if isinstance(collection, str) and isinstance(title, str) and title.strip():
                settings.sheet_titles[collection] = title.strip()

    if "fee_per_player" in data:
        settings.fee_per_player = _parse_fee(data["fee_per_player"], settings.fee_per_player)
    if "sheets_sync_enabled" in data:
        settings.sheets_sync_enabled = _parse_bool(data["sheets_sync_enabled"], settings.sheets_sync_enabled)
    if "sync_interval_seconds" in data:
        settings.sync_interval_seconds = _clamp_interval(
            data["sync_interval_seconds"], settings.sync_interval_seconds
        )
    targets = _parse_targets(data.get("auto_sync_targets"))
    if targets is not None:
        settings.auto_sync_targets = targets


def _apply_environment(settings: LedgerSyncSettings, environ: Mapping[str, str]) -> None:
    spreadsheet_id = environ.get("GOOGLE_SHEET_ID")
    if spreadsheet_id:
        settings.spreadsheet_id = spreadsheet_id.strip()
    client_email = environ.get("GOOGLE_SERVICE_ACCOUNT_EMAIL") or environ.get("GOOGLE_CLIENT_EMAIL")
    if client_email:
        settings.client_email = client_email.strip()
    private_key = environ.get("GOOGLE_PRIVATE_KEY")
    if private_key:
        settings.private_key = private_key
    credential_path = environ.get("GOOGLE_CREDENTIALS_PATH")
    if credential_path:
        settings.credential_path = credential_path.strip()
    mongo_uri = environ.get("MONGODB_URI")
    if mongo_uri:
        settings.mongo_uri = mongo_uri.strip()
    database_name = environ.get("MONGODB_DB")
    if database_name:
        settings.database_name = database_name.strip()
    base_url = environ.get("NEXTAUTH_URL") or environ.get("ROOT_URL")
    if base_url:
        settings.public_base_url = base_url.strip().rstrip("/")
    if "SHEETS_SYNC_ENABLED" in environ:
        settings.sheets_sync_enabled = environ["SHEETS_SYNC_ENABLED"].strip().lower() != "false"
    if "SYNC_INTERVAL_SECONDS" in environ:
        settings.sync_interval_seconds = _clamp_interval(
            environ["SYNC_INTERVAL_SECONDS"], settings.sync_interval_seconds
        )


def load_sync_settings(
    path: str = SYNC_SETTINGS_PATH,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> LedgerSyncSettings:
    """Return settings merged from defaults, ``path`` and the environment."""

    settings = LedgerSyncSettings()
    _apply_file_values(settings, _read_settings_file(path))
    _apply_environment(settings, os.environ if environ is None else environ)
    if not settings.dead_letter_path:
        settings.dead_letter_path = str(app_paths.queue_path("dead_letters.jsonl"))
    return settings


def save_sync_settings(settings: LedgerSyncSettings, path: str = SYNC_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    payload = settings.to_json()

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


__all__ = [
    "DEFAULT_FEE_PER_PLAYER",
    "DEFAULT_SHEET_TITLES",
    "DUE_PAYMENTS_SHEET_TITLE",
    "FINANCE_SHEET_TITLE",
    "LedgerSyncSettings",
    "REGISTRATIONS_SHEET_TITLE",
    "SyncTarget",
    "USERS_SHEET_TITLE",
    "load_sync_settings",
    "save_sync_settings",
]
