"""Exception hierarchy and result types shared by the ledger sync modules.

Only :class:`ValidationError` is allowed to reach the caller of an admin
mutation.  Everything raised by the sheet side is converted into a
:class:`SyncResult` (or one of the aggregate results) at the sync boundary.
"""
from __future__ import annotations

from dataclasses import dataclass


class LedgerSyncError(Exception):
    """Base error for the ledger synchronisation subsystem."""


class RecordNotFoundError(LedgerSyncError):
    """Raised when a store record or sheet row cannot be located."""


class ConfigurationError(LedgerSyncError):
    """Raised when credentials or the spreadsheet identifier are missing."""


class ValidationError(LedgerSyncError):
    """Raised when a mutation would leave a payment in an invalid state."""


class TransientIOError(LedgerSyncError):
    """Raised when the Sheets API call fails (network, auth, quota)."""


class MalformedRowError(LedgerSyncError):
    """Raised when a sheet row carries a key that cannot be parsed."""


@dataclass(slots=True)
class SyncResult:
    """Outcome of a single best-effort sheet operation."""

    success: bool
    message: str

    @classmethod
    def ok(cls, message: str) -> "SyncResult":
        return cls(success=True, message=message)

    @classmethod
    def failed(cls, message: str) -> "SyncResult":
        return cls(success=False, message=message)

    def as_dict(self) -> dict:
        return {"success": self.success, "message": self.message}


__all__ = [
    "ConfigurationError",
    "LedgerSyncError",
    "MalformedRowError",
    "RecordNotFoundError",
    "SyncResult",
    "TransientIOError",
    "ValidationError",
]
