"""Admin entry points that mutate the store and keep the ledger in step.

Each mutation writes to the record store first and then schedules detached
sheet syncs for every record it touched.  Sheet failures never reach the
caller; :class:`~core.errors.ValidationError` and
:class:`~core.errors.RecordNotFoundError` do.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from core.dead_letter import DeadLetterQueue
from core.detached import DetachedTaskRunner
from core.errors import RecordNotFoundError, SyncResult, ValidationError
from core.full_sync import FullSync, FullSyncResult
from core.incremental_sync import IncrementalSyncEngine, schedule_record_sync
from core.player_reconciliation import DuePaymentRecord, PlayerCountReconciler, ReconcileReport
from core.pull_reconciler import PullReconciler, PullResult
from core.scheduled_sync import ScheduledSync
from core.sheets_client import LedgerSheetClient, build_client
from db import PAYMENTS, USERS, RecordStore, connect, utc_now

logger = logging.getLogger(__name__)

PAYMENT_FIELDS = ("transactionId", "amount", "status", "registrationStatus", "sendEmail")
USER_FIELDS = ("name", "phone", "universityName", "emailVerified", "registrationDone", "paymentDone", "deleted")

REGISTRATION_STATUS_BY_PAYMENT_STATUS = {
    "verified": "Confirmed",
    "rejected": "Rejected",
    "pending": "In Progress",
}


def _allowed_changes(changes: Mapping[str, Any], allowed) -> Dict[str, Any]:
    return {key: changes[key] for key in allowed if key in changes}


def cached_client_factory(settings) -> Callable[[], LedgerSheetClient]:
    """Return a factory that builds the Sheets client once and reuses it."""

    cache: List[LedgerSheetClient] = []

    def factory() -> LedgerSheetClient:
        if not cache:
            cache.append(build_client(settings))
        return cache[0]

    return factory


class AdminActions:
    def __init__(
        self,
        store: RecordStore,
        client_factory: Callable[[], LedgerSheetClient],
        settings,
        runner: Optional[DetachedTaskRunner] = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self.runner = runner or DetachedTaskRunner(dead_letters=DeadLetterQueue(settings.dead_letter_path))
        self.engine = IncrementalSyncEngine(store, client_factory, settings)
        self.puller = PullReconciler(store, client_factory, settings)
        self.full = FullSync(store, client_factory, settings)
        self.players = PlayerCountReconciler(store, self.runner, self.engine, settings)

    # ------------------------------------------------------------------
    # Sheet operations
    # ------------------------------------------------------------------
    def push_collection(self, collection: str, sheet_name: Optional[str] = None) -> FullSyncResult:
        return self.full.full_sync(collection, sheet_name)

    def pull_sheet(self, sheet_name: Optional[str], collection: str) -> PullResult:
        return self.puller.pull_from_sheet(sheet_name, collection)

    def sync_record(self, collection: str, record_id: Any, sheet_name: Optional[str] = None) -> SyncResult:
        return self.engine.sync_record(collection, record_id, sheet_name)

    def sync_due_payments(self) -> FullSyncResult:
        return self.full.push_due_payments(self.players.compute_due_payments())

    # ------------------------------------------------------------------
    # Store mutations
    # ------------------------------------------------------------------
    def update_payment(self, payment_id: Any, changes: Mapping[str, Any]) -> Dict[str, Any]:
        payment = self._store.find_by_id(PAYMENTS, payment_id)
        if payment is None:
            raise RecordNotFoundError(f"Payment not found: {payment_id}")
        values = _allowed_changes(changes, PAYMENT_FIELDS)
        if not values:
            raise ValidationError("No updatable payment fields supplied")

        status = values.get("status")
        if status in REGISTRATION_STATUS_BY_PAYMENT_STATUS:
            values["registrationStatus"] = REGISTRATION_STATUS_BY_PAYMENT_STATUS[status]
        values["updatedAt"] = utc_now()
        self._store.update_by_id(PAYMENTS, payment["_id"], values)
        logger.info("Admin updated payment %s (%s)", payment["_id"], ", ".join(sorted(values)))

        owner_id = payment.get("ownerId") or payment.get("userId")
        if owner_id and status is not None:
            self._store.update_one(USERS, {"_id": owner_id}, {"paymentDone": status == "verified"})
        if status == "verified":
            self.players.record_verification_snapshot(payment["_id"])

        schedule_record_sync(self.runner, self.engine, PAYMENTS, payment["_id"])
        if owner_id:
            schedule_record_sync(self.runner, self.engine, USERS, owner_id)
        return self._store.find_by_id(PAYMENTS, payment["_id"]) or {**payment, **values}

    def update_user(self, user_id: Any, changes: Mapping[str, Any]) -> Dict[str, Any]:
        user = self._store.find_by_id(USERS, user_id)
        if user is None:
            raise RecordNotFoundError(f"User not found: {user_id}")
        values = _allowed_changes(changes, USER_FIELDS)
        if not values:
            raise ValidationError("No updatable user fields supplied")
        if "deleted" in values:
            values["deletedAt"] = utc_now() if values["deleted"] else None
        values["updatedAt"] = utc_now()
        self._store.update_by_id(USERS, user["_id"], values)
        logger.info("Admin updated user %s (%s)", user["_id"], ", ".join(sorted(values)))

        schedule_record_sync(self.runner, self.engine, USERS, user["_id"])
        return self._store.find_by_id(USERS, user["_id"]) or {**user, **values}

    def update_form(
        self,
        form_id: Any,
        status: Optional[str] = None,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        form = self.players.update_form(form_id, status=status, fields=fields)
        self.runner.submit("sync due payments", self.sync_due_payments)
        return form

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------
    def reconcile(self) -> ReconcileReport:
        return self.players.reconcile_all()

    def due_payments(self) -> List[DuePaymentRecord]:
        return self.players.compute_due_payments()

    def set_due_payment_status(self, record_id: str, resolution_status: str, *, updated_by: str = "") -> None:
        self.players.set_resolution_status(record_id, resolution_status, updated_by=updated_by)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------
    def replay_dead_letter(self, entry: Mapping[str, object]) -> bool:
        collection = entry.get("collection")
        record_id = entry.get("record_id")
        if not isinstance(collection, str) or not record_id:
            logger.warning("Discarding dead letter without a record reference: %s", entry)
            return True
        sheet_name = entry.get("sheet_name")
        if not isinstance(sheet_name, str):
            sheet_name = None
        result = self.engine.sync_record(collection, str(record_id), sheet_name)
        return result.success

    def scheduled_sync(self) -> ScheduledSync:
        return ScheduledSync(
            self.push_collection,
            self._settings.sync_interval_seconds,
            self._settings.auto_sync_targets,
            dead_letters=self.runner.dead_letters,
            replay=self.replay_dead_letter,
        )

    def close(self) -> None:
        self.runner.shutdown(wait=True)


def create_admin_actions(settings, *, synchronous: bool = False) -> AdminActions:
    """Wire an :class:`AdminActions` against the configured MongoDB and spreadsheet."""

    store = connect(settings)
    runner = DetachedTaskRunner(dead_letters=DeadLetterQueue(settings.dead_letter_path), synchronous=synchronous)
    return AdminActions(store, cached_client_factory(settings), settings, runner)


__all__ = [
    "AdminActions",
    "PAYMENT_FIELDS",
    "USER_FIELDS",
    "cached_client_factory",
    "create_admin_actions",
]
