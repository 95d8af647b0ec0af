"""Player-count bookkeeping between forms, users and verified payments.

The form collection owns the player lists.  Two places hold derived copies:

* ``users.submittedForms[sport]`` drives the participant dashboard;
* ``payments.paymentData`` stores a :class:`PaymentSnapshot` of the counts
  that were paid for when the payment was verified.

This module keeps those copies honest.  :meth:`PlayerCountReconciler.update_form`
validates and applies an admin edit, :meth:`PlayerCountReconciler.reconcile_all`
rebuilds every user's dashboard view, and
:meth:`PlayerCountReconciler.compute_due_payments` reports the owners whose
registered head-count no longer matches what they paid for.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from core.errors import RecordNotFoundError, ValidationError
from core.formatters import player_count
from core.incremental_sync import schedule_record_sync
from db import DUE_PAYMENTS, FORMS, PAYMENTS, USERS, RecordStore, utc_now

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
MAX_REPORT_SAMPLES = 10
PAYABLE_FORM_STATUS = "submitted"
RESOLUTION_STATUSES = ("pending", "in_progress", "resolved")


def dashboard_status(form_status: Optional[str]) -> str:
    return "confirmed" if form_status == "confirmed" else "not_confirmed"


def _number(value: Any) -> float:
    """Parse amounts stored as numbers or as text such as ``"₹4,000"``."""

    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = "".join(ch for ch in str(value) if ch.isdigit() or ch in ".-")
    try:
        return float(cleaned) if cleaned else 0.0
    except ValueError:
        return 0.0


def _as_int(value: float) -> Any:
    return int(value) if float(value).is_integer() else value


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Snapshot value type
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SnapshotEntry:
    players: int
    status: Optional[str] = None


@dataclass(frozen=True)
class PaymentSnapshot:
    """Per-sport player counts that a verified payment covers.

    ``version`` is ``SNAPSHOT_VERSION`` for snapshots written by this module
    and ``0`` for the schema-less blobs found on older payments.  A versioned
    snapshot lists every form the owner had at the time it was taken; an
    unversioned one may cover only some of them.
    """

    submitted_forms: Mapping[str, SnapshotEntry] = field(default_factory=dict)
    version: int = SNAPSHOT_VERSION

    @classmethod
    def parse(cls, raw: Any) -> Optional["PaymentSnapshot"]:
        """Return the snapshot stored in ``raw`` or ``None`` when there is none."""

        if raw in (None, ""):
            return None
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning("Ignoring unparseable payment snapshot")
                return None
        if not isinstance(raw, Mapping):
            return None
        forms = raw.get("submittedForms")
        if not isinstance(forms, Mapping):
            return None

        entries: Dict[str, SnapshotEntry] = {}
        for sport, value in forms.items():
            if not isinstance(value, Mapping):
                continue
            players = value.get("Players")
            if isinstance(players, bool) or not isinstance(players, (int, float)):
                continue
            status = value.get("status")
            entries[str(sport)] = SnapshotEntry(int(players), status if isinstance(status, str) else None)

        version = raw.get("version")
        return cls(entries, version if isinstance(version, int) else 0)

    @property
    def is_complete(self) -> bool:
        return self.version >= SNAPSHOT_VERSION

    def players_for(self, sport: str) -> Optional[int]:
        entry = self.submitted_forms.get(sport)
        return entry.players if entry else None

    def with_players(self, sport: str, players: int) -> "PaymentSnapshot":
        forms = dict(self.submitted_forms)
        previous = forms.get(sport)
        forms[sport] = SnapshotEntry(players, previous.status if previous else None)
        return PaymentSnapshot(forms, SNAPSHOT_VERSION)

    def to_dict(self) -> Dict[str, Any]:
        forms: Dict[str, Any] = {}
        for sport, entry in self.submitted_forms.items():
            payload: Dict[str, Any] = {"Players": entry.players}
            if entry.status:
                payload["status"] = entry.status
            forms[sport] = payload
        return {"version": self.version, "submittedForms": forms}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def estimate_legacy_originals(
    paid: float,
    accommodation: float,
    current_counts: Sequence[int],
    fee: int,
) -> List[int]:
    """Estimate the paid-for player counts of forms that lack a snapshot.

    The sports share of the payment, ``floor((paid - accommodation) / fee)``,
    is spread across the forms in proportion to their current counts.  When
    nothing can be estimated the current counts are returned unchanged.
    """

    total_current = sum(current_counts)
    estimate = math.floor((paid - accommodation) / fee) if fee > 0 else 0
    if estimate <= 0 or total_current <= 0:
        return list(current_counts)
    return [_round_half_up(count / total_current * estimate) for count in current_counts]


def original_counts(
    payment: Mapping[str, Any],
    forms: Sequence[Mapping[str, Any]],
    fee: int,
) -> List[int]:
    """Return the paid-for player count of each form in ``forms``."""

    current = [player_count(form) for form in forms]
    snapshot = PaymentSnapshot.parse(payment.get("paymentData"))
    paid = _number(payment.get("amountInNumbers") or payment.get("amount"))
    accommodation = _number(payment.get("accommodationPrice") or payment.get("accommodation"))

    if snapshot is None:
        return estimate_legacy_originals(paid, accommodation, current, fee)

    originals: List[Optional[int]] = []
    for form, count in zip(forms, current):
        recorded = snapshot.players_for(str(form.get("title") or ""))
        if recorded is None and snapshot.is_complete:
            # Submitted after verification, nothing was paid for it.
            recorded = 0
        originals.append(recorded)

    missing = [index for index, value in enumerate(originals) if value is None]
    if missing:
        covered = sum(value for value in originals if value is not None)
        estimates = estimate_legacy_originals(
            paid - covered * fee, accommodation, [current[index] for index in missing], fee
        )
        for index, value in zip(missing, estimates):
            originals[index] = value
    return [int(value or 0) for value in originals]


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------
@dataclass
class FormDelta:
    form_id: str
    sport: str
    original_players: int
    current_players: int

    @property
    def difference(self) -> int:
        return self.current_players - self.original_players

    def as_dict(self) -> Dict[str, Any]:
        return {
            "formId": self.form_id,
            "sport": self.sport,
            "originalPlayers": self.original_players,
            "currentPlayers": self.current_players,
            "difference": self.difference,
        }


@dataclass
class DuePaymentRecord:
    record_id: str
    user_id: str
    user_name: str
    user_email: str
    university_name: str
    payment_id: str
    transaction_id: str
    original_player_count: int
    current_player_count: int
    amount_due: float
    status: str
    forms: List[FormDelta] = field(default_factory=list)
    resolution_status: str = "pending"

    @property
    def player_difference(self) -> int:
        return self.current_player_count - self.original_player_count

    def as_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.record_id,
            "userId": self.user_id,
            "userName": self.user_name,
            "userEmail": self.user_email,
            "universityName": self.university_name,
            "paymentId": self.payment_id,
            "transactionId": self.transaction_id,
            "originalPlayerCount": self.original_player_count,
            "currentPlayerCount": self.current_player_count,
            "playerDifference": self.player_difference,
            "amountDue": self.amount_due,
            "status": self.status,
            "resolutionStatus": self.resolution_status,
            "forms": [form.as_dict() for form in self.forms],
        }


@dataclass
class ReconcileReport:
    total_users: int = 0
    successful_updates: int = 0
    updates: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    total_updates: int = 0
    failed_updates: int = 0

    def add_update(self, entry: Dict[str, Any]) -> None:
        self.total_updates += 1
        if len(self.updates) < MAX_REPORT_SAMPLES:
            self.updates.append(entry)

    def add_error(self, message: str) -> None:
        self.failed_updates += 1
        if len(self.errors) < MAX_REPORT_SAMPLES:
            self.errors.append(message)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stats": {
                "totalUsers": self.total_users,
                "successfulUpdates": self.successful_updates,
                "failedUpdates": self.failed_updates,
                "totalUpdates": self.total_updates,
            },
            "updates": list(self.updates),
            "errors": list(self.errors),
        }


def _group_by_owner(forms: Iterable[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    grouped: Dict[str, List[Mapping[str, Any]]] = {}
    for form in forms:
        owner_id = form.get("ownerId")
        if not owner_id:
            continue
        grouped.setdefault(str(owner_id), []).append(form)
    return grouped


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------
class PlayerCountReconciler:
    """Apply form edits and keep user and payment copies of player counts in step."""

    def __init__(self, store: RecordStore, runner, sync_engine, settings) -> None:
        self._store = store
        self._runner = runner
        self._sync_engine = sync_engine
        self._settings = settings

    @property
    def fee(self) -> int:
        return int(self._settings.fee_per_player)

    # -- admin edit -------------------------------------------------------
    def update_form(
        self,
        form_id: Any,
        status: Optional[str] = None,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Validate and apply an admin edit to one form.

        Raises :class:`ValidationError` before anything is written when the
        edit would leave the form without players or the owner's verified
        payment with an invalid amount.
        """

        form = self._store.find_by_id(FORMS, form_id)
        if form is None:
            raise RecordNotFoundError(f"Form not found: {form_id}")
        if status is None and fields is None:
            raise ValidationError("Nothing to update")

        payment_values = None
        if fields is not None:
            new_players = player_count({"fields": fields})
            if new_players == 0:
                raise ValidationError("A form must keep at least one player")
            effective_status = status or form.get("status") or "submitted"
            if effective_status == PAYABLE_FORM_STATUS:
                payment_values = self._plan_payment(form, fields, new_players)

        now = utc_now()
        changes: Dict[str, Any] = {"updatedAt": now}
        if status is not None:
            changes["status"] = status
        if fields is not None:
            changes["fields"] = dict(fields)
        self._store.update_by_id(FORMS, form["_id"], changes)
        logger.info("Admin updated form %s (%s)", form["_id"], ", ".join(sorted(changes)))

        updated = self._store.find_by_id(FORMS, form["_id"]) or {**form, **changes}
        self._refresh_owner_view(updated)

        payment_id = None
        if payment_values is not None:
            payment_id, values = payment_values
            values["updatedAt"] = now
            self._store.update_by_id(PAYMENTS, payment_id, values)
            logger.info("Payment %s recomputed to %s", payment_id, values["amount"])

        self._schedule_sync(FORMS, updated["_id"])
        if payment_id is not None:
            self._schedule_sync(PAYMENTS, payment_id)
        return updated

    def _plan_payment(self, form: Mapping[str, Any], fields: Mapping[str, Any], new_players: int):
        owner_id = form.get("ownerId")
        if not owner_id:
            return None
        payment = self._store.find_one(PAYMENTS, {"ownerId": owner_id, "status": "verified"})
        if payment is None:
            return None

        owner_forms = self._store.find(FORMS, {"ownerId": owner_id}) or [form]
        originals = original_counts(payment, owner_forms, self.fee)
        snapshot = PaymentSnapshot(
            {
                str(other.get("title") or ""): SnapshotEntry(count, dashboard_status(other.get("status")))
                for other, count in zip(owner_forms, originals)
            }
        ).with_players(str(form.get("title") or ""), new_players)

        raw_accommodation = fields.get("accommodation_price")
        if raw_accommodation in (None, ""):
            raw_accommodation = payment.get("accommodationPrice") or payment.get("accommodation") or 0
        accommodation = _number(raw_accommodation)
        total = new_players * self.fee + accommodation

        if accommodation < 0:
            raise ValidationError("Accommodation price cannot be negative")
        if total <= 0:
            raise ValidationError("Recomputed payment amount must be positive")

        total_value = _as_int(total)
        return payment["_id"], {
            "amount": f"₹{total_value}",
            "amountInNumbers": total_value,
            "accommodationPrice": _as_int(accommodation),
            "paymentData": snapshot.to_json(),
        }

    def _refresh_owner_view(self, form: Mapping[str, Any]) -> None:
        owner_id = form.get("ownerId")
        title = form.get("title")
        if not owner_id or not title:
            return
        values = {
            f"submittedForms.{title}.Players": player_count(form),
            f"submittedForms.{title}.status": dashboard_status(form.get("status") or "submitted"),
            "updatedAt": utc_now(),
        }
        if not self._store.update_one(USERS, {"_id": owner_id}, values):
            logger.warning("Owner %s of form %s not found", owner_id, form.get("_id"))

    def _schedule_sync(self, collection: str, record_id: Any) -> None:
        if self._runner is None or self._sync_engine is None:
            return
        schedule_record_sync(self._runner, self._sync_engine, collection, record_id)

    # -- verification -----------------------------------------------------
    def record_verification_snapshot(self, payment_id: Any) -> PaymentSnapshot:
        """Write the owner's current per-sport player counts onto the payment."""

        payment = self._store.find_by_id(PAYMENTS, payment_id)
        if payment is None:
            raise RecordNotFoundError(f"Payment not found: {payment_id}")
        forms = self._store.find(FORMS, {"ownerId": payment.get("ownerId")}) if payment.get("ownerId") else []
        snapshot = PaymentSnapshot(
            {
                str(form.get("title") or ""): SnapshotEntry(player_count(form), dashboard_status(form.get("status")))
                for form in forms
            }
        )
        self._store.update_by_id(PAYMENTS, payment["_id"], {"paymentData": snapshot.to_json()})
        logger.info("Recorded verification snapshot for payment %s (%d forms)", payment["_id"], len(forms))
        return snapshot

    # -- repair pass ------------------------------------------------------
    def reconcile_all(self) -> ReconcileReport:
        """Rewrite every owner's ``submittedForms`` from the form collection."""

        grouped = _group_by_owner(self._store.find(FORMS, {}))
        report = ReconcileReport(total_users=len(grouped))
        logger.info("Reconciling submittedForms for %d users", len(grouped))

        for owner_key, forms in grouped.items():
            values: Dict[str, Any] = {}
            entries = []
            for form in forms:
                title = form.get("title")
                if not title:
                    continue
                players = player_count(form)
                status = dashboard_status(form.get("status") or "submitted")
                values[f"submittedForms.{title}.Players"] = players
                values[f"submittedForms.{title}.status"] = status
                entries.append({"userId": owner_key, "sport": title, "players": players, "status": status})
            if not values:
                continue
            values["updatedAt"] = utc_now()
            try:
                self._store.update_one(USERS, {"_id": forms[0]["ownerId"]}, values)
            except Exception as exc:  # one broken user must not stop the pass
                logger.exception("Reconciling user %s failed", owner_key)
                report.add_error(f"Failed to update user {owner_key}: {exc}")
                continue
            report.successful_updates += 1
            for entry in entries:
                report.add_update(entry)

        logger.info(
            "Reconciliation complete: %d/%d users updated", report.successful_updates, report.total_users
        )
        return report

    # -- due payments -----------------------------------------------------
    def compute_due_payments(self) -> List[DuePaymentRecord]:
        """Return every owner whose registered players differ from what was paid."""

        resolutions = self._resolutions()
        records: List[DuePaymentRecord] = []
        verified = self._store.find(PAYMENTS, {"status": "verified"})
        processed = set()

        for payment in verified:
            owner_id = payment.get("ownerId")
            if not owner_id:
                continue
            processed.add(str(owner_id))
            user = self._store.find_one(USERS, {"_id": owner_id})
            if user is None:
                continue
            forms = self._store.find(FORMS, {"ownerId": owner_id})
            originals = original_counts(payment, forms, self.fee)
            deltas = [
                FormDelta(str(form.get("_id")), str(form.get("title") or ""), original, player_count(form))
                for form, original in zip(forms, originals)
            ]
            original_total = sum(originals)
            current_total = sum(delta.current_players for delta in deltas)
            difference = current_total - original_total
            if difference == 0:
                continue
            record_id = str(payment["_id"])
            records.append(
                DuePaymentRecord(
                    record_id=record_id,
                    user_id=str(owner_id),
                    user_name=user.get("name") or "N/A",
                    user_email=user.get("email") or "N/A",
                    university_name=user.get("universityName") or "N/A",
                    payment_id=record_id,
                    transaction_id=payment.get("transactionId") or "N/A",
                    original_player_count=original_total,
                    current_player_count=current_total,
                    amount_due=difference * self.fee,
                    status="pending" if difference > 0 else "overpaid",
                    forms=[delta for delta in deltas if delta.difference != 0],
                    resolution_status=resolutions.get(record_id, "pending"),
                )
            )

        for owner_key, forms in _group_by_owner(self._store.find(FORMS, {})).items():
            if owner_key in processed:
                continue
            owner_id = forms[0]["ownerId"]
            user = self._store.find_one(USERS, {"_id": owner_id})
            if user is None:
                continue
            payment = self._store.find_one(PAYMENTS, {"ownerId": owner_id})
            if payment is not None and payment.get("status") == "verified":
                continue

            accommodation = 0.0
            deltas = []
            for form in forms:
                fields = form.get("fields") if isinstance(form.get("fields"), Mapping) else {}
                if fields.get("accommodation_price"):
                    accommodation = _number(fields["accommodation_price"])
                deltas.append(FormDelta(str(form.get("_id")), str(form.get("title") or ""), 0, player_count(form)))
            total_players = sum(delta.current_players for delta in deltas)
            records.append(
                DuePaymentRecord(
                    record_id=owner_key,
                    user_id=owner_key,
                    user_name=user.get("name") or "N/A",
                    user_email=user.get("email") or "N/A",
                    university_name=user.get("universityName") or "N/A",
                    payment_id=str(payment["_id"]) if payment else "N/A",
                    transaction_id=(payment or {}).get("transactionId") or "No Payment",
                    original_player_count=0,
                    current_player_count=total_players,
                    amount_due=_as_int(total_players * self.fee + accommodation),
                    status="unverified" if payment else "unpaid",
                    forms=deltas,
                    resolution_status=resolutions.get(owner_key, "pending"),
                )
            )

        logger.info("Computed %d due payment records", len(records))
        return records

    def set_resolution_status(self, record_id: str, resolution_status: str, *, updated_by: str = "") -> None:
        if resolution_status not in RESOLUTION_STATUSES:
            raise ValidationError(f"Invalid resolution status: {resolution_status!r}")
        values: Dict[str, Any] = {"resolutionStatus": resolution_status, "lastStatusUpdate": utc_now()}
        if updated_by:
            values["updatedBy"] = updated_by
        self._store.update_one(DUE_PAYMENTS, {"_id": str(record_id)}, values, upsert=True)

    def _resolutions(self) -> Dict[str, str]:
        result: Dict[str, str] = {}
        for entry in self._store.find(DUE_PAYMENTS, {}):
            status = entry.get("resolutionStatus")
            if isinstance(status, str):
                result[str(entry.get("_id"))] = status
        return result


__all__ = [
    "DuePaymentRecord",
    "FormDelta",
    "PaymentSnapshot",
    "PlayerCountReconciler",
    "RESOLUTION_STATUSES",
    "ReconcileReport",
    "SNAPSHOT_VERSION",
    "SnapshotEntry",
    "dashboard_status",
    "estimate_legacy_originals",
    "original_counts",
]
