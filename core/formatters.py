"""Row formatting between store records and ledger worksheets.

Forward direction: one pure function per collection turns a record (joined
with its related records where needed) into a fixed-width row whose column
order matches :class:`SheetLayout.headers`.

Reverse direction: :func:`extract_updates` reads a sheet row back into a
``$set`` payload, consulting only the allow-listed header rules in
:data:`PULL_RULES`.  Columns without a rule are ignored.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from bson import ObjectId

from db import FORMS, PAYMENTS, USERS, normalise_email

IST = timezone(timedelta(hours=5, minutes=30), name="Asia/Kolkata")

FINANCE_HEADERS: Tuple[str, ...] = (
    "Date",
    "Time",
    "Transaction ID",
    "Payment ID",
    "Payment Amount",
    "Account Holder Name",
    "University",
    "Sports",
    "Category",
    "Player Count",
    "Contact Number",
    "Email",
    "Payment Proof",
    "Status",
    "Send Email?",
)

USER_HEADERS: Tuple[str, ...] = (
    "Name",
    "Email",
    "Contact Number",
    "University",
    "Email Verified",
    "Registration Done",
    "Payment Done",
    "Created At",
)

REGISTRATION_HEADERS: Tuple[str, ...] = (
    "Form ID",
    "Sport/Event",
    "Status",
    "University Name",
    "User Email",
    "User Phone",
    "Created At",
    "Updated At",
    "Player Count",
    "Player Names",
    "Player Emails",
    "Player Phones",
    "POC/Coach Name",
    "POC/Coach Email",
    "POC/Coach Phone",
)

DUE_PAYMENT_HEADERS: Tuple[str, ...] = (
    "Date",
    "Time",
    "User Name",
    "Email",
    "University",
    "Transaction ID",
    "Sports Modified",
    "Original Players",
    "Current Players",
    "Player Difference",
    "Amount Due (₹)",
    "Payment Status",
    "Resolution Status",
)

GENERIC_KEY_HEADER = "Document ID"


@dataclass(frozen=True)
class SheetLayout:
    """Header layout and identity column for one collection's worksheet."""

    collection: str
    headers: Tuple[str, ...]
    key_header: str
    legacy_key_index: int

    @property
    def width(self) -> int:
        return len(self.headers)

    def key_index(self, header_row: Sequence[str]) -> int:
        """Resolve the key column from ``header_row`` by name.

        Falls back to the legacy fixed position when the header row is empty or
        does not carry the key header.
        """

        wanted = self.key_header.strip().lower()
        for index, header in enumerate(header_row):
            if str(header).strip().lower() == wanted:
                return index
        return self.legacy_key_index


FINANCE_LAYOUT = SheetLayout(PAYMENTS, FINANCE_HEADERS, "Payment ID", 3)
USERS_LAYOUT = SheetLayout(USERS, USER_HEADERS, "Email", 1)
REGISTRATIONS_LAYOUT = SheetLayout(FORMS, REGISTRATION_HEADERS, "Form ID", 0)

LAYOUTS: Mapping[str, SheetLayout] = {
    PAYMENTS: FINANCE_LAYOUT,
    USERS: USERS_LAYOUT,
    FORMS: REGISTRATIONS_LAYOUT,
}


def layout_for(collection: str, documents: Iterable[Mapping[str, Any]] = ()) -> SheetLayout:
    """Return the layout for ``collection``; unknown collections get a generic one."""

    layout = LAYOUTS.get(collection)
    if layout is not None:
        return layout
    return SheetLayout(collection, generic_headers(documents), GENERIC_KEY_HEADER, 0)


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------
def text(value: Any) -> str:
    """Render ``value`` as a cell; missing values become an empty string."""

    if value is None:
        return ""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, bool):
        return "Yes" if value else "No"
    return str(value)


def yes_no(value: Any) -> str:
    return "Yes" if value else "No"


def _to_ist(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    else:
        raw = str(value).strip()
        try:
            moment = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(IST)


def _meridiem(moment: datetime) -> str:
    return "am" if moment.hour < 12 else "pm"


def format_date(value: Any) -> str:
    """``dd/mm/yyyy`` in Asia/Kolkata."""

    moment = _to_ist(value)
    return moment.strftime("%d/%m/%Y") if moment else ""


def format_time(value: Any) -> str:
    """``hh:mm am`` in Asia/Kolkata."""

    moment = _to_ist(value)
    if not moment:
        return ""
    hour = moment.hour % 12 or 12
    return f"{hour:02d}:{moment.minute:02d} {_meridiem(moment)}"


def format_timestamp(value: Any) -> str:
    """``dd/mm/yyyy, h:mm:ss am`` in Asia/Kolkata; unparseable text passes through."""

    moment = _to_ist(value)
    if not moment:
        return "" if value in (None, "") else str(value)
    hour = moment.hour % 12 or 12
    return f"{moment:%d/%m/%Y}, {hour}:{moment.minute:02d}:{moment.second:02d} {_meridiem(moment)}"


def player_fields(form: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    fields = form.get("fields") if isinstance(form, Mapping) else None
    if not isinstance(fields, Mapping):
        return []
    players = fields.get("playerFields")
    if not isinstance(players, list):
        return []
    return [player for player in players if isinstance(player, Mapping)]


def player_count(form: Mapping[str, Any]) -> int:
    fields = form.get("fields") if isinstance(form, Mapping) else None
    if not isinstance(fields, Mapping):
        return 0
    players = fields.get("playerFields")
    return len(players) if isinstance(players, list) else 0


def _coach(form: Mapping[str, Any]) -> Mapping[str, Any]:
    fields = form.get("fields")
    if isinstance(fields, Mapping) and isinstance(fields.get("coachFields"), Mapping):
        return fields["coachFields"]
    return {}


# ---------------------------------------------------------------------------
# Forward formatters
# ---------------------------------------------------------------------------
def format_payment_row(
    payment: Mapping[str, Any],
    owner: Optional[Mapping[str, Any]],
    forms: Sequence[Mapping[str, Any]],
    *,
    base_url: str = "",
    now: Optional[datetime] = None,
) -> List[str]:
    owner = owner or {}
    sports = ", ".join(text(form.get("title")) for form in forms if form.get("title"))
    total_players = sum(player_count(form) for form in forms)
    category = "Individual" if total_players == 1 else "Team"
    paid_at = payment.get("paymentDate") or now or datetime.now(timezone.utc)
    proof = payment.get("paymentProof")
    proof_url = f"{base_url.rstrip('/')}/api/payments/proof/{proof}" if proof else ""
    amount = payment.get("amountInNumbers") or payment.get("amount")

    return [
        format_date(paid_at),
        format_time(paid_at),
        text(payment.get("transactionId")),
        text(payment.get("_id")),
        text(amount),
        text(payment.get("payeeName")),
        text(owner.get("universityName")),
        sports,
        category,
        str(total_players),
        text(owner.get("phone")),
        text(owner.get("email")),
        proof_url,
        text(payment.get("registrationStatus") or "Not Started"),
        yes_no(payment.get("sendEmail")),
    ]


def format_user_row(user: Mapping[str, Any]) -> List[str]:
    return [
        text(user.get("name")),
        normalise_email(user.get("email")),
        text(user.get("phone")),
        text(user.get("universityName")),
        yes_no(user.get("emailVerified")),
        yes_no(user.get("registrationDone")),
        yes_no(user.get("paymentDone")),
        format_timestamp(user.get("createdAt")),
    ]


def format_form_row(form: Mapping[str, Any], owner: Optional[Mapping[str, Any]]) -> List[str]:
    owner = owner or {}
    players = player_fields(form)
    coach = _coach(form)

    def _joined(*keys: str) -> str:
        values = []
        for player in players:
            value = next((player.get(key) for key in keys if player.get(key)), "")
            values.append(text(value))
        return " | ".join(values)

    return [
        text(form.get("_id")),
        text(form.get("title")),
        text(form.get("status")),
        text(owner.get("universityName")),
        text(owner.get("email")),
        text(owner.get("phone")),
        format_timestamp(form.get("createdAt")),
        format_timestamp(form.get("updatedAt")),
        str(len(players)),
        _joined("name", "playerName"),
        _joined("email"),
        _joined("phone"),
        text(coach.get("name")),
        text(coach.get("email")),
        text(coach.get("phone") or coach.get("contact")),
    ]


def generic_headers(documents: Iterable[Mapping[str, Any]]) -> Tuple[str, ...]:
    keys = set()
    for document in documents:
        keys.update(key for key in document.keys() if key != "_id")
    return (GENERIC_KEY_HEADER,) + tuple(sorted(keys))


def _generic_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, ensure_ascii=False, sort_keys=True)
    if isinstance(value, datetime):
        return format_timestamp(value)
    return text(value)


def format_generic_row(document: Mapping[str, Any], headers: Sequence[str]) -> List[str]:
    row = [text(document.get("_id"))]
    for header in headers[1:]:
        row.append(_generic_cell(document.get(header)))
    return row


def format_due_payment_row(record, *, now: Optional[datetime] = None) -> List[str]:
    moment = now or datetime.now(timezone.utc)
    sports = ", ".join(
        f"{delta.sport} ({'+' if delta.difference > 0 else ''}{delta.difference})" for delta in record.forms
    )
    return [
        format_date(moment),
        format_time(moment),
        record.user_name or "N/A",
        record.user_email or "N/A",
        record.university_name or "N/A",
        record.transaction_id or "No Payment",
        sports,
        str(record.original_player_count),
        str(record.current_player_count),
        str(record.player_difference),
        str(record.amount_due),
        record.status or "pending",
        record.resolution_status or "pending",
    ]


# ---------------------------------------------------------------------------
# Reverse direction
# ---------------------------------------------------------------------------
Converter = Callable[[str], Any]


def _as_text(value: str) -> str:
    return value.strip()


def _as_yes(value: str) -> bool:
    return value.strip().lower() == "yes"


@dataclass(frozen=True)
class PullRule:
    """Maps any header containing ``header_fragment`` onto ``field``."""

    header_fragment: str
    field: str
    convert: Converter


PULL_RULES: Mapping[str, Tuple[PullRule, ...]] = {
    PAYMENTS: (
        PullRule("status", "registrationStatus", _as_text),
        PullRule("send email", "sendEmail", _as_yes),
    ),
    USERS: (
        PullRule("email verified", "emailVerified", _as_yes),
        PullRule("registration done", "registrationDone", _as_yes),
        PullRule("payment done", "paymentDone", _as_yes),
    ),
}


def resolve_pull_columns(header_row: Sequence[str], collection: str) -> List[Tuple[int, PullRule]]:
    """Return ``(column index, rule)`` pairs for the allow-listed headers present.

    Each rule binds to the first header whose lower-cased text contains the
    fragment.
    """

    lowered = [str(header).strip().lower() for header in header_row]
    columns: List[Tuple[int, PullRule]] = []
    for rule in PULL_RULES.get(collection, ()):
        for index, header in enumerate(lowered):
            if rule.header_fragment in header:
                columns.append((index, rule))
                break
    return columns


def extract_updates(
    header_row: Sequence[str],
    data_row: Sequence[Any],
    collection: str,
    *,
    columns: Optional[Sequence[Tuple[int, PullRule]]] = None,
) -> Dict[str, Any]:
    """Build the ``$set`` payload for one sheet row from allow-listed columns only."""

    resolved = columns if columns is not None else resolve_pull_columns(header_row, collection)
    updates: Dict[str, Any] = {}
    for index, rule in resolved:
        if index >= len(data_row):
            continue
        cell = data_row[index]
        if cell is None or str(cell).strip() == "":
            continue
        updates[rule.field] = rule.convert(str(cell))
    return updates


__all__ = [
    "DUE_PAYMENT_HEADERS",
    "FINANCE_HEADERS",
    "FINANCE_LAYOUT",
    "IST",
    "LAYOUTS",
    "PULL_RULES",
    "PullRule",
    "REGISTRATION_HEADERS",
    "REGISTRATIONS_LAYOUT",
    "SheetLayout",
    "USERS_LAYOUT",
    "USER_HEADERS",
    "extract_updates",
    "format_date",
    "format_due_payment_row",
    "format_form_row",
    "format_generic_row",
    "format_payment_row",
    "format_time",
    "format_timestamp",
    "format_user_row",
    "generic_headers",
    "layout_for",
    "player_count",
    "resolve_pull_columns",
]
