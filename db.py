"""Record store access for users, registration forms and payments.

The sync subsystem talks to MongoDB through :class:`RecordStore`, a narrow
wrapper exposing point lookups, scans and targeted ``$set`` updates.  Any
object that offers the pymongo ``Database[...]`` collection surface
(``find_one``, ``find``, ``update_one``) can back the store.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from bson import ObjectId
from pymongo import MongoClient

from core.errors import MalformedRowError

logger = logging.getLogger(__name__)

USERS = "users"
FORMS = "form"
PAYMENTS = "payments"
DUE_PAYMENTS = "duePayments"

IdLike = Union[str, ObjectId]
Filter = Mapping[str, Any]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_object_id(value: Any) -> bool:
    if isinstance(value, ObjectId):
        return True
    if not isinstance(value, str):
        return False
    return bool(re.fullmatch(r"[0-9a-fA-F]{24}", value.strip()))


def parse_object_id(value: IdLike) -> ObjectId:
    """Return ``value`` as an :class:`ObjectId`.

    Only 24 character hexadecimal strings are accepted; anything else raises
    :class:`MalformedRowError` before it can reach the store.
    """

    if isinstance(value, ObjectId):
        return value
    if not is_valid_object_id(value):
        raise MalformedRowError(f"Invalid record id: {value!r}")
    return ObjectId(str(value).strip())


def normalise_email(value: Any) -> str:
    return str(value or "").strip().lower()


def email_filter(email: str) -> Dict[str, Any]:
    """Return a case-insensitive, anchored filter matching ``email``."""

    normalised = normalise_email(email)
    return {"email": {"$regex": f"^{re.escape(normalised)}$", "$options": "i"}}


class RecordStore:
    """Thin adapter over a pymongo ``Database``."""

    def __init__(self, database) -> None:
        self._database = database

    def _collection(self, name: str):
        return self._database[name]

    def find_one(self, collection: str, id_or_filter: Union[IdLike, Filter]) -> Optional[Dict[str, Any]]:
        if isinstance(id_or_filter, Mapping):
            query = dict(id_or_filter)
        else:
            query = {"_id": parse_object_id(id_or_filter)}
        return self._collection(collection).find_one(query)

    def find_by_id(self, collection: str, record_id: IdLike) -> Optional[Dict[str, Any]]:
        return self.find_one(collection, record_id)

    def find(self, collection: str, query: Optional[Filter] = None) -> List[Dict[str, Any]]:
        return list(self._collection(collection).find(dict(query or {})))

    def update_one(
        self,
        collection: str,
        query: Filter,
        values: Mapping[str, Any],
        *,
        upsert: bool = False,
    ) -> bool:
        """Apply ``$set`` with ``values`` and return ``True`` when a record matched or was inserted."""

        result = self._collection(collection).update_one(dict(query), {"$set": dict(values)}, upsert=upsert)
        if getattr(result, "matched_count", 0):
            return True
        return upsert and getattr(result, "upserted_id", None) is not None

    def update_by_id(self, collection: str, record_id: IdLike, values: Mapping[str, Any]) -> bool:
        return self.update_one(collection, {"_id": parse_object_id(record_id)}, values)


def connect(settings) -> RecordStore:
    """Open a :class:`RecordStore` for the database configured in ``settings``."""

    client = MongoClient(settings.mongo_uri, tz_aware=True)
    logger.info("Connected to MongoDB database %s", settings.database_name)
    return RecordStore(client[settings.database_name])


__all__ = [
    "DUE_PAYMENTS",
    "FORMS",
    "PAYMENTS",
    "RecordStore",
    "USERS",
    "connect",
    "email_filter",
    "is_valid_object_id",
    "normalise_email",
    "parse_object_id",
    "utc_now",
]
