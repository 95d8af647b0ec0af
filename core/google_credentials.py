"""Helpers for validating and normalising Google service account credentials."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from core.errors import ConfigurationError

__all__ = [
    "CredentialsFileInvalidError",
    "REQUIRED_FIELDS",
    "credentials_from_values",
    "load_service_account_data",
    "normalise_private_key",
]


class CredentialsFileInvalidError(ConfigurationError):
    """Raised when a service account JSON file is missing required data."""


REQUIRED_FIELDS: Iterable[str] = (
    "type",
    "project_id",
    "private_key_id",
    "private_key",
    "client_email",
    "client_id",
    "token_uri",
    "auth_uri",
    "auth_provider_x509_cert_url",
    "client_x509_cert_url",
)

TOKEN_URI = "https://oauth2.googleapis.com/token"


def normalise_private_key(key: str) -> str:
    """Return ``key`` with escaped newlines expanded and a trailing newline."""

    key = key.replace("\r\n", "\n").replace("\r", "\n")
    key = key.replace("\\n", "\n")
    if not key.endswith("\n"):
        key += "\n"
    return key


def _load_json(path: Path) -> Mapping[str, object]:
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            raw = handle.read()
    except OSError as exc:
        raise CredentialsFileInvalidError(f"JSON file could not be read: {exc}") from exc

    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise CredentialsFileInvalidError("Service account JSON is empty.")

    try:
        return json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"JSON parse error: {exc.msg}") from exc


def _validate_payload(payload: Mapping[str, object]) -> Dict[str, object]:
    data: Dict[str, object] = dict(payload)
    missing: list[str] = []

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            missing.append(field)

    if data.get("type") != "service_account":
        missing.append("type")

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise CredentialsFileInvalidError(f"JSON missing fields: {ordered}")

    private_key = str(data["private_key"])
    data["private_key"] = normalise_private_key(private_key)
    return data


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return validated service account data without modifying ``path``."""

    return _validate_payload(_load_json(path))


def credentials_from_values(
    client_email: Optional[str],
    private_key: Optional[str],
) -> Dict[str, object]:
    """Build the minimal service account payload from environment values.

    ``google-auth`` only needs the client email, the private key and the token
    URI to mint access tokens, which is what deployments that keep the key in
    an environment variable provide.
    """

    email = (client_email or "").strip()
    key = (private_key or "").strip()
    if not email or not key:
        raise ConfigurationError("Google Sheets credentials not configured")
    return {
        "type": "service_account",
        "client_email": email,
        "private_key": normalise_private_key(key),
        "token_uri": TOKEN_URI,
    }
