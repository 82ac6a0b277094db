"""
Normalizers

Map raw connector/upload payloads onto IdentityRecord. Every raw key that is not a
canonical column is kept as an attribute (sanitized to a column-safe identifier) so the
schema registry can discover and register it.
"""

import hashlib
import json
import re
from datetime import datetime
from typing import Any
from typing import Callable
from typing import Dict
from typing import Mapping
from typing import Optional

from identity_sync.clock import parse_iso
from identity_sync.enums import Source
from identity_sync.models.identity import CANONICAL_COLUMNS
from identity_sync.models.identity import IdentityRecord

# Active Directory userAccountControl flag ACCOUNTDISABLE
UAC_ACCOUNT_DISABLE = 0x2

MAX_IDENTIFIER_LENGTH = 63

INACTIVE_STRINGS = frozenset({"false", "0", "inactive", "disabled", "nein", "no"})

# Upload column auto-mapping; keys are lowercased with spaces, "_" and "-" removed
UPLOAD_COLUMN_MAP = {
    "email": "email",
    "mail": "email",
    "emailaddress": "email",
    "firstname": "first_name",
    "givenname": "first_name",
    "vorname": "first_name",
    "lastname": "last_name",
    "surname": "last_name",
    "nachname": "last_name",
    "displayname": "display_name",
    "fullname": "display_name",
    "name": "display_name",
    "department": "department",
    "abteilung": "department",
    "title": "job_title",
    "jobtitle": "job_title",
    "position": "job_title",
    "phone": "phone",
    "tel": "phone",
    "telephone": "phone",
    "active": "is_active",
    "enabled": "is_active",
    "status": "is_active",
    "isactive": "is_active",
    "externalid": "external_id",
}

_NON_IDENTIFIER = re.compile(r"[^A-Za-z0-9_]+")


def sanitize_field_name(name: str) -> Optional[str]:
    """
    Turn a raw attribute name into a column-safe identifier.

    Returns None for names with nothing usable left (e.g. "---").
    """
    cleaned = _NON_IDENTIFIER.sub("_", str(name).strip()).strip("_")
    if not cleaned:
        return None
    if cleaned[0].isdigit():
        cleaned = f"f_{cleaned}"
    return cleaned[:MAX_IDENTIFIER_LENGTH]


def flatten_value(value: Any) -> Any:
    """Reduce list and dict values to scalars the stores can hold."""
    if isinstance(value, (list, tuple)):
        items = [flatten_value(item) for item in value if item is not None]
        if not items:
            return None
        if len(items) == 1:
            return items[0]
        return ", ".join(str(item) for item in items)
    if isinstance(value, dict):
        return json.dumps(value, default=str, sort_keys=True)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def first_value(value: Any) -> Any:
    """LDAP attributes are multi-valued; take the first value."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def collect_attributes(raw: Mapping[str, Any], transform: Callable[[Any], Any] = flatten_value) -> Dict[str, Any]:
    """Sanitized, flattened copy of every non-canonical raw key."""
    attributes: Dict[str, Any] = {}
    for key, value in raw.items():
        field_name = sanitize_field_name(key)
        if field_name is None or field_name in CANONICAL_COLUMNS:
            continue
        attributes[field_name] = transform(value)
    return attributes


def _display_name(first_name: Optional[str], last_name: Optional[str]) -> Optional[str]:
    return " ".join(part for part in (first_name, last_name) if part) or None


# ════════════════════════════════════════════════════════════════════════════
# Directory (Microsoft Graph)
# ════════════════════════════════════════════════════════════════════════════


def normalize_directory_user(raw: Mapping[str, Any], now: datetime) -> Optional[IdentityRecord]:
    """Graph user -> IdentityRecord. None when the user has neither mail nor UPN."""
    email = _text(raw.get("mail")) or _text(raw.get("userPrincipalName"))
    user_id = _text(raw.get("id"))
    if not email or not user_id:
        return None

    first_name = _text(raw.get("givenName"))
    last_name = _text(raw.get("surname"))
    return IdentityRecord(
        id=f"{Source.DIRECTORY.value}_{user_id}",
        email=email,
        first_name=first_name,
        last_name=last_name,
        display_name=_text(raw.get("displayName")) or _display_name(first_name, last_name),
        is_active=raw.get("accountEnabled") is not False,
        last_synced_at=now,
        source=Source.DIRECTORY,
        external_id=user_id,
        created_at=parse_iso(raw.get("createdDateTime")),
        attributes=collect_attributes(raw),
    )


# ════════════════════════════════════════════════════════════════════════════
# LDAP
# ════════════════════════════════════════════════════════════════════════════


def ldap_record_id(dn: str) -> str:
    """Stable id from the entry DN (DNs are too long and too similar to use as a prefix)."""
    digest = hashlib.sha1(dn.lower().encode("utf-8")).hexdigest()[:20]
    return f"{Source.LDAP.value}_{digest}"


def ldap_is_active(user_account_control: Any) -> bool:
    value = first_value(user_account_control)
    if value is None or value == "":
        return True
    try:
        return not int(value) & UAC_ACCOUNT_DISABLE
    except (TypeError, ValueError):
        return True


def normalize_ldap_entry(raw: Mapping[str, Any], now: datetime) -> Optional[IdentityRecord]:
    """LDAP entry -> IdentityRecord. None when the entry has no mail."""
    dn = _text(first_value(raw.get("dn")))
    email = _text(first_value(raw.get("mail")))
    if not email or not dn:
        return None

    first_name = _text(first_value(raw.get("givenName")))
    last_name = _text(first_value(raw.get("sn")))
    display_name = (
        _text(first_value(raw.get("displayName")))
        or _text(first_value(raw.get("cn")))
        or _display_name(first_name, last_name)
    )
    attributes = collect_attributes(raw, transform=lambda value: flatten_value(first_value(value)))
    # Group membership is the one attribute where every value matters
    if "memberOf" in attributes:
        attributes["memberOf"] = flatten_value(raw.get("memberOf"))

    return IdentityRecord(
        id=ldap_record_id(dn),
        email=email,
        first_name=first_name,
        last_name=last_name,
        display_name=display_name,
        is_active=ldap_is_active(raw.get("userAccountControl")),
        last_synced_at=now,
        source=Source.LDAP,
        external_id=dn,
        attributes=attributes,
    )


# ════════════════════════════════════════════════════════════════════════════
# Upload / manual
# ════════════════════════════════════════════════════════════════════════════


def column_key(column: str) -> str:
    return re.sub(r"[\s_\-]+", "", str(column).strip().lower())


def parse_active_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return True
    return str(value).strip().lower() not in INACTIVE_STRINGS


def map_upload_row(row: Mapping[str, Any], mapping: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Rename upload columns onto canonical names.

    An explicit ``mapping`` (source column -> target field) wins; other columns are
    auto-mapped by name, and unknown columns are kept under their own name.
    """
    mapped: Dict[str, Any] = {}
    for column, value in row.items():
        if mapping and column in mapping:
            target = mapping[column]
        else:
            target = UPLOAD_COLUMN_MAP.get(column_key(column), column)
        if target == "is_active":
            value = parse_active_flag(value)
        # First column wins when two map onto the same target
        if target in mapped and mapped[target] not in (None, ""):
            continue
        mapped[target] = value
    return mapped


def normalize_pushed_row(source: Source, row: Mapping[str, Any], now: datetime) -> Optional[IdentityRecord]:
    """Already-mapped upload/manual row -> IdentityRecord. None without an email."""
    email = _text(row.get("email"))
    if not email:
        return None

    first_name = _text(row.get("first_name"))
    last_name = _text(row.get("last_name"))
    is_active = row.get("is_active")
    return IdentityRecord(
        id=_text(row.get("id")),
        email=email,
        first_name=first_name,
        last_name=last_name,
        display_name=_text(row.get("display_name")) or _display_name(first_name, last_name),
        is_active=True if is_active is None else parse_active_flag(is_active),
        last_synced_at=now,
        source=source,
        external_id=_text(row.get("external_id")),
        attributes=collect_attributes(row),
    )


NORMALIZERS: Dict[Source, Callable[[Mapping[str, Any], datetime], Optional[IdentityRecord]]] = {
    Source.DIRECTORY: normalize_directory_user,
    Source.LDAP: normalize_ldap_entry,
}


def normalize(source: Source, raw: Mapping[str, Any], now: datetime) -> Optional[IdentityRecord]:
    normalizer = NORMALIZERS.get(source)
    if normalizer is None:
        return normalize_pushed_row(source, raw, now)
    return normalizer(raw, now)
