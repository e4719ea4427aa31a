import logging
from typing import Any, Mapping, Optional

from .models import UNTITLED, CredentialEntry

logger = logging.getLogger(__name__)

# Lookup order per canonical field. Plain names are top-level keys of the raw
# entry; ("StringFields", name) reads the server's custom string-field map.
_STRING_FIELDS = "StringFields"

FIELD_ALIASES: dict[str, tuple] = {
    "uuid": ("uuid", "UUID", "Uuid"),
    "title": ("title", "Title", "Name"),
    "username": ("username", "Username", "Login", (_STRING_FIELDS, "UserName"), (_STRING_FIELDS, "username")),
    "password": ("password", "Password", (_STRING_FIELDS, "Password")),
    "url": ("url", "Url", "URL"),
    "notes": ("notes", "Notes"),
    "group": ("group", "Group", "GroupPath"),
}


def _string_fields(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Read the custom string fields in either the map or the KeePassHTTP list form."""
    fields = raw.get(_STRING_FIELDS)
    if fields is None:
        fields = raw.get("stringFields")
    if isinstance(fields, Mapping):
        return dict(fields)
    out: dict[str, Any] = {}
    if isinstance(fields, list):
        for pair in fields:
            if not isinstance(pair, Mapping):
                continue
            name = pair.get("Key", pair.get("key"))
            if isinstance(name, str) and name not in out:
                out[name] = pair.get("Value", pair.get("value"))
    return out


def _as_text(value: Any) -> Optional[str]:
    # Nested objects are not a value for a scalar field.
    if value is None or isinstance(value, (Mapping, list, tuple)):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve(raw: Mapping[str, Any], field: str) -> Optional[str]:
    """Return the first present alias of `field`, or None."""
    extras = None
    for alias in FIELD_ALIASES[field]:
        if isinstance(alias, tuple):
            if extras is None:
                extras = _string_fields(raw)
            value = _as_text(extras.get(alias[1]))
        else:
            value = _as_text(raw.get(alias))
        if value is not None:
            return value
    return None


def normalize(raw: Mapping[str, Any]) -> CredentialEntry:
    """Map one raw server record to a CredentialEntry.

    A value counts as present when it is not null, so an empty string still
    wins over a later alias. Title is the exception: a blank title falls back
    to "Untitled" so the canonical title is never empty.
    """
    if not isinstance(raw, Mapping):
        raw = {}
    title = resolve(raw, "title")
    if title is None or not title.strip():
        title = UNTITLED
    return CredentialEntry(
        uuid=resolve(raw, "uuid"),
        title=title,
        username=resolve(raw, "username"),
        password=resolve(raw, "password"),
        url=resolve(raw, "url"),
        notes=resolve(raw, "notes"),
        group=resolve(raw, "group"),
    )


def normalize_all(raw_entries) -> list[CredentialEntry]:
    entries = [normalize(raw) for raw in (raw_entries or [])]
    logger.debug("Normalized %d entries", len(entries))
    return entries
