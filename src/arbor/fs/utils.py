"""Name validation, unique-name generation, id and time helpers."""

from __future__ import annotations

import mimetypes
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from .exceptions import InvalidArgumentError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

# Reserved filenames (Windows compatibility)
RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9",
}

MAX_NAME_LENGTH = 255


# =============================================================================
# Names
# =============================================================================


def validate_name(name: str) -> tuple[bool, str]:
    """Validate a node name for security and compatibility issues.

    Returns:
        (is_valid, error_message) - error_message is empty if valid
    """
    if not name or not name.strip():
        return False, "Name must not be empty"

    if "\x00" in name:
        return False, "Name contains null bytes"

    for ch in name:
        code = ord(ch)
        if 0x01 <= code <= 0x1F:
            return False, f"Name contains control character: 0x{code:02x}"

    if "/" in name or "\\" in name:
        return False, "Name must not contain path separators"

    if name in (".", ".."):
        return False, f"Reserved name: {name}"

    if len(name) > MAX_NAME_LENGTH:
        return False, f"Name too long (max {MAX_NAME_LENGTH} characters)"

    name_upper = name.upper()
    base_name = name_upper.split(".")[0] if "." in name_upper else name_upper
    if base_name in RESERVED_NAMES:
        return False, f"Reserved filename: {name}"

    return True, ""


def clean_name(name: str) -> str:
    """Strip surrounding whitespace and raise InvalidArgumentError if invalid."""
    name = name.strip() if name else ""
    ok, err = validate_name(name)
    if not ok:
        raise InvalidArgumentError(err)
    return name


def split_extension(name: str) -> tuple[str, str]:
    """Split *name* into (stem, extension-with-dot).

    Only a dot after the first character starts an extension, so
    ``".bashrc"`` and ``"README"`` have none.
    """
    dot = name.rfind(".")
    if dot > 0:
        return name[:dot], name[dot:]
    return name, ""


def numbered_name(name: str, n: int) -> str:
    """``"report.pdf", 2`` -> ``"report (2).pdf"``."""
    stem, ext = split_extension(name)
    return f"{stem} ({n}){ext}"


def unique_name(name: str, taken: Iterable[str] | Callable[[str], bool]) -> str:
    """Return *name*, or the first ``"name (n).ext"`` not already taken.

    *taken* is either a collection of names or a predicate.
    """
    if callable(taken):
        is_taken = taken
    else:
        names = set(taken)
        is_taken = names.__contains__

    if not is_taken(name):
        return name
    n = 1
    while True:
        candidate = numbered_name(name, n)
        if not is_taken(candidate):
            return candidate
        n += 1


def guess_mime_type(name: str) -> str:
    """Guess MIME type from a file name, defaulting to ``application/octet-stream``."""
    mime, _ = mimetypes.guess_type(name)
    return mime or "application/octet-stream"


# =============================================================================
# Ids
# =============================================================================


def new_id() -> str:
    return str(uuid.uuid4())


def is_valid_id(value: object) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def check_id(value: object, what: str = "id") -> str:
    """Return *value* unchanged, or raise InvalidArgumentError if malformed."""
    if not is_valid_id(value):
        raise InvalidArgumentError(f"Malformed {what}: {value!r}")
    return value  # type: ignore[return-value]


def check_ids(values: Iterable[object], what: str = "id") -> list[str]:
    """Validate every id before any is used; order is kept, duplicates dropped."""
    seen: dict[str, None] = {}
    for value in values:
        seen[check_id(value, what)] = None
    if not seen:
        raise InvalidArgumentError(f"At least one {what} is required")
    return list(seen)


# =============================================================================
# Time
# =============================================================================


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_aware(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """True when *expires_at* is set and not in the future."""
    if expires_at is None:
        return False
    return as_aware(expires_at) <= (now or utcnow())
