"""Utility helpers shared across modules."""

from __future__ import annotations

import re
from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def from_epoch_millis(value: str | int | None) -> datetime | None:
    """Convert Gmail's ``internalDate`` (epoch milliseconds) into aware UTC."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


def sanitize_sender_name(name: str) -> str:
    """Lowercase, hyphen-joined form of a sender name for use in filenames.

    ``"LangFuse GmbH"`` becomes ``"langfuse-gmbh"``.
    """
    words = []
    for word in name.lower().split():
        cleaned = "".join(ch for ch in word if ch.isalnum())
        if cleaned:
            words.append(cleaned)
    return "-".join(words)


def safe_filename(filename: str) -> str:
    """Strip path separators so an attachment name stays a single path segment."""
    cleaned = re.sub(r"[\\/]+", "_", filename).strip()
    return cleaned or "attachment"


def prefixed_filename(sender_prefix: str, filename: str) -> str:
    filename = safe_filename(filename)
    if not sender_prefix:
        return filename
    return f"{sender_prefix}-{filename}"
