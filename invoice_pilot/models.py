"""Typed containers shared across the pipeline."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from types import MappingProxyType
from typing import Mapping, Optional

LABEL_NONE = "none"


class AccountRole(str, enum.Enum):
    """Which of the two remote accounts a credential or flow belongs to."""

    SOURCE = "gmail"
    DESTINATION = "drive"

    @property
    def display_name(self) -> str:
        return "Gmail" if self is AccountRole.SOURCE else "Google Drive"


@dataclass(frozen=True)
class Credential:
    """Bearer credential for one account role."""

    role: AccountRole
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    granted_scope: str = ""

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        return now >= self.expires_at - margin


@dataclass(frozen=True)
class PkceSession:
    """Ephemeral state of one authorization round-trip; never persisted."""

    role: AccountRole
    code_verifier: str
    code_challenge: str
    state: str
    expected_redirect_port: int
    created_at: datetime


@dataclass(frozen=True)
class SearchCriteria:
    keywords: frozenset[str]
    date_from: date
    date_to: date


@dataclass
class MessageRef:
    """A message matched by the mailbox search."""

    message_id: str
    sender_display_name: str
    sender_address: str
    subject: str = ""
    snippet: str = ""
    received_at: Optional[datetime] = None


@dataclass
class AttachmentRef:
    """A file attachment of a message; bytes are filled in when fetched."""

    message_id: str
    original_filename: str
    byte_size: int
    attachment_id: Optional[str] = None
    mime_type: str = "application/octet-stream"
    raw_bytes: Optional[bytes] = field(default=None, repr=False)


@dataclass(frozen=True)
class DestinationPath:
    """Folder names below the drive root, left to right."""

    segments: tuple[str, ...]

    @classmethod
    def build(cls, base: list[str] | tuple[str, ...], year: int, institution: str) -> "DestinationPath":
        segments = [*base, str(year)]
        if institution and institution != LABEL_NONE:
            segments.append(institution)
        return cls(tuple(segments))

    def __str__(self) -> str:
        return "/".join(self.segments)


class RunStatus(str, enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


@dataclass(frozen=True)
class RunError:
    """One recoverable failure recorded during a run."""

    subject: str
    kind: str
    attempts: int
    detail: str

    def __str__(self) -> str:
        return f"{self.subject}: {self.kind} after {self.attempts} attempt(s): {self.detail}"


@dataclass(frozen=True)
class RunResult:
    """Final, immutable summary of one pipeline run."""

    status: RunStatus
    messages_scanned: int
    attachments_downloaded: int
    attachments_uploaded: int
    attachments_skipped_duplicate: int
    per_institution_counts: Mapping[str, int]
    errors: tuple[RunError, ...]

    @property
    def cancelled(self) -> bool:
        return self.status is RunStatus.CANCELLED

    @property
    def aborted(self) -> bool:
        return self.status is RunStatus.ABORTED

    @classmethod
    def create(
        cls,
        *,
        status: RunStatus,
        messages_scanned: int,
        attachments_downloaded: int,
        attachments_uploaded: int,
        attachments_skipped_duplicate: int,
        per_institution_counts: Mapping[str, int],
        errors: list[RunError] | tuple[RunError, ...],
    ) -> "RunResult":
        return cls(
            status=status,
            messages_scanned=messages_scanned,
            attachments_downloaded=attachments_downloaded,
            attachments_uploaded=attachments_uploaded,
            attachments_skipped_duplicate=attachments_skipped_duplicate,
            per_institution_counts=MappingProxyType(dict(per_institution_counts)),
            errors=tuple(errors),
        )
