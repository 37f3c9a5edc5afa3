"""Shared fixtures and in-memory fakes for the invoice pipeline test suite."""

from __future__ import annotations

import base64
import itertools
import threading
import time
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Callable, Sequence
from unittest.mock import MagicMock

import pytest

from invoice_pilot.config import Settings
from invoice_pilot.credential_store import CredentialStore
from invoice_pilot.errors import AuthRejected
from invoice_pilot.models import AccountRole, AttachmentRef, Credential, MessageRef, SearchCriteria
from invoice_pilot.utils import utcnow


def make_credential(
    role: AccountRole,
    *,
    expires_in: timedelta = timedelta(hours=1),
    access_token: str | None = None,
    refresh_token: str | None = "refresh-token",
) -> Credential:
    return Credential(
        role=role,
        access_token=access_token or f"{role.value}-access",
        refresh_token=refresh_token,
        expires_at=utcnow() + expires_in,
        granted_scope="scope",
    )


def make_response(
    status: int = 200,
    json_body=None,
    *,
    text: str = "",
    headers: dict | None = None,
) -> MagicMock:
    """Build a stand-in for ``requests.Response``."""
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.headers = headers or {}
    if json_body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = json_body
    return response


class FakeIssuer:
    """Token endpoint stand-in that counts refreshes."""

    def __init__(self, role: AccountRole, *, delay: float = 0.0) -> None:
        self.role = role
        self.delay = delay
        self.reject = False
        self.calls = 0
        self._lock = threading.Lock()

    def refresh(self, refresh_token: str) -> Credential:
        with self._lock:
            self.calls += 1
            number = self.calls
        if self.delay:
            time.sleep(self.delay)
        if self.reject:
            raise AuthRejected(self.role, "invalid_grant")
        return make_credential(
            self.role, access_token=f"{self.role.value}-refreshed-{number}", refresh_token=refresh_token
        )


class FakeMailSource:
    """Mailbox holding messages with their attachments."""

    def __init__(self, messages: Sequence[tuple[MessageRef, list[AttachmentRef]]] = ()) -> None:
        self.messages = list(messages)
        self.search_error: Exception | None = None
        self.get_errors: dict[str, list[Exception]] = {}
        self.fetch_errors: dict[str, list[Exception]] = {}
        self.fetch_calls: list[str] = []

    def search(self, criteria: SearchCriteria) -> list[MessageRef]:
        if self.search_error is not None:
            raise self.search_error
        return [MessageRef(message.message_id, "", "") for message, _ in self.messages]

    def get_message(self, message_id: str) -> MessageRef:
        pending = self.get_errors.get(message_id)
        if pending:
            raise pending.pop(0)
        for message, _ in self.messages:
            if message.message_id == message_id:
                return message
        raise KeyError(message_id)

    def fetch_attachments(self, message_id: str) -> list[AttachmentRef]:
        self.fetch_calls.append(message_id)
        pending = self.fetch_errors.get(message_id)
        if pending:
            raise pending.pop(0)
        for message, attachments in self.messages:
            if message.message_id == message_id:
                return [
                    AttachmentRef(
                        message_id=a.message_id,
                        original_filename=a.original_filename,
                        byte_size=a.byte_size,
                        mime_type=a.mime_type,
                        raw_bytes=a.raw_bytes,
                    )
                    for a in attachments
                ]
        return []


class FakeFileSink:
    """Folder tree and files kept in memory, keyed by (parent id, name)."""

    def __init__(self) -> None:
        self.folders: dict[tuple[str, str], str] = {}
        self.files: dict[tuple[str, str], bytes] = {}
        self.ensure_calls: list[tuple[tuple[str, ...], str]] = []
        self.upload_errors: dict[str, list[Exception]] = {}
        self.on_upload: Callable[[str], None] | None = None
        self.upload_delay = 0.0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def ensure_path(self, segments: Sequence[str], parent_id: str = "root") -> str:
        with self._lock:
            self.ensure_calls.append((tuple(segments), parent_id))
            folder_id = parent_id
            for name in segments:
                key = (folder_id, name)
                if key not in self.folders:
                    self.folders[key] = f"folder-{next(self._ids)}"
                folder_id = self.folders[key]
            return folder_id

    def exists(self, folder_id: str, filename: str) -> bool:
        with self._lock:
            return (folder_id, filename) in self.files

    def upload(self, folder_id: str, filename: str, content: bytes, mime_type: str | None = None) -> str:
        if self.upload_delay:
            time.sleep(self.upload_delay)
        with self._lock:
            pending = self.upload_errors.get(filename)
            if pending:
                raise pending.pop(0)
            self.files[(folder_id, filename)] = content
            file_id = f"file-{next(self._ids)}"
        if self.on_upload is not None:
            self.on_upload(filename)
        return file_id

    def path_of(self, folder_id: str) -> str:
        """Render a folder id back into its ``a/b/c`` path."""
        parents = {child: (parent, name) for (parent, name), child in self.folders.items()}
        names = []
        while folder_id in parents:
            folder_id, name = parents[folder_id]
            names.append(name)
        return "/".join(reversed(names))

    def listing(self) -> set[str]:
        return {f"{self.path_of(folder)}/{name}" for folder, name in self.files}


def make_message(
    message_id: str,
    *,
    sender: str = "Wise",
    address: str = "billing@wise.com",
    subject: str = "Your monthly statement",
    received: datetime | None = datetime(2025, 3, 3, 9, 30, tzinfo=UTC),
) -> MessageRef:
    return MessageRef(
        message_id=message_id,
        sender_display_name=sender,
        sender_address=address,
        subject=subject,
        snippet="",
        received_at=received,
    )


def make_attachment(message_id: str, filename: str, content: bytes = b"%PDF-1.4") -> AttachmentRef:
    return AttachmentRef(
        message_id=message_id,
        original_filename=filename,
        byte_size=len(content),
        mime_type="application/pdf",
        raw_bytes=content,
    )


@pytest.fixture
def issuers() -> dict[AccountRole, FakeIssuer]:
    return {role: FakeIssuer(role) for role in AccountRole}


@pytest.fixture
def store(tmp_path: Path, issuers: dict[AccountRole, FakeIssuer]) -> CredentialStore:
    return CredentialStore(tmp_path / "tokens", issuers)


@pytest.fixture
def authorized_store(store: CredentialStore) -> CredentialStore:
    for role in AccountRole:
        store.put(role, make_credential(role))
    return store


@pytest.fixture
def criteria() -> SearchCriteria:
    return SearchCriteria(
        keywords=frozenset({"statement"}),
        date_from=date(2025, 3, 1),
        date_to=date(2025, 3, 31),
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        GOOGLE_GMAIL_CLIENT_ID="gmail-id",
        GOOGLE_GMAIL_CLIENT_SECRET="gmail-secret",
        GOOGLE_DRIVE_CLIENT_ID="drive-id",
        GOOGLE_DRIVE_CLIENT_SECRET="drive-secret",
        GOOGLE_DRIVE_FOLDER_LOCATION="billing/all-expenses",
        FETCH_INVOICES_DAY="5",
        TARGET_KEYWORDS_TO_FETCH_AND_DOWNLOAD="invoice, statement",
        TOKEN_DIR=str(tmp_path / "tokens"),
        OPEN_BROWSER="false",
    )


GMAIL_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"


def b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def gmail_metadata(message_id: str, sender: str, subject: str = "Invoice", internal_date: str = "1741000000000"):
    return {
        "id": message_id,
        "snippet": f"snippet {message_id}",
        "internalDate": internal_date,
        "payload": {
            "headers": [
                {"name": "From", "value": sender},
                {"name": "Subject", "value": subject},
            ]
        },
    }


class FakeGmail:
    """Routes ``session.get`` calls to canned Gmail API payloads."""

    def __init__(self):
        self.listings = {}
        self.messages = {}
        self.full = {}
        self.attachments = {}
        self.statuses: dict[str, int] = {}
        self.requests = []

    def __call__(self, url, headers=None, params=None, timeout=None):
        self.requests.append((url, params, headers))
        if url == f"{GMAIL_BASE}/messages":
            key = (params["q"], params.get("pageToken"))
            return make_response(json_body=self.listings.get(key, {}))
        if "/attachments/" in url:
            attachment_id = url.rsplit("/", 1)[1]
            return make_response(json_body=self.attachments[attachment_id])
        message_id = url.rsplit("/", 1)[1]
        if message_id in self.statuses:
            return make_response(self.statuses[message_id], text="Requested entity was not found.")
        if dict(params).get("format") == "full":
            return make_response(json_body=self.full[message_id])
        return make_response(json_body=self.messages[message_id])

    def session(self) -> MagicMock:
        session = MagicMock()
        session.get.side_effect = self
        return session
