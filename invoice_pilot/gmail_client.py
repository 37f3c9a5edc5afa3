"""Gmail helper focused on message search and attachment retrieval."""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import date, timedelta
from email.utils import parseaddr
from typing import Iterator

import requests
from requests import Response

from .credential_store import CredentialStore
from .errors import AuthError, RemoteFault
from .http import read_json, send
from .models import AccountRole, AttachmentRef, MessageRef, SearchCriteria
from .utils import from_epoch_millis

logger = logging.getLogger(__name__)


def build_search_query(keyword: str, date_from: date, date_to: date) -> str:
    """Gmail query for one keyword; ``before:`` is exclusive so it gets the next day."""
    before = date_to + timedelta(days=1)
    return (
        f"{keyword} has:attachment "
        f"after:{date_from.year}/{date_from.month}/{date_from.day} "
        f"before:{before.year}/{before.month}/{before.day}"
    )


def parse_sender(from_header: str) -> tuple[str, str]:
    """Split a ``From`` header into (display name, address)."""
    name, address = parseaddr(from_header or "")
    return name.strip().strip('"'), address.strip()


def decode_body_data(data: str) -> bytes:
    """Decode Gmail's base64url payloads, restoring stripped padding."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError) as exc:
        raise RemoteFault(f"Gmail returned malformed attachment data: {exc}") from exc


class GmailClient:
    """Thin wrapper over the Gmail REST API for the source account."""

    GMAIL_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
    SERVICE = "Gmail"

    def __init__(self, store: CredentialStore, session: requests.Session | None = None) -> None:
        self.store = store
        self.session = session or requests.Session()

    def search(self, criteria: SearchCriteria) -> list[MessageRef]:
        """Return every message matching any keyword within the date range.

        Only ids are listed here; sender and subject come from ``get_message``.
        """
        message_ids: dict[str, None] = {}
        for keyword in sorted(criteria.keywords):
            query = build_search_query(keyword, criteria.date_from, criteria.date_to)
            logger.debug("Searching Gmail with query %r", query)
            for message_id in self._iter_message_ids(query):
                message_ids.setdefault(message_id, None)

        logger.info("Gmail search matched %s message(s)", len(message_ids))
        return [MessageRef(message_id, "", "") for message_id in message_ids]

    def get_message(self, message_id: str) -> MessageRef:
        """Sender, subject, snippet and date of one message."""
        params = [
            ("format", "metadata"),
            ("metadataHeaders", "From"),
            ("metadataHeaders", "Subject"),
        ]
        response = self._get(f"{self.GMAIL_BASE}/messages/{message_id}", params=params)
        raw = read_json(response, self.SERVICE)
        raw.setdefault("id", message_id)
        return self._to_message(raw)

    def fetch_attachments(self, message_id: str) -> list[AttachmentRef]:
        """Return the message's file attachments with their bytes populated."""
        response = self._get(f"{self.GMAIL_BASE}/messages/{message_id}", params={"format": "full"})
        payload = read_json(response, self.SERVICE).get("payload") or {}

        attachments: list[AttachmentRef] = []
        for part in self._iter_parts(payload):
            filename = part.get("filename") or ""
            body = part.get("body") or {}
            if not filename:
                continue
            if body.get("attachmentId"):
                ref = AttachmentRef(
                    message_id=message_id,
                    original_filename=filename,
                    byte_size=body.get("size", 0),
                    attachment_id=body["attachmentId"],
                    mime_type=part.get("mimeType") or "application/octet-stream",
                )
                ref.raw_bytes = self.download_attachment(message_id, body["attachmentId"])
            elif body.get("data"):
                content = decode_body_data(body["data"])
                ref = AttachmentRef(
                    message_id=message_id,
                    original_filename=filename,
                    byte_size=len(content),
                    mime_type=part.get("mimeType") or "application/octet-stream",
                    raw_bytes=content,
                )
            else:
                continue
            attachments.append(ref)

        if not attachments:
            logger.info("No downloadable attachments found in message %s", message_id)
        return attachments

    def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Download attachment bytes."""
        url = f"{self.GMAIL_BASE}/messages/{message_id}/attachments/{attachment_id}"
        data = read_json(self._get(url), self.SERVICE).get("data")
        if data is None:
            raise RemoteFault(f"Attachment {attachment_id} of message {message_id} has no data")
        return decode_body_data(data)

    def _iter_message_ids(self, query: str) -> Iterator[str]:
        params: dict[str, str] = {"q": query}
        while True:
            payload = read_json(self._get(f"{self.GMAIL_BASE}/messages", params=params), self.SERVICE)
            for raw in payload.get("messages") or []:
                yield raw["id"]
            page_token = payload.get("nextPageToken")
            if not page_token:
                return
            params = {"q": query, "pageToken": page_token}

    @staticmethod
    def _to_message(raw: dict) -> MessageRef:
        headers = {
            header.get("name", "").lower(): header.get("value", "")
            for header in (raw.get("payload") or {}).get("headers") or []
        }
        display_name, address = parse_sender(headers.get("from", ""))
        return MessageRef(
            message_id=raw["id"],
            sender_display_name=display_name,
            sender_address=address,
            subject=headers.get("subject", ""),
            snippet=raw.get("snippet", ""),
            received_at=from_epoch_millis(raw.get("internalDate")),
        )

    @classmethod
    def _iter_parts(cls, part: dict) -> Iterator[dict]:
        yield part
        for child in part.get("parts") or []:
            yield from cls._iter_parts(child)

    def _get(self, url: str, params=None) -> Response:
        credential = self.store.get(AccountRole.SOURCE)
        headers = {"Authorization": f"Bearer {credential.access_token}"}
        try:
            return send(self.SERVICE, self.session.get, url, headers=headers, params=params)
        except AuthError as exc:
            exc.rejected_token = credential.access_token
            raise
