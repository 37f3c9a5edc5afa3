"""Google Drive uploader."""

from __future__ import annotations

import json
import logging
import mimetypes
from typing import Sequence

import requests
from requests import Response

from .credential_store import CredentialStore
from .errors import AuthError, RemoteFault
from .http import read_json, send
from .models import AccountRole

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


def _quote(value: str) -> str:
    """Escape a literal for a Drive ``q`` expression."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveClient:
    """Resolve folders and upload documents in the destination account."""

    DRIVE_BASE = "https://www.googleapis.com/drive/v3"
    UPLOAD_BASE = "https://www.googleapis.com/upload/drive/v3"
    SERVICE = "Drive"

    def __init__(self, store: CredentialStore, session: requests.Session | None = None) -> None:
        self.store = store
        self.session = session or requests.Session()

    def ensure_path(self, segments: Sequence[str], parent_id: str = "root") -> str:
        """Find or create each folder left to right and return the last folder id."""
        if not segments:
            raise ValueError("Folder path cannot be empty")
        folder_id = parent_id
        for name in segments:
            existing = self._find(name, folder_id, folders_only=True)
            if existing:
                logger.debug("Found existing folder %s (%s)", name, existing)
                folder_id = existing
            else:
                folder_id = self._create_folder(name, folder_id)
        return folder_id

    def exists(self, folder_id: str, filename: str) -> bool:
        return self._find(filename, folder_id, folders_only=False) is not None

    def upload(
        self,
        folder_id: str,
        filename: str,
        content: bytes,
        mime_type: str | None = None,
    ) -> str:
        """Upload a document and return the Drive file id."""
        mime_type = mime_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        metadata = {"name": filename, "parents": [folder_id]}
        files = {
            "metadata": (None, json.dumps(metadata), "application/json; charset=UTF-8"),
            "file": (filename, content, mime_type),
        }

        logger.info("Uploading '%s' to Drive", filename)
        response = self._request(
            "post",
            f"{self.UPLOAD_BASE}/files",
            params={"uploadType": "multipart", "fields": "id,name"},
            files=files,
            timeout=60,
        )
        return self._extract_id(response, f"upload of {filename}")

    def _find(self, name: str, parent_id: str, *, folders_only: bool) -> str | None:
        clauses = [f"name='{_quote(name)}'", f"'{_quote(parent_id)}' in parents", "trashed=false"]
        if folders_only:
            clauses.append(f"mimeType='{FOLDER_MIME_TYPE}'")
        response = self._request(
            "get",
            f"{self.DRIVE_BASE}/files",
            params={"q": " and ".join(clauses), "fields": "files(id, name)", "pageSize": 1},
        )
        files = read_json(response, self.SERVICE).get("files") or []
        return files[0]["id"] if files else None

    def _create_folder(self, name: str, parent_id: str) -> str:
        logger.info("Creating folder %s", name)
        response = self._request(
            "post",
            f"{self.DRIVE_BASE}/files",
            params={"fields": "id"},
            json={"name": name, "parents": [parent_id], "mimeType": FOLDER_MIME_TYPE},
        )
        return self._extract_id(response, f"creation of folder {name}")

    @staticmethod
    def _extract_id(response: Response, action: str) -> str:
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteFault(f"Drive returned an unreadable response for {action}") from exc
        file_id = payload.get("id") if isinstance(payload, dict) else None
        if not file_id:
            raise RemoteFault(f"Drive response for {action} did not include an id")
        return file_id

    def _request(self, method: str, url: str, **kwargs) -> Response:
        credential = self.store.get(AccountRole.DESTINATION)
        headers = {"Authorization": f"Bearer {credential.access_token}"}
        try:
            return send(self.SERVICE, getattr(self.session, method), url, headers=headers, **kwargs)
        except AuthError as exc:
            exc.rejected_token = credential.access_token
            raise
