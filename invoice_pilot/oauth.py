"""Google OAuth2 endpoints and the token-endpoint client used per account role."""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import requests

from .errors import AuthRejected, Transient
from .models import AccountRole, Credential
from .utils import utcnow

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

SCOPES = {
    AccountRole.SOURCE: "https://www.googleapis.com/auth/gmail.readonly",
    AccountRole.DESTINATION: "https://www.googleapis.com/auth/drive.file",
}

DEFAULT_LIFETIME = timedelta(hours=1)


def build_pkce_pair() -> tuple[str, str]:
    """Generate code_verifier and code_challenge (S256)."""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return verifier, challenge


def redirect_uri(port: int) -> str:
    return f"http://127.0.0.1:{port}"


class OAuthClient:
    """Talks to the token endpoint on behalf of one account role."""

    def __init__(
        self,
        role: AccountRole,
        client_id: str,
        client_secret: str,
        session: requests.Session | None = None,
    ) -> None:
        self.role = role
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = SCOPES[role]
        self.session = session or requests.Session()

    def authorization_url(self, *, code_challenge: str, state: str, port: int) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri(port),
            "response_type": "code",
            "scope": self.scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, *, code: str, code_verifier: str, port: int) -> Credential:
        """Exchange an authorization code (plus PKCE verifier) for tokens."""
        payload = self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": code_verifier,
                "redirect_uri": redirect_uri(port),
            }
        )
        return self._to_credential(payload, previous_refresh_token=None)

    def refresh(self, refresh_token: str) -> Credential:
        logger.info("Refreshing %s access token", self.role.display_name)
        payload = self._post_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        return self._to_credential(payload, previous_refresh_token=refresh_token)

    def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        body = {"client_id": self.client_id, "client_secret": self.client_secret, **data}
        try:
            response = self.session.post(GOOGLE_TOKEN_URL, data=body, timeout=30)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise Transient(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise Transient(f"Token endpoint error ({response.status_code})", response.status_code)
        if response.status_code >= 400:
            reason = self._error_reason(response)
            logger.error(
                "%s token request rejected (%s): %s",
                self.role.display_name,
                response.status_code,
                reason,
            )
            raise AuthRejected(self.role, reason)

        try:
            payload = response.json()
        except ValueError:
            raise AuthRejected(self.role, "token response was not JSON") from None
        if not isinstance(payload, dict) or "access_token" not in payload:
            raise AuthRejected(self.role, "token response did not include an access token")
        return payload

    @staticmethod
    def _error_reason(response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(payload, dict):
            return payload.get("error_description") or payload.get("error") or str(payload)
        return str(payload)

    def _to_credential(self, payload: dict[str, Any], previous_refresh_token: str | None) -> Credential:
        expires_in = payload.get("expires_in")
        lifetime = timedelta(seconds=int(expires_in)) if expires_in else DEFAULT_LIFETIME
        now: datetime = utcnow()
        return Credential(
            role=self.role,
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=now + lifetime,
            granted_scope=payload.get("scope", self.scope),
        )
