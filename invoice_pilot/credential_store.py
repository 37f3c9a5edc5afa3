"""File-backed per-role credential cache with expiry-aware refresh."""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Mapping, Protocol

from .errors import AuthRequired
from .models import AccountRole, Credential
from .utils import utcnow

logger = logging.getLogger(__name__)

SAFETY_MARGIN = timedelta(minutes=5)


class TokenIssuer(Protocol):
    def refresh(self, refresh_token: str) -> Credential: ...


class CredentialStore:
    """Owns the bearer credentials of both account roles.

    Every operation on a role holds that role's lock, so concurrent callers
    never trigger more than one refresh at a time; a caller that waited on
    the lock sees the refreshed credential and returns it as-is.
    """

    def __init__(
        self,
        directory: Path,
        issuers: Mapping[AccountRole, TokenIssuer],
        safety_margin: timedelta = SAFETY_MARGIN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.directory = directory
        self.issuers = dict(issuers)
        self.safety_margin = safety_margin
        self.clock = clock
        self._locks = {role: threading.Lock() for role in AccountRole}
        self._cache: dict[AccountRole, Credential] = {}

    def path_for(self, role: AccountRole) -> Path:
        return self.directory / f"{role.value}_token.json"

    def get(self, role: AccountRole) -> Credential:
        """Return a credential that stays valid beyond the safety margin."""
        with self._locks[role]:
            credential = self._load(role)
            if credential is None:
                raise AuthRequired(role)
            if credential.expires_within(self.safety_margin, self.clock()):
                logger.info("%s token expires soon, refreshing", role.display_name)
                credential = self._refresh_locked(role, credential)
            return credential

    def put(self, role: AccountRole, credential: Credential) -> None:
        if credential.role is not role:
            raise ValueError(f"credential for {credential.role.value} stored as {role.value}")
        with self._locks[role]:
            self._save(role, credential)

    def refresh(self, role: AccountRole, stale_token: str | None = None) -> Credential:
        """Refresh the role's credential.

        When *stale_token* is given and the stored access token already differs
        from it, another caller refreshed in the meantime and the stored
        credential is returned without contacting the provider.
        """
        with self._locks[role]:
            credential = self._load(role)
            if credential is None:
                raise AuthRequired(role)
            if stale_token is not None and credential.access_token != stale_token:
                return credential
            return self._refresh_locked(role, credential)

    def reset(self, role: AccountRole) -> None:
        with self._locks[role]:
            self._cache.pop(role, None)
            path = self.path_for(role)
            if path.exists():
                path.unlink()
                logger.info("%s token cleared", role.display_name)
            else:
                logger.info("No %s token to clear", role.display_name)

    def _refresh_locked(self, role: AccountRole, credential: Credential) -> Credential:
        if not credential.refresh_token:
            raise AuthRequired(role, f"{role.display_name} token expired and no refresh token is on file")
        refreshed = self.issuers[role].refresh(credential.refresh_token)
        self._save(role, refreshed)
        return refreshed

    def _load(self, role: AccountRole) -> Credential | None:
        cached = self._cache.get(role)
        if cached is not None:
            return cached
        path = self.path_for(role)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text())
            credential = Credential(
                role=role,
                access_token=payload["access_token"],
                refresh_token=payload.get("refresh_token"),
                expires_at=datetime.fromtimestamp(float(payload["expires_at"]), tz=UTC),
                granted_scope=payload.get("scope", ""),
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable token file %s: %s", path, exc)
            return None
        self._cache[role] = credential
        return credential

    def _save(self, role: AccountRole, credential: Credential) -> None:
        self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        path = self.path_for(role)
        payload = {
            "access_token": credential.access_token,
            "refresh_token": credential.refresh_token,
            "expires_at": int(credential.expires_at.timestamp()),
            "scope": credential.granted_scope,
        }
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as handle:
            json.dump(payload, handle, indent=2)
        os.chmod(path, 0o600)
        self._cache[role] = credential
        logger.info("Token saved to %s", path)
