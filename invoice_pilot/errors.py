"""Exceptions raised across authentication and remote calls."""

from __future__ import annotations

from typing import Optional

from .models import AccountRole


class InvoicePilotError(Exception):
    """Base exception for invoice pipeline errors."""

    kind = "error"


class AuthRequired(InvoicePilotError):
    """No usable credential is on file; an authorization flow must run."""

    kind = "auth_required"

    def __init__(self, role: AccountRole, message: str | None = None):
        super().__init__(
            message
            or f"{role.display_name} is not authorized; run 'auth {role.value}' to sign in"
        )
        self.role = role


class AuthRejected(AuthRequired):
    """The provider rejected a code exchange or a refresh token."""

    kind = "auth_rejected"

    def __init__(self, role: AccountRole, reason: str):
        super().__init__(role, f"{role.display_name} authorization rejected: {reason}")
        self.reason = reason


class RedirectTimeout(InvoicePilotError):
    """No redirect reached the local listener in time."""

    kind = "redirect_timeout"

    def __init__(self, role: AccountRole, seconds: float):
        super().__init__(
            f"Timed out after {seconds:.0f}s waiting for the {role.display_name} authorization redirect"
        )
        self.role = role
        self.seconds = seconds


class RemoteError(InvoicePilotError):
    """A call against the mail or storage service failed."""

    kind = "remote_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = 1


class AuthError(RemoteError):
    """The service rejected the bearer token."""

    kind = "auth_error"
    rejected_token: Optional[str] = None


class RateLimited(RemoteError):
    """The service asked us to slow down."""

    kind = "rate_limited"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class Transient(RemoteError):
    """Network-level or server-side failure worth retrying."""

    kind = "transient"


class RemoteFault(RemoteError):
    """Non-retryable remote failure."""

    kind = "remote_fault"


class Cancelled(InvoicePilotError):
    """The run was cancelled by the user."""

    kind = "cancelled"
