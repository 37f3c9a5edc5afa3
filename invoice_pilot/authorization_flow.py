"""One OAuth2 authorization-code + PKCE round-trip for one account role."""

from __future__ import annotations

import enum
import logging
import secrets
import threading
import time
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable, Optional
from urllib.parse import parse_qs, urlsplit

from .credential_store import CredentialStore
from .errors import AuthRejected, Cancelled, InvoicePilotError, RedirectTimeout
from .events import AuthUrl, BrowserFailed, Info, ProgressChannel
from .models import AccountRole, Credential, PkceSession
from .oauth import OAuthClient, build_pkce_pair
from .utils import utcnow

logger = logging.getLogger(__name__)

LISTEN_HOST = "127.0.0.1"
# Upper bound on one listener wait, so cancellation is seen promptly.
POLL_INTERVAL = 0.5
# A connection that never sends its request line is dropped after this long.
REQUEST_TIMEOUT = 10.0

SUCCESS_PAGE = (
    "<html><body><h1>Authorization successful!</h1>"
    "<p>You can close this window and return to the terminal.</p></body></html>"
)
FAILURE_PAGE = (
    "<html><body><h1>Authorization failed</h1>"
    "<p>Return to the terminal for details.</p></body></html>"
)


class FlowState(str, enum.Enum):
    IDLE = "idle"
    CHALLENGE_GENERATED = "challenge_generated"
    AWAITING_REDIRECT = "awaiting_redirect"
    CODE_RECEIVED = "code_received"
    EXCHANGED = "exchanged"
    FAILED = "failed"


class ListenerGuard:
    """Serialises flows that must share a redirect port."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ports: dict[int, threading.Lock] = {}

    def lock_for(self, port: int) -> threading.Lock:
        with self._lock:
            return self._ports.setdefault(port, threading.Lock())


class _RedirectServer(HTTPServer):
    allow_reuse_address = True
    redirect_params: Optional[dict[str, str]] = None


class _RedirectHandler(BaseHTTPRequestHandler):
    server: _RedirectServer
    timeout = REQUEST_TIMEOUT

    def do_GET(self) -> None:  # noqa: N802 - http.server naming
        query = parse_qs(urlsplit(self.path).query)
        if "code" not in query and "error" not in query:
            self.send_response(404)
            self.end_headers()
            return
        self.server.redirect_params = {key: values[0] for key, values in query.items()}
        page = FAILURE_PAGE if "error" in query else SUCCESS_PAGE
        body = page.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("redirect listener: " + format, *args)


class AuthorizationFlow:
    """State machine ``idle → challenge_generated → awaiting_redirect →
    code_received → exchanged | failed`` for a single account role.

    A flow runs once; start a new instance to retry.
    """

    def __init__(
        self,
        role: AccountRole,
        client: OAuthClient,
        store: CredentialStore,
        *,
        port: int,
        guard: ListenerGuard | None = None,
        channel: ProgressChannel | None = None,
        timeout: float = 300.0,
        opener: Callable[[str], bool] = webbrowser.open,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.role = role
        self.client = client
        self.store = store
        self.port = port
        self.guard = guard or ListenerGuard()
        self.channel = channel
        self.timeout = timeout
        self.opener = opener
        self.cancel_event = cancel_event or threading.Event()
        self.state = FlowState.IDLE
        self.authorization_url: str | None = None
        self.failure: Exception | None = None
        self._session: PkceSession | None = None

    def run(self) -> Credential:
        """Drive the flow to a terminal state and return the stored credential."""
        try:
            self.start()
            code = self.await_redirect()
            return self.exchange(code)
        except Exception as exc:
            self._fail(exc)
            raise

    def start(self) -> str:
        self._transition(FlowState.IDLE, FlowState.CHALLENGE_GENERATED)
        verifier, challenge = build_pkce_pair()
        self._session = PkceSession(
            role=self.role,
            code_verifier=verifier,
            code_challenge=challenge,
            state=secrets.token_urlsafe(32),
            expected_redirect_port=self.port,
            created_at=utcnow(),
        )
        self.authorization_url = self.client.authorization_url(
            code_challenge=challenge, state=self._session.state, port=self.port
        )
        return self.authorization_url

    def await_redirect(self) -> str:
        """Listen for the single redirect and return the authorization code."""
        if self._session is None or self.authorization_url is None:
            raise RuntimeError(f"cannot await a redirect in state {self.state.value}")
        with self.guard.lock_for(self.port):
            try:
                server = _RedirectServer((LISTEN_HOST, self.port), _RedirectHandler)
            except OSError as exc:
                raise InvoicePilotError(
                    f"Failed to bind to port {self.port}. Is another instance running?"
                ) from exc
            try:
                self._transition(FlowState.CHALLENGE_GENERATED, FlowState.AWAITING_REDIRECT)
                self._emit(AuthUrl(self.role, self.authorization_url))
                self._open_browser(self.authorization_url)
                params = self._wait_for_redirect(server)
            finally:
                server.server_close()

        if "error" in params:
            raise AuthRejected(self.role, params["error"])
        if params.get("state") != self._session.state:
            raise AuthRejected(self.role, "state mismatch on redirect")
        self._transition(FlowState.AWAITING_REDIRECT, FlowState.CODE_RECEIVED)
        return params["code"]

    def exchange(self, code: str) -> Credential:
        session = self._session
        if self.state is not FlowState.CODE_RECEIVED or session is None:
            raise RuntimeError(f"cannot exchange a code in state {self.state.value}")
        self._session = None
        credential = self.client.exchange_code(
            code=code, code_verifier=session.code_verifier, port=session.expected_redirect_port
        )
        self.store.put(self.role, credential)
        self._transition(FlowState.CODE_RECEIVED, FlowState.EXCHANGED)
        self._emit(Info(f"{self.role.display_name} authorized"))
        return credential

    def _wait_for_redirect(self, server: _RedirectServer) -> dict[str, str]:
        deadline = time.monotonic() + self.timeout
        while server.redirect_params is None:
            if self.cancel_event.is_set():
                raise Cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RedirectTimeout(self.role, self.timeout)
            server.timeout = min(remaining, POLL_INTERVAL)
            server.handle_request()
        return server.redirect_params

    def _open_browser(self, url: str) -> None:
        try:
            opened = self.opener(url)
        except webbrowser.Error as exc:
            logger.warning("Failed to open browser automatically: %s", exc)
            opened = False
        if not opened:
            self._emit(BrowserFailed(self.role, url))

    def _transition(self, expected: FlowState, target: FlowState) -> None:
        if self.state is not expected:
            raise RuntimeError(
                f"{self.role.value} flow cannot move to {target.value} from {self.state.value}"
            )
        logger.debug("%s flow: %s -> %s", self.role.value, self.state.value, target.value)
        self.state = target

    def _fail(self, exc: Exception) -> None:
        self._session = None
        self.failure = exc
        self.state = FlowState.FAILED

    def _emit(self, event) -> None:
        if self.channel is not None:
            self.channel.emit(event)
