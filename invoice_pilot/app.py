"""Commands behind the CLI: manual runs, scheduled runs and account authorization."""

from __future__ import annotations

import logging
import queue
import threading
import webbrowser
from datetime import date
from typing import Callable, TypeVar

from .authorization_flow import AuthorizationFlow, ListenerGuard
from .config import Settings
from .credential_store import CredentialStore
from .drive_client import DriveClient
from .events import ProgressChannel, ProgressEvent, log_event
from .gmail_client import GmailClient
from .models import AccountRole, Credential, RunResult, SearchCriteria
from .oauth import OAuthClient
from .pipeline import PipelineOrchestrator
from .retry import RetryPolicy
from .schedule import parse_date_range, previous_month_range, should_run

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Blocking waits stay short so Ctrl-C is noticed promptly.
POLL_INTERVAL = 0.5

EventConsumer = Callable[[ProgressEvent], None]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


class InvoicePilot:
    """Wires settings, credentials and remote clients into runnable commands."""

    def __init__(
        self,
        settings: Settings,
        *,
        consumer: EventConsumer = log_event,
        opener: Callable[[str], bool] = webbrowser.open,
        store: CredentialStore | None = None,
        oauth_clients: dict[AccountRole, OAuthClient] | None = None,
    ) -> None:
        self.settings = settings
        self.consumer = consumer
        self.opener = opener if settings.open_browser else (lambda url: False)
        self.oauth_clients = oauth_clients or {
            role: OAuthClient(role, *settings.client_credentials(role)) for role in AccountRole
        }
        self.store = store or CredentialStore(settings.token_dir, self.oauth_clients)
        self.guard = ListenerGuard()

    def run_manual(
        self,
        date_range: str | None = None,
        *,
        today: date | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RunResult:
        """Run now over *date_range* (``FROM:TO``), defaulting to last month."""
        if date_range:
            date_from, date_to = parse_date_range(date_range)
        else:
            date_from, date_to = previous_month_range(today or date.today())
        logger.info("Date range: %s to %s", date_from, date_to)
        return self.run_pipeline(date_from, date_to, cancel_event=cancel_event)

    def run_scheduled(
        self, *, today: date | None = None, cancel_event: threading.Event | None = None
    ) -> RunResult | None:
        """Run over last month if today is the configured day; otherwise do nothing."""
        today = today or date.today()
        configured_day = self.settings.fetch_invoices_day
        if not should_run(today, configured_day):
            if configured_day is None:
                logger.info("FETCH_INVOICES_DAY is not set; nothing scheduled")
            else:
                logger.info(
                    "Not scheduled to run today (runs on day %s, today is day %s)",
                    configured_day,
                    today.day,
                )
            return None
        logger.info("Today is day %s - running invoice fetch", today.day)
        date_from, date_to = previous_month_range(today)
        return self.run_pipeline(date_from, date_to, cancel_event=cancel_event)

    def run_pipeline(
        self,
        date_from: date,
        date_to: date,
        *,
        cancel_event: threading.Event | None = None,
        orchestrator_factory: Callable[..., PipelineOrchestrator] | None = None,
    ) -> RunResult:
        criteria = SearchCriteria(
            keywords=frozenset(self.settings.target_keywords),
            date_from=date_from,
            date_to=date_to,
        )
        cancel_event = cancel_event or threading.Event()
        factory = orchestrator_factory or self.build_orchestrator
        return self._drive(
            lambda channel: factory(channel, cancel_event).run(criteria, cancel_event),
            cancel_event,
        )

    def build_orchestrator(
        self, channel: ProgressChannel, cancel_event: threading.Event | None = None
    ) -> PipelineOrchestrator:
        settings = self.settings
        return PipelineOrchestrator(
            GmailClient(self.store),
            DriveClient(self.store),
            self.store,
            settings.base_folder_segments,
            channel=channel,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                initial_wait_seconds=settings.retry_initial_wait_seconds,
                max_wait_seconds=settings.retry_max_wait_seconds,
            ),
            max_workers=settings.max_concurrent_uploads,
            authorize=lambda role: self.authorize(role, channel, cancel_event),
        )

    def authorize(
        self,
        role: AccountRole,
        channel: ProgressChannel | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Credential:
        """Run one PKCE authorization flow for *role*."""
        flow = AuthorizationFlow(
            role,
            self.oauth_clients[role],
            self.store,
            port=self.settings.redirect_port(role),
            guard=self.guard,
            channel=channel,
            timeout=self.settings.auth_timeout_seconds,
            opener=self.opener,
            cancel_event=cancel_event,
        )
        return flow.run()

    def reauthorize(self, role: AccountRole) -> Credential:
        """Forget the stored credential for *role* and sign in again."""
        logger.info("Re-authenticating %s", role.display_name)
        self.store.reset(role)
        cancel_event = threading.Event()
        return self._drive(lambda channel: self.authorize(role, channel, cancel_event), cancel_event)

    def reset(self) -> None:
        for role in AccountRole:
            self.store.reset(role)
        logger.info("All tokens cleared; the next run will ask to re-authenticate")

    def _drive(self, target: Callable[[ProgressChannel], T], cancel_event: threading.Event) -> T:
        """Run *target* on a worker thread while this thread consumes its events."""
        channel = ProgressChannel()
        outcome: dict[str, object] = {}

        def worker() -> None:
            try:
                outcome["value"] = target(channel)
            except BaseException as exc:  # re-raised on the calling thread
                outcome["error"] = exc
            finally:
                channel.close()

        thread = threading.Thread(target=worker, name="invoice-pilot-worker", daemon=True)
        thread.start()
        while True:
            try:
                event = channel.receive(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            except KeyboardInterrupt:
                logger.warning("Cancellation requested; finishing in-flight work")
                cancel_event.set()
                continue
            if event is None:
                break
            self.consumer(event)
        thread.join()

        if "error" in outcome:
            raise outcome["error"]  # type: ignore[misc]
        return outcome["value"]  # type: ignore[return-value]
