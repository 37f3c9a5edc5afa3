"""Progress events and the ordered channel that carries them to one consumer."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Iterator, Union

from .models import AccountRole, RunResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Info:
    text: str


@dataclass(frozen=True)
class Step:
    stage: str
    detail: str


@dataclass(frozen=True)
class Warning:
    text: str


@dataclass(frozen=True)
class Error:
    text: str


@dataclass(frozen=True)
class AuthUrl:
    """An authorization URL the user has to open."""

    role: AccountRole
    url: str


@dataclass(frozen=True)
class BrowserFailed:
    """The browser could not be opened; the user must open the URL manually."""

    role: AccountRole
    url: str


@dataclass(frozen=True)
class Completed:
    result: RunResult


ProgressEvent = Union[Info, Step, Warning, Error, AuthUrl, BrowserFailed, Completed]

_CLOSED = object()


class ProgressChannel:
    """Unbounded FIFO of progress events with a single consumer.

    ``emit`` never blocks, so a slow consumer cannot stall the producer.
    """

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._consumer_lock = threading.Lock()
        self._consumed = False

    def emit(self, event: ProgressEvent) -> None:
        self._queue.put(event)

    def close(self) -> None:
        self._queue.put(_CLOSED)

    def receive(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event in production order, or ``None`` once the channel is closed.

        Raises ``queue.Empty`` if *timeout* elapses first.
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            return None
        return item

    def events(self, timeout: float | None = None) -> Iterator[ProgressEvent]:
        """Yield events until the channel is closed; only one consumer may iterate."""
        with self._consumer_lock:
            if self._consumed:
                raise RuntimeError("progress channel already has a consumer")
            self._consumed = True
        while True:
            event = self.receive(timeout)
            if event is None:
                return
            yield event


def log_event(event: ProgressEvent) -> None:
    """Render one event into the application log (batch presentation)."""
    if isinstance(event, Step):
        logger.info("[%s] %s", event.stage, event.detail)
    elif isinstance(event, Info):
        logger.info(event.text)
    elif isinstance(event, Warning):
        logger.warning(event.text)
    elif isinstance(event, Error):
        logger.error(event.text)
    elif isinstance(event, AuthUrl):
        logger.info("Open this URL to authorize %s: %s", event.role.display_name, event.url)
    elif isinstance(event, BrowserFailed):
        logger.warning(
            "Could not open a browser for %s; open this URL manually: %s",
            event.role.display_name,
            event.url,
        )
    elif isinstance(event, Completed):
        result = event.result
        logger.info(
            "Run %s: messages=%s downloaded=%s uploaded=%s skipped=%s errors=%s",
            result.status.value,
            result.messages_scanned,
            result.attachments_downloaded,
            result.attachments_uploaded,
            result.attachments_skipped_duplicate,
            len(result.errors),
        )
        for name, count in sorted(result.per_institution_counts.items()):
            logger.info("  %s: %s", name, count)
        for error in result.errors:
            logger.warning("  %s", error)
