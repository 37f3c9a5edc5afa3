"""Search → fetch → classify → deduplicate → upload, with progress and cancellation."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Protocol, Sequence, TypeVar

from .credential_store import CredentialStore
from .errors import AuthError, AuthRequired, Cancelled, InvoicePilotError, RemoteError
from .events import Completed, Error, Info, ProgressChannel, ProgressEvent, Step
from .events import Warning as WarningEvent
from .institutions import InstitutionDetector
from .models import (
    AccountRole,
    AttachmentRef,
    Credential,
    DestinationPath,
    MessageRef,
    RunError,
    RunResult,
    RunStatus,
    SearchCriteria,
)
from .retry import RetryPolicy, call_with_retry
from .utils import prefixed_filename, sanitize_sender_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MailSource(Protocol):
    def search(self, criteria: SearchCriteria) -> Sequence[MessageRef]: ...

    def get_message(self, message_id: str) -> MessageRef: ...

    def fetch_attachments(self, message_id: str) -> Sequence[AttachmentRef]: ...


class FileSink(Protocol):
    def ensure_path(self, segments: Sequence[str], parent_id: str = "root") -> str: ...

    def exists(self, folder_id: str, filename: str) -> bool: ...

    def upload(
        self, folder_id: str, filename: str, content: bytes, mime_type: str | None = None
    ) -> str: ...


class _RunAborted(Exception):
    """Unrecoverable fault; carries the error to report."""

    def __init__(self, error: RunError):
        super().__init__(str(error))
        self.error = error


def sender_prefix(message: MessageRef) -> str:
    name = message.sender_display_name
    if not name and "@" in message.sender_address:
        name = message.sender_address.split("@", 1)[0]
    return sanitize_sender_name(name)


class _Run:
    """Mutable bookkeeping for one run; finalised into a ``RunResult``."""

    def __init__(self, criteria: SearchCriteria, cancel_event: threading.Event) -> None:
        self.criteria = criteria
        self.cancel_event = cancel_event
        self.abort_event = threading.Event()
        self.cancelled = False
        self.base_segments: tuple[str, ...] = ()
        self.base_folder_id = ""
        self.folders: dict[DestinationPath, str] = {}
        self.folder_lock = threading.Lock()
        self._lock = threading.Lock()
        self._name_locks: dict[tuple[str, str], threading.Lock] = {}
        self.messages_scanned = 0
        self.downloaded = 0
        self.uploaded = 0
        self.skipped_duplicate = 0
        self.per_institution: Counter[str] = Counter()
        self.errors: list[RunError] = []

    def should_stop(self) -> bool:
        if self.abort_event.is_set():
            return True
        if self.cancel_event.is_set():
            self.cancelled = True
            return True
        return False

    def name_lock(self, folder_id: str, filename: str) -> threading.Lock:
        """Lock held across the duplicate check and upload of one destination name."""
        with self._lock:
            return self._name_locks.setdefault((folder_id, filename), threading.Lock())

    def count(self, field: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, field, getattr(self, field) + amount)

    def count_institution(self, label: str) -> None:
        with self._lock:
            self.per_institution[label] += 1

    def record_error(self, error: RunError) -> None:
        with self._lock:
            self.errors.append(error)

    def finalize(self, status: RunStatus) -> RunResult:
        with self._lock:
            return RunResult.create(
                status=status,
                messages_scanned=self.messages_scanned,
                attachments_downloaded=self.downloaded,
                attachments_uploaded=self.uploaded,
                attachments_skipped_duplicate=self.skipped_duplicate,
                per_institution_counts=self.per_institution,
                errors=self.errors,
            )


class PipelineOrchestrator:
    """Drive one run of the five-stage pipeline.

    Events go to ``channel`` in production order; ``Completed`` is always the
    last event of a run, even when the run aborts.
    """

    def __init__(
        self,
        mail: MailSource,
        sink: FileSink,
        store: CredentialStore,
        base_segments: Sequence[str],
        *,
        detector: InstitutionDetector | None = None,
        channel: ProgressChannel | None = None,
        retry_policy: RetryPolicy = RetryPolicy(),
        max_workers: int = 4,
        authorize: Optional[Callable[[AccountRole], Credential]] = None,
    ) -> None:
        self.mail = mail
        self.sink = sink
        self.store = store
        self.base_segments = tuple(base_segments)
        self.detector = detector or InstitutionDetector()
        self.channel = channel
        self.retry_policy = retry_policy
        self.max_workers = max_workers
        self.authorize = authorize

    def run(self, criteria: SearchCriteria, cancel_event: threading.Event | None = None) -> RunResult:
        run = _Run(criteria, cancel_event or threading.Event())
        status = RunStatus.COMPLETED
        try:
            self._ensure_credentials()
            self._resolve_base(run)
            messages = self._search(run)
            self._process_messages(run, messages)
            if run.cancelled:
                status = RunStatus.CANCELLED
        except Cancelled:
            self._emit(WarningEvent("Run cancelled during authorization"))
            status = RunStatus.CANCELLED
        except _RunAborted as exc:
            run.record_error(exc.error)
            self._emit(Error(f"Run aborted: {exc.error}"))
            status = RunStatus.ABORTED
        except Exception as exc:
            logger.exception("Unexpected failure during run")
            error = RunError("run", "unexpected", 1, repr(exc))
            run.record_error(error)
            self._emit(Error(f"Run aborted: {error}"))
            status = RunStatus.ABORTED

        result = run.finalize(status)
        logger.info("Run finished with status %s", status.value)
        self._emit(Completed(result))
        return result

    def _ensure_credentials(self) -> None:
        self._emit(Step("auth", "Checking credentials"))
        for role in AccountRole:
            try:
                self.store.get(role)
                continue
            except AuthRequired as exc:
                if self.authorize is None:
                    raise _RunAborted(RunError(role.value, exc.kind, 1, str(exc))) from exc
                self._emit(WarningEvent(f"{exc}; starting authorization"))
            except RemoteError as exc:
                raise _RunAborted(RunError(role.value, exc.kind, exc.attempts, str(exc))) from exc
            try:
                self.authorize(role)
            except Cancelled:
                raise
            except InvoicePilotError as exc:
                raise _RunAborted(RunError(role.value, exc.kind, 1, str(exc))) from exc
        self._emit(Step("auth", "Both accounts authorized"))

    def _resolve_base(self, run: _Run) -> None:
        location = "/".join(self.base_segments)
        self._emit(Step("resolve", f"Locating folder {location}"))
        try:
            run.base_folder_id = self._call(AccountRole.DESTINATION, self.sink.ensure_path, self.base_segments)
        except RemoteError as exc:
            raise _RunAborted(RunError(location, exc.kind, exc.attempts, str(exc))) from exc
        run.base_segments = self.base_segments
        run.folders[DestinationPath(self.base_segments)] = run.base_folder_id
        self._emit(Step("resolve", f"Folder ready: {location}"))

    def _search(self, run: _Run) -> Sequence[MessageRef]:
        criteria = run.criteria
        self._emit(
            Step("search", f"Searching mail from {criteria.date_from} to {criteria.date_to}")
        )
        try:
            messages = self._call(AccountRole.SOURCE, self.mail.search, criteria)
        except RemoteError as exc:
            raise _RunAborted(RunError("search", exc.kind, exc.attempts, str(exc))) from exc
        self._emit(Step("search", f"Found {len(messages)} message(s) with attachments"))
        return messages

    def _process_messages(self, run: _Run, messages: Sequence[MessageRef]) -> None:
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            for index, ref in enumerate(messages, start=1):
                if run.should_stop():
                    break
                run.count("messages_scanned")
                self._emit(
                    Step("fetch", f"Processing message {index}/{len(messages)}: {ref.message_id}")
                )
                fetched = self._fetch(run, ref.message_id)
                if fetched is None:
                    continue
                message, attachments = fetched
                if not attachments:
                    continue
                self._emit(Step("upload", f"Filing {len(attachments)} attachment(s)"))
                futures = [
                    executor.submit(self._process_attachment, run, message, attachment)
                    for attachment in attachments
                ]
                try:
                    for future in futures:
                        future.result()
                except _RunAborted:
                    run.abort_event.set()
                    raise
                self._emit(Step("upload", f"Message {message.message_id} done"))

    def _fetch(
        self, run: _Run, message_id: str
    ) -> Optional[tuple[MessageRef, Sequence[AttachmentRef]]]:
        """Metadata and attachments of one message; ``None`` when it failed."""
        try:
            message = self._call(AccountRole.SOURCE, self.mail.get_message, message_id)
            attachments = self._call(AccountRole.SOURCE, self.mail.fetch_attachments, message_id)
        except RemoteError as exc:
            self._record(run, RunError(message_id, exc.kind, exc.attempts, str(exc)))
            return None
        except _RunAborted:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure fetching message %s", message_id)
            self._record(run, RunError(message_id, "unexpected", 1, repr(exc)))
            return None
        run.count("downloaded", len(attachments))
        self._emit(Step("fetch", f"Downloaded {len(attachments)} attachment(s)"))
        return message, attachments

    def _process_attachment(self, run: _Run, message: MessageRef, attachment: AttachmentRef) -> None:
        filename = prefixed_filename(sender_prefix(message), attachment.original_filename)
        try:
            self._check_cancelled(run)
            label = self.detector.classify(
                message.sender_address, message.sender_display_name, message.subject, message.snippet
            )
            run.count_institution(label)
            year = message.received_at.year if message.received_at else run.criteria.date_to.year
            path = DestinationPath.build(run.base_segments, year, label)
            folder_id = self._folder_for(run, path)

            with run.name_lock(folder_id, filename):
                if self._call(AccountRole.DESTINATION, self.sink.exists, folder_id, filename):
                    run.count("skipped_duplicate")
                    self._emit(WarningEvent(f"Skipping duplicate: {path}/{filename} (already exists)"))
                    return

                file_id = self._call(
                    AccountRole.DESTINATION,
                    self.sink.upload,
                    folder_id,
                    filename,
                    attachment.raw_bytes or b"",
                    attachment.mime_type,
                )
            run.count("uploaded")
            self._emit(Info(f"Uploaded: {path}/{filename} (ID: {file_id})"))
        except Cancelled:
            return
        except RemoteError as exc:
            self._record(run, RunError(filename, exc.kind, exc.attempts, str(exc)))
        except _RunAborted:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure filing %s", filename)
            self._record(run, RunError(filename, "unexpected", 1, repr(exc)))

    def _check_cancelled(self, run: _Run) -> None:
        if run.should_stop():
            raise Cancelled()

    def _folder_for(self, run: _Run, path: DestinationPath) -> str:
        with run.folder_lock:
            folder_id = run.folders.get(path)
            if folder_id is None:
                relative = path.segments[len(run.base_segments):]
                folder_id = self._call(
                    AccountRole.DESTINATION, self.sink.ensure_path, relative, run.base_folder_id
                )
                run.folders[path] = folder_id
            return folder_id

    def _call(self, role: AccountRole, fn: Callable[..., T], *args) -> T:
        """Remote call with bounded retry and one forced refresh on ``AuthError``."""
        try:
            try:
                return call_with_retry(self.retry_policy, fn, *args)
            except AuthError as exc:
                self._emit(WarningEvent(f"{role.display_name} rejected the access token; refreshing"))
                self.store.refresh(role, stale_token=exc.rejected_token)
            try:
                return call_with_retry(self.retry_policy, fn, *args)
            except AuthError as exc:
                raise _RunAborted(
                    RunError(role.value, exc.kind, 2, f"{role.display_name} rejected refreshed credentials")
                ) from exc
        except AuthRequired as exc:
            raise _RunAborted(RunError(role.value, exc.kind, 1, str(exc))) from exc

    def _record(self, run: _Run, error: RunError) -> None:
        run.record_error(error)
        self._emit(Error(str(error)))

    def _emit(self, event: ProgressEvent) -> None:
        if self.channel is not None:
            self.channel.emit(event)
