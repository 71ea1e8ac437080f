"""One end-to-end sync pass: fetch, group, render, reconcile, commit."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
    TypeVar,
    Union,
)

from .errors import (
    AuthError,
    HighlightSyncError,
    LocalWriteError,
    PathCollisionError,
    SyncCancelled,
    TransientError,
)
from .fetchers.hypothesis import AnnotationPage, PageToken
from .markdown import embed_document_id
from .models import Annotation, DocumentRecord, SourceDocument, SyncHistory
from .renderer import DEFAULT_DATE_FORMAT, DEFAULT_TEMPLATE, render, validate
from .storage import VaultStore, WriteResult, content_hash

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_BACKOFF_BASE = 1.0  # seconds

T = TypeVar("T")


class AnnotationSource(Protocol):
    def fetch_profile(self) -> str:
        ...

    def fetch_since(self, cursor: Optional[str], page_token: Optional[PageToken] = None) -> AnnotationPage:
        ...

    def fetch_document(self, document_id: str) -> List[Annotation]:
        ...


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    GROUPING = "grouping"
    RECONCILING = "reconciling"
    COMMITTING = "committing"
    FAILED = "failed"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SyncResult:
    """What a pass did, and the history the caller should persist."""

    status: SyncStatus
    history: SyncHistory
    annotations_fetched: int = 0
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    pending_deletion: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    files_written: int = 0
    error: Optional[HighlightSyncError] = None

    @property
    def committed(self) -> bool:
        return self.status in (SyncStatus.SUCCESS, SyncStatus.PARTIAL)


@dataclass
class _Plan:
    document: SourceDocument
    path: str
    content: str
    previous: Optional[DocumentRecord]


@dataclass
class _Reconciliation:
    plans: List[_Plan] = field(default_factory=list)
    tracked: Dict[str, DocumentRecord] = field(default_factory=dict)
    ignored: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


def group_by_document(annotations: Iterable[Annotation]) -> List[SourceDocument]:
    """Group annotations per source document.

    Duplicates (same id) keep the most recently updated copy. Documents are
    ordered by id and their annotations by creation time, then id, so the
    result does not depend on how the input was paged.
    """

    latest: Dict[str, Annotation] = {}
    for annotation in annotations:
        current = latest.get(annotation.id)
        if current is None or annotation.updated > current.updated:
            latest[annotation.id] = annotation

    grouped: Dict[str, List[Annotation]] = {}
    for annotation in latest.values():
        grouped.setdefault(annotation.document_id, []).append(annotation)

    documents: List[SourceDocument] = []
    for document_id in sorted(grouped):
        items = sorted(grouped[document_id], key=lambda annotation: annotation.sort_key)
        first = items[0]
        documents.append(
            SourceDocument(id=document_id, title=first.document_title, uri=first.uri, annotations=tuple(items))
        )
    return documents


class SyncOrchestrator:
    """Drives sync passes against a vault store.

    ``run`` takes the last committed :class:`SyncHistory` and returns a
    :class:`SyncResult` whose ``history`` is the value to persist. A pass that
    fails or is cancelled returns the input history untouched.
    """

    def __init__(
        self,
        client: AnnotationSource,
        store: VaultStore,
        *,
        template: str = DEFAULT_TEMPLATE,
        date_format: str = DEFAULT_DATE_FORMAT,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = RETRY_BACKOFF_BASE,
        workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.client = client
        self.store = store
        self.template = template
        self.date_format = date_format
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.workers = max(1, workers)
        self._sleep = sleep
        self._clock = clock
        self.state = SyncState.IDLE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run(self, history: SyncHistory, cancel_event: Optional[threading.Event] = None) -> SyncResult:
        """Run one incremental pass starting at ``history.cursor``."""

        cancel = cancel_event or threading.Event()
        try:
            validate(self.template)
            self._enter(SyncState.FETCHING)
            annotations = self._fetch_all(history.cursor, cancel)

            self._enter(SyncState.GROUPING)
            documents = group_by_document(annotations)
            locator = _Locator(self.store)
            if history.cursor is not None:
                # An incremental fetch only holds changed annotations.
                documents = [
                    self._complete(document, cancel) if self._will_render(history, document.id, locator) else document
                    for document in documents
                ]

            self._enter(SyncState.RECONCILING)
            reconciliation = self._reconcile(history, documents, cancel, frozenset(), locator)
            results = self._write_all(reconciliation.plans, cancel)

            self._enter(SyncState.COMMITTING)
            newest = max((annotation.updated for annotation in annotations), default=None)
            return self._commit(history, reconciliation, results, newest, len(annotations))
        except HighlightSyncError as exc:
            return self._fail(history, exc)
        finally:
            self._enter(SyncState.IDLE)

    def sync_documents(
        self,
        history: SyncHistory,
        document_ids: Sequence[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        """Recreate specific documents, ignoring pending-deletion and ignored markers.

        The cursor is left where it is.
        """

        cancel = cancel_event or threading.Event()
        forced = frozenset(document_ids)
        try:
            validate(self.template)
            self._enter(SyncState.FETCHING)
            annotations: List[Annotation] = []
            for document_id in document_ids:
                self._check_cancelled(cancel)
                annotations.extend(self._with_retries(cancel, self.client.fetch_document, document_id))

            self._enter(SyncState.GROUPING)
            documents = group_by_document(annotations)

            self._enter(SyncState.RECONCILING)
            reconciliation = self._reconcile(history, documents, cancel, forced, _Locator(self.store))
            found = {document.id for document in documents}
            for document_id in document_ids:
                if document_id not in found:
                    reconciliation.failed[document_id] = "No annotations found for this document"
            results = self._write_all(reconciliation.plans, cancel)

            self._enter(SyncState.COMMITTING)
            return self._commit(history, reconciliation, results, None, len(annotations))
        except HighlightSyncError as exc:
            return self._fail(history, exc)
        finally:
            self._enter(SyncState.IDLE)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------
    def _fetch_all(self, cursor: Optional[str], cancel: threading.Event) -> List[Annotation]:
        collected: Dict[str, Annotation] = {}
        token: Optional[PageToken] = None
        pages = 0
        while True:
            self._check_cancelled(cancel)
            page = self._with_retries(cancel, self.client.fetch_since, cursor, token)
            pages += 1
            for annotation in page.annotations:
                collected[annotation.id] = annotation
            if page.done:
                break
            token = page.next_token
        logger.info("Fetched %d annotation(s) in %d page(s) since %s", len(collected), pages, cursor or "the start")
        return list(collected.values())

    def _complete(self, document: SourceDocument, cancel: threading.Event) -> SourceDocument:
        self._check_cancelled(cancel)
        full = self._with_retries(cancel, self.client.fetch_document, document.id)
        merged = group_by_document(list(document.annotations) + list(full))
        return merged[0]

    def _with_retries(self, cancel: threading.Event, operation: Callable[..., T], *args: object) -> T:
        attempt = 1
        while True:
            try:
                return operation(*args)
            except TransientError as exc:
                if attempt >= self.max_attempts:
                    raise TransientError(f"Giving up after {attempt} attempt(s): {exc}") from exc
                delay = self.backoff_base * (2 ** (attempt - 1))
                logger.warning("Attempt %d failed, retrying in %.1fs: %s", attempt, delay, exc)
                self._sleep(delay)
                self._check_cancelled(cancel)
                attempt += 1

    # ------------------------------------------------------------------
    # Reconciling
    # ------------------------------------------------------------------
    def _reconcile(
        self,
        history: SyncHistory,
        documents: Sequence[SourceDocument],
        cancel: threading.Event,
        forced: FrozenSet[str],
        locator: "_Locator",
    ) -> _Reconciliation:
        outcome = _Reconciliation()
        reserved: Set[str] = {record.path for record in history.documents.values()}

        for document in documents:
            self._check_cancelled(cancel)
            record = history.documents.get(document.id)

            if document.id in history.ignored and document.id not in forced:
                logger.info("Skipping %s: kept deleted by the user", document.id)
                outcome.ignored.append(document.id)
                continue

            if record is None:
                try:
                    # A file carrying the id may predate the history, e.g. after a pass that never committed.
                    path = locator.find(document.id) or self.store.resolve_path(document, reserved)
                except PathCollisionError as exc:
                    logger.error("%s", exc)
                    outcome.failed[document.id] = str(exc)
                    continue
            else:
                tracked_path = self._tracked_path(document.id, record, locator, document.id in forced)
                if tracked_path is None:
                    outcome.tracked[document.id] = replace(record, pending_deletion=True)
                    continue
                path = tracked_path

            reserved.add(path)
            content = embed_document_id(render(self.template, document, self.date_format), document.id)
            if record is not None and path == record.path:
                self._warn_on_local_edits(record, content)
            outcome.plans.append(_Plan(document=document, path=path, content=content, previous=record))

        self._scan_tracked(history, {document.id for document in documents}, locator, outcome)
        return outcome

    def _will_render(self, history: SyncHistory, document_id: str, locator: "_Locator") -> bool:
        """Whether a changed document gets written this pass, and so needs all its annotations."""

        if document_id in history.ignored:
            return False
        record = history.documents.get(document_id)
        return record is None or self._locate(document_id, record, locator) is not None

    def _locate(self, document_id: str, record: DocumentRecord, locator: "_Locator") -> Optional[str]:
        if self.store.exists(record.path):
            return record.path
        return locator.find(document_id)

    def _tracked_path(
        self,
        document_id: str,
        record: DocumentRecord,
        locator: "_Locator",
        force: bool,
    ) -> Optional[str]:
        """Where a tracked document should be written, or ``None`` when its file was deleted."""

        path = self._locate(document_id, record, locator)
        if path is not None:
            if path != record.path:
                logger.info("Following rename of %s to %s", record.path, path)
            return path
        if force:
            return record.path
        logger.info("File %s for %s is missing; leaving it for the user to resolve", record.path, document_id)
        return None

    def _scan_tracked(
        self,
        history: SyncHistory,
        handled: Set[str],
        locator: "_Locator",
        outcome: _Reconciliation,
    ) -> None:
        """Follow renames and flag deletions of tracked files this pass did not touch."""

        for document_id, record in sorted(history.documents.items()):
            if document_id in handled:
                continue
            path = self._locate(document_id, record, locator)
            if path == record.path:
                if record.pending_deletion:
                    outcome.tracked[document_id] = replace(record, pending_deletion=False)
                continue
            if path is not None:
                logger.info("Following rename of %s to %s", record.path, path)
                outcome.tracked[document_id] = replace(record, path=path, pending_deletion=False)
            elif not record.pending_deletion:
                logger.info("File %s for %s is missing; leaving it for the user to resolve", record.path, document_id)
                outcome.tracked[document_id] = replace(record, pending_deletion=True)

    def _warn_on_local_edits(self, record: DocumentRecord, content: str) -> None:
        try:
            current = self.store.read(record.path)
        except (OSError, UnicodeDecodeError):
            return
        if current != content and content_hash(current) != record.content_hash:
            logger.warning("%s was edited locally; the edits will be overwritten", record.path)

    def _write_all(
        self, plans: Sequence[_Plan], cancel: threading.Event
    ) -> List[Union[WriteResult, LocalWriteError]]:
        def write(plan: _Plan) -> Union[WriteResult, LocalWriteError]:
            try:
                return self.store.write(plan.path, plan.content)
            except LocalWriteError as exc:
                logger.error("Could not write %s: %s", plan.path, exc)
                return exc

        if self.workers == 1:
            results = []
            for plan in plans:
                self._check_cancelled(cancel)
                results.append(write(plan))
            return results

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            results = list(executor.map(write, plans))
        self._check_cancelled(cancel)
        return results

    # ------------------------------------------------------------------
    # Committing
    # ------------------------------------------------------------------
    def _commit(
        self,
        history: SyncHistory,
        reconciliation: _Reconciliation,
        results: Sequence[Union[WriteResult, LocalWriteError]],
        newest: Optional[datetime],
        fetched: int,
    ) -> SyncResult:
        result = SyncResult(status=SyncStatus.SUCCESS, history=history, annotations_fetched=fetched)
        result.ignored = list(reconciliation.ignored)
        result.failed = dict(reconciliation.failed)
        documents: Dict[str, DocumentRecord] = dict(history.documents)
        documents.update(reconciliation.tracked)
        ignored = set(history.ignored)
        new_documents = 0
        new_highlights = 0

        for plan, outcome in zip(reconciliation.plans, results):
            document_id = plan.document.id
            if isinstance(outcome, LocalWriteError):
                result.failed[document_id] = str(outcome)
                continue
            previous = plan.previous
            previous_ids = set(previous.highlight_ids) if previous else set()
            new_highlights += sum(1 for highlight_id in plan.document.highlight_ids if highlight_id not in previous_ids)
            if previous is None:
                new_documents += 1
                result.created.append(document_id)
            elif outcome.written:
                result.updated.append(document_id)
            else:
                result.unchanged.append(document_id)
            if outcome.written:
                result.files_written += 1
            documents[document_id] = DocumentRecord(
                path=outcome.path,
                content_hash=content_hash(plan.content),
                highlight_ids=plan.document.highlight_ids,
            )
            ignored.discard(document_id)

        result.pending_deletion = sorted(key for key, record in documents.items() if record.pending_deletion)
        cursor = history.cursor
        if result.failed:
            result.status = SyncStatus.PARTIAL
            logger.warning("%d document(s) failed; the cursor stays at %s", len(result.failed), cursor)
        elif newest is not None:
            cursor = newest.isoformat()

        result.history = history.evolve(
            cursor=cursor,
            last_sync_date=self._clock().isoformat(timespec="seconds"),
            documents=documents,
            ignored=frozenset(ignored),
            total_documents=history.total_documents + new_documents,
            total_highlights=history.total_highlights + new_highlights,
        )
        logger.info(
            "Sync committed: %d created, %d updated, %d unchanged, %d pending deletion, %d failed",
            len(result.created),
            len(result.updated),
            len(result.unchanged),
            len(result.pending_deletion),
            len(result.failed),
        )
        return result

    def _fail(self, history: SyncHistory, exc: HighlightSyncError) -> SyncResult:
        self._enter(SyncState.FAILED)
        if isinstance(exc, SyncCancelled):
            logger.warning("Sync cancelled; history left untouched")
            status = SyncStatus.CANCELLED
        else:
            level = logging.ERROR if isinstance(exc, AuthError) else logging.WARNING
            logger.log(level, "Sync failed: %s", exc)
            status = SyncStatus.FAILED
        return SyncResult(status=status, history=history, error=exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _enter(self, state: SyncState) -> None:
        if state is not self.state:
            logger.debug("Sync state %s -> %s", self.state.value, state.value)
        self.state = state

    @staticmethod
    def _check_cancelled(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise SyncCancelled("The sync pass was cancelled")


class _Locator:
    """Finds files by embedded document id, scanning the store at most once."""

    def __init__(self, store: VaultStore) -> None:
        self._store = store
        self._index: Optional[Dict[str, str]] = None

    def find(self, document_id: str) -> Optional[str]:
        if self._index is None:
            self._index = self._store.document_index()
        return self._index.get(document_id)
