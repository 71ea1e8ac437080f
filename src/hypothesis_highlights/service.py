"""Operations the host application invokes: sync, reset, connect, settings."""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence

from .config import Settings, SettingsStore
from .errors import NotConnectedError, SyncInProgressError
from .fetchers.hypothesis import HypothesisClient
from .history import HistoryStore
from .models import SyncHistory
from .reconcile import DeletedFileReconciler, MissingDocument
from .renderer import display_name, validate
from .storage import VaultStore
from .sync import AnnotationSource, SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Settings], AnnotationSource]


def default_client_factory(settings: Settings) -> HypothesisClient:
    return HypothesisClient(settings.token or "", user=settings.user)


@dataclass(frozen=True)
class StatusReport:
    connected: bool
    username: Optional[str]
    total_documents: int
    total_highlights: int
    last_sync_date: Optional[str]
    pending_deletion: int


class SyncService:
    """Runs at most one sync pass at a time and persists what it commits.

    Settings and history are loaded fresh for every operation, so edits made
    by another owner of the settings file are picked up on the next call.
    """

    def __init__(
        self,
        settings_store: SettingsStore,
        history_store: HistoryStore,
        *,
        client_factory: ClientFactory = default_client_factory,
        workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings_store = settings_store
        self.history_store = history_store
        self._client_factory = client_factory
        self._workers = workers
        self._sleep = sleep
        self._lock = threading.Lock()
        self._cancel: Optional[threading.Event] = None

    # ------------------------------------------------------------------
    # Sync passes
    # ------------------------------------------------------------------
    def start_sync(self) -> SyncResult:
        orchestrator = self._orchestrator(self.settings_store.load())
        with self._exclusive() as cancel:
            result = orchestrator.run(self.history_store.load(), cancel)
            if result.committed:
                self.history_store.save(result.history)
            return result

    def startup(self) -> Optional[SyncResult]:
        """Sync when the user enabled sync-on-boot and a token is configured."""

        settings = self.settings_store.load()
        if not settings.sync_on_boot:
            return None
        if not settings.is_connected:
            logger.info("Sync disabled. API token not configured")
            return None
        return self.start_sync()

    def cancel(self) -> bool:
        """Ask the running pass to stop; returns ``False`` when none is running."""

        cancel = self._cancel
        if cancel is None:
            return False
        cancel.set()
        return True

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def reset_sync_history(self) -> SyncHistory:
        with self._exclusive():
            logger.info("Resetting sync history")
            return self.history_store.reset()

    # ------------------------------------------------------------------
    # Deleted files
    # ------------------------------------------------------------------
    def deleted_files(self) -> List[MissingDocument]:
        settings = self.settings_store.load()
        reconciler = DeletedFileReconciler(self._orchestrator(settings))
        return reconciler.missing(self.history_store.load())

    def resync_deleted(self, document_ids: Sequence[str]) -> SyncResult:
        reconciler = DeletedFileReconciler(self._orchestrator(self.settings_store.load()))
        with self._exclusive() as cancel:
            result = reconciler.resync(self.history_store.load(), document_ids, cancel)
            if result.committed:
                self.history_store.save(result.history)
            return result

    def keep_deleted(self, document_ids: Sequence[str]) -> SyncHistory:
        reconciler = DeletedFileReconciler(self._orchestrator(self.settings_store.load()))
        with self._exclusive():
            history = reconciler.keep_deleted(self.history_store.load(), document_ids)
            self.history_store.save(history)
            return history

    # ------------------------------------------------------------------
    # Settings actions
    # ------------------------------------------------------------------
    def connect(self, token: str) -> Settings:
        settings = self.settings_store.load().evolve(token=token, user=None)
        client = self._client_factory(settings)
        user = client.fetch_profile()
        settings = settings.evolve(user=user)
        self.settings_store.save(settings)
        logger.info("Connected to Hypothes.is as %s", user)
        return settings

    def disconnect(self) -> Settings:
        """Forget the API token; the sync history is kept."""

        settings = self.settings_store.load().evolve(token=None, user=None)
        self.settings_store.save(settings)
        return settings

    def set_template(self, template: str) -> Settings:
        validate(template)
        return self._update(template=template)

    def set_highlights_folder(self, folder: str) -> Settings:
        return self._update(highlights_folder=folder.strip("/"))

    def set_date_format(self, date_format: str) -> Settings:
        return self._update(date_format=date_format)

    def set_sync_on_boot(self, enabled: bool) -> Settings:
        return self._update(sync_on_boot=enabled)

    def list_folders(self) -> List[str]:
        settings = self.settings_store.load()
        return VaultStore(settings.vault_root, settings.highlights_folder).list_folders()

    def status(self) -> StatusReport:
        settings = self.settings_store.load()
        history = self.history_store.load()
        return StatusReport(
            connected=settings.is_connected,
            username=display_name(settings.user) if settings.user else None,
            total_documents=history.total_documents,
            total_highlights=history.total_highlights,
            last_sync_date=history.last_sync_date,
            pending_deletion=sum(1 for record in history.documents.values() if record.pending_deletion),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _update(self, **changes: object) -> Settings:
        settings = self.settings_store.load().evolve(**changes)
        self.settings_store.save(settings)
        return settings

    def _orchestrator(self, settings: Settings) -> SyncOrchestrator:
        if not settings.is_connected:
            raise NotConnectedError("Please configure a Hypothes.is API token first.")
        return SyncOrchestrator(
            self._client_factory(settings),
            VaultStore(settings.vault_root, settings.highlights_folder),
            template=settings.template,
            date_format=settings.date_format,
            workers=self._workers,
            sleep=self._sleep,
        )

    @contextmanager
    def _exclusive(self) -> Iterator[threading.Event]:
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("A sync is already running.")
        self._cancel = threading.Event()
        try:
            yield self._cancel
        finally:
            self._cancel = None
            self._lock.release()

