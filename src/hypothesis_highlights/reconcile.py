"""Resolve tracked highlight files that were deleted from the vault."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .models import SyncHistory
from .storage import VaultStore
from .sync import SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MissingDocument:
    document_id: str
    path: str
    highlights: int


class DeletedFileReconciler:
    """Lets the user decide, per document, whether a deleted file comes back.

    ``resync`` recreates the file from the remote annotations; ``keep_deleted``
    forgets the document so automatic passes never recreate it.
    """

    def __init__(self, orchestrator: SyncOrchestrator, store: Optional[VaultStore] = None) -> None:
        self.orchestrator = orchestrator
        self.store = store or orchestrator.store

    def missing(self, history: SyncHistory) -> List[MissingDocument]:
        index: Optional[Dict[str, str]] = None
        missing: List[MissingDocument] = []
        for document_id, record in sorted(history.documents.items()):
            if self.store.exists(record.path):
                continue
            if index is None:
                index = self.store.document_index()
            if document_id in index:
                continue
            missing.append(
                MissingDocument(document_id=document_id, path=record.path, highlights=len(record.highlight_ids))
            )
        return missing

    def resync(
        self,
        history: SyncHistory,
        document_ids: Sequence[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        logger.info("Resyncing %d deleted document(s)", len(document_ids))
        return self.orchestrator.sync_documents(history, document_ids, cancel_event)

    def keep_deleted(self, history: SyncHistory, document_ids: Sequence[str]) -> SyncHistory:
        documents = dict(history.documents)
        for document_id in document_ids:
            if documents.pop(document_id, None) is None and document_id not in history.ignored:
                logger.warning("%s is not tracked; marking it ignored anyway", document_id)
        logger.info("Keeping %d document(s) deleted", len(document_ids))
        return history.evolve(documents=documents, ignored=history.ignored | frozenset(document_ids))
