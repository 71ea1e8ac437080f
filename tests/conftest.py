"""
Shared pytest fixtures for the sync tests.

Provides an in-memory annotation source so no test talks to Hypothes.is.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from hypothesis_highlights.fetchers import AnnotationPage, PageToken
from hypothesis_highlights.models import Annotation, parse_timestamp
from hypothesis_highlights.storage import VaultStore
from hypothesis_highlights.sync import SyncOrchestrator

USER = "acct:reader@hypothes.is"
START = datetime(2024, 3, 1, 0, 0, tzinfo=timezone.utc)
SYNC_TIME = datetime(2024, 3, 2, 8, 0, tzinfo=timezone.utc)
TEMPLATE = "# {{title}}\n{{#highlights}}\n- {{text}}\n{{/highlights}}"


def at(hour: int, minute: int = 0) -> datetime:
    """A timestamp on the first day of March 2024."""
    return START + timedelta(hours=hour, minutes=minute)


class FakeAnnotationSource:
    """Serves annotations from memory, paging them by ``updated`` like the real API."""

    def __init__(self, page_size: int = 2) -> None:
        self.page_size = page_size
        self.annotations: Dict[str, Annotation] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[tuple] = []
        self.on_fetch: Optional[Callable[[], None]] = None

    def add(
        self,
        annotation_id: str,
        document: str = "a",
        *,
        updated: datetime,
        created: Optional[datetime] = None,
        text: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Annotation:
        uri = f"https://example.com/{document}"
        annotation = Annotation(
            id=annotation_id,
            document_id=uri,
            document_title=title or f"Doc {document.upper()}",
            uri=uri,
            text=text or f"Quote {annotation_id}",
            created=created or updated,
            updated=updated,
            user=USER,
        )
        self.annotations[annotation_id] = annotation
        return annotation

    def fail(self, method: str, *errors: Exception, document: Optional[str] = None) -> None:
        key = f"{method}:{document}" if document else method
        self.failures.setdefault(key, []).extend(errors)

    def fetch_profile(self) -> str:
        self._record("fetch_profile")
        return USER

    def fetch_since(self, cursor: Optional[str], page_token: Optional[PageToken] = None) -> AnnotationPage:
        self._record("fetch_since", cursor, page_token)
        if self.on_fetch is not None:
            self.on_fetch()
        search_after = page_token.search_after if page_token else cursor
        after = parse_timestamp(search_after) if search_after else None
        rows = sorted(
            (a for a in self.annotations.values() if after is None or a.updated > after),
            key=lambda a: (a.updated, a.id),
        )
        chunk = rows[: self.page_size]
        return AnnotationPage(annotations=tuple(chunk), next_token=self._next_token(chunk))

    def fetch_document(self, document_id: str) -> List[Annotation]:
        self._record("fetch_document", document_id)
        return sorted(
            (a for a in self.annotations.values() if a.document_id == document_id),
            key=lambda a: (a.updated, a.id),
        )

    def _next_token(self, chunk: List[Annotation]) -> Optional[PageToken]:
        if len(chunk) < self.page_size:
            return None
        boundary = sum(1 for a in chunk if a.updated == chunk[-1].updated)
        if boundary == len(chunk):
            return PageToken(search_after=chunk[-1].updated.isoformat())
        # Boundary rows come again on the next page, as they do from the API.
        return PageToken(search_after=chunk[-boundary - 1].updated.isoformat())

    def _record(self, method: str, *args: object) -> None:
        self.calls.append((method, *args))
        pending = self.failures.get(f"{method}:{args[0]}") if args else None
        if not pending:
            pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)


def snapshot(root: Path) -> Dict[str, str]:
    """Relative path -> content of every file below ``root``."""
    return {
        path.relative_to(root).as_posix(): path.read_text(encoding="utf-8")
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture
def source() -> FakeAnnotationSource:
    return FakeAnnotationSource()


@pytest.fixture
def vault(tmp_path: Path) -> VaultStore:
    return VaultStore(tmp_path / "vault", "Hypothesis")


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_orchestrator(source: FakeAnnotationSource, sleeps: List[float]):
    def factory(store: VaultStore, **kwargs) -> SyncOrchestrator:
        kwargs.setdefault("template", TEMPLATE)
        return SyncOrchestrator(source, store, sleep=sleeps.append, clock=lambda: SYNC_TIME, **kwargs)

    return factory


@pytest.fixture
def orchestrator(make_orchestrator, vault: VaultStore) -> SyncOrchestrator:
    return make_orchestrator(vault)
