"""Data models for Hypothes.is highlight synchronisation."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


def parse_timestamp(value: str) -> datetime:
    """Parse the ISO-8601 timestamps used by the Hypothes.is API."""

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


@dataclass(frozen=True)
class Annotation:
    """A single remote annotation, as returned by the search API."""

    id: str
    document_id: str
    document_title: str
    uri: str
    text: str
    created: datetime
    updated: datetime
    user: str
    note: Optional[str] = None
    tags: Tuple[str, ...] = ()
    group: str = "__world__"
    incontext_url: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created, self.id)


@dataclass(frozen=True)
class SourceDocument:
    """All annotations of one annotated page, in creation order."""

    id: str
    title: str
    uri: str
    annotations: Tuple[Annotation, ...]

    @property
    def highlight_ids(self) -> Tuple[str, ...]:
        return tuple(annotation.id for annotation in self.annotations)


@dataclass(frozen=True)
class LocalFile:
    """A Markdown file in the highlights folder."""

    path: str
    content: str
    document_id: Optional[str] = None


@dataclass(frozen=True)
class DocumentRecord:
    """Where a source document was written and what was written there."""

    path: str
    content_hash: str
    highlight_ids: Tuple[str, ...] = ()
    pending_deletion: bool = False

    def to_mapping(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "path": self.path,
            "content_hash": self.content_hash,
            "highlight_ids": list(self.highlight_ids),
        }
        if self.pending_deletion:
            data["pending_deletion"] = True
        return data

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DocumentRecord":
        return cls(
            path=str(data["path"]),
            content_hash=str(data.get("content_hash", "")),
            highlight_ids=tuple(str(value) for value in data.get("highlight_ids") or ()),
            pending_deletion=bool(data.get("pending_deletion", False)),
        )


@dataclass(frozen=True)
class SyncHistory:
    """Persisted state carried from one committed pass to the next.

    ``cursor`` is the ISO timestamp of the newest annotation update that a
    fully successful pass processed. ``documents`` maps source document ids
    to the file they were rendered into. ``ignored`` holds documents the user
    chose to keep deleted.
    """

    cursor: Optional[str] = None
    last_sync_date: Optional[str] = None
    documents: Mapping[str, DocumentRecord] = field(default_factory=dict)
    ignored: FrozenSet[str] = frozenset()
    total_documents: int = 0
    total_highlights: int = 0

    def evolve(self, **changes: Any) -> "SyncHistory":
        return replace(self, **changes)

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "cursor": self.cursor,
            "last_sync_date": self.last_sync_date,
            "documents": {key: record.to_mapping() for key, record in sorted(self.documents.items())},
            "ignored": sorted(self.ignored),
            "totals": {
                "documents": self.total_documents,
                "highlights": self.total_highlights,
            },
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SyncHistory":
        totals = data.get("totals") or {}
        documents = data.get("documents") or {}
        return cls(
            cursor=data.get("cursor") or None,
            last_sync_date=data.get("last_sync_date") or None,
            documents={str(key): DocumentRecord.from_mapping(value) for key, value in documents.items()},
            ignored=frozenset(str(value) for value in data.get("ignored") or ()),
            total_documents=int(totals.get("documents", 0)),
            total_highlights=int(totals.get("highlights", 0)),
        )
