"""Exceptions raised by the highlight synchroniser."""
from __future__ import annotations

from pathlib import PurePosixPath
from typing import Optional


class HighlightSyncError(RuntimeError):
    """Base class for every error surfaced by the sync engine."""


class AuthError(HighlightSyncError):
    """The API token is missing, invalid or revoked."""


class TransientError(HighlightSyncError):
    """The annotation service could not be reached or answered with 5xx/429."""


class RemoteError(HighlightSyncError):
    """The annotation service rejected a request or returned garbage."""


class TemplateSyntaxError(HighlightSyncError):
    """Raised by :func:`renderer.validate` for a malformed template."""

    def __init__(self, position: int, reason: str) -> None:
        super().__init__(f"{reason} (at offset {position})")
        self.position = position
        self.reason = reason


class PathCollisionError(HighlightSyncError):
    """No free file name could be derived for a document."""


class LocalWriteError(HighlightSyncError):
    """Writing a highlight file failed; only that document is affected."""

    def __init__(self, path: PurePosixPath | str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to write {path}{detail}")
        self.path = str(path)
        self.cause = cause


class SyncCancelled(HighlightSyncError):
    """The running pass was cancelled before it could commit."""


class SyncInProgressError(HighlightSyncError):
    """A sync pass is already running."""


class NotConnectedError(HighlightSyncError):
    """No API token has been configured."""
