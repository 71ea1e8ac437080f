"""Helpers for persisting rendered highlights to Markdown files in a vault."""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from hashlib import sha1
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional

from .errors import LocalWriteError, PathCollisionError
from .markdown import extract_document_id, sanitise_filename
from .models import LocalFile, SourceDocument

logger = logging.getLogger(__name__)

MAX_DISAMBIGUATION_ATTEMPTS = 50


def content_hash(content: str) -> str:
    return sha1(content.encode("utf-8")).hexdigest()


def short_document_id(document_id: str) -> str:
    return sha1(document_id.encode("utf-8")).hexdigest()[:8]


@dataclass(frozen=True)
class WriteResult:
    path: str
    written: bool


class VaultStore:
    """Markdown files for highlight documents inside a vault.

    Every path accepted or returned by the store is a POSIX-style path
    relative to ``vault_root``. New documents are placed in ``folder``;
    files the user moved elsewhere in the vault are still found by their
    embedded document id.
    """

    def __init__(self, vault_root: Path, folder: str = "") -> None:
        self.vault_root = Path(vault_root).expanduser()
        self.folder = folder.strip("/")

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def resolve_path(self, document: SourceDocument, reserved: Iterable[str] = ()) -> str:
        """Pick the file name for a document that has none yet.

        The title-derived name is used unless a different document (or a file
        without an identifier) already lives there, or an earlier document of
        the same pass reserved it; then a short hash of the document id is
        appended.
        """

        taken = {path.casefold() for path in reserved}
        base = sanitise_filename(document.title)
        suffix = short_document_id(document.id)
        names = [f"{base}.md", f"{base} ({suffix}).md"]
        names.extend(f"{base} ({suffix}-{n}).md" for n in range(2, MAX_DISAMBIGUATION_ATTEMPTS))
        candidates = [f"{self.folder}/{name}" if self.folder else name for name in names]

        for candidate in candidates:
            if candidate.casefold() in taken:
                continue
            if not self.exists(candidate):
                return candidate
            if self.document_id_at(candidate) == document.id:
                return candidate
        raise PathCollisionError(f"No free file name for '{document.title}' in {self.vault_root / self.folder}")

    def _full_path(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"Path {path!r} escapes the vault")
        return self.vault_root.joinpath(*relative.parts)

    # ------------------------------------------------------------------
    # File access
    # ------------------------------------------------------------------
    def exists(self, path: str) -> bool:
        return self._full_path(path).is_file()

    def read(self, path: str) -> str:
        """Return the content of ``path``; raises ``FileNotFoundError`` when missing."""

        with self._full_path(path).open("r", encoding="utf-8", newline="") as handle:
            return handle.read()

    def document_id_at(self, path: str) -> Optional[str]:
        try:
            return extract_document_id(self.read(path))
        except (OSError, UnicodeDecodeError):
            return None

    def write(self, path: str, content: str) -> WriteResult:
        """Atomically replace ``path`` with ``content``; unchanged files are left alone."""

        target = self._full_path(path)
        try:
            if target.is_file() and self.read(path) == content:
                return WriteResult(path=path, written=False)
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                    handle.write(content)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, target)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except (OSError, UnicodeDecodeError) as exc:
            raise LocalWriteError(path, exc) from exc
        logger.debug("Wrote %s", target)
        return WriteResult(path=path, written=True)

    def rename(self, source: str, destination: str) -> None:
        target = self._full_path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        self._full_path(source).rename(target)

    def delete(self, path: str) -> None:
        self._full_path(path).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------
    def list(self) -> List[LocalFile]:
        """Return every Markdown file of the vault, skipping hidden folders."""

        if not self.vault_root.is_dir():
            return []
        files: List[LocalFile] = []
        for full_path in sorted(self.vault_root.rglob("*.md")):
            relative = full_path.relative_to(self.vault_root).as_posix()
            if any(part.startswith(".") for part in PurePosixPath(relative).parts):
                continue
            try:
                content = self.read(relative)
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Skipping unreadable file %s: %s", full_path, exc)
                continue
            files.append(LocalFile(path=relative, content=content, document_id=extract_document_id(content)))
        return files

    def document_index(self) -> Dict[str, str]:
        """Map embedded document ids to the file that carries them."""

        index: Dict[str, str] = {}
        for local_file in self.list():
            if local_file.document_id and local_file.document_id not in index:
                index[local_file.document_id] = local_file.path
        return index

    def list_folders(self) -> List[str]:
        """Folders of the vault (relative to the vault root), for choosing a highlights folder."""

        if not self.vault_root.is_dir():
            return []
        folders = ["/"]
        for path in sorted(self.vault_root.rglob("*")):
            if not path.is_dir():
                continue
            relative = path.relative_to(self.vault_root)
            if any(part.startswith(".") for part in relative.parts):
                continue
            folders.append(relative.as_posix())
        return folders
