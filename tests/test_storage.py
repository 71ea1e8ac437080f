from pathlib import Path

import pytest

from hypothesis_highlights.errors import LocalWriteError
from hypothesis_highlights.markdown import embed_document_id
from hypothesis_highlights.models import SourceDocument
from hypothesis_highlights.storage import VaultStore, content_hash, short_document_id


def make_document(document_id: str = "https://example.com/a", title: str = "Doc A") -> SourceDocument:
    return SourceDocument(id=document_id, title=title, uri=document_id, annotations=())


def test_resolve_path_uses_the_sanitised_title(tmp_path: Path) -> None:
    store = VaultStore(tmp_path, "Hypothesis")

    assert store.resolve_path(make_document(title="What: is it?")) == "Hypothesis/What is it.md"
    assert VaultStore(tmp_path).resolve_path(make_document()) == "Doc A.md"


def test_resolve_path_disambiguates_other_documents_with_the_same_title(tmp_path: Path) -> None:
    store = VaultStore(tmp_path, "Hypothesis")
    first = make_document("https://example.com/a")
    second = make_document("https://example.com/b")
    store.write("Hypothesis/Doc A.md", embed_document_id("# Doc A\n", first.id))

    assert store.resolve_path(first) == "Hypothesis/Doc A.md"
    assert store.resolve_path(second) == f"Hypothesis/Doc A ({short_document_id(second.id)}).md"


def test_resolve_path_skips_reserved_and_untracked_files(tmp_path: Path) -> None:
    store = VaultStore(tmp_path, "Hypothesis")
    document = make_document()
    suffix = short_document_id(document.id)
    store.write(f"Hypothesis/Doc A ({suffix}).md", "my own notes without an id\n")

    path = store.resolve_path(document, reserved=["Hypothesis/doc a.md"])

    assert path == f"Hypothesis/Doc A ({suffix}-2).md"


def test_write_is_atomic_and_idempotent(tmp_path: Path) -> None:
    store = VaultStore(tmp_path)

    first = store.write("Hypothesis/Doc A.md", "line one\r\nline two\n")
    target = tmp_path / "Hypothesis" / "Doc A.md"
    modified = target.stat().st_mtime_ns
    second = store.write("Hypothesis/Doc A.md", "line one\r\nline two\n")

    assert first.written is True
    assert second.written is False
    assert target.stat().st_mtime_ns == modified
    assert target.read_bytes() == b"line one\r\nline two\n"
    assert [path.name for path in target.parent.iterdir()] == ["Doc A.md"]


def test_write_failure_raises_local_write_error(tmp_path: Path) -> None:
    (tmp_path / "blocked").write_text("a file, not a folder", encoding="utf-8")
    store = VaultStore(tmp_path)

    with pytest.raises(LocalWriteError) as excinfo:
        store.write("blocked/Doc A.md", "content")

    assert excinfo.value.path == "blocked/Doc A.md"
    assert isinstance(excinfo.value.cause, OSError)


def test_list_reads_ids_and_skips_hidden_folders(tmp_path: Path) -> None:
    store = VaultStore(tmp_path, "Hypothesis")
    store.write("Hypothesis/Doc A.md", embed_document_id("# A\n", "https://example.com/a"))
    store.write("Archive/Moved.md", embed_document_id("# B\n", "https://example.com/b"))
    store.write("Notes.md", "plain note\n")
    store.write(".obsidian/cache.md", embed_document_id("# C\n", "https://example.com/c"))

    files = store.list()

    assert [local.path for local in files] == ["Archive/Moved.md", "Hypothesis/Doc A.md", "Notes.md"]
    assert files[2].document_id is None
    assert store.document_index() == {
        "https://example.com/a": "Hypothesis/Doc A.md",
        "https://example.com/b": "Archive/Moved.md",
    }


def test_list_folders(tmp_path: Path) -> None:
    (tmp_path / "Notes" / "Sub").mkdir(parents=True)
    (tmp_path / "Hypothesis").mkdir()
    (tmp_path / ".obsidian" / "plugins").mkdir(parents=True)

    assert VaultStore(tmp_path).list_folders() == ["/", "Hypothesis", "Notes", "Notes/Sub"]
    assert VaultStore(tmp_path / "missing").list_folders() == []


def test_rename_and_delete(tmp_path: Path) -> None:
    store = VaultStore(tmp_path)
    store.write("Doc A.md", "content")

    store.rename("Doc A.md", "Archive/Doc A.md")
    assert not store.exists("Doc A.md")
    assert store.read("Archive/Doc A.md") == "content"

    store.delete("Archive/Doc A.md")
    store.delete("Archive/Doc A.md")
    assert not store.exists("Archive/Doc A.md")
    with pytest.raises(FileNotFoundError):
        store.read("Archive/Doc A.md")


def test_paths_may_not_escape_the_vault(tmp_path: Path) -> None:
    store = VaultStore(tmp_path / "vault")

    with pytest.raises(ValueError):
        store.write("../outside.md", "content")
    with pytest.raises(ValueError):
        store.exists("/etc/passwd")


def test_content_hash_is_stable() -> None:
    assert content_hash("abc") == content_hash("abc")
    assert content_hash("abc") != content_hash("abd")
    assert len(short_document_id("https://example.com/a")) == 8
