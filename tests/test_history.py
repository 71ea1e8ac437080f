import json
from pathlib import Path

import pytest

from hypothesis_highlights.errors import HighlightSyncError
from hypothesis_highlights.history import HistoryStore
from hypothesis_highlights.models import DocumentRecord, SyncHistory


def make_history() -> SyncHistory:
    return SyncHistory(
        cursor="2024-03-01T11:00:00+00:00",
        last_sync_date="2024-03-02T08:00:00+00:00",
        documents={
            "https://example.com/a": DocumentRecord(
                path="Hypothesis/Doc A.md", content_hash="abc", highlight_ids=("a1", "a2")
            ),
            "https://example.com/b": DocumentRecord(
                path="Hypothesis/Doc B.md", content_hash="def", highlight_ids=("b1",), pending_deletion=True
            ),
        },
        ignored=frozenset({"https://example.com/c"}),
        total_documents=3,
        total_highlights=4,
    )


def test_missing_history_file_is_an_empty_history(tmp_path: Path) -> None:
    assert HistoryStore(tmp_path / "history.json").load() == SyncHistory()


def test_history_survives_a_save_and_load(tmp_path: Path) -> None:
    store = HistoryStore(tmp_path / "state" / "history.json")
    history = make_history()

    store.save(history)

    assert store.load() == history
    assert [path.name for path in (tmp_path / "state").iterdir()] == ["history.json"]


def test_history_file_layout(tmp_path: Path) -> None:
    path = tmp_path / "history.json"
    HistoryStore(path).save(make_history())

    data = json.loads(path.read_text(encoding="utf-8"))

    assert data["cursor"] == "2024-03-01T11:00:00+00:00"
    assert data["totals"] == {"documents": 3, "highlights": 4}
    assert data["ignored"] == ["https://example.com/c"]
    assert data["documents"]["https://example.com/a"] == {
        "path": "Hypothesis/Doc A.md",
        "content_hash": "abc",
        "highlight_ids": ["a1", "a2"],
    }
    assert data["documents"]["https://example.com/b"]["pending_deletion"] is True


def test_corrupt_history_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "history.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(HighlightSyncError):
        HistoryStore(path).load()


def test_reset_keeps_only_the_ignored_documents(tmp_path: Path) -> None:
    store = HistoryStore(tmp_path / "history.json")
    store.save(make_history())
    expected = SyncHistory(ignored=frozenset({"https://example.com/c"}))

    assert store.reset() == expected
    assert store.load() == expected


def test_reset_replaces_a_corrupt_history(tmp_path: Path, caplog) -> None:
    path = tmp_path / "history.json"
    path.write_text("{not json", encoding="utf-8")

    assert HistoryStore(path).reset() == SyncHistory()
    assert HistoryStore(path).load() == SyncHistory()
    assert "Discarding unreadable sync history" in caplog.text
