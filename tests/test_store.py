from __future__ import annotations

from pathlib import Path

import pytest

from safescan.community import CommunityRatingStore
from safescan.combiner import combine
from safescan.canonical import canonicalize
from safescan.history import HistoryStore
from safescan.models import SyncOperation, SyncOperationKind, VoteVerdict
from safescan.store import (
    JsonHistoryRepository,
    JsonRatingRepository,
    JsonSyncQueueRepository,
    StorageError,
    clear_runtime,
    history_path,
    queue_path,
    ratings_path,
)


def test_paths_follow_safescan_home(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SAFESCAN_HOME", str(tmp_path / "home"))
    assert history_path() == tmp_path / "home" / "history.json"
    assert ratings_path().name == "ratings.json"
    assert queue_path().name == "sync_queue.json"


def test_missing_files_load_as_empty(tmp_path: Path) -> None:
    assert JsonHistoryRepository(tmp_path / "h.json").load_entries() == []
    assert JsonRatingRepository(tmp_path / "r.json").load_votes() == []
    assert JsonSyncQueueRepository(tmp_path / "q.json").load_queue() == []


def test_rating_roundtrip_through_json(tmp_path: Path) -> None:
    repo = JsonRatingRepository(tmp_path / "ratings.json")
    store = CommunityRatingStore(repository=repo)
    store.submit_vote("a", "h1", VoteVerdict.UNSAFE)
    reloaded = CommunityRatingStore(repository=JsonRatingRepository(tmp_path / "ratings.json"))
    rating = reloaded.get_rating("h1")
    assert rating is not None
    assert rating.unsafe_count == 1


def test_history_roundtrip_through_json(tmp_path: Path) -> None:
    repo = JsonHistoryRepository(tmp_path / "history.json")
    ident = canonicalize("https://example.com/")
    assert ident is not None
    HistoryStore(repository=repo).record_scan(ident, combine(None, None), 12)
    assert repo.path.exists()
    entries = JsonHistoryRepository(tmp_path / "history.json").load_entries()
    assert [e.identifier for e in entries] == ["https://example.com/"]
    assert entries[0].duration_ms == 12


def test_queue_roundtrip(tmp_path: Path) -> None:
    repo = JsonSyncQueueRepository(tmp_path / "q.json")
    op = SyncOperation(
        op_id="1",
        kind=SyncOperationKind.RETRACT,
        voter_id="a",
        identifier_hash="h1",
        timestamp=1.0,
        queued_at=2.0,
    )
    repo.save_queue([op])
    assert repo.load_queue() == [op]


def test_corrupt_file_raises_storage_error_and_stores_start_empty(tmp_path: Path) -> None:
    path = tmp_path / "history.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageError):
        JsonHistoryRepository(path).load_entries()
    store = HistoryStore(repository=JsonHistoryRepository(path))
    assert store.entries() == []


def test_clear_runtime_removes_state(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SAFESCAN_HOME", str(tmp_path))
    CommunityRatingStore(repository=JsonRatingRepository()).submit_vote("a", "h1", VoteVerdict.SAFE)
    assert ratings_path().exists()
    clear_runtime()
    assert not ratings_path().exists()
