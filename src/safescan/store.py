from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Protocol, TypeVar

from pydantic import BaseModel, Field, ValidationError

from safescan.config import data_dir
from safescan.models import CommunityRating, ScanHistoryEntry, SyncOperation, Vote


class StorageError(Exception):
    pass


class HistoryRepository(Protocol):
    def load_entries(self) -> list[ScanHistoryEntry]: ...

    def save_entries(self, entries: list[ScanHistoryEntry]) -> None: ...


class RatingRepository(Protocol):
    def load_votes(self) -> list[Vote]: ...

    def load_ratings(self) -> list[CommunityRating]: ...

    def save(self, votes: list[Vote], ratings: list[CommunityRating]) -> None: ...


class SyncQueueRepository(Protocol):
    def load_queue(self) -> list[SyncOperation]: ...

    def save_queue(self, operations: list[SyncOperation]) -> None: ...


class HistoryFile(BaseModel):
    entries: list[ScanHistoryEntry] = Field(default_factory=list)


class RatingFile(BaseModel):
    votes: list[Vote] = Field(default_factory=list)
    ratings: list[CommunityRating] = Field(default_factory=list)


class QueueFile(BaseModel):
    operations: list[SyncOperation] = Field(default_factory=list)


M = TypeVar("M", bound=BaseModel)


def history_path() -> Path:
    return data_dir() / "history.json"


def ratings_path() -> Path:
    return data_dir() / "ratings.json"


def queue_path() -> Path:
    return data_dir() / "sync_queue.json"


class _JsonFile:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def read(self, model: type[M]) -> M:
        with self._lock:
            if not self.path.exists():
                return model()
            try:
                return model.model_validate_json(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError, ValidationError) as exc:
                raise StorageError(f"Unreadable state file {self.path}: {exc}") from exc

    def write(self, payload: BaseModel) -> None:
        with self._lock:
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_text(payload.model_dump_json(indent=2), encoding="utf-8")
                os.replace(tmp, self.path)
            except OSError as exc:
                raise StorageError(f"Unable to write state file {self.path}: {exc}") from exc


class JsonHistoryRepository:
    def __init__(self, path: Path | None = None) -> None:
        self._file = _JsonFile(path or history_path())

    @property
    def path(self) -> Path:
        return self._file.path

    def load_entries(self) -> list[ScanHistoryEntry]:
        return self._file.read(HistoryFile).entries

    def save_entries(self, entries: list[ScanHistoryEntry]) -> None:
        self._file.write(HistoryFile(entries=entries))


class JsonRatingRepository:
    def __init__(self, path: Path | None = None) -> None:
        self._file = _JsonFile(path or ratings_path())

    def load_votes(self) -> list[Vote]:
        return self._file.read(RatingFile).votes

    def load_ratings(self) -> list[CommunityRating]:
        return self._file.read(RatingFile).ratings

    def save(self, votes: list[Vote], ratings: list[CommunityRating]) -> None:
        self._file.write(RatingFile(votes=votes, ratings=ratings))


class JsonSyncQueueRepository:
    def __init__(self, path: Path | None = None) -> None:
        self._file = _JsonFile(path or queue_path())

    def load_queue(self) -> list[SyncOperation]:
        return self._file.read(QueueFile).operations

    def save_queue(self, operations: list[SyncOperation]) -> None:
        self._file.write(QueueFile(operations=operations))


class InMemoryHistoryRepository:
    def __init__(self, entries: list[ScanHistoryEntry] | None = None) -> None:
        self.entries = list(entries or [])
        self.saves = 0

    def load_entries(self) -> list[ScanHistoryEntry]:
        return list(self.entries)

    def save_entries(self, entries: list[ScanHistoryEntry]) -> None:
        self.entries = list(entries)
        self.saves += 1


class InMemoryRatingRepository:
    def __init__(self) -> None:
        self.votes: list[Vote] = []
        self.ratings: list[CommunityRating] = []

    def load_votes(self) -> list[Vote]:
        return list(self.votes)

    def load_ratings(self) -> list[CommunityRating]:
        return list(self.ratings)

    def save(self, votes: list[Vote], ratings: list[CommunityRating]) -> None:
        self.votes = list(votes)
        self.ratings = list(ratings)


class InMemorySyncQueueRepository:
    def __init__(self) -> None:
        self.operations: list[SyncOperation] = []

    def load_queue(self) -> list[SyncOperation]:
        return list(self.operations)

    def save_queue(self, operations: list[SyncOperation]) -> None:
        self.operations = list(operations)


def clear_runtime() -> None:
    for path in (history_path(), ratings_path(), queue_path()):
        if path.exists():
            path.unlink()
