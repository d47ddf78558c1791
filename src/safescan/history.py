from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from safescan.combiner import MIN_COMMUNITY_VOTES, combine, display_verdict
from safescan.concurrency import SingleFlight
from safescan.models import CommunityRating, Identifier, SafetyAssessment, ScanHistoryEntry, VoteVerdict
from safescan.store import HistoryRepository, StorageError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100


@dataclass
class RecordResult:
    entry: ScanHistoryEntry | None
    duplicate: bool


@dataclass
class HistoryStats:
    total: int
    real: int
    seeded: int
    oldest: float | None
    newest: float | None


class HistoryStore:
    """Most-recent-first log of completed scans, one entry per canonical identifier."""

    def __init__(
        self,
        repository: HistoryRepository | None = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        min_votes: int = MIN_COMMUNITY_VOTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_entries = max_entries
        self.min_votes = min_votes
        self._repository = repository
        self._clock = clock
        self._lock = threading.RLock()
        self._in_flight = SingleFlight()
        self._entries: list[ScanHistoryEntry] = []
        self._load()

    def _load(self) -> None:
        if self._repository is None:
            return
        try:
            entries = self._repository.load_entries()
        except StorageError as exc:
            logger.warning("starting with empty scan history: %s", exc)
            return
        self._entries = sorted(entries, key=lambda e: e.timestamp, reverse=True)[: self.max_entries]

    def _persist(self) -> None:
        if self._repository is None:
            return
        try:
            self._repository.save_entries(list(self._entries))
        except StorageError as exc:
            logger.warning("scan history not persisted: %s", exc)

    def entries(self, include_seeded: bool = True) -> list[ScanHistoryEntry]:
        with self._lock:
            return [e for e in self._entries if include_seeded or not e.seeded]

    def get(self, entry_id: str) -> ScanHistoryEntry | None:
        with self._lock:
            return next((e for e in self._entries if e.id == entry_id), None)

    def find_by_identifier(self, canonical: str) -> ScanHistoryEntry | None:
        with self._lock:
            return next((e for e in self._entries if e.identifier == canonical and not e.seeded), None)

    def is_duplicate(self, identifier: Identifier) -> bool:
        return self._in_flight.in_flight(identifier.hash) or self.find_by_identifier(identifier.canonical) is not None

    def record_scan(
        self,
        identifier: Identifier,
        assessment: SafetyAssessment,
        duration_ms: int,
    ) -> RecordResult:
        """Store a completed scan unless the identifier is already recorded or being recorded."""
        if not self._in_flight.try_claim(identifier.hash):
            logger.info("duplicate scan suppressed (save in flight): %s", identifier.canonical)
            return RecordResult(entry=self.find_by_identifier(identifier.canonical), duplicate=True)
        try:
            with self._lock:
                existing = self.find_by_identifier(identifier.canonical)
                if existing is not None:
                    logger.info("duplicate scan suppressed: %s", identifier.canonical)
                    return RecordResult(entry=existing, duplicate=True)
                entry = self._build(identifier, assessment, duration_ms)
                self._entries.insert(0, entry)
                evicted = self._entries[self.max_entries :]
                del self._entries[self.max_entries :]
                if evicted:
                    logger.debug("evicted %d oldest history entries", len(evicted))
                self._persist()
                return RecordResult(entry=entry, duplicate=False)
        finally:
            self._in_flight.release(identifier.hash)

    def _build(self, identifier: Identifier, assessment: SafetyAssessment, duration_ms: int) -> ScanHistoryEntry:
        return ScanHistoryEntry(
            id=uuid.uuid4().hex,
            identifier=identifier.canonical,
            identifier_hash=identifier.hash,
            timestamp=self._clock(),
            duration_ms=max(0, duration_ms),
            assessment=assessment,
            community_snapshot=assessment.community,
            safety_status=assessment.verdict,
            non_web=not identifier.is_web,
        )

    def apply_user_vote(
        self,
        entry_id: str,
        verdict: VoteVerdict | None,
        community: CommunityRating | None = None,
    ) -> ScanHistoryEntry | None:
        """Attach (or with ``None`` clear) the user's own vote on an entry.

        A vote overrides the displayed status. Clearing it recomputes the status from the
        entry's saved reputation and community snapshots. The stored assessment never
        changes.
        """
        with self._lock:
            index = next((i for i, e in enumerate(self._entries) if e.id == entry_id), None)
            if index is None:
                return None
            entry = self._entries[index]
            snapshot = community if community is not None else entry.community_snapshot
            if verdict is None:
                recomputed = combine(entry.assessment.reputation, snapshot, entry.non_web, self.min_votes)
                status = recomputed.verdict
            else:
                status = display_verdict(entry.assessment, verdict)
            updated = entry.model_copy(
                update={
                    "user_vote": verdict,
                    "user_override": verdict is not None,
                    "community_snapshot": snapshot,
                    "safety_status": status,
                }
            )
            self._entries[index] = updated
            self._persist()
            return updated

    def seed(self, entries: Iterable[ScanHistoryEntry]) -> int:
        """Add demo rows. They are flagged ``seeded`` and never count as duplicates."""
        with self._lock:
            rows = [e.model_copy(update={"seeded": True}) for e in entries]
            self._entries = sorted(self._entries + rows, key=lambda e: e.timestamp, reverse=True)[: self.max_entries]
            self._persist()
            return len(rows)

    def clear(self, keep_seeded: bool = False) -> int:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if keep_seeded and e.seeded]
            self._persist()
            return before - len(self._entries)

    def stats(self) -> HistoryStats:
        with self._lock:
            seeded = sum(1 for e in self._entries if e.seeded)
            stamps = [e.timestamp for e in self._entries]
            return HistoryStats(
                total=len(self._entries),
                real=len(self._entries) - seeded,
                seeded=seeded,
                oldest=min(stamps) if stamps else None,
                newest=max(stamps) if stamps else None,
            )
