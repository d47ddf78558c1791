from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

from safescan.canonical import canonicalize
from safescan.combiner import MIN_COMMUNITY_VOTES, combine
from safescan.community import CommunityRatingStore, VoteRejectedError, VoteRejection
from safescan.history import HistoryStore
from safescan.models import (
    CommunityRating,
    Identifier,
    ReputationVerdict,
    SafetyAssessment,
    ScanHistoryEntry,
    Vote,
    VoteVerdict,
)
from safescan.resilience import ResilientReputationClient
from safescan.sync import SyncResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScanState(StrEnum):
    IDLE = "idle"
    SCANNING = "scanning"
    VALIDATING = "validating"
    RESULT = "result"
    RATED = "rated"


class ScanEvent(StrEnum):
    SCAN = "scan"
    VALIDATED = "validated"
    RECORDED = "recorded"
    VOTE = "vote"
    RESET = "reset"
    FAIL = "fail"


TRANSITIONS: dict[tuple[ScanState, ScanEvent], ScanState] = {
    (ScanState.IDLE, ScanEvent.SCAN): ScanState.SCANNING,
    (ScanState.SCANNING, ScanEvent.SCAN): ScanState.SCANNING,
    (ScanState.VALIDATING, ScanEvent.SCAN): ScanState.SCANNING,
    (ScanState.RESULT, ScanEvent.SCAN): ScanState.SCANNING,
    (ScanState.RATED, ScanEvent.SCAN): ScanState.SCANNING,
    (ScanState.SCANNING, ScanEvent.VALIDATED): ScanState.VALIDATING,
    (ScanState.VALIDATING, ScanEvent.RECORDED): ScanState.RESULT,
    (ScanState.RESULT, ScanEvent.VOTE): ScanState.RATED,
    (ScanState.RATED, ScanEvent.VOTE): ScanState.RATED,
    (ScanState.SCANNING, ScanEvent.FAIL): ScanState.IDLE,
    (ScanState.VALIDATING, ScanEvent.FAIL): ScanState.IDLE,
}


class InvalidTransitionError(Exception):
    def __init__(self, state: ScanState, event: ScanEvent) -> None:
        super().__init__(f"Event '{event.value}' is not valid in state '{state.value}'")
        self.state = state
        self.event = event


StateListener = Callable[[ScanState, ScanEvent, ScanState], None]


class ScanStateMachine:
    """Scan lifecycle, independent of any view. Views render ``state`` and dispatch events."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state = ScanState.IDLE
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ScanState:
        with self._lock:
            return self._state

    def on_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def can(self, event: ScanEvent) -> bool:
        with self._lock:
            return event == ScanEvent.RESET or (self._state, event) in TRANSITIONS

    def dispatch(self, event: ScanEvent) -> ScanState:
        with self._lock:
            previous = self._state
            if event == ScanEvent.RESET:
                target = ScanState.IDLE
            else:
                target = TRANSITIONS.get((previous, event))
                if target is None:
                    raise InvalidTransitionError(previous, event)
            self._state = target
        for listener in list(self._listeners):
            listener(previous, event, target)
        return target


class ScanStatus(StrEnum):
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    INVALID = "invalid"
    SUPERSEDED = "superseded"


@dataclass
class ScanOutcome:
    status: ScanStatus
    identifier: Identifier | None = None
    assessment: SafetyAssessment | None = None
    entry: ScanHistoryEntry | None = None
    duration_ms: int = 0


@dataclass
class VoteOutcome:
    accepted: bool
    rating: CommunityRating | None = None
    entry: ScanHistoryEntry | None = None
    rejection: VoteRejection | None = None
    queued: bool = False


class ScanSession:
    """Runs the scan pipeline for one voter: canonicalize, look up, combine, record.

    The reputation and community lookups run concurrently and are joined before the
    combiner; a failure in one does not cancel the other. A lookup overtaken by a newer
    scan of a different identifier completes, but its result is discarded.
    """

    def __init__(
        self,
        community: CommunityRatingStore,
        history: HistoryStore,
        voter_id: str,
        reputation: ResilientReputationClient | None = None,
        sync: SyncResolver | None = None,
        min_votes: int = MIN_COMMUNITY_VOTES,
        max_workers: int = 4,
    ) -> None:
        self.community = community
        self.history = history
        self.voter_id = voter_id
        self.reputation = reputation
        self.sync = sync
        self.min_votes = min_votes
        self.machine = ScanStateMachine()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="safescan-lookup")
        self._lock = threading.Lock()
        self._generation = 0
        self._latest_hash: str | None = None
        self._current_entry: ScanHistoryEntry | None = None

    def __enter__(self) -> ScanSession:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        if self.sync is not None:
            self.sync.close()
        self._executor.shutdown(wait=True)

    @property
    def state(self) -> ScanState:
        return self.machine.state

    @property
    def current_entry(self) -> ScanHistoryEntry | None:
        return self._current_entry

    def reset(self) -> None:
        with self._lock:
            self._generation += 1
            self._latest_hash = None
            self._current_entry = None
            self.machine.dispatch(ScanEvent.RESET)

    def _settle(self, generation: int, event: ScanEvent) -> bool:
        """Dispatch ``event`` only if no newer scan has started since ``generation``."""
        with self._lock:
            if generation != self._generation:
                return False
            self.machine.dispatch(event)
            return True

    def _join(self, future: Future[T] | None, name: str) -> T | None:
        if future is None:
            return None
        try:
            return future.result()
        except Exception:
            logger.exception("%s lookup failed", name)
            return None

    def _community_rating(self, identifier_hash: str) -> CommunityRating | None:
        if self.sync is not None:
            remote = self.sync.pull(identifier_hash)
            if remote is not None:
                return remote
        return self.community.get_rating(identifier_hash)

    def lookup(self, identifier: Identifier) -> tuple[ReputationVerdict | None, CommunityRating | None]:
        rep_future: Future[ReputationVerdict] | None = None
        if identifier.is_web and self.reputation is not None:
            rep_future = self._executor.submit(self.reputation.assess, identifier)
        community_future = self._executor.submit(self._community_rating, identifier.hash)
        return self._join(rep_future, "reputation"), self._join(community_future, "community")

    def scan(self, raw: str | bytes) -> ScanOutcome:
        started = time.perf_counter()
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._latest_hash = None
            self._current_entry = None
            self.machine.dispatch(ScanEvent.SCAN)

        identifier = canonicalize(raw)
        if identifier is None:
            self._settle(generation, ScanEvent.FAIL)
            return ScanOutcome(status=ScanStatus.INVALID)

        with self._lock:
            if generation == self._generation:
                self._latest_hash = identifier.hash

        if self.history.is_duplicate(identifier):
            self._settle(generation, ScanEvent.FAIL)
            return ScanOutcome(
                status=ScanStatus.DUPLICATE,
                identifier=identifier,
                entry=self.history.find_by_identifier(identifier.canonical),
            )

        if not self._settle(generation, ScanEvent.VALIDATED):
            return self._superseded(identifier)

        reputation, community = self.lookup(identifier)
        assessment = combine(reputation, community, not identifier.is_web, self.min_votes)
        duration_ms = int((time.perf_counter() - started) * 1000)

        with self._lock:
            superseded = generation != self._generation and self._latest_hash != identifier.hash
        if superseded:
            return self._superseded(identifier)

        result = self.history.record_scan(identifier, assessment, duration_ms)
        if result.duplicate:
            self._settle(generation, ScanEvent.FAIL)
            return ScanOutcome(
                status=ScanStatus.DUPLICATE,
                identifier=identifier,
                assessment=assessment,
                entry=result.entry,
                duration_ms=duration_ms,
            )

        with self._lock:
            if generation == self._generation:
                self._current_entry = result.entry
                self.machine.dispatch(ScanEvent.RECORDED)
        return ScanOutcome(
            status=ScanStatus.COMPLETED,
            identifier=identifier,
            assessment=assessment,
            entry=result.entry,
            duration_ms=duration_ms,
        )

    def _superseded(self, identifier: Identifier) -> ScanOutcome:
        logger.info("discarding result for %s: a newer scan has started", identifier.canonical)
        return ScanOutcome(status=ScanStatus.SUPERSEDED, identifier=identifier)

    def _cast(self, identifier_hash: str, verdict: VoteVerdict | None) -> tuple[CommunityRating, bool]:
        previous = self.community.voter_vote(self.voter_id, identifier_hash)
        if verdict is None:
            rating = self.community.retract_vote(self.voter_id, identifier_hash)
        else:
            rating = self.community.submit_vote(self.voter_id, identifier_hash, verdict)
        if self.sync is None:
            return rating, False

        try:
            if verdict is None:
                remote = self.sync.push_retraction(self.voter_id, identifier_hash)
            else:
                current = self.community.voter_vote(self.voter_id, identifier_hash)
                vote = current or Vote(
                    voter_id=self.voter_id,
                    identifier_hash=identifier_hash,
                    verdict=verdict,
                    timestamp=rating.last_updated,
                )
                remote = self.sync.push_vote(vote)
        except VoteRejectedError:
            self.community.restore_vote(self.voter_id, identifier_hash, previous)
            raise
        if remote is None:
            return rating, True
        return remote, False

    def vote_on(self, identifier: Identifier, verdict: VoteVerdict | None) -> VoteOutcome:
        """Cast, change or (with ``None``) retract this session's vote on an identifier."""
        try:
            rating, queued = self._cast(identifier.hash, verdict)
        except VoteRejectedError as exc:
            logger.info("%s", exc)
            return VoteOutcome(accepted=False, rejection=exc.reason)

        entry = self.history.find_by_identifier(identifier.canonical)
        if entry is not None:
            entry = self.history.apply_user_vote(entry.id, verdict, community=rating)
            with self._lock:
                current = self._current_entry
                if current is not None and entry is not None and current.id == entry.id:
                    self._current_entry = entry
                    if self.machine.can(ScanEvent.VOTE):
                        self.machine.dispatch(ScanEvent.VOTE)
        return VoteOutcome(accepted=True, rating=rating, entry=entry, queued=queued)

    def vote(self, verdict: VoteVerdict | None, entry_id: str | None = None) -> VoteOutcome:
        entry = self.history.get(entry_id) if entry_id else self._current_entry
        if entry is None:
            raise ValueError("No scan result to vote on")
        identifier = Identifier(canonical=entry.identifier, hash=entry.identifier_hash, is_web=not entry.non_web)
        return self.vote_on(identifier, verdict)
