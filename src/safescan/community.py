from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable, Iterable
from enum import StrEnum

from safescan.channel import RatingChannel
from safescan.concurrency import KeyedLock
from safescan.models import CommunityLimits, CommunityRating, Vote, VoteVerdict
from safescan.store import RatingRepository, StorageError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
SPAM_WINDOW_SECONDS = 60.0


class VoteRejection(StrEnum):
    RATE_LIMITED = "rate_limited"
    ABUSE_DETECTED = "abuse_detected"
    BACKEND_UNAVAILABLE = "backend_unavailable"


class VoteRejectedError(Exception):
    reason: VoteRejection

    def __init__(self, voter_id: str, detail: str) -> None:
        super().__init__(f"Vote from {voter_id} rejected ({self.reason.value}): {detail}")
        self.voter_id = voter_id


class RateLimitedError(VoteRejectedError):
    reason = VoteRejection.RATE_LIMITED


class AbuseDetectedError(VoteRejectedError):
    reason = VoteRejection.ABUSE_DETECTED


class BackendUnavailableError(VoteRejectedError):
    reason = VoteRejection.BACKEND_UNAVAILABLE


def vote_weight(age_seconds: float, decay_days: float = 7.0, floor: float = 0.1) -> float:
    """Linear decay from 1.0 at age 0 down to ``floor`` at ``decay_days`` and beyond."""
    max_age = decay_days * SECONDS_PER_DAY
    return max(floor, 1.0 - max(age_seconds, 0.0) / max_age)


def resolve_vote(local: Vote | None, remote: Vote | None) -> Vote | None:
    """Last write wins by vote timestamp; ties keep the remote copy."""
    if local is None:
        return remote
    if remote is None:
        return local
    return local if local.timestamp > remote.timestamp else remote


class CommunityRatingStore:
    """Owns vote aggregates per identifier hash.

    Read-modify-write of one identifier's aggregate happens under that identifier's
    lock; a voter's rate-limit bookkeeping happens under that voter's lock. There is no
    store-wide lock around an update.
    """

    def __init__(
        self,
        limits: CommunityLimits | None = None,
        repository: RatingRepository | None = None,
        channel: RatingChannel | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limits = limits or CommunityLimits()
        self.channel = channel
        self._repository = repository
        self._clock = clock
        self._key_locks = KeyedLock()
        self._voter_locks = KeyedLock()
        self._guard = threading.Lock()
        self._persist_lock = threading.Lock()
        self._votes: dict[str, dict[str, Vote]] = {}
        self._ratings: dict[str, CommunityRating] = {}
        self._attempts: dict[str, deque[tuple[float, str]]] = defaultdict(deque)
        self._accepted: dict[str, deque[float]] = defaultdict(deque)
        self._load()

    def _load(self) -> None:
        if self._repository is None:
            return
        try:
            votes = self._repository.load_votes()
            ratings = self._repository.load_ratings()
        except StorageError as exc:
            logger.warning("starting with empty community state: %s", exc)
            return
        for vote in sorted(votes, key=lambda v: v.timestamp):
            self._votes.setdefault(vote.identifier_hash, {})[vote.voter_id] = vote
            # Rate-limit windows carry over a restart; expired stamps fall out on the next check.
            self._accepted[vote.voter_id].append(vote.timestamp)
        for rating in ratings:
            self._ratings[rating.identifier_hash] = rating
        for identifier_hash, by_voter in self._votes.items():
            if identifier_hash not in self._ratings:
                latest = max(v.timestamp for v in by_voter.values())
                self._ratings[identifier_hash] = self._aggregate(identifier_hash, latest, version=1)

    def _persist(self) -> None:
        if self._repository is None:
            return
        with self._persist_lock:
            with self._guard:
                votes = [v for by_voter in self._votes.values() for v in by_voter.values()]
                ratings = list(self._ratings.values())
            try:
                self._repository.save(votes, ratings)
            except StorageError as exc:
                logger.warning("community state not persisted: %s", exc)

    def _aggregate(self, identifier_hash: str, now: float, version: int) -> CommunityRating:
        by_voter = self._votes.get(identifier_hash, {})
        safe = sum(1 for v in by_voter.values() if v.verdict == VoteVerdict.SAFE)
        unsafe = len(by_voter) - safe
        return CommunityRating.from_counts(identifier_hash, safe, unsafe, last_updated=now, version=version)

    def _refresh(self, identifier_hash: str, now: float) -> CommunityRating:
        with self._guard:
            previous = self._ratings.get(identifier_hash)
            version = previous.version + 1 if previous else 1
            rating = self._aggregate(identifier_hash, now, version)
            self._ratings[identifier_hash] = rating
        if self.channel is not None:
            self.channel.publish(rating)
        return rating

    def _check_abuse(self, voter_id: str, identifier_hash: str, now: float) -> None:
        attempts = self._attempts[voter_id]
        horizon = max(SPAM_WINDOW_SECONDS, self.limits.rate_window_seconds)
        while attempts and now - attempts[0][0] >= horizon:
            attempts.popleft()
        attempts.append((now, identifier_hash))
        recent = [h for ts, h in attempts if now - ts < SPAM_WINDOW_SECONDS]
        if len(recent) > self.limits.spam_votes_per_minute:
            logger.warning("voter %s flagged: %d votes in the last minute", voter_id, len(recent))
            raise AbuseDetectedError(voter_id, f"{len(recent)} votes in the last minute")
        repeats = recent.count(identifier_hash)
        if repeats > self.limits.max_repeat_votes_per_minute:
            logger.warning("voter %s flagged: %d votes on %s in the last minute", voter_id, repeats, identifier_hash)
            raise AbuseDetectedError(voter_id, f"{repeats} votes on one identifier in the last minute")

    def _check_rate_limit(self, voter_id: str, now: float) -> None:
        accepted = self._accepted[voter_id]
        while accepted and now - accepted[0] >= self.limits.rate_window_seconds:
            accepted.popleft()
        if len(accepted) >= self.limits.max_votes_per_window:
            logger.info("voter %s rate limited", voter_id)
            raise RateLimitedError(
                voter_id,
                f"at most {self.limits.max_votes_per_window} votes per "
                f"{self.limits.rate_window_seconds:g}s",
            )

    def submit_vote(
        self,
        voter_id: str,
        identifier_hash: str,
        verdict: VoteVerdict,
        timestamp: float | None = None,
    ) -> CommunityRating:
        """Cast or change ``voter_id``'s vote. Raises ``VoteRejectedError`` on rejection.

        Resubmitting the voter's current verdict is a no-op and is not counted against
        any limit, so replaying an already-applied vote is safe. A vote carrying an
        explicit ``timestamp`` that loses to the voter's stored vote under
        last-write-wins is also a no-op.
        """
        now = self._clock() if timestamp is None else timestamp
        with self._voter_locks.hold(voter_id):
            with self._key_locks.hold(identifier_hash):
                existing = self._votes.get(identifier_hash, {}).get(voter_id)
                if existing is not None and existing.verdict == verdict:
                    return self._current(identifier_hash, now)
                if existing is not None and timestamp is not None:
                    incoming = Vote(voter_id=voter_id, identifier_hash=identifier_hash, verdict=verdict, timestamp=now)
                    if resolve_vote(incoming, existing) is existing:
                        logger.info("ignoring stale vote from %s on %s (%.3f)", voter_id, identifier_hash, now)
                        return self._current(identifier_hash, now)
            self._check_abuse(voter_id, identifier_hash, now)
            with self._key_locks.hold(identifier_hash):
                existing = self._votes.get(identifier_hash, {}).get(voter_id)
                if existing is None:
                    self._check_rate_limit(voter_id, now)
                    self._accepted[voter_id].append(now)
                vote = Vote(voter_id=voter_id, identifier_hash=identifier_hash, verdict=verdict, timestamp=now)
                with self._guard:
                    self._votes.setdefault(identifier_hash, {})[voter_id] = vote
                rating = self._refresh(identifier_hash, now)
        self._persist()
        return rating

    def retract_vote(self, voter_id: str, identifier_hash: str, timestamp: float | None = None) -> CommunityRating:
        """Remove ``voter_id``'s vote. A retraction older than the stored vote is a no-op."""
        now = self._clock() if timestamp is None else timestamp
        with self._key_locks.hold(identifier_hash):
            with self._guard:
                by_voter = self._votes.get(identifier_hash, {})
                existing = by_voter.get(voter_id)
                if existing is not None and timestamp is not None and existing.timestamp > timestamp:
                    logger.info("ignoring stale retraction from %s on %s (%.3f)", voter_id, identifier_hash, now)
                    existing = None
                removed = by_voter.pop(voter_id, None) if existing is not None else None
            if removed is None:
                return self._current(identifier_hash, now)
            rating = self._refresh(identifier_hash, now)
        self._persist()
        return rating

    def restore_vote(self, voter_id: str, identifier_hash: str, previous: Vote | None) -> CommunityRating:
        """Put back a voter's earlier vote (or none) without applying any limit.

        Used to roll back a local vote that the remote authority refused.
        """
        now = self._clock()
        with self._key_locks.hold(identifier_hash):
            with self._guard:
                by_voter = self._votes.setdefault(identifier_hash, {})
                if previous is None:
                    by_voter.pop(voter_id, None)
                else:
                    by_voter[voter_id] = previous
            rating = self._refresh(identifier_hash, now)
        self._persist()
        return rating

    def _current(self, identifier_hash: str, now: float) -> CommunityRating:
        with self._guard:
            rating = self._ratings.get(identifier_hash)
        if rating is None:
            return CommunityRating(identifier_hash=identifier_hash, last_updated=now)
        return rating

    def get_rating(self, identifier_hash: str) -> CommunityRating | None:
        with self._guard:
            return self._ratings.get(identifier_hash)

    def voter_vote(self, voter_id: str, identifier_hash: str) -> Vote | None:
        with self._guard:
            return self._votes.get(identifier_hash, {}).get(voter_id)

    def weighted_confidence(self, identifier_hash: str, now: float | None = None) -> float | None:
        """Recency-weighted share of safe votes; ``None`` when nobody has voted."""
        now = self._clock() if now is None else now
        with self._guard:
            votes = list(self._votes.get(identifier_hash, {}).values())
        if not votes:
            return None
        total_weight = 0.0
        safe_weight = 0.0
        for vote in votes:
            weight = vote_weight(now - vote.timestamp, self.limits.decay_days, self.limits.min_vote_weight)
            total_weight += weight
            if vote.verdict == VoteVerdict.SAFE:
                safe_weight += weight
        return safe_weight / total_weight

    def process_bulk_votes(self, votes: Iterable[Vote]) -> int:
        grouped: dict[str, list[Vote]] = defaultdict(list)
        for vote in votes:
            grouped[vote.identifier_hash].append(vote)
        processed = 0
        for identifier_hash, batch in grouped.items():
            for vote in sorted(batch, key=lambda v: v.timestamp):
                try:
                    self.submit_vote(vote.voter_id, identifier_hash, vote.verdict, timestamp=vote.timestamp)
                except VoteRejectedError as exc:
                    logger.info("bulk vote skipped: %s", exc)
                    continue
                processed += 1
        return processed

    def cleanup_old_data(self, now: float | None = None) -> int:
        """Drop votes and idle aggregates older than the retention period."""
        now = self._clock() if now is None else now
        cutoff = now - self.limits.retention_days * SECONDS_PER_DAY
        with self._guard:
            hashes = set(self._votes) | set(self._ratings)
        removed = 0
        for identifier_hash in hashes:
            with self._key_locks.hold(identifier_hash):
                with self._guard:
                    by_voter = self._votes.get(identifier_hash, {})
                    stale = [voter for voter, vote in by_voter.items() if vote.timestamp < cutoff]
                    for voter in stale:
                        del by_voter[voter]
                    removed += len(stale)
                    rating = self._ratings.get(identifier_hash)
                    idle = rating is not None and (bool(stale) or rating.last_updated < cutoff)
                    if not by_voter and idle:
                        del self._ratings[identifier_hash]
                        self._votes.pop(identifier_hash, None)
                        removed += 1
                        continue
                if stale:
                    self._refresh(identifier_hash, now)
        if removed:
            self._persist()
        return removed
