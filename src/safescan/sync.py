from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from safescan.channel import RatingChannel
from safescan.community import BackendUnavailableError, CommunityRatingStore, VoteRejectedError
from safescan.concurrency import KeyedLock
from safescan.models import CommunityRating, SyncLimits, SyncOperation, SyncOperationKind, Vote, VoteVerdict
from safescan.store import StorageError, SyncQueueRepository

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """``min(max_delay, base_delay * 2 ** (attempt - 1))`` for attempts counted from 1."""
    return min(max_delay, base_delay * 2 ** (max(attempt, 1) - 1))


def resolve_rating(local: CommunityRating | None, remote: CommunityRating | None) -> CommunityRating | None:
    """The remote authority's update counter wins over any cached snapshot it has not passed."""
    if local is None:
        return remote
    if remote is None:
        return local
    return remote if remote.version >= local.version else local


class RemoteRatingBackend(Protocol):
    def submit_vote(self, vote: Vote) -> CommunityRating: ...

    def retract_vote(self, voter_id: str, identifier_hash: str, timestamp: float) -> CommunityRating: ...

    def fetch_rating(self, identifier_hash: str) -> CommunityRating | None: ...


class StoreBackend:
    """Exposes a ``CommunityRatingStore`` as the remote authority (in-process)."""

    def __init__(self, store: CommunityRatingStore) -> None:
        self.store = store
        self.online = True

    def _require_online(self, voter_id: str) -> None:
        if not self.online:
            raise BackendUnavailableError(voter_id, "backend offline")

    def submit_vote(self, vote: Vote) -> CommunityRating:
        self._require_online(vote.voter_id)
        return self.store.submit_vote(vote.voter_id, vote.identifier_hash, vote.verdict, timestamp=vote.timestamp)

    def retract_vote(self, voter_id: str, identifier_hash: str, timestamp: float) -> CommunityRating:
        self._require_online(voter_id)
        return self.store.retract_vote(voter_id, identifier_hash, timestamp=timestamp)

    def fetch_rating(self, identifier_hash: str) -> CommunityRating | None:
        self._require_online("")
        return self.store.get_rating(identifier_hash)


@dataclass
class ReplayStats:
    processed: int = 0
    rejected: int = 0
    remaining: int = 0


@dataclass
class SyncStatus:
    last_sync: float
    pending: int
    online: bool


class SyncResolver:
    """Pushes local votes to a remote authority, queueing them while it is unreachable.

    Queued operations replay in arrival order. Replay is idempotent because the remote
    applies edit/retract semantics: an already-applied vote is a no-op there.
    """

    def __init__(
        self,
        backend: RemoteRatingBackend,
        limits: SyncLimits | None = None,
        repository: SyncQueueRepository | None = None,
        channel: RatingChannel | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.limits = limits or SyncLimits()
        self.channel = channel
        self._repository = repository
        self._clock = clock
        self._key_locks = KeyedLock()
        self._queue_lock = threading.Lock()
        self._replay_lock = threading.Lock()
        self._queue: list[SyncOperation] = []
        self._remote_ratings: dict[str, CommunityRating] = {}
        self._online = True
        self._last_sync = 0.0
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None
        self._load()

    def _load(self) -> None:
        if self._repository is None:
            return
        try:
            self._queue = self._repository.load_queue()
        except StorageError as exc:
            logger.warning("starting with an empty sync queue: %s", exc)

    def _persist_queue(self) -> None:
        if self._repository is None:
            return
        try:
            self._repository.save_queue(list(self._queue))
        except StorageError as exc:
            logger.warning("sync queue not persisted: %s", exc)

    @property
    def online(self) -> bool:
        return self._online

    def pending(self) -> list[SyncOperation]:
        with self._queue_lock:
            return list(self._queue)

    def status(self) -> SyncStatus:
        with self._queue_lock:
            pending = len(self._queue)
        return SyncStatus(last_sync=self._last_sync, pending=pending, online=self._online)

    def cached_rating(self, identifier_hash: str) -> CommunityRating | None:
        return self._remote_ratings.get(identifier_hash)

    def _merge(self, rating: CommunityRating) -> CommunityRating:
        merged = resolve_rating(self._remote_ratings.get(rating.identifier_hash), rating) or rating
        if merged is rating:
            self._remote_ratings[rating.identifier_hash] = rating
            if self.channel is not None:
                self.channel.publish(rating)
        return merged

    def enqueue(self, operation: SyncOperation) -> None:
        with self._queue_lock:
            self._queue.append(operation)
            self._persist_queue()
        logger.info("queued %s for %s (pending=%d)", operation.kind.value, operation.identifier_hash, len(self._queue))

    def _operation(
        self, kind: SyncOperationKind, voter_id: str, identifier_hash: str, verdict: VoteVerdict | None, timestamp: float
    ) -> SyncOperation:
        return SyncOperation(
            op_id=uuid.uuid4().hex,
            kind=kind,
            voter_id=voter_id,
            identifier_hash=identifier_hash,
            verdict=verdict,
            timestamp=timestamp,
            queued_at=self._clock(),
        )

    def _apply(self, operation: SyncOperation) -> CommunityRating:
        if operation.kind == SyncOperationKind.VOTE:
            if operation.verdict is None:
                raise ValueError(f"vote operation {operation.op_id} has no verdict")
            vote = Vote(
                voter_id=operation.voter_id,
                identifier_hash=operation.identifier_hash,
                verdict=operation.verdict,
                timestamp=operation.timestamp,
            )
            return self.backend.submit_vote(vote)
        return self.backend.retract_vote(operation.voter_id, operation.identifier_hash, operation.timestamp)

    def _push(self, operation: SyncOperation) -> CommunityRating | None:
        with self._key_locks.hold(operation.identifier_hash):
            if not self._online or self.pending():
                self.enqueue(operation)
                return None
            try:
                rating = self._apply(operation)
            except BackendUnavailableError as exc:
                logger.warning("backend unavailable, going offline: %s", exc)
                self._online = False
                self.enqueue(operation)
                return None
            return self._merge(rating)

    def push_vote(self, vote: Vote) -> CommunityRating | None:
        """Send a vote upstream. Returns the authoritative rating, or ``None`` if queued.

        Votes the remote rejects (rate limit, abuse) propagate as ``VoteRejectedError``.
        """
        op = self._operation(SyncOperationKind.VOTE, vote.voter_id, vote.identifier_hash, vote.verdict, vote.timestamp)
        return self._push(op)

    def push_retraction(self, voter_id: str, identifier_hash: str, timestamp: float | None = None) -> CommunityRating | None:
        ts = self._clock() if timestamp is None else timestamp
        op = self._operation(SyncOperationKind.RETRACT, voter_id, identifier_hash, None, ts)
        return self._push(op)

    def pull(self, identifier_hash: str) -> CommunityRating | None:
        with self._key_locks.hold(identifier_hash):
            try:
                remote = self.backend.fetch_rating(identifier_hash)
            except BackendUnavailableError as exc:
                logger.info("pull failed, serving cached rating: %s", exc)
                self._online = False
                return self._remote_ratings.get(identifier_hash)
            if remote is None:
                return self._remote_ratings.get(identifier_hash)
            return self._merge(remote)

    def replay(self) -> ReplayStats:
        """Replay queued operations in order, stopping at the first unreachable-backend error."""
        stats = ReplayStats()
        with self._replay_lock:
            while True:
                with self._queue_lock:
                    if not self._queue:
                        break
                    operation = self._queue[0]
                with self._key_locks.hold(operation.identifier_hash):
                    try:
                        rating = self._apply(operation)
                    except BackendUnavailableError as exc:
                        logger.warning("replay paused: %s", exc)
                        self._online = False
                        break
                    except VoteRejectedError as exc:
                        logger.warning("dropping queued %s %s: %s", operation.kind.value, operation.op_id, exc)
                        stats.rejected += 1
                    else:
                        self._merge(rating)
                        stats.processed += 1
                    with self._queue_lock:
                        self._queue = [op for op in self._queue if op.op_id != operation.op_id]
                        self._persist_queue()
            with self._queue_lock:
                stats.remaining = len(self._queue)
        if stats.remaining == 0:
            self._online = True
            self._last_sync = self._clock()
        logger.info(
            "replay finished: processed=%d rejected=%d remaining=%d",
            stats.processed,
            stats.rejected,
            stats.remaining,
        )
        return stats

    def sync_with_backoff(self, sleep: Callable[[float], bool] | None = None) -> ReplayStats:
        """Replay until the queue drains, waiting ``backoff_delay`` between failed attempts.

        ``sleep`` returns True when the wait was interrupted; the default waits on the
        resolver's stop event so ``close()`` cancels a pending retry immediately.
        """
        wait = sleep or self._stop.wait
        stats = ReplayStats()
        for attempt in range(1, self.limits.max_attempts + 1):
            stats = self.replay()
            if stats.remaining == 0:
                return stats
            if attempt == self.limits.max_attempts:
                break
            delay = backoff_delay(attempt, self.limits.base_delay_seconds, self.limits.max_delay_seconds)
            logger.info("sync attempt %d failed; retrying in %.1fs", attempt, delay)
            if wait(delay):
                logger.info("sync retry cancelled")
                break
        return stats

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self.sync_with_backoff, name="safescan-sync", daemon=True)
        self._worker.start()

    def close(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None
