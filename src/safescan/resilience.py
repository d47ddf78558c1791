from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

from safescan.models import (
    Identifier,
    ReputationFailure,
    ReputationState,
    ReputationVerdict,
    ResilienceLimits,
)
from safescan.reputation import ReputationClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Outcomes that mean the provider answered; anything else counts against the breaker.
HEALTHY_FAILURES = {ReputationFailure.NOT_FOUND}


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        open_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.open_seconds = open_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure = 0.0
        self._trial_in_flight = False

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state == CircuitState.OPEN and self._cooled_down():
                return CircuitState.HALF_OPEN
            return self._state

    def _cooled_down(self) -> bool:
        return self._clock() - self._last_failure >= self.open_seconds

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """Closed: always. Open: never until the cool-down ends. Half-open: one trial call."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if not self._cooled_down():
                    return False
                self._state = CircuitState.HALF_OPEN
                logger.info("circuit half-open: allowing a trial call")
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("circuit closed after successful call")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure = self._clock()
            was_trial = self._state == CircuitState.HALF_OPEN
            self._trial_in_flight = False
            if was_trial or self._failure_count >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        "circuit opened after %d consecutive failures for %.0fs",
                        self._failure_count,
                        self.open_seconds,
                    )
                self._state = CircuitState.OPEN

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure = 0.0
            self._trial_in_flight = False


@dataclass
class _CacheEntry(Generic[T]):
    value: T
    stored_at: float
    ttl: float


@dataclass
class CacheStats:
    entries: int
    expired: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class TTLCache(Generic[T]):
    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _CacheEntry[T]] = {}
        self._hits = 0
        self._misses = 0

    def _expired(self, entry: _CacheEntry[T], now: float) -> bool:
        return now - entry.stored_at > entry.ttl

    def get(self, key: str) -> T | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry, self._clock()):
                self._entries.pop(key, None)
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: str, value: T, ttl: float | None = None) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].stored_at)
                del self._entries[oldest]
            lifetime = self.ttl_seconds if ttl is None else ttl
            self._entries[key] = _CacheEntry(value=value, stored_at=self._clock(), ttl=lifetime)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._entries.items() if self._expired(e, now)]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            expired = sum(1 for e in self._entries.values() if self._expired(e, now))
            return CacheStats(entries=len(self._entries), expired=expired, hits=self._hits, misses=self._misses)


class ResilientReputationClient:
    """Circuit breaker and per-identifier cache in front of a ``ReputationClient``."""

    def __init__(
        self,
        client: ReputationClient,
        breaker: CircuitBreaker | None = None,
        cache: TTLCache[ReputationVerdict] | None = None,
    ) -> None:
        self.client = client
        self.breaker = breaker or CircuitBreaker()
        self.cache = cache if cache is not None else TTLCache()

    @classmethod
    def from_limits(
        cls,
        client: ReputationClient,
        limits: ResilienceLimits,
        clock: Callable[[], float] = time.monotonic,
    ) -> ResilientReputationClient:
        return cls(
            client,
            breaker=CircuitBreaker(limits.failure_threshold, limits.open_seconds, clock=clock),
            cache=TTLCache(limits.cache_ttl_seconds, limits.cache_max_entries, clock=clock),
        )

    @property
    def available(self) -> bool:
        return self.client.available and not self.breaker.is_open()

    def assess(self, identifier: Identifier) -> ReputationVerdict:
        cached = self.cache.get(identifier.hash)
        if cached is not None:
            return cached
        if not self.client.available:
            return ReputationVerdict.unavailable(ReputationFailure.FORBIDDEN)
        if not self.breaker.allow_request():
            logger.debug("circuit open: skipping reputation lookup for %s", identifier.canonical)
            return ReputationVerdict.unavailable(ReputationFailure.CIRCUIT_OPEN)

        try:
            verdict = self.client.assess(identifier.canonical)
        except Exception:
            # The breaker must never stay mid-trial, whatever the provider raised.
            logger.exception("reputation lookup raised for %s", identifier.canonical)
            self.breaker.record_failure()
            return ReputationVerdict.unavailable(ReputationFailure.NETWORK_FAILURE)
        if verdict.state == ReputationState.UNAVAILABLE and verdict.failure not in HEALTHY_FAILURES:
            self.breaker.record_failure()
        else:
            self.breaker.record_success()
        if verdict.state == ReputationState.COMPLETE:
            self.cache.set(identifier.hash, verdict)
        return verdict
