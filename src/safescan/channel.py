from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Literal

from pydantic import BaseModel

from safescan.models import CommunityRating

logger = logging.getLogger(__name__)


class RatingUpdate(BaseModel):
    type: Literal["rating_update"] = "rating_update"
    identifier_hash: str
    rating: CommunityRating

    def to_json(self) -> str:
        return self.model_dump_json()


Subscriber = Callable[[RatingUpdate], None]


class Subscription:
    def __init__(self, channel: RatingChannel, subscriber: Subscriber) -> None:
        self._channel = channel
        self.subscriber = subscriber

    def unsubscribe(self) -> None:
        self._channel._remove(self)


class RatingChannel:
    """In-process publish/subscribe for aggregate rating changes.

    Transport-agnostic: a websocket or push bridge subscribes here and forwards
    ``RatingUpdate.to_json()`` payloads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def subscribe(self, subscriber: Subscriber) -> Subscription:
        sub = Subscription(self, subscriber)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            self._subscriptions = [s for s in self._subscriptions if s is not sub]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, rating: CommunityRating) -> RatingUpdate:
        update = RatingUpdate(identifier_hash=rating.identifier_hash, rating=rating)
        with self._lock:
            subscribers = list(self._subscriptions)
        for sub in subscribers:
            try:
                sub.subscriber(update)
            except Exception:
                logger.exception("rating subscriber failed for %s", update.identifier_hash)
        return update


class RatingMirror:
    """Client-side view of live ratings, merged by identifier hash."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ratings: dict[str, CommunityRating] = {}

    def apply(self, update: RatingUpdate) -> bool:
        with self._lock:
            held = self._ratings.get(update.identifier_hash)
            if held is not None and update.rating.last_updated < held.last_updated:
                logger.debug("discarding stale rating update for %s", update.identifier_hash)
                return False
            self._ratings[update.identifier_hash] = update.rating
            return True

    def apply_json(self, payload: str) -> bool:
        return self.apply(RatingUpdate.model_validate_json(payload))

    def get(self, identifier_hash: str) -> CommunityRating | None:
        with self._lock:
            return self._ratings.get(identifier_hash)

    def __call__(self, update: RatingUpdate) -> None:
        self.apply(update)
