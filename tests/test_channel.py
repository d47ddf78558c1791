from __future__ import annotations

import json

from safescan.channel import RatingChannel, RatingMirror, RatingUpdate
from safescan.models import CommunityRating


def _rating(safe: int, unsafe: int, updated: float) -> CommunityRating:
    return CommunityRating.from_counts("h1", safe, unsafe, last_updated=updated, version=safe + unsafe)


def test_subscribers_receive_updates_until_unsubscribed() -> None:
    channel = RatingChannel()
    received: list[RatingUpdate] = []
    sub = channel.subscribe(received.append)
    channel.publish(_rating(1, 0, 1.0))
    sub.unsubscribe()
    channel.publish(_rating(2, 0, 2.0))
    assert len(received) == 1
    assert channel.subscriber_count == 0


def test_failing_subscriber_does_not_block_others() -> None:
    channel = RatingChannel()
    received: list[RatingUpdate] = []

    def broken(update: RatingUpdate) -> None:
        raise RuntimeError("boom")

    channel.subscribe(broken)
    channel.subscribe(received.append)
    channel.publish(_rating(1, 0, 1.0))
    assert len(received) == 1


def test_update_payload_shape() -> None:
    update = RatingChannel().publish(_rating(1, 1, 5.0))
    doc = json.loads(update.to_json())
    assert doc["type"] == "rating_update"
    assert doc["identifier_hash"] == "h1"
    assert doc["rating"]["total_count"] == 2


def test_mirror_discards_stale_updates() -> None:
    channel = RatingChannel()
    mirror = RatingMirror()
    channel.subscribe(mirror)
    channel.publish(_rating(3, 0, 10.0))
    assert mirror.apply(RatingUpdate(identifier_hash="h1", rating=_rating(1, 0, 5.0))) is False
    assert mirror.get("h1").safe_count == 3  # type: ignore[union-attr]

    newer = RatingUpdate(identifier_hash="h1", rating=_rating(3, 1, 11.0))
    assert mirror.apply_json(newer.to_json()) is True
    assert mirror.get("h1").unsafe_count == 1  # type: ignore[union-attr]
