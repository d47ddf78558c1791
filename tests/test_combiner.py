from __future__ import annotations

import pytest

from safescan.combiner import (
    WARN_DISAGREE,
    WARN_HIGH_RISK,
    WARN_LOW_CONFIDENCE,
    WARN_MODERATE_RISK,
    WARN_NO_DATA,
    WARN_NON_WEB,
    WARN_PENDING,
    combine,
    display_verdict,
)
from safescan.models import (
    CommunityRating,
    ReputationFailure,
    ReputationState,
    ReputationVerdict,
    SafetyVerdict,
    VoteVerdict,
)


def _complete(malicious: int, total: int = 70) -> ReputationVerdict:
    return ReputationVerdict(
        state=ReputationState.COMPLETE,
        malicious_count=malicious,
        total_engines=total,
        is_secure=malicious / total < 0.02,
    )


def _community(safe: int, total: int) -> CommunityRating:
    return CommunityRating.from_counts("h", safe, total - safe, last_updated=0.0)


PENDING = ReputationVerdict(state=ReputationState.PENDING)


def test_clean_reputation_alone_is_safe() -> None:
    result = combine(_complete(0), None)
    assert result.confidence == pytest.approx(0.95)
    assert result.verdict == SafetyVerdict.SAFE
    assert result.warnings == ()


def test_flagged_reputation_with_community_is_unsafe() -> None:
    result = combine(_complete(15), _community(1, 10))
    assert result.confidence == pytest.approx(0.1857, abs=1e-4)
    assert result.verdict == SafetyVerdict.UNSAFE
    assert result.warnings == (WARN_HIGH_RISK,)


def test_community_only_uses_reduced_weight() -> None:
    result = combine(None, _community(8, 10))
    assert result.confidence == pytest.approx(0.48)
    assert result.verdict == SafetyVerdict.UNKNOWN
    assert result.warning == WARN_MODERATE_RISK


def test_pending_reputation_boosts_community_factor() -> None:
    result = combine(PENDING, _community(10, 10))
    assert result.confidence == pytest.approx(0.8)
    assert result.verdict == SafetyVerdict.SAFE
    assert result.warnings == ()


def test_community_only_unsafe_band() -> None:
    result = combine(None, _community(1, 4))
    assert result.confidence == pytest.approx(0.15)
    assert result.verdict == SafetyVerdict.UNSAFE


def test_too_few_votes_are_ignored() -> None:
    result = combine(None, _community(2, 2))
    assert result.confidence == 0
    assert result.verdict == SafetyVerdict.UNKNOWN
    assert result.warnings == (WARN_NO_DATA,)


def test_empty_rating_is_no_data_not_neutral() -> None:
    empty = CommunityRating(identifier_hash="h")
    assert combine(None, empty, min_votes=0).warnings == (WARN_NO_DATA,)


def test_pending_without_votes_warns_pending() -> None:
    result = combine(PENDING, None)
    assert result.verdict == SafetyVerdict.UNKNOWN
    assert result.warnings == (WARN_PENDING,)


def test_unavailable_reputation_counts_as_none() -> None:
    unavailable = ReputationVerdict.unavailable(ReputationFailure.NETWORK_FAILURE)
    assert combine(unavailable, None).warnings == (WARN_NO_DATA,)
    assert combine(unavailable, _community(4, 5)).confidence == pytest.approx(0.48)


def test_non_web_ignores_reputation() -> None:
    result = combine(_complete(0), None, was_non_web=True)
    assert result.reputation is None
    assert result.verdict == SafetyVerdict.UNKNOWN
    assert result.warnings == (WARN_NON_WEB,)


def test_combined_safe_needs_high_confidence() -> None:
    # 0.75 * 0.95 + 0.25 * 0.6 = 0.8625
    assert combine(_complete(0), _community(6, 10)).verdict == SafetyVerdict.SAFE
    # 0.75 * 0.95 + 0.25 * 0.5 = 0.8375
    result = combine(_complete(0), _community(5, 10))
    assert result.verdict == SafetyVerdict.UNSAFE
    assert result.warnings == ()


def test_low_confidence_warning_band() -> None:
    result = combine(None, _community(9, 10), min_votes=3)
    assert result.confidence == pytest.approx(0.54)
    assert result.warning == WARN_MODERATE_RISK
    result = combine(PENDING, _community(9, 10))
    assert result.confidence == pytest.approx(0.72)
    assert result.warnings == (WARN_LOW_CONFIDENCE,)


def test_disagreement_is_flagged() -> None:
    # reputation clean, community says unsafe: 0.75 * 0.95 + 0 = 0.7125
    result = combine(_complete(0), _community(0, 10))
    assert result.confidence == pytest.approx(0.7125)
    assert WARN_DISAGREE in result.warnings
    assert result.warnings[0] == WARN_LOW_CONFIDENCE


def test_combine_is_deterministic() -> None:
    assert combine(_complete(3), _community(2, 5)) == combine(_complete(3), _community(2, 5))


def test_user_vote_overrides_display_only() -> None:
    assessment = combine(_complete(15), None)
    assert display_verdict(assessment, VoteVerdict.SAFE) == SafetyVerdict.SAFE
    assert display_verdict(assessment, None) == SafetyVerdict.UNSAFE
    assert assessment.verdict == SafetyVerdict.UNSAFE
