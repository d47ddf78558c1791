"""Fuse reputation and community signals into a single safety assessment.

Decision table (community counts only with at least ``min_votes`` votes):

=====================  ==================  ===========================================
reputation             community           confidence
=====================  ==================  ===========================================
none / unavailable     none                0
none / unavailable     yes                 community x 0.6
pending                none                0
pending                yes                 community x 0.8
complete, secure       none                max(0.7, 0.95 - 2 x detection ratio)
complete, insecure     none                min(0.3, detection ratio)
complete               yes                 0.75 x reputation + 0.25 x community
=====================  ==================  ===========================================

With complete reputation and usable community data the verdict is safe only above
0.85. Without complete reputation, community-driven confidence above 0.7 is safe, below
0.3 unsafe, and unknown in between. Zero confidence is always unknown.
"""

from __future__ import annotations

from safescan.models import (
    CommunityRating,
    ReputationState,
    ReputationVerdict,
    SafetyAssessment,
    SafetyVerdict,
    VoteVerdict,
)

MIN_COMMUNITY_VOTES = 3
COMMUNITY_ONLY_FACTOR = 0.6
PENDING_COMMUNITY_FACTOR = 0.8
REPUTATION_WEIGHT = 0.75
COMMUNITY_WEIGHT = 0.25
COMBINED_SAFE_THRESHOLD = 0.85
COMMUNITY_SAFE_THRESHOLD = 0.7
UNSAFE_BAND = 0.3
MODERATE_BAND = 0.6
LOW_CONFIDENCE_BAND = 0.8
DISAGREEMENT_DELTA = 0.4
CONFIDENCE_DIGITS = 4

WARN_NO_DATA = "No reputation or community data available; safety could not be assessed"
WARN_NON_WEB = "Not a web address; reputation check skipped and no community data available"
WARN_PENDING = "Reputation analysis is still pending and there are not enough community votes"
WARN_HIGH_RISK = "High risk: do not open this link"
WARN_MODERATE_RISK = "Moderate risk: proceed with caution"
WARN_LOW_CONFIDENCE = "Low confidence rating: verify the destination before opening"
WARN_DISAGREE = "Reputation service and community votes disagree"


def reputation_confidence(reputation: ReputationVerdict) -> float:
    ratio = reputation.detection_ratio
    if reputation.is_secure:
        return max(0.7, 0.95 - 2 * ratio)
    return min(0.3, ratio)


def usable_community(community: CommunityRating | None, min_votes: int = MIN_COMMUNITY_VOTES) -> float | None:
    if community is None or community.confidence is None:
        return None
    if community.total_count < min_votes:
        return None
    return community.confidence


def _band_verdict(confidence: float) -> SafetyVerdict:
    if confidence > COMMUNITY_SAFE_THRESHOLD:
        return SafetyVerdict.SAFE
    if confidence < UNSAFE_BAND:
        return SafetyVerdict.UNSAFE
    return SafetyVerdict.UNKNOWN


def _data_warning(reputation: ReputationVerdict | None, was_non_web: bool) -> str:
    if was_non_web:
        return WARN_NON_WEB
    if reputation is not None and reputation.state == ReputationState.PENDING:
        return WARN_PENDING
    return WARN_NO_DATA


def _risk_warning(confidence: float) -> str | None:
    if confidence < UNSAFE_BAND:
        return WARN_HIGH_RISK
    if confidence < MODERATE_BAND:
        return WARN_MODERATE_RISK
    if confidence < LOW_CONFIDENCE_BAND:
        return WARN_LOW_CONFIDENCE
    return None


def combine(
    reputation: ReputationVerdict | None,
    community: CommunityRating | None,
    was_non_web: bool = False,
    min_votes: int = MIN_COMMUNITY_VOTES,
) -> SafetyAssessment:
    """Pure and deterministic: identical inputs always give an identical assessment."""
    if was_non_web:
        reputation = None
    complete = reputation is not None and reputation.state == ReputationState.COMPLETE
    pending = reputation is not None and reputation.state == ReputationState.PENDING
    community_conf = usable_community(community, min_votes)

    if complete and reputation is not None:
        rep_conf = reputation_confidence(reputation)
        if community_conf is not None:
            confidence = REPUTATION_WEIGHT * rep_conf + COMMUNITY_WEIGHT * community_conf
            verdict = SafetyVerdict.SAFE if confidence > COMBINED_SAFE_THRESHOLD else SafetyVerdict.UNSAFE
        else:
            confidence = rep_conf
            verdict = SafetyVerdict.SAFE if reputation.is_secure else SafetyVerdict.UNSAFE
    elif community_conf is not None:
        factor = PENDING_COMMUNITY_FACTOR if pending else COMMUNITY_ONLY_FACTOR
        confidence = community_conf * factor
        verdict = _band_verdict(confidence)
    else:
        confidence = 0.0
        verdict = SafetyVerdict.UNKNOWN

    confidence = round(min(1.0, max(0.0, confidence)), CONFIDENCE_DIGITS)
    if confidence == 0:
        verdict = SafetyVerdict.UNKNOWN

    warnings: list[str] = []
    if confidence == 0:
        warnings.append(_data_warning(reputation, was_non_web))
    else:
        risk = _risk_warning(confidence)
        if risk is not None:
            warnings.append(risk)
    if complete and community_conf is not None and abs(confidence - community_conf) > DISAGREEMENT_DELTA:
        warnings.append(WARN_DISAGREE)

    return SafetyAssessment(
        reputation=reputation,
        community=community,
        verdict=verdict,
        confidence=confidence,
        warnings=tuple(warnings),
    )


def display_verdict(assessment: SafetyAssessment, user_vote: VoteVerdict | None) -> SafetyVerdict:
    """A user's own vote wins for display; the stored assessment is left untouched."""
    if user_vote is not None:
        return SafetyVerdict(user_vote.value)
    return assessment.verdict
