from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SafetyVerdict(StrEnum):
    SAFE = "safe"
    UNSAFE = "unsafe"
    UNKNOWN = "unknown"


class VoteVerdict(StrEnum):
    SAFE = "safe"
    UNSAFE = "unsafe"


class ReputationState(StrEnum):
    COMPLETE = "complete"
    PENDING = "pending"
    UNAVAILABLE = "unavailable"


class ReputationFailure(StrEnum):
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    NETWORK_FAILURE = "network_failure"
    CIRCUIT_OPEN = "circuit_open"


class Identifier(BaseModel):
    model_config = ConfigDict(frozen=True)

    canonical: str
    hash: str
    is_web: bool


class ReputationVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: ReputationState
    malicious_count: int = Field(default=0, ge=0)
    total_engines: int = Field(default=0, ge=0)
    is_secure: bool | None = None
    source_id: str = ""
    report_link: str | None = None
    failure: ReputationFailure | None = None

    @property
    def detection_ratio(self) -> float:
        if self.total_engines <= 0:
            return 0.0
        return self.malicious_count / self.total_engines

    @classmethod
    def unavailable(cls, failure: ReputationFailure, source_id: str = "") -> ReputationVerdict:
        return cls(state=ReputationState.UNAVAILABLE, failure=failure, source_id=source_id)


class Vote(BaseModel):
    model_config = ConfigDict(frozen=True)

    voter_id: str
    identifier_hash: str
    verdict: VoteVerdict
    timestamp: float


class CommunityRating(BaseModel):
    """Vote aggregate for one identifier.

    ``confidence`` is ``None`` when nobody has voted: an empty rating means "no data",
    never a neutral 0.5. ``version`` is a monotonically increasing update counter.
    """

    model_config = ConfigDict(frozen=True)

    identifier_hash: str
    safe_count: int = Field(default=0, ge=0)
    unsafe_count: int = Field(default=0, ge=0)
    total_count: int = Field(default=0, ge=0)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    last_updated: float = 0.0
    version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_counts(self) -> CommunityRating:
        if self.safe_count + self.unsafe_count != self.total_count:
            raise ValueError("safe_count + unsafe_count must equal total_count")
        if self.total_count == 0 and self.confidence is not None:
            raise ValueError("confidence is undefined for an empty rating")
        return self

    @classmethod
    def from_counts(
        cls, identifier_hash: str, safe: int, unsafe: int, last_updated: float, version: int = 0
    ) -> CommunityRating:
        total = safe + unsafe
        return cls(
            identifier_hash=identifier_hash,
            safe_count=safe,
            unsafe_count=unsafe,
            total_count=total,
            confidence=safe / total if total > 0 else None,
            last_updated=last_updated,
            version=version,
        )


class SafetyAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    reputation: ReputationVerdict | None = None
    community: CommunityRating | None = None
    verdict: SafetyVerdict
    confidence: float = Field(ge=0.0, le=1.0)
    warnings: tuple[str, ...] = ()

    @property
    def warning(self) -> str | None:
        return self.warnings[0] if self.warnings else None


class ScanHistoryEntry(BaseModel):
    id: str
    identifier: str
    identifier_hash: str
    timestamp: float
    duration_ms: int = Field(ge=0)
    assessment: SafetyAssessment
    community_snapshot: CommunityRating | None = None
    safety_status: SafetyVerdict
    user_vote: VoteVerdict | None = None
    user_override: bool = False
    non_web: bool = False
    seeded: bool = False


class CommunityLimits(BaseModel):
    max_votes_per_window: int = Field(default=3, ge=1)
    rate_window_seconds: float = Field(default=300.0, gt=0)
    spam_votes_per_minute: int = Field(default=10, ge=1)
    max_repeat_votes_per_minute: int = Field(default=5, ge=1)
    min_votes: int = Field(default=3, ge=1)
    decay_days: float = Field(default=7.0, gt=0)
    min_vote_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    retention_days: float = Field(default=90.0, gt=0)


class ResilienceLimits(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    open_seconds: float = Field(default=60.0, gt=0)
    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    cache_max_entries: int = Field(default=1000, ge=1)


class SyncLimits(BaseModel):
    base_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float = Field(default=60.0, gt=0)
    max_attempts: int = Field(default=5, ge=1)


class HistoryLimits(BaseModel):
    max_entries: int = Field(default=100, ge=1)


class ReputationSettings(BaseModel):
    base_url: str = "https://www.virustotal.com/api/v3"
    timeout_seconds: int = Field(default=10, ge=1)
    submit_unknown: bool = True


class Policy(BaseModel):
    name: str
    description: str
    community: CommunityLimits = Field(default_factory=CommunityLimits)
    resilience: ResilienceLimits = Field(default_factory=ResilienceLimits)
    sync: SyncLimits = Field(default_factory=SyncLimits)
    history: HistoryLimits = Field(default_factory=HistoryLimits)
    reputation: ReputationSettings = Field(default_factory=ReputationSettings)


class SyncOperationKind(StrEnum):
    VOTE = "vote"
    RETRACT = "retract"


class SyncOperation(BaseModel):
    op_id: str
    kind: SyncOperationKind
    voter_id: str
    identifier_hash: str
    verdict: VoteVerdict | None = None
    timestamp: float
    queued_at: float
