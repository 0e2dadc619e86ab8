"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime

from gateway.models.api import GenerationAction, Plan


@dataclass(frozen=True)
class Identity:
    """Authenticated caller: the unit of quota, credit and blocking."""

    user_id: str
    ip: str | None = None

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("user_id cannot be empty")


# ============================================================================
# Ledger
# ============================================================================


@dataclass(frozen=True)
class DeductionResult:
    """Outcome of a successful credit deduction."""

    balance: int
    request_accepted: bool
    credits_used: int

    def __post_init__(self) -> None:
        if self.balance < 0:
            raise ValueError(f"Balance cannot be negative: {self.balance}")


@dataclass(frozen=True)
class RefundResult:
    """Outcome of a refund; refunded=False means it was already claimed."""

    refunded: bool
    balance: int | None
    credits_returned: int = 0


@dataclass(frozen=True)
class BalanceView:
    """Credit account state after any pending reset was applied."""

    user_id: str
    balance: int
    plan: Plan
    allotment: int
    period_start: datetime
    next_reset_at: datetime
    timezone: str

    @property
    def can_generate_video(self) -> bool:
        return self.plan == Plan.PAID


# ============================================================================
# Admission
# ============================================================================


@dataclass(frozen=True)
class WindowState:
    """Result of one hit against a fixed-window counter."""

    allowed: bool
    count: int
    limit: int
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass(frozen=True)
class AbuseCheck:
    """Result of an abuse check for an identity."""

    blocked: bool
    score: float
    reason: str | None = None
    flagged: bool = False


@dataclass(frozen=True)
class SignatureCheck:
    """Result of request signature verification."""

    valid: bool
    signed: bool
    error: str | None = None


# ============================================================================
# Result Cache
# ============================================================================


@dataclass(frozen=True)
class CacheHit:
    """A live cache entry with a freshly resolved result URL."""

    cache_id: str
    fingerprint: str
    result: str
    pointer: str
    access_count: int
    created_at: datetime
    expires_at: datetime
    action: str = "tryon"
    subject_key: str = ""


@dataclass(frozen=True)
class CacheStats:
    """Aggregate cache usage for one user."""

    entries: int
    hits: int
    credits_saved: int


# ============================================================================
# Providers
# ============================================================================


@dataclass(frozen=True)
class ProviderSubmission:
    """What a provider returns on submit: a job id, or the output directly."""

    provider: str
    job_id: str | None = None
    output: object | None = None

    def __post_init__(self) -> None:
        if self.job_id is None and self.output is None:
            raise ValueError("submission needs a job_id or an immediate output")


@dataclass(frozen=True)
class JobStatus:
    """Normalized provider job status: pending, completed or failed."""

    state: str
    output: object | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in ("completed", "failed")


@dataclass(frozen=True)
class ExtractedArtifact:
    """A provider output normalized to one downloadable or inline artifact."""

    url: str | None = None
    data: bytes | None = None
    content_type: str = "application/octet-stream"
    extension: str = "bin"

    def __post_init__(self) -> None:
        if (self.url is None) == (self.data is None):
            raise ValueError("artifact needs exactly one of url or data")


@dataclass(frozen=True)
class PollResult:
    """Outcome of polling a provider job to a terminal state."""

    success: bool
    attempts: int
    output: object | None = None
    error: str | None = None
    timed_out: bool = False


# ============================================================================
# Orchestrator
# ============================================================================


@dataclass(frozen=True)
class ParsedInput:
    """Validated generation input plus the fingerprint components."""

    action: GenerationAction
    primary_image: str
    subject_key: str
    source_image: str
    garment_image: str | None = None


@dataclass(frozen=True)
class GenerationOutcome:
    """Final result of a generation pipeline run."""

    request_id: str
    result: str
    cached: bool
    cache_id: str | None
    total_ms: int
    provider_ms: int = 0
    breakdown: dict[str, int] = field(default_factory=dict)
