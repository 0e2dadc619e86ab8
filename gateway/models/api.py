"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GenerationAction(str, Enum):
    """Billable generation actions."""

    TRYON = "tryon"
    VIDEO = "video"
    MODEL3D = "model3d"


class Plan(str, Enum):
    """Credit plan enumeration."""

    FREE = "free"
    PAID = "paid"


class UsageStatus(str, Enum):
    """Usage log lifecycle states."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class Severity(str, Enum):
    """Abuse event severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AbuseEventType(str, Enum):
    """Abuse event types recorded by the pipeline."""

    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_SIGNATURE = "invalid_signature"
    CREDIT_EXHAUSTION_ATTEMPT = "credit_exhaustion_attempt"
    INVALID_IMAGE = "invalid_image"
    BLOCKED_USER_ATTEMPT = "blocked_user_attempt"
    SUSPICIOUS_PATTERN = "suspicious_pattern"


# ============================================================================
# Generation Request Models
# ============================================================================


class TryOnRequest(BaseModel):
    """POST /v1/generate/tryon request body."""

    model_config = ConfigDict(populate_by_name=True)

    person_image: str = Field(..., alias="personImage", min_length=1)
    garment_image: str = Field(..., alias="garmentImage", min_length=1)
    dress_id: str | None = Field(None, alias="dressId", max_length=255)

    @field_validator("dress_id")
    @classmethod
    def blank_dress_id_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class ImageGenerationRequest(BaseModel):
    """POST /v1/generate/video and /v1/generate/model3d request body."""

    image: str = Field(..., min_length=1)


# ============================================================================
# Generation Response Models
# ============================================================================


class TimingInfo(BaseModel):
    """Per-request timing breakdown in milliseconds."""

    total_ms: int
    provider_ms: int = 0
    breakdown: dict[str, int] = Field(default_factory=dict)


class GenerationResponse(BaseModel):
    """Successful generation (or cache hit) response."""

    success: bool = True
    request_id: str
    result: str = Field(..., description="Signed URL or inline data URL of the artifact")
    cached: bool
    cache_id: str | None = None
    timing: TimingInfo


class ErrorResponse(BaseModel):
    """Error body returned for every gateway failure."""

    error: str
    retryAfter: int | None = None
    credits_remaining: int | None = None
    credits_required: int | None = None
    field: str | None = None


# ============================================================================
# Credit Models
# ============================================================================


class CreditsResponse(BaseModel):
    """GET /v1/credits response."""

    user_id: str
    balance: int
    plan: Plan
    allotment: int
    period_start: str
    next_reset_at: str
    timezone: str
    can_generate_video: bool
    costs: dict[str, int]


class TimezoneUpdateRequest(BaseModel):
    """PUT /v1/credits/timezone request body."""

    timezone: str = Field(..., min_length=1, max_length=64)


# ============================================================================
# Cache Models
# ============================================================================


class HistoryItem(BaseModel):
    """One cached generation in the user's history."""

    cache_id: str
    action: GenerationAction
    subject_key: str
    result: str
    created_at: str
    expires_at: str
    access_count: int


class HistoryResponse(BaseModel):
    """GET /v1/tryon/history response."""

    items: list[HistoryItem]
    limit: int
    offset: int


class CacheStatsResponse(BaseModel):
    """GET /v1/cache/stats response."""

    entries: int
    hits: int
    credits_saved: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    timestamp: str
