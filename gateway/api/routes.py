"""
API Routes - FastAPI endpoints for generation, credits and cache history.

NO DICTIONARIES - All requests/responses use Pydantic models.

Gateway errors propagate to the GatewayError handler in gateway.main,
which maps each one to its status code and error body.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.api.dependencies import (
    OrchestratorBuilder,
    get_identity,
    get_ledger,
    get_orchestrator_builder,
    get_result_cache,
)
from gateway.db.session import get_read_db
from gateway.models.api import (
    CacheStatsResponse,
    CreditsResponse,
    GenerationAction,
    GenerationResponse,
    HealthResponse,
    HistoryItem,
    HistoryResponse,
    TimezoneUpdateRequest,
    TimingInfo,
)
from gateway.models.domain import BalanceView, Identity
from gateway.services.ledger import CREDIT_COSTS, CreditLedger
from gateway.services.result_cache import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT, ResultCache

router = APIRouter()


# =============================================================================
# Generation Endpoints
# =============================================================================


async def _generate(
    action: GenerationAction,
    request: Request,
    identity: Identity,
    build: OrchestratorBuilder,
) -> GenerationResponse:
    body = await request.body()
    outcome = await build(action).run(
        identity,
        request.headers,
        body,
        request_id=request.headers.get("X-Request-ID"),
    )
    return GenerationResponse(
        request_id=outcome.request_id,
        result=outcome.result,
        cached=outcome.cached,
        cache_id=outcome.cache_id,
        timing=TimingInfo(
            total_ms=outcome.total_ms,
            provider_ms=outcome.provider_ms,
            breakdown=outcome.breakdown,
        ),
    )


@router.post("/v1/generate/tryon", response_model=GenerationResponse)
async def generate_tryon(
    request: Request,
    identity: Identity = Depends(get_identity),
    build: OrchestratorBuilder = Depends(get_orchestrator_builder),
) -> GenerationResponse:
    """
    Virtual try-on: person photo + garment image.

    Body: {"personImage": ..., "garmentImage": ..., "dressId": optional}
    Images are data URLs or http(s) URLs (JPEG, PNG or WebP).
    """
    return await _generate(GenerationAction.TRYON, request, identity, build)


@router.post("/v1/generate/video", response_model=GenerationResponse)
async def generate_video(
    request: Request,
    identity: Identity = Depends(get_identity),
    build: OrchestratorBuilder = Depends(get_orchestrator_builder),
) -> GenerationResponse:
    """Short turnaround video from a try-on image. Paid plan only."""
    return await _generate(GenerationAction.VIDEO, request, identity, build)


@router.post("/v1/generate/model3d", response_model=GenerationResponse)
async def generate_model3d(
    request: Request,
    identity: Identity = Depends(get_identity),
    build: OrchestratorBuilder = Depends(get_orchestrator_builder),
) -> GenerationResponse:
    """GLB 3D model from a single image."""
    return await _generate(GenerationAction.MODEL3D, request, identity, build)


# =============================================================================
# Credit Endpoints
# =============================================================================


def _credits_response(view: BalanceView) -> CreditsResponse:
    return CreditsResponse(
        user_id=view.user_id,
        balance=view.balance,
        plan=view.plan,
        allotment=view.allotment,
        period_start=view.period_start.isoformat(),
        next_reset_at=view.next_reset_at.isoformat(),
        timezone=view.timezone,
        can_generate_video=view.can_generate_video,
        costs={action.value: cost for action, cost in CREDIT_COSTS.items()},
    )


@router.get("/v1/credits", response_model=CreditsResponse)
async def get_credits(
    identity: Identity = Depends(get_identity),
    ledger: CreditLedger = Depends(get_ledger),
) -> CreditsResponse:
    """Current balance; creates the account with a full allotment on first call."""
    return _credits_response(await ledger.get_balance(identity))


@router.put("/v1/credits/timezone", response_model=CreditsResponse)
async def update_timezone(
    payload: TimezoneUpdateRequest,
    identity: Identity = Depends(get_identity),
    ledger: CreditLedger = Depends(get_ledger),
) -> CreditsResponse:
    """Set the IANA timezone that free-plan daily resets follow."""
    return _credits_response(await ledger.update_timezone(identity, payload.timezone))


# =============================================================================
# Cache Endpoints
# =============================================================================


@router.get("/v1/tryon/history", response_model=HistoryResponse)
async def tryon_history(
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
    cache: ResultCache = Depends(get_result_cache),
) -> HistoryResponse:
    """Cached try-on results for the caller, newest first, with fresh URLs."""
    hits = await cache.history(
        identity.user_id, limit=limit, offset=offset, action=GenerationAction.TRYON
    )
    return HistoryResponse(
        items=[
            HistoryItem(
                cache_id=hit.cache_id,
                action=GenerationAction(hit.action),
                subject_key=hit.subject_key,
                result=hit.result,
                created_at=hit.created_at.isoformat(),
                expires_at=hit.expires_at.isoformat(),
                access_count=hit.access_count,
            )
            for hit in hits
        ],
        limit=limit,
        offset=offset,
    )


@router.get("/v1/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(
    identity: Identity = Depends(get_identity),
    cache: ResultCache = Depends(get_result_cache),
) -> CacheStatsResponse:
    """Entry count, cache hits and credits saved by the cache."""
    stats = await cache.stats(identity.user_id)
    return CacheStatsResponse(
        entries=stats.entries, hits=stats.hits, credits_saved=stats.credits_saved
    )


# =============================================================================
# Service Endpoints
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
