"""
FastAPI Dependencies - Authentication, client identity and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import ipaddress
from collections.abc import Callable

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.config import settings
from gateway.db.session import get_read_db, get_write_db
from gateway.exceptions import UnauthorizedError
from gateway.models.api import GenerationAction
from gateway.models.domain import Identity
from gateway.observability.logging import get_logger
from gateway.services.abuse import AbuseDetector
from gateway.services.counters import build_window_counter
from gateway.services.ledger import CreditLedger
from gateway.services.orchestrator import GenerationOrchestrator
from gateway.services.providers import (
    FalVideoProvider,
    FashnTryOnProvider,
    GenerationProvider,
    HttpProvider,
    ReplicateModel3DProvider,
)
from gateway.services.rate_limiter import RateLimiter
from gateway.services.result_cache import ResultCache
from gateway.services.signing import RequestSignatureVerifier
from gateway.services.storage import ObjectStorage

logger = get_logger(__name__)

OrchestratorBuilder = Callable[[GenerationAction], GenerationOrchestrator]

# ============================================================================
# Session JWT Authentication
# ============================================================================

# Bearer token scheme for session JWTs
bearer_scheme = HTTPBearer(auto_error=False)


def _valid_ip(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def get_client_ip(request: Request) -> str | None:
    """
    Originating client IP behind the reverse proxy.

    Order: first X-Forwarded-For entry, X-Real-IP, CF-Connecting-IP, then
    the socket peer. Unparseable values are skipped.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip = _valid_ip(forwarded_for.split(",")[0])
        if ip:
            return ip

    for header in ("X-Real-IP", "CF-Connecting-IP"):
        ip = _valid_ip(request.headers.get(header))
        if ip:
            return ip

    return _valid_ip(request.client.host if request.client else None)


async def get_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Identity:
    """
    Resolve the caller from the session JWT.

    Accepts: Authorization: Bearer {session_jwt}
    Verifies: HS256 signature and expiry against SESSION_JWT_SECRET
    Extracts: `sub` claim as the user id

    Raises:
        UnauthorizedError: no token, or the token does not verify
    """
    if credentials is None:
        raise UnauthorizedError("Authorization header required")

    try:
        claims = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.session_jwt_algorithm],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise UnauthorizedError("Session expired") from e
    except jwt.InvalidTokenError as e:
        logger.warning("session_token_invalid", error=str(e))
        raise UnauthorizedError("Invalid session token") from e

    user_id = str(claims["sub"]).strip()
    if not user_id:
        raise UnauthorizedError("Invalid session token")

    return Identity(user_id=user_id, ip=get_client_ip(request))


# ============================================================================
# Process-wide Services
# ============================================================================
# Admission windows, the replay cache and HTTP connection pools must be
# shared across requests, so these live for the whole process.

_rate_limiter: RateLimiter | None = None
_signature_verifier: RequestSignatureVerifier | None = None
_storage: ObjectStorage | None = None
_providers: dict[GenerationAction, GenerationProvider] = {}


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        counter = build_window_counter(settings.rate_limit_backend, settings.redis_url)
        _rate_limiter = RateLimiter(counter, settings)
    return _rate_limiter


def get_signature_verifier() -> RequestSignatureVerifier:
    global _signature_verifier
    if _signature_verifier is None:
        _signature_verifier = RequestSignatureVerifier(settings=settings)
    return _signature_verifier


def get_storage() -> ObjectStorage:
    global _storage
    if _storage is None:
        _storage = ObjectStorage(settings=settings)
    return _storage


def get_provider(action: GenerationAction) -> GenerationProvider:
    """Provider client for an action (one shared client per action)."""
    provider = _providers.get(action)
    if provider is None:
        if action == GenerationAction.TRYON:
            provider = FashnTryOnProvider(settings)
        elif action == GenerationAction.VIDEO:
            provider = FalVideoProvider(settings)
        else:
            provider = ReplicateModel3DProvider(settings)
        _providers[action] = provider
    return provider


async def close_providers() -> None:
    """Close provider HTTP clients on shutdown."""
    for provider in _providers.values():
        if isinstance(provider, HttpProvider):
            await provider.close()
    _providers.clear()


# ============================================================================
# Request-scoped Services
# ============================================================================


def get_ledger(db: AsyncSession = Depends(get_write_db)) -> CreditLedger:
    return CreditLedger(db, settings)


def get_result_cache(
    db: AsyncSession = Depends(get_read_db),
    storage: ObjectStorage = Depends(get_storage),
) -> ResultCache:
    """Read-side cache (history and stats)."""
    return ResultCache(db, storage, settings)


def get_orchestrator_builder(
    db: AsyncSession = Depends(get_write_db),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    verifier: RequestSignatureVerifier = Depends(get_signature_verifier),
    storage: ObjectStorage = Depends(get_storage),
) -> OrchestratorBuilder:
    """
    Build orchestrators bound to this request's session.

    Usage:
        @router.post("/v1/generate/tryon")
        async def generate(build: OrchestratorBuilder = Depends(get_orchestrator_builder)):
            outcome = await build(GenerationAction.TRYON).run(...)
    """

    def build(action: GenerationAction) -> GenerationOrchestrator:
        return GenerationOrchestrator(
            action=action,
            ledger=CreditLedger(db, settings),
            rate_limiter=rate_limiter,
            abuse=AbuseDetector(db, settings),
            verifier=verifier,
            cache=ResultCache(db, storage, settings),
            storage=storage,
            provider=get_provider(action),
            settings=settings,
        )

    return build
