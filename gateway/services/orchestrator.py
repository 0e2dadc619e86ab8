"""
Generation Orchestrator - The fixed admission and settlement pipeline.

Order (short-circuits on the first failure):
1. authenticate
2. abuse check
3. signature verify
4. rate limit (global, then per identity)
5. credit deduct
6. parse & validate input
7. cache lookup (hit: refund and return)
8. provider submit, poll, extract
9. persist artifact, write cache (a concurrent live entry wins), finalize usage

Steps 1-4 never touch the ledger. Any failure from step 6 on finalizes
the usage log as failed and refunds; a failed refund is logged and the
original error still reaches the caller.
"""

import base64
import secrets
import time
from collections.abc import Awaitable, Callable, Mapping

from pydantic import BaseModel, ValidationError

from gateway.config import Settings, settings as default_settings
from gateway.exceptions import (
    BlockedError,
    CacheWriteError,
    GatewayError,
    InputValidationError,
    InsufficientCreditsError,
    InvalidSignatureError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    StorageError,
    UnauthorizedError,
)
from gateway.models.api import (
    AbuseEventType,
    GenerationAction,
    ImageGenerationRequest,
    Severity,
    TryOnRequest,
)
from gateway.models.domain import (
    CacheHit,
    ExtractedArtifact,
    GenerationOutcome,
    Identity,
    ParsedInput,
)
from gateway.observability.logging import get_logger, log_context
from gateway.observability.metrics import metrics
from gateway.observability.tracing import trace_operation
from gateway.services.abuse import AbuseDetector
from gateway.services.image_validation import hash_image, validate_image
from gateway.services.ledger import CreditLedger
from gateway.services.poller import JobPoller
from gateway.services.providers import GenerationProvider
from gateway.services.rate_limiter import RateLimiter
from gateway.services.result_cache import ResultCache, compute_fingerprint, tryon_subject_key
from gateway.services.signing import RequestSignatureVerifier
from gateway.services.storage import ObjectStorage, pointer_path, to_pointer

logger = get_logger(__name__)

DEV_BYPASS_HEADER = "X-Dev-Bypass-Credits"


def new_request_id(action: GenerationAction) -> str:
    """Correlation id: <action>-<epoch ms>-<random>."""
    return f"{action.value}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class _StageTimer:
    """Collects per-stage durations in milliseconds."""

    def __init__(self) -> None:
        self.started = time.perf_counter()
        self._mark = self.started
        self.stages: dict[str, int] = {}

    def lap(self, stage: str) -> int:
        now = time.perf_counter()
        elapsed = int((now - self._mark) * 1000)
        self.stages[stage] = self.stages.get(stage, 0) + elapsed
        self._mark = now
        return elapsed

    @property
    def total_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


class GenerationOrchestrator:
    """Runs one generation request for one action through the pipeline."""

    def __init__(
        self,
        action: GenerationAction,
        ledger: CreditLedger,
        rate_limiter: RateLimiter,
        abuse: AbuseDetector,
        verifier: RequestSignatureVerifier,
        cache: ResultCache,
        storage: ObjectStorage,
        provider: GenerationProvider,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.action = action
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.abuse = abuse
        self.verifier = verifier
        self.cache = cache
        self.storage = storage
        self.provider = provider
        self.settings = settings or default_settings
        self._sleep = sleep

    async def run(
        self,
        identity: Identity | None,
        headers: Mapping[str, str],
        body: bytes,
        request_id: str | None = None,
    ) -> GenerationOutcome:
        if identity is None:
            metrics.record_rejection(self.action.value, "unauthorized")
            raise UnauthorizedError()

        request_id = request_id or new_request_id(self.action)
        with log_context(request_id=request_id, user_id=identity.user_id, action=self.action.value):
            with trace_operation("generation", action=self.action.value, request_id=request_id):
                return await self._run(identity, headers, body, request_id)

    async def _run(
        self, identity: Identity, headers: Mapping[str, str], body: bytes, request_id: str
    ) -> GenerationOutcome:
        timer = _StageTimer()
        logger.info("generation_started")

        await self._admit(identity, headers)
        timer.lap("admission")

        charged = await self._charge(identity, headers, request_id)
        timer.lap("deduct")

        try:
            parsed = self._parse(body)
            timer.lap("validate")

            fingerprint = compute_fingerprint(
                identity.user_id, parsed.subject_key, hash_image(parsed.source_image)
            )
            hit = await self.cache.lookup(fingerprint)
            metrics.record_cache_lookup(self.action.value, hit is not None)
            timer.lap("cache_lookup")

            if hit is not None:
                if charged:
                    await self._refund_quietly(identity, request_id)
                metrics.record_generation(self.action.value, "cached")
                logger.info("generation_served_from_cache", cache_id=hit.cache_id)
                return GenerationOutcome(
                    request_id=request_id,
                    result=hit.result,
                    cached=True,
                    cache_id=hit.cache_id,
                    total_ms=timer.total_ms,
                    breakdown=dict(timer.stages),
                )

            output = await self._call_provider(parsed)
            provider_ms = timer.lap("provider")
            metrics.record_provider_call(self.provider.name, provider_ms / 1000)

            artifact = self.provider.extractor.extract(output)
            if artifact is None:
                logger.error("provider_output_unrecognized", output_preview=repr(output)[:500])
                raise ProviderError(self.provider.name, "no artifact in provider output")

            pointer, result = await self._persist(identity, request_id, artifact)
            timer.lap("storage")

            cache_id = await self._write_cache(fingerprint, identity, parsed, pointer)
            if cache_id is None:
                winner = await self._yield_to_live_entry(fingerprint, pointer)
                if winner is not None:
                    result, cache_id = winner.result, winner.cache_id
            timer.lap("cache_write")

            if charged:
                await self.ledger.finalize_success(request_id, timer.total_ms)
        except Exception as exc:
            await self._on_failure(identity, request_id, exc, charged, timer.total_ms)
            raise

        metrics.record_generation(self.action.value, "success")
        logger.info("generation_completed", total_ms=timer.total_ms, provider_ms=provider_ms)
        return GenerationOutcome(
            request_id=request_id,
            result=result,
            cached=False,
            cache_id=cache_id,
            total_ms=timer.total_ms,
            provider_ms=provider_ms,
            breakdown=dict(timer.stages),
        )

    # ========================================================================
    # Admission
    # ========================================================================

    async def _admit(self, identity: Identity, headers: Mapping[str, str]) -> None:
        check = await self.abuse.check(identity)
        if check.blocked:
            await self.abuse.record(
                identity,
                AbuseEventType.BLOCKED_USER_ATTEMPT,
                Severity.HIGH,
                {"reason": check.reason, "action": self.action.value},
            )
            metrics.record_rejection(self.action.value, "blocked")
            raise BlockedError(check.reason or "Access denied", check.score)

        signature = self.verifier.verify(headers, identity.user_id)
        if not signature.valid:
            await self.abuse.report(
                identity,
                AbuseEventType.INVALID_SIGNATURE,
                Severity.HIGH,
                {"error": signature.error, "action": self.action.value},
            )
            metrics.record_rejection(self.action.value, "invalid_signature")
            raise InvalidSignatureError(signature.error or "Invalid signature")

        try:
            await self.rate_limiter.admit(identity, self.action)
        except RateLimitedError as exc:
            metrics.record_rejection(self.action.value, f"rate_limited_{exc.scope}")
            if exc.scope == "identity":
                await self.abuse.report(
                    identity,
                    AbuseEventType.RATE_LIMIT_EXCEEDED,
                    Severity.MEDIUM,
                    {"action": self.action.value, "limit": exc.limit},
                )
            raise

    async def _charge(
        self, identity: Identity, headers: Mapping[str, str], request_id: str
    ) -> bool:
        """Deduct credits. Returns False when the dev bypass skipped deduction."""
        if headers.get(DEV_BYPASS_HEADER, "").lower() == "true" and not self.settings.is_production:
            logger.warning("credit_deduction_bypassed")
            return False

        try:
            result = await self.ledger.deduct(identity, self.action, request_id)
        except InsufficientCreditsError as exc:
            await self.abuse.report(
                identity,
                AbuseEventType.CREDIT_EXHAUSTION_ATTEMPT,
                Severity.LOW,
                {"balance": exc.balance, "required": exc.required},
            )
            metrics.record_rejection(self.action.value, "insufficient_credits")
            raise

        metrics.record_deduction(self.action.value, result.credits_used)
        return True

    # ========================================================================
    # Input
    # ========================================================================

    def _parse(self, body: bytes) -> ParsedInput:
        model: type[BaseModel] = (
            TryOnRequest if self.action == GenerationAction.TRYON else ImageGenerationRequest
        )
        try:
            request = model.model_validate_json(body or b"{}")
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ())) or "body"
            raise InputValidationError(field, f"Invalid request body: {first.get('msg')}") from e

        if isinstance(request, TryOnRequest):
            validate_image(request.person_image, "Person image")
            validate_image(request.garment_image, "Garment image")
            return ParsedInput(
                action=self.action,
                primary_image=request.person_image,
                subject_key=tryon_subject_key(request.dress_id, request.garment_image),
                source_image=request.person_image,
                garment_image=request.garment_image,
            )

        assert isinstance(request, ImageGenerationRequest)
        validate_image(request.image, "Image")
        return ParsedInput(
            action=self.action,
            primary_image=request.image,
            subject_key=self.action.value,
            source_image=request.image,
        )

    # ========================================================================
    # Provider & Persistence
    # ========================================================================

    async def _call_provider(self, parsed: ParsedInput) -> object:
        with trace_operation("provider_submit", provider=self.provider.name):
            submission = await self.provider.submit(parsed)

        if submission.output is not None:
            return submission.output

        assert submission.job_id is not None
        logger.info("provider_job_submitted", provider=self.provider.name, job_id=submission.job_id)
        poller_kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        poller = JobPoller(
            self.provider.get_status,
            interval=self.settings.poll_interval_seconds,
            max_attempts=self.settings.poll_max_attempts,
            provider=self.provider.name,
            **poller_kwargs,
        )
        with trace_operation("provider_poll", provider=self.provider.name, job_id=submission.job_id):
            result = await poller.run(submission.job_id)

        if result.timed_out:
            raise ProviderTimeoutError(self.provider.name, result.attempts)
        if not result.success:
            raise ProviderError(self.provider.name, result.error or "Generation failed")
        return result.output

    async def _persist(
        self, identity: Identity, request_id: str, artifact: ExtractedArtifact
    ) -> tuple[str, str]:
        """
        Upload the artifact privately. Returns (cache pointer, client URL).

        Small images fall back to an inline data URL when storage is down.
        """
        if artifact.data is not None:
            data = artifact.data
        else:
            assert artifact.url is not None
            data = await self.provider.download(artifact.url)

        path = f"{identity.user_id}/{request_id}.{artifact.extension}"
        try:
            await self.storage.upload(path, data, artifact.content_type)
            url = await self.storage.create_signed_url(path)
        except StorageError:
            if (
                artifact.content_type.startswith("image/")
                and len(data) <= self.settings.inline_fallback_max_bytes
            ):
                logger.warning("storage_fallback_inline", size_bytes=len(data))
                inline = f"data:{artifact.content_type};base64,{base64.b64encode(data).decode()}"
                return inline, inline
            raise
        return to_pointer(path), url

    async def _write_cache(
        self, fingerprint: str, identity: Identity, parsed: ParsedInput, pointer: str
    ) -> str | None:
        try:
            return await self.cache.write(
                fingerprint,
                identity.user_id,
                self.action,
                parsed.subject_key,
                hash_image(parsed.source_image),
                pointer,
            )
        except CacheWriteError as exc:
            logger.error("cache_write_failed", error=exc.message)
            metrics.record_error("CacheWriteError", "cache_write")
            return None

    async def _yield_to_live_entry(self, fingerprint: str, pointer: str) -> CacheHit | None:
        """
        Serve the entry that beat this request to the fingerprint.

        Our own upload is then referenced by no row, so it is deleted.
        """
        hit = await self.cache.lookup(fingerprint)
        if hit is None or hit.pointer == pointer:
            return None

        path = pointer_path(pointer)
        if path is not None:
            try:
                await self.storage.delete([path])
            except StorageError as e:
                logger.warning("unreferenced_upload_cleanup_failed", path=path, error=str(e))
        logger.info("cache_write_lost_to_live_entry", cache_id=hit.cache_id)
        return hit

    # ========================================================================
    # Settlement
    # ========================================================================

    async def _on_failure(
        self,
        identity: Identity,
        request_id: str,
        exc: Exception,
        charged: bool,
        elapsed_ms: int,
    ) -> None:
        outcome = "timed_out" if isinstance(exc, ProviderTimeoutError) else "failed"
        metrics.record_generation(self.action.value, outcome)
        metrics.record_error(type(exc).__name__, "generation")
        logger.warning(
            "generation_failed",
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=not isinstance(exc, GatewayError),
        )

        # The session may hold a failed transaction from the error itself
        await self.ledger.session.rollback()

        if isinstance(exc, InputValidationError) and exc.malformed_image:
            await self.abuse.report(
                identity,
                AbuseEventType.INVALID_IMAGE,
                Severity.LOW,
                {"field": exc.field, "error": exc.message},
            )

        if not charged:
            return

        try:
            await self.ledger.finalize_failure(request_id, elapsed_ms, str(exc))
        except Exception as e:
            logger.error("usage_finalize_failed", error=str(e), exc_info=True)
            await self.ledger.session.rollback()

        await self._refund_quietly(identity, request_id)

    async def _refund_quietly(self, identity: Identity, request_id: str) -> None:
        """Refund, logging instead of raising on failure."""
        try:
            result = await self.ledger.refund(identity, self.action, request_id)
        except Exception as e:
            logger.error("refund_failed", error=str(e), exc_info=True)
            metrics.record_error(type(e).__name__, "refund")
            await self.ledger.session.rollback()
            return
        if result.credits_returned:
            metrics.record_refund(self.action.value, result.credits_returned)
