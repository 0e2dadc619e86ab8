"""
Credit Ledger - Atomic credit deduction, refund and lazy periodic reset.

Every balance change is a single conditional UPDATE in the database; no
read-then-write from Python and no in-process locks, so several gateway
processes can share one ledger.

Settlement lifecycle per request id:
1. deduct: conditional debit + pending usage log, one transaction
2. finalize_success / finalize_failure: pending -> success | failed
3. refund: claims the usage log once, then credits the balance back
"""

import calendar
from collections.abc import Callable
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.config import Settings, settings as default_settings
from gateway.db.models import CreditAccount, UsageLog
from gateway.exceptions import (
    IdempotencyConflictError,
    InputValidationError,
    InsufficientCreditsError,
    PlanRestrictedError,
    WriteVerificationError,
)
from gateway.models.api import GenerationAction, Plan, UsageStatus
from gateway.models.domain import BalanceView, DeductionResult, Identity, RefundResult
from gateway.observability.logging import get_logger

logger = get_logger(__name__)

CREDIT_COSTS: dict[GenerationAction, int] = {
    GenerationAction.TRYON: 2,
    GenerationAction.VIDEO: 8,
    GenerationAction.MODEL3D: 2,
}

# Actions a plan may perform; anything absent is open to every plan.
PLAN_RESTRICTED_ACTIONS: dict[GenerationAction, Plan] = {
    GenerationAction.VIDEO: Plan.PAID,
}


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _resolve_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def add_months(moment: datetime, months: int) -> datetime:
    """Shift a datetime by whole calendar months, clamping the day."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def current_period(
    plan: Plan, anchor: datetime, timezone_name: str, now: datetime
) -> tuple[datetime, datetime]:
    """
    Return (period_start, next_reset_at) for the period containing `now`.

    Free plans run from local midnight to local midnight in the account
    timezone. Paid plans run in whole calendar months from `anchor`.
    Both bounds are returned in UTC.
    """
    if plan == Plan.FREE:
        zone = _resolve_zone(timezone_name)
        local_day = now.astimezone(zone).date()
        start = datetime.combine(local_day, time.min, tzinfo=zone)
        end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=zone)
        return start.astimezone(UTC), end.astimezone(UTC)

    months = 0
    while add_months(anchor, months + 1) <= now:
        months += 1
    return add_months(anchor, months), add_months(anchor, months + 1)


class CreditLedger:
    """
    Credit ledger backed by credit_accounts and usage_logs.

    The service never holds balances in memory between statements; the
    database row is the source of truth.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize ledger with database session."""
        self.session = session
        self.settings = settings or default_settings
        self._now = clock

    def allotment_for(self, plan: Plan | str) -> int:
        """Credits granted at the start of each period for a plan."""
        if Plan(plan) == Plan.PAID:
            return self.settings.paid_monthly_credits
        return self.settings.free_daily_credits

    @staticmethod
    def cost_of(action: GenerationAction) -> int:
        return CREDIT_COSTS[action]

    async def deduct(
        self, identity: Identity, action: GenerationAction, request_id: str
    ) -> DeductionResult:
        """
        Deduct the action's cost and open a pending usage log.

        The debit and the log insert share one transaction: a reused
        request id rolls the debit back.

        Raises:
            PlanRestrictedError: plan does not include the action
            InsufficientCreditsError: balance below cost
            IdempotencyConflictError: request id already used
        """
        cost = self.cost_of(action)
        account = await self._get_or_create_account(identity.user_id)
        self._check_plan(account, action)

        for _ in range(2):
            account = await self._apply_reset(account)
            new_balance = await self._conditional_debit(identity.user_id, cost, self._now())
            if new_balance is not None:
                break

            await self.session.rollback()
            account = await self._require_account(identity.user_id)
            if account.next_reset_at > self._now():
                logger.info(
                    "credits_insufficient",
                    user_id=identity.user_id,
                    action=action.value,
                    balance=account.balance,
                    required=cost,
                )
                raise InsufficientCreditsError(account.balance, cost)
            # A period boundary passed between the reset check and the debit.
        else:
            account = await self._require_account(identity.user_id)
            raise InsufficientCreditsError(account.balance, cost)

        self.session.add(
            UsageLog(
                request_id=request_id,
                user_id=identity.user_id,
                action=action.value,
                credits_used=cost,
                status=UsageStatus.PENDING.value,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning(
                "usage_log_duplicate_request_id",
                request_id=request_id,
                user_id=identity.user_id,
                error=str(e),
            )
            await self.session.rollback()
            raise IdempotencyConflictError(request_id) from e

        await self.session.commit()

        logger.info(
            "credits_deducted",
            user_id=identity.user_id,
            action=action.value,
            request_id=request_id,
            credits_used=cost,
            balance=new_balance,
        )
        return DeductionResult(balance=new_balance, request_accepted=True, credits_used=cost)

    async def refund(
        self, identity: Identity, action: GenerationAction, request_id: str
    ) -> RefundResult:
        """
        Return the credits of a pending or failed request, at most once.

        The usage log row is claimed by a conditional update on
        refunded_at; only the claimant credits the balance. Credits spent
        in a period that has since reset are not returned.
        """
        account = await self._find_account(identity.user_id)
        if account is None:
            logger.warning("refund_account_missing", user_id=identity.user_id, request_id=request_id)
            return RefundResult(refunded=False, balance=None)

        account = await self._apply_reset(account)

        claim = await self._claim_refund(identity.user_id, action, request_id)
        if claim is None:
            await self.session.rollback()
            logger.info("refund_skipped", user_id=identity.user_id, request_id=request_id)
            return RefundResult(refunded=False, balance=account.balance)

        credits_used, created_at = claim
        if created_at < account.period_start:
            await self.session.commit()
            logger.info(
                "refund_period_elapsed",
                user_id=identity.user_id,
                request_id=request_id,
                credits_used=credits_used,
            )
            return RefundResult(refunded=True, balance=account.balance, credits_returned=0)

        balance = await self._credit_back(
            identity.user_id, credits_used, self.allotment_for(account.plan)
        )
        await self.session.commit()

        logger.info(
            "credits_refunded",
            user_id=identity.user_id,
            action=action.value,
            request_id=request_id,
            credits_returned=credits_used,
            balance=balance,
        )
        return RefundResult(refunded=True, balance=balance, credits_returned=credits_used)

    async def finalize_success(self, request_id: str, duration_ms: int) -> bool:
        """Mark a pending usage log successful. Returns False if not pending."""
        return await self._finalize(request_id, UsageStatus.SUCCESS, duration_ms, None)

    async def finalize_failure(self, request_id: str, duration_ms: int, error: str) -> bool:
        """Mark a pending usage log failed. Returns False if not pending."""
        return await self._finalize(request_id, UsageStatus.FAILED, duration_ms, error)

    async def get_balance(self, identity: Identity) -> BalanceView:
        """Current balance view, creating the account and applying resets as needed."""
        account = await self._get_or_create_account(identity.user_id)
        account = await self._apply_reset(account)
        return self._to_view(account)

    async def update_timezone(self, identity: Identity, timezone_name: str) -> BalanceView:
        """
        Store the account's IANA timezone.

        Free-plan reset boundaries follow the new local midnight but are
        never pulled earlier, so changing zones cannot shorten a period.
        The balance itself is untouched.
        """
        try:
            ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise InputValidationError("timezone", f"Unknown timezone: {timezone_name}") from e

        account = await self._get_or_create_account(identity.user_id)
        account = await self._apply_reset(account)

        values: dict[str, object] = {"timezone": timezone_name, "updated_at": self._now()}
        if Plan(account.plan) == Plan.FREE:
            _, next_reset = current_period(
                Plan.FREE, account.period_start, timezone_name, self._now()
            )
            if next_reset > account.next_reset_at:
                values["next_reset_at"] = next_reset

        await self.session.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == identity.user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        logger.info("timezone_updated", user_id=identity.user_id, timezone=timezone_name)
        return self._to_view(await self._require_account(identity.user_id))

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _check_plan(self, account: CreditAccount, action: GenerationAction) -> None:
        required = PLAN_RESTRICTED_ACTIONS.get(action)
        if required is not None and Plan(account.plan) != required:
            raise PlanRestrictedError(account.plan, action.value)

    async def _find_account(self, user_id: str) -> CreditAccount | None:
        stmt = (
            select(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _require_account(self, user_id: str) -> CreditAccount:
        account = await self._find_account(user_id)
        if account is None:
            raise WriteVerificationError(f"Credit account vanished for {user_id}")
        return account

    async def _get_or_create_account(self, user_id: str) -> CreditAccount:
        """Find the account, creating it with the free allotment on first use."""
        account = await self._find_account(user_id)
        if account is not None:
            return account

        now = self._now()
        period_start, next_reset = current_period(Plan.FREE, now, "UTC", now)
        new_account = CreditAccount(
            user_id=user_id,
            balance=self.allotment_for(Plan.FREE),
            plan=Plan.FREE.value,
            period_start=period_start,
            next_reset_at=next_reset,
            timezone="UTC",
            billing_anchor=now,
        )
        self.session.add(new_account)

        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as e:
            # Race condition - account created by another request
            logger.warning("credit_account_creation_race", user_id=user_id, error=str(e))
            await self.session.rollback()
            account = await self._find_account(user_id)
            if account is None:
                raise WriteVerificationError(f"Account creation failed: {e}") from e
            return account

        logger.info("credit_account_created", user_id=user_id, balance=new_account.balance)
        return new_account

    async def _apply_reset(self, account: CreditAccount) -> CreditAccount:
        """
        Reset the balance if the period boundary has passed.

        Compare-and-swap on the observed next_reset_at: of several
        concurrent resetters exactly one applies the allotment.
        """
        now = self._now()
        if now < account.next_reset_at:
            return account

        plan = Plan(account.plan)
        period_start, next_reset = current_period(
            plan, account.billing_anchor, account.timezone, now
        )
        allotment = self.allotment_for(plan)

        stmt = (
            update(CreditAccount)
            .where(
                CreditAccount.user_id == account.user_id,
                CreditAccount.next_reset_at == account.next_reset_at,
            )
            .values(
                balance=allotment,
                period_start=period_start,
                next_reset_at=next_reset,
                updated_at=now,
            )
            .returning(CreditAccount.balance)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        applied = result.first() is not None
        await self.session.commit()

        if applied:
            logger.info(
                "credit_period_reset",
                user_id=account.user_id,
                plan=plan.value,
                balance=allotment,
                next_reset_at=next_reset.isoformat(),
            )
        return await self._require_account(account.user_id)

    async def _conditional_debit(self, user_id: str, cost: int, now: datetime) -> int | None:
        """Debit `cost` if the balance covers it in the current period. Not committed."""
        stmt = (
            update(CreditAccount)
            .where(
                CreditAccount.user_id == user_id,
                CreditAccount.balance >= cost,
                CreditAccount.next_reset_at > now,
            )
            .values(balance=CreditAccount.balance - cost, updated_at=now)
            .returning(CreditAccount.balance)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _claim_refund(
        self, user_id: str, action: GenerationAction, request_id: str
    ) -> tuple[int, datetime] | None:
        """Mark the usage log refunded; returns (credits_used, created_at) if claimed."""
        now = self._now()
        stmt = (
            update(UsageLog)
            .where(
                UsageLog.request_id == request_id,
                UsageLog.user_id == user_id,
                UsageLog.action == action.value,
                UsageLog.refunded_at.is_(None),
                UsageLog.status.in_([UsageStatus.PENDING.value, UsageStatus.FAILED.value]),
            )
            .values(
                refunded_at=now,
                status=case(
                    (UsageLog.status == UsageStatus.PENDING.value, UsageStatus.REFUNDED.value),
                    else_=UsageLog.status,
                ),
                updated_at=now,
            )
            .returning(UsageLog.credits_used, UsageLog.created_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def _credit_back(self, user_id: str, credits: int, allotment: int) -> int | None:
        stmt = (
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(
                balance=func.least(CreditAccount.balance + credits, allotment),
                updated_at=self._now(),
            )
            .returning(CreditAccount.balance)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _finalize(
        self, request_id: str, status: UsageStatus, duration_ms: int, error: str | None
    ) -> bool:
        stmt = (
            update(UsageLog)
            .where(
                UsageLog.request_id == request_id,
                UsageLog.status == UsageStatus.PENDING.value,
            )
            .values(
                status=status.value,
                processing_time_ms=duration_ms,
                error_message=error[:1000] if error else None,
                updated_at=self._now(),
            )
            .returning(UsageLog.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        finalized = result.first() is not None
        await self.session.commit()

        if finalized:
            logger.info(
                "usage_finalized",
                request_id=request_id,
                status=status.value,
                processing_time_ms=duration_ms,
            )
        else:
            logger.warning("usage_finalize_skipped", request_id=request_id, status=status.value)
        return finalized

    def _to_view(self, account: CreditAccount) -> BalanceView:
        plan = Plan(account.plan)
        return BalanceView(
            user_id=account.user_id,
            balance=account.balance,
            plan=plan,
            allotment=self.allotment_for(plan),
            period_start=account.period_start,
            next_reset_at=account.next_reset_at,
            timezone=account.timezone,
        )
