"""
Token Service - Business Logic Layer

Ledger operations for the request path:
- Ledger registration, lookup and deletion
- Expiry reconciliation of bonus credits
- Priority spend (daily quota first, then bonus)
- Admin bonus grants, plan management, manual renewal, auto-renew toggle
- Pending settlement transactions (plan purchases and token top-ups)

Every ledger mutation reads a snapshot, computes the new ledger with the
pure functions in ledger_math, and writes it with one compare-and-swap on
the ledger version. A lost race re-reads and recomputes, a bounded number
of times.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar
from zoneinfo import ZoneInfo

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import TokenConfig

from . import ledger_math
from .clock import SystemClock
from .events.publishers import (
    publish_bonus_expired,
    publish_bonus_granted,
    publish_subscription_renewed,
    publish_tokens_spent,
)
from .models import (
    BalanceBreakdown,
    BonusGrantResult,
    NotificationKind,
    Plan,
    SettlementTransaction,
    SpendResult,
    SubjectType,
    TokenLedger,
    TransactionStatus,
)
from .protocols import (
    BonusAlreadyActiveError,
    ClockProtocol,
    ConcurrentModificationError,
    EventBusProtocol,
    LedgerNotFoundError,
    LedgerRepositoryProtocol,
    NotificationClientProtocol,
    PlanAlreadyExistsError,
    PlanNotFoundError,
    TopUpNotAllowedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# compute(snapshot, now) -> (ledger to write or None for no change, result)
LedgerChange = Callable[[TokenLedger, datetime], Tuple[Optional[TokenLedger], T]]


class StaleLedgerVersion(Exception):
    """The ledger changed between read and conditional write"""

    def __init__(self, user_id: str, version: int):
        super().__init__(f"Ledger {user_id} moved past version {version}")
        self.user_id = user_id
        self.version = version


def generate_transaction_id(now: datetime) -> str:
    """TKN_<epoch millis>_<8 hex chars>"""
    return f"TKN_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"


class TokenService:
    """
    Token Service - Core business logic

    Owns the per-user ledger. Scheduled sweeps and settlement reuse
    mutate_ledger so that every writer goes through the same conditional
    update.
    """

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        event_bus: Optional[EventBusProtocol] = None,
        notification_client: Optional[NotificationClientProtocol] = None,
        clock: Optional[ClockProtocol] = None,
        config: Optional[TokenConfig] = None,
    ):
        """
        Initialize token service with dependencies.

        Args:
            repository: Ledger repository for data access
            event_bus: Event bus for publishing events (optional)
            notification_client: Notification delivery (optional)
            clock: Time source (defaults to the wall clock in the scheduler zone)
            config: Ledger rules (defaults to TokenConfig())
        """
        self.repository = repository
        self.event_bus = event_bus
        self.notification_client = notification_client
        self.config = config or TokenConfig()
        self.tz = ZoneInfo(self.config.scheduler_timezone)
        self.clock = clock or SystemClock(self.tz)

    # ====================
    # Optimistic writes
    # ====================

    async def mutate_ledger(self, user_id: str, compute: LedgerChange) -> Tuple[TokenLedger, T]:
        """
        Apply a pure change to one ledger under compare-and-swap.

        ``compute`` may raise a domain error to abort; nothing is written in
        that case. It returns ``None`` as the ledger when there is nothing to
        write.

        Returns:
            (stored ledger, compute result)

        Raises:
            LedgerNotFoundError: no ledger for user_id
            ConcurrentModificationError: retries exhausted
        """
        attempts = self.config.cas_max_retries

        @retry(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.01, max=0.2),
            retry=retry_if_exception_type(StaleLedgerVersion),
            reraise=True,
        )
        async def _attempt():
            snapshot = await self.repository.get_ledger(user_id)
            if snapshot is None:
                raise LedgerNotFoundError(user_id)

            now = self.clock.now()
            updated, result = compute(snapshot, now)
            if updated is None:
                return snapshot, result

            stored = await self.repository.compare_and_swap(updated, snapshot.version, now)
            if stored is None:
                raise StaleLedgerVersion(user_id, snapshot.version)
            return stored, result

        try:
            return await _attempt()
        except StaleLedgerVersion:
            logger.warning(f"Giving up on ledger {user_id} after {attempts} conflicting writes")
            raise ConcurrentModificationError(user_id, attempts)

    # ====================
    # Ledger registration
    # ====================

    async def create_ledger(self, user_id: str) -> Tuple[TokenLedger, bool]:
        """
        Create a zero ledger; idempotent.

        Returns:
            (ledger, created) where created is False if it already existed
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required")
        user_id = user_id.strip()

        created = await self.repository.create_ledger(user_id, self.clock.now())
        if created is not None:
            logger.info(f"Created token ledger for user {user_id}")
            return created, True

        existing = await self.repository.get_ledger(user_id)
        if existing is None:
            raise LedgerNotFoundError(user_id)
        return existing, False

    async def get_ledger(self, user_id: str) -> TokenLedger:
        ledger = await self.repository.get_ledger(user_id)
        if ledger is None:
            raise LedgerNotFoundError(user_id)
        return ledger

    async def delete_ledger(self, user_id: str) -> bool:
        deleted = await self.repository.delete_ledger(user_id)
        if deleted:
            logger.info(f"Deleted token ledger for user {user_id}")
        return deleted

    # ====================
    # Expiry reconciliation
    # ====================

    async def reconcile(self, user_id: str) -> bool:
        """
        Clear an expired bonus.

        Returns:
            True if the stored ledger changed
        """
        def compute(ledger: TokenLedger, now: datetime):
            reconciled, changed = ledger_math.reconcile_bonus(ledger, now)
            return (reconciled if changed else None), changed

        _, changed = await self.mutate_ledger(user_id, compute)
        if changed:
            logger.info(f"Expired bonus cleared for user {user_id}")
            await publish_bonus_expired(self.event_bus, user_id)
        return changed

    async def get_balance(self, user_id: str) -> BalanceBreakdown:
        """Balance breakdown; reconciles first"""
        await self.reconcile(user_id)
        ledger = await self.get_ledger(user_id)
        now = self.clock.now()
        live = ledger_math.bonus_is_live(ledger.bonus, now)
        window = ledger.window

        return BalanceBreakdown(
            user_id=ledger.user_id,
            daily_balance=ledger.daily_balance,
            daily_spent_today=ledger.daily_spent_today,
            bonus_amount=ledger.bonus.amount if live else 0,
            bonus_expires_at=ledger.bonus.expires_at if live else None,
            bonus_seconds_remaining=ledger_math.bonus_seconds_remaining(ledger.bonus, now),
            effective_balance=ledger_math.effective_balance(ledger, now),
            monthly_allocation=ledger.monthly_allocation,
            monthly_spent=ledger.monthly_spent,
            monthly_remaining=ledger.monthly_remaining,
            total_spent_lifetime=ledger.total_spent_lifetime,
            subscription_active=window.active and window.end_date is not None and now <= window.end_date,
            plan_ref=window.plan_ref,
            end_date=window.end_date,
            auto_renew=window.auto_renew,
        )

    # ====================
    # Deduction
    # ====================

    async def spend(self, user_id: str, amount: int) -> SpendResult:
        """
        Spend tokens: daily balance first, then bonus.

        Raises:
            ValueError: amount is not a positive integer
            LedgerNotFoundError: unknown user
            InsufficientBalanceError: amount exceeds the effective balance
            ConcurrentModificationError: retries exhausted
        """
        ledger_math.validate_amount(amount)

        def compute(ledger: TokenLedger, now: datetime):
            return ledger_math.apply_spend(ledger, amount, now)

        _, result = await self.mutate_ledger(user_id, compute)
        logger.info(
            f"User {user_id} spent {amount} token(s): "
            f"daily={result.daily_remaining} bonus={result.bonus_remaining}"
        )
        await publish_tokens_spent(
            self.event_bus,
            user_id=user_id,
            amount=result.amount,
            daily_remaining=result.daily_remaining,
            bonus_remaining=result.bonus_remaining,
            total_remaining=result.total_remaining,
        )
        return result

    # ====================
    # Bonus grants
    # ====================

    async def grant_bonus(
        self,
        user_id: str,
        amount: int,
        granted_by: str = "admin",
        reason: Optional[str] = None,
    ) -> BonusGrantResult:
        """
        Grant temporary bonus credits.

        A live bonus is never stacked; the call is reported as rejected.
        """
        ledger_math.validate_amount(amount)
        validity = timedelta(hours=self.config.bonus_validity_hours)

        def compute(ledger: TokenLedger, now: datetime):
            return ledger_math.grant_bonus(ledger, amount, now, validity, granted_by, reason), None

        try:
            ledger, _ = await self.mutate_ledger(user_id, compute)
        except BonusAlreadyActiveError as e:
            logger.info(f"Bonus for user {user_id} rejected: active until {e.expires_at}")
            return BonusGrantResult(
                granted=False,
                rejected="already_active",
                user_id=user_id,
                expires_at=e.expires_at,
            )

        bonus = ledger.bonus
        logger.info(f"Granted {amount} bonus token(s) to {user_id} until {bonus.expires_at}")

        await self._notify(user_id, NotificationKind.BONUS_GRANTED, {
            "amount": bonus.amount,
            "expires_at": bonus.expires_at.isoformat() if bonus.expires_at else None,
            "validity_hours": self.config.bonus_validity_hours,
            "reason": reason,
        })
        await publish_bonus_granted(
            self.event_bus,
            user_id=user_id,
            amount=bonus.amount,
            expires_at=bonus.expires_at,
            granted_by=granted_by,
            reason=reason,
        )
        return BonusGrantResult(
            granted=True,
            user_id=user_id,
            amount=bonus.amount,
            expires_at=bonus.expires_at,
        )

    async def _notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> bool:
        """Best-effort delivery for request-path notifications"""
        if self.notification_client is None:
            return False
        try:
            delivered = await self.notification_client.send_notification(user_id, kind, payload)
        except Exception as e:
            logger.error(f"Notification {kind.value} to {user_id} failed: {e}")
            return False
        if not delivered:
            logger.warning(f"Notification {kind.value} to {user_id} was not delivered")
        return bool(delivered)

    # ====================
    # Subscription settings
    # ====================

    async def set_auto_renew(self, user_id: str, enabled: bool) -> TokenLedger:
        def compute(ledger: TokenLedger, now: datetime):
            if ledger.window.auto_renew == enabled:
                return None, None
            window = ledger.window.model_copy(update={"auto_renew": enabled})
            return ledger.model_copy(update={"window": window}), None

        ledger, _ = await self.mutate_ledger(user_id, compute)
        logger.info(f"Auto-renew for {user_id} set to {enabled}")
        return ledger

    async def grant_plan(self, user_id: str, plan: Plan, trigger: str) -> TokenLedger:
        """Start a full window of ``plan`` now"""
        def compute(ledger: TokenLedger, now: datetime):
            renewed = ledger_math.renew_window(
                ledger, plan.plan_id, plan.duration_days, plan.daily_rate, now
            )
            return renewed, None

        ledger, _ = await self.mutate_ledger(user_id, compute)
        window = ledger.window
        logger.info(f"Plan {plan.plan_id} granted to {user_id} until {window.end_date} ({trigger})")
        await publish_subscription_renewed(
            self.event_bus,
            user_id=user_id,
            plan_ref=plan.plan_id,
            start_date=window.start_date,
            end_date=window.end_date,
            daily_rate=window.daily_rate,
            monthly_allocation=ledger.monthly_allocation,
            trigger=trigger,
        )
        return ledger

    async def renew_now(self, user_id: str) -> TokenLedger:
        """
        Manual renewal with the ledger's current plan.

        Raises:
            PlanNotFoundError: the ledger has no plan or the plan is gone
        """
        ledger = await self.get_ledger(user_id)
        plan_ref = ledger.window.plan_ref
        plan = await self.repository.get_plan(plan_ref) if plan_ref else None
        if plan is None:
            raise PlanNotFoundError(plan_ref)
        return await self.grant_plan(user_id, plan, trigger="manual")

    async def add_topup(self, user_id: str, tokens: int) -> TokenLedger:
        def compute(ledger: TokenLedger, now: datetime):
            return ledger_math.add_topup(ledger, tokens), None

        ledger, _ = await self.mutate_ledger(user_id, compute)
        logger.info(f"Added {tokens} purchased token(s) to {user_id}: daily={ledger.daily_balance}")
        return ledger

    # ====================
    # Plans
    # ====================

    async def create_plan(
        self,
        name: str,
        price: float,
        duration_days: int,
        daily_rate: int,
        plan_id: Optional[str] = None,
    ) -> Plan:
        """
        Create an immutable plan.

        Raises:
            ValueError: price < 0, duration_days <= 0 or daily_rate <= 0
            PlanAlreadyExistsError: plan_id is taken
        """
        if price < 0:
            raise ValueError("price must be >= 0")
        if duration_days <= 0:
            raise ValueError("duration_days must be > 0")
        if daily_rate <= 0:
            raise ValueError("daily_rate must be > 0")

        plan = Plan(
            plan_id=plan_id or f"plan_{uuid.uuid4().hex[:12]}",
            name=name,
            price=price,
            duration_days=duration_days,
            daily_rate=daily_rate,
            created_at=self.clock.now(),
        )
        created = await self.repository.create_plan(plan)
        if created is None:
            raise PlanAlreadyExistsError(plan.plan_id)
        logger.info(f"Created plan {created.plan_id}: {duration_days} days x {daily_rate}/day")
        return created

    async def get_plan(self, plan_id: str) -> Plan:
        plan = await self.repository.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    # ====================
    # Pending transactions
    # ====================

    def day_bounds(self, now: datetime) -> Tuple[datetime, datetime]:
        """Start and end of now's calendar day in the scheduler zone"""
        local = now.astimezone(self.tz)
        start = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start + timedelta(days=1)

    async def open_transaction(
        self,
        user_id: str,
        subject_type: SubjectType,
        subject_ref: str,
        amount: float,
        tokens: Optional[int] = None,
    ) -> SettlementTransaction:
        """
        Open a pending settlement transaction.

        A token top-up needs an active subscription and is limited to
        max_topups_per_day completed top-ups per calendar day.

        Raises:
            LedgerNotFoundError, PlanNotFoundError, TopUpNotAllowedError, ValueError
        """
        ledger = await self.get_ledger(user_id)
        now = self.clock.now()

        if subject_type == SubjectType.SUBSCRIPTION:
            await self.get_plan(subject_ref)
            tokens = None
        else:
            ledger_math.validate_amount(tokens)
            window = ledger.window
            if not (window.active and window.end_date is not None and now <= window.end_date):
                raise TopUpNotAllowedError(
                    "Token top-ups require an active subscription",
                    TopUpNotAllowedError.NO_ACTIVE_SUBSCRIPTION,
                )
            since, until = self.day_bounds(now)
            completed = await self.repository.count_completed_topups(user_id, since, until)
            if completed >= self.config.max_topups_per_day:
                raise TopUpNotAllowedError(
                    f"Daily top-up limit of {self.config.max_topups_per_day} reached",
                    TopUpNotAllowedError.DAILY_LIMIT_REACHED,
                )

        txn = SettlementTransaction(
            transaction_id=generate_transaction_id(now),
            user_id=user_id,
            status=TransactionStatus.PENDING,
            subject_type=subject_type,
            subject_ref=subject_ref,
            tokens=tokens,
            amount=amount,
            created_at=now,
            updated_at=now,
        )
        created = await self.repository.create_transaction(txn)
        logger.info(f"Opened {subject_type.value} transaction {created.transaction_id} for {user_id}")
        return created


__all__ = ["TokenService", "StaleLedgerVersion", "generate_transaction_id"]
