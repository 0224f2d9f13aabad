"""
Settlement Handler

Applies payment outcomes to ledgers exactly once. The transaction row is
the idempotency key: a success claims it with a conditional status flip
(pending|failed -> completed) before the ledger is credited, so concurrent
or repeated deliveries credit at most once. A credit that fails after the
claim is flagged for manual reconciliation and never retried.
"""

import logging
from typing import Any, Dict, Optional

from . import ledger_math
from .events.publishers import publish_settlement_applied, publish_settlement_inconsistent
from .models import (
    SettlementOutcome,
    SettlementResult,
    SettlementTransaction,
    SubjectType,
    TransactionStatus,
)
from .protocols import (
    ClockProtocol,
    EventBusProtocol,
    InconsistentSettlementError,
    LedgerNotFoundError,
    LedgerRepositoryProtocol,
    PlanNotFoundError,
    TransactionNotFoundError,
)
from .token_service import TokenService

logger = logging.getLogger(__name__)


class SettlementHandler:
    """One-time application of settlement notifications"""

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        token_service: TokenService,
        event_bus: Optional[EventBusProtocol] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self.repository = repository
        self.token_service = token_service
        self.event_bus = event_bus
        self.clock = clock or token_service.clock

    async def apply_settlement(
        self,
        transaction_id: str,
        outcome: SettlementOutcome,
        payload: Optional[Dict[str, Any]] = None,
    ) -> SettlementResult:
        """
        Apply a settlement notification.

        Returns:
            SettlementResult; applied is True only for the delivery that credited the ledger

        Raises:
            TransactionNotFoundError: unknown transaction id
            LedgerNotFoundError / PlanNotFoundError: the transaction cannot be applied (left pending)
            ValueError: a top-up transaction without a positive token amount (left pending)
            InconsistentSettlementError: claimed but the ledger write failed
        """
        txn = await self.repository.get_transaction(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)

        if txn.status == TransactionStatus.COMPLETED:
            logger.info(f"Settlement {transaction_id} already processed")
            return self._already_processed(txn)

        self._check_payload(txn, payload or {})

        if outcome == SettlementOutcome.FAILURE:
            return await self._mark_failed(txn)
        return await self._apply_success(txn)

    # ====================
    # Outcomes
    # ====================

    async def _mark_failed(self, txn: SettlementTransaction) -> SettlementResult:
        updated = await self.repository.transition_transaction(
            txn.transaction_id,
            [TransactionStatus.PENDING],
            TransactionStatus.FAILED,
            self.clock.now(),
        )
        if updated is None:
            current = await self.repository.get_transaction(txn.transaction_id) or txn
            logger.info(f"Settlement {txn.transaction_id} not marked failed: status is {current.status.value}")
            return SettlementResult(
                applied=False,
                transaction_id=txn.transaction_id,
                status=current.status,
                reason="not_pending",
            )

        logger.info(f"Settlement {txn.transaction_id} marked failed")
        return SettlementResult(
            applied=False,
            transaction_id=txn.transaction_id,
            status=TransactionStatus.FAILED,
            reason="payment_failed",
        )

    async def _apply_success(self, txn: SettlementTransaction) -> SettlementResult:
        # Resolve everything that can fail cleanly before claiming
        ledger = await self.repository.get_ledger(txn.user_id)
        if ledger is None:
            raise LedgerNotFoundError(txn.user_id)

        plan = None
        if txn.subject_type == SubjectType.SUBSCRIPTION:
            plan = await self.repository.get_plan(txn.subject_ref)
            if plan is None:
                raise PlanNotFoundError(txn.subject_ref)
        else:
            ledger_math.validate_amount(txn.tokens)

        claimed = await self.repository.transition_transaction(
            txn.transaction_id,
            [TransactionStatus.PENDING, TransactionStatus.FAILED],
            TransactionStatus.COMPLETED,
            self.clock.now(),
        )
        if claimed is None:
            logger.info(f"Settlement {txn.transaction_id} claimed by another delivery")
            return self._already_processed(txn)

        try:
            if plan is not None:
                await self.token_service.grant_plan(txn.user_id, plan, trigger="settlement")
            else:
                await self.token_service.add_topup(txn.user_id, txn.tokens)
        except Exception as e:
            await self._flag_inconsistent(txn, e)
            raise InconsistentSettlementError(txn.transaction_id, str(e)) from e

        logger.info(
            f"Settlement {txn.transaction_id} applied: {txn.subject_type.value} "
            f"{txn.subject_ref} for {txn.user_id}"
        )
        await publish_settlement_applied(
            self.event_bus,
            transaction_id=txn.transaction_id,
            user_id=txn.user_id,
            subject_type=txn.subject_type.value,
            subject_ref=txn.subject_ref,
            tokens=txn.tokens,
            amount=txn.amount,
        )
        return SettlementResult(
            applied=True,
            transaction_id=txn.transaction_id,
            status=TransactionStatus.COMPLETED,
        )

    async def _flag_inconsistent(self, txn: SettlementTransaction, error: Exception) -> None:
        logger.error(
            f"❌ Settlement {txn.transaction_id} completed but ledger of {txn.user_id} "
            f"was not credited: {error}",
            exc_info=True,
        )
        try:
            await self.repository.flag_reconciliation(txn.transaction_id, self.clock.now())
        except Exception as flag_error:
            logger.error(f"❌ Could not flag {txn.transaction_id} for reconciliation: {flag_error}")
        await publish_settlement_inconsistent(
            self.event_bus,
            transaction_id=txn.transaction_id,
            user_id=txn.user_id,
            reason=str(error),
        )

    # ====================
    # Helpers
    # ====================

    @staticmethod
    def _already_processed(txn: SettlementTransaction) -> SettlementResult:
        return SettlementResult(
            applied=False,
            transaction_id=txn.transaction_id,
            status=TransactionStatus.COMPLETED,
            reason="already_processed",
        )

    @staticmethod
    def _check_payload(txn: SettlementTransaction, payload: Dict[str, Any]) -> None:
        # The stored transaction is authoritative; a mismatching notification is only logged
        subject_type = payload.get("subject_type")
        if subject_type and str(getattr(subject_type, "value", subject_type)) != txn.subject_type.value:
            logger.warning(
                f"Settlement {txn.transaction_id}: notification says {subject_type}, "
                f"stored {txn.subject_type.value}"
            )
        subject_ref = payload.get("subject_ref")
        if subject_ref and subject_ref != txn.subject_ref:
            logger.warning(
                f"Settlement {txn.transaction_id}: notification ref {subject_ref}, stored {txn.subject_ref}"
            )


__all__ = ["SettlementHandler"]
