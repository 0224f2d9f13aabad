"""
Settlement Handler Component Tests

One-time application of plan purchases and token top-ups.

Usage:
    pytest tests/component/tokens/test_settlement_handler_component.py -v
"""

import asyncio
from datetime import timedelta

import pytest

from microservices.token_service.models import (
    SettlementOutcome,
    SubjectType,
    TransactionStatus,
)
from microservices.token_service.protocols import (
    InconsistentSettlementError,
    LedgerNotFoundError,
    PlanNotFoundError,
    TransactionNotFoundError,
)


@pytest.mark.component
@pytest.mark.asyncio
class TestSubscriptionSettlement:

    async def test_success_grants_plan(
        self, settlement_handler, mock_repository, mock_event_bus, data_factory, clock, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_ref=plan.plan_id
        ))

        result = await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)

        assert result.applied is True
        assert result.status == TransactionStatus.COMPLETED
        stored = mock_repository.stored(ledger.user_id)
        assert stored.window.plan_ref == plan.plan_id
        assert stored.window.active is True
        assert stored.window.end_date == clock.now() + timedelta(days=30)
        assert stored.daily_balance == 100
        assert stored.monthly_allocation == 3000
        assert mock_repository.transactions[txn.transaction_id].status == TransactionStatus.COMPLETED
        assert len(mock_event_bus.get_published("settlement.applied")) == 1
        renewed = mock_event_bus.get_published("subscription.renewed")
        assert renewed[0]["data"]["trigger"] == "settlement"

    async def test_replay_is_a_no_op(self, settlement_handler, mock_repository, data_factory, plan):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_ref=plan.plan_id
        ))

        await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)
        version_after_first = mock_repository.stored(ledger.user_id).version
        replay = await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)

        assert replay.applied is False
        assert replay.reason == "already_processed"
        assert mock_repository.stored(ledger.user_id).version == version_after_first

    async def test_failure_after_success_is_ignored(self, settlement_handler, mock_repository, data_factory, plan):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_ref=plan.plan_id
        ))

        await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)
        late_failure = await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.FAILURE)

        assert late_failure.applied is False
        assert late_failure.status == TransactionStatus.COMPLETED
        assert mock_repository.stored(ledger.user_id).window.active is True

    async def test_concurrent_deliveries_credit_once(self, settlement_handler, mock_repository, data_factory):
        ledger = mock_repository.put_ledger(data_factory.make_ledger(daily_balance=10))
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_type=SubjectType.TOKEN_TOPUP, tokens=500
        ))

        results = await asyncio.gather(*(
            settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)
            for _ in range(4)
        ))

        assert sum(1 for r in results if r.applied) == 1
        assert mock_repository.stored(ledger.user_id).daily_balance == 510

    async def test_unknown_transaction(self, settlement_handler):
        with pytest.raises(TransactionNotFoundError):
            await settlement_handler.apply_settlement("TKN_0_deadbeef", SettlementOutcome.SUCCESS)

    async def test_missing_plan_leaves_transaction_pending(self, settlement_handler, mock_repository, data_factory):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_ref="plan_gone"
        ))

        with pytest.raises(PlanNotFoundError):
            await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)

        assert mock_repository.transactions[txn.transaction_id].status == TransactionStatus.PENDING

    async def test_missing_ledger_leaves_transaction_pending(self, settlement_handler, mock_repository, data_factory, plan):
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            "user_without_ledger", subject_ref=plan.plan_id
        ))

        with pytest.raises(LedgerNotFoundError):
            await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)

        assert mock_repository.transactions[txn.transaction_id].status == TransactionStatus.PENDING

    async def test_ledger_write_failure_is_flagged(
        self, settlement_handler, mock_repository, mock_event_bus, data_factory, plan
    ):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_ref=plan.plan_id
        ))
        mock_repository.fail_on["compare_and_swap"] = ConnectionError("connection reset")

        with pytest.raises(InconsistentSettlementError) as exc_info:
            await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)

        assert exc_info.value.transaction_id == txn.transaction_id
        stored_txn = mock_repository.transactions[txn.transaction_id]
        assert stored_txn.status == TransactionStatus.COMPLETED
        assert stored_txn.reconciliation_required is True
        assert len(mock_event_bus.get_published("settlement.inconsistent")) == 1

        # Never retried automatically
        mock_repository.fail_on.clear()
        replay = await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)
        assert replay.applied is False
        assert mock_repository.stored(ledger.user_id).window.plan_ref is None


@pytest.mark.component
@pytest.mark.asyncio
class TestTopUpSettlement:

    async def test_topup_adds_tokens(self, settlement_handler, mock_repository, data_factory, clock, plan):
        ledger = mock_repository.put_ledger(data_factory.make_subscribed_ledger(
            clock.now(), plan, days_left=10, daily_balance=20,
        ))
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_type=SubjectType.TOKEN_TOPUP, tokens=250
        ))

        result = await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)

        assert result.applied is True
        stored = mock_repository.stored(ledger.user_id)
        assert stored.daily_balance == 270
        assert stored.window.end_date == ledger.window.end_date

    async def test_topup_without_tokens_leaves_transaction_pending(
        self, settlement_handler, mock_repository, mock_event_bus, data_factory
    ):
        ledger = mock_repository.put_ledger(data_factory.make_ledger(daily_balance=20))
        txn = data_factory.make_transaction(ledger.user_id, subject_type=SubjectType.TOKEN_TOPUP)
        txn = mock_repository.put_transaction(txn.model_copy(update={"tokens": None}))

        with pytest.raises(ValueError):
            await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)

        stored_txn = mock_repository.transactions[txn.transaction_id]
        assert stored_txn.status == TransactionStatus.PENDING
        assert stored_txn.reconciliation_required is False
        assert mock_event_bus.get_published("settlement.inconsistent") == []
        assert mock_repository.stored(ledger.user_id).daily_balance == 20


@pytest.mark.component
@pytest.mark.asyncio
class TestFailedSettlement:

    async def test_failure_marks_transaction_failed(self, settlement_handler, mock_repository, data_factory, plan):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_ref=plan.plan_id
        ))

        result = await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.FAILURE)

        assert result.applied is False
        assert result.status == TransactionStatus.FAILED
        assert result.reason == "payment_failed"
        assert mock_repository.stored(ledger.user_id).version == 0

    async def test_repeated_failure(self, settlement_handler, mock_repository, data_factory, plan):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_ref=plan.plan_id
        ))

        await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.FAILURE)
        again = await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.FAILURE)

        assert again.status == TransactionStatus.FAILED
        assert again.reason == "not_pending"

    async def test_success_after_failure_still_applies(self, settlement_handler, mock_repository, data_factory, plan):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_ref=plan.plan_id
        ))

        await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.FAILURE)
        result = await settlement_handler.apply_settlement(txn.transaction_id, SettlementOutcome.SUCCESS)

        assert result.applied is True
        assert mock_repository.stored(ledger.user_id).window.active is True

    async def test_mismatched_payload_uses_stored_transaction(self, settlement_handler, mock_repository, data_factory, plan):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(
            ledger.user_id, subject_ref=plan.plan_id
        ))

        result = await settlement_handler.apply_settlement(
            txn.transaction_id,
            SettlementOutcome.SUCCESS,
            {"subject_type": "token_topup", "subject_ref": "pkg_other"},
        )

        assert result.applied is True
        assert mock_repository.stored(ledger.user_id).window.plan_ref == plan.plan_id
