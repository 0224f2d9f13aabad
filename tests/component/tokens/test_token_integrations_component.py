"""
Token Service Integration Points

Event handlers (user and payment events), event publishing and the
notification HTTP client.

Usage:
    pytest tests/component/tokens/test_token_integrations_component.py -v
"""

import json

import httpx
import pytest

from core.internal_service_auth import INTERNAL_SERVICE_HEADER
from core.nats_client import Event, EventType, ServiceSource
from microservices.token_service.clients import NotificationClient
from microservices.token_service.events import get_event_handlers
from microservices.token_service.models import NotificationKind, TransactionStatus


def make_event(event_type: EventType, source: ServiceSource, **data) -> Event:
    return Event(event_type=event_type, source=source, data=data)


# =============================================================================
# Event handlers
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestEventHandlers:

    @pytest.fixture
    def handlers(self, token_service, settlement_handler):
        return get_event_handlers(token_service, settlement_handler)

    async def test_handler_patterns(self, handlers):
        assert set(handlers) == {"user.created", "user.deleted", "payment.completed", "payment.failed"}

    async def test_user_created_creates_ledger(self, handlers, mock_repository, data_factory):
        user_id = data_factory.make_user_id()

        await handlers["user.created"](make_event(EventType.USER_CREATED, ServiceSource.ACCOUNT_SERVICE, user_id=user_id))
        await handlers["user.created"](make_event(EventType.USER_CREATED, ServiceSource.ACCOUNT_SERVICE, user_id=user_id))

        assert user_id in mock_repository.ledgers
        assert len(mock_repository.ledgers) == 1

    async def test_user_created_without_user_id_is_ignored(self, handlers, mock_repository):
        await handlers["user.created"]({"email": "someone@example.com"})

        assert mock_repository.ledgers == {}

    async def test_user_deleted_removes_ledger(self, handlers, mock_repository, data_factory):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())

        await handlers["user.deleted"]({"user_id": ledger.user_id})

        assert ledger.user_id not in mock_repository.ledgers

    async def test_payment_completed_applies_settlement(self, handlers, mock_repository, data_factory, plan):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(ledger.user_id, subject_ref=plan.plan_id))

        await handlers["payment.completed"](make_event(
            EventType.PAYMENT_COMPLETED, ServiceSource.PAYMENT_SERVICE, transaction_id=txn.transaction_id
        ))

        assert mock_repository.transactions[txn.transaction_id].status == TransactionStatus.COMPLETED
        assert mock_repository.stored(ledger.user_id).window.plan_ref == plan.plan_id

    async def test_payment_failed_marks_failure(self, handlers, mock_repository, data_factory, plan):
        ledger = mock_repository.put_ledger(data_factory.make_ledger())
        txn = mock_repository.put_transaction(data_factory.make_transaction(ledger.user_id, subject_ref=plan.plan_id))

        await handlers["payment.failed"]({"transaction_id": txn.transaction_id})

        assert mock_repository.transactions[txn.transaction_id].status == TransactionStatus.FAILED

    async def test_settlement_errors_do_not_escape_handler(self, handlers):
        await handlers["payment.completed"]({"transaction_id": "TKN_1_unknown"})


# =============================================================================
# Event publishing
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestEventPublishing:

    async def test_bus_failure_does_not_fail_spend(self, token_service, mock_repository, mock_event_bus, data_factory):
        ledger = mock_repository.put_ledger(data_factory.make_ledger(daily_balance=5))
        mock_event_bus.set_error(ConnectionError("nats down"))

        result = await token_service.spend(ledger.user_id, 2)

        assert result.daily_remaining == 3

    async def test_published_envelope(self, token_service, mock_repository, mock_event_bus, data_factory):
        ledger = mock_repository.put_ledger(data_factory.make_ledger(daily_balance=5))

        await token_service.spend(ledger.user_id, 2)

        event = mock_event_bus.get_last_event()
        assert event["type"] == EventType.TOKENS_SPENT.value
        assert event["source"] == ServiceSource.TOKEN_SERVICE.value
        json.dumps(event["data"])

    async def test_event_round_trips_through_wire_format(self):
        event = make_event(EventType.PAYMENT_COMPLETED, ServiceSource.PAYMENT_SERVICE, transaction_id="TKN_1_a")

        restored = Event.from_dict(json.loads(json.dumps(event.to_dict())))

        assert restored.type == "payment.completed"
        assert restored.data["transaction_id"] == "TKN_1_a"


# =============================================================================
# Notification client
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestNotificationClient:

    async def test_accepted_notification(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            captured["internal"] = request.headers.get(INTERNAL_SERVICE_HEADER)
            return httpx.Response(202, json={"queued": True})

        client = NotificationClient(base_url="http://notify.test", transport=httpx.MockTransport(handler))
        try:
            delivered = await client.send_notification(
                "user_1", NotificationKind.EXPIRY_WARNING, {"days_left": 7}
            )
        finally:
            await client.close()

        assert delivered is True
        assert captured["url"] == "http://notify.test/api/v1/notifications/send"
        assert captured["body"] == {"user_id": "user_1", "type": "expiry_warning", "data": {"days_left": 7}}
        assert captured["internal"] == "true"

    async def test_rejected_notification(self):
        client = NotificationClient(
            base_url="http://notify.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        try:
            assert await client.send_notification("user_1", NotificationKind.BONUS_GRANTED, {}) is False
        finally:
            await client.close()

    async def test_unreachable_service(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = NotificationClient(base_url="http://notify.test", transport=httpx.MockTransport(handler))
        try:
            assert await client.send_notification("user_1", NotificationKind.RENEWAL_REMINDER, {}) is False
        finally:
            await client.close()
