"""
Token Service Component Test Fixtures

Provides mocks for token service component testing:
- MockLedgerRepository: in-memory LedgerRepositoryProtocol
- MockNotificationClient: notification delivery
- FrozenClock: controllable time in the scheduler zone
"""

import pytest

from core.config import TokenConfig
from microservices.token_service.lifecycle_scheduler import LifecycleScheduler
from microservices.token_service.settlement_handler import SettlementHandler
from microservices.token_service.token_service import TokenService
from tests.component.tokens.mocks import FrozenClock, MockLedgerRepository, MockNotificationClient
from tests.contracts.tokens.data_contract import TokenTestDataFactory


@pytest.fixture
def data_factory():
    """Token test data factory"""
    return TokenTestDataFactory


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(TokenTestDataFactory.make_now())


@pytest.fixture
def token_config() -> TokenConfig:
    return TokenConfig()


@pytest.fixture
def mock_repository() -> MockLedgerRepository:
    return MockLedgerRepository()


@pytest.fixture
def mock_notifications() -> MockNotificationClient:
    return MockNotificationClient()


@pytest.fixture
def token_service(mock_repository, mock_event_bus, mock_notifications, clock, token_config) -> TokenService:
    """TokenService with every dependency mocked"""
    return TokenService(
        repository=mock_repository,
        event_bus=mock_event_bus,
        notification_client=mock_notifications,
        clock=clock,
        config=token_config,
    )


@pytest.fixture
def settlement_handler(mock_repository, token_service, mock_event_bus) -> SettlementHandler:
    return SettlementHandler(
        repository=mock_repository,
        token_service=token_service,
        event_bus=mock_event_bus,
    )


@pytest.fixture
def lifecycle_scheduler(token_service) -> LifecycleScheduler:
    return LifecycleScheduler(token_service=token_service)


@pytest.fixture
def plan(mock_repository, data_factory):
    """A stored 30-day plan at 100 tokens/day"""
    return mock_repository.put_plan(data_factory.make_plan(duration_days=30, daily_rate=100))
