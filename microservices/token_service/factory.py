"""
Token Service Factory

Factory for creating the token service components with real dependencies.
This is the ONLY module that imports concrete implementations.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from core.config_manager import ConfigManager

from .clock import SystemClock
from .ledger_repository import LedgerRepository
from .lifecycle_scheduler import LifecycleScheduler
from .settlement_handler import SettlementHandler
from .token_service import TokenService

logger = logging.getLogger(__name__)


@dataclass
class TokenServiceComponents:
    """Everything main.py wires into the app"""
    token_service: TokenService
    settlement_handler: SettlementHandler
    scheduler: LifecycleScheduler

    @property
    def repository(self):
        return self.token_service.repository


def create_token_service(
    config: Optional[ConfigManager] = None,
    event_bus=None,
    repository=None,
    notification_client=None,
    clock=None,
) -> TokenServiceComponents:
    """
    Create TokenService, SettlementHandler and LifecycleScheduler

    Args:
        config: Optional config manager (creates default if not provided)
        event_bus: Optional event bus for event publishing
        repository: Optional repository (creates LedgerRepository if not provided)
        notification_client: Optional notification client (creates default if not provided)
        clock: Optional clock (wall clock in the scheduler time zone by default)

    Returns:
        Wired components sharing one repository and clock
    """
    if config is None:
        config = ConfigManager("token_service")

    token_config = config.get_token_config()

    if repository is None:
        repository = LedgerRepository(config=config)

    if notification_client is None:
        try:
            from .clients.notification_client import NotificationClient

            notification_client = NotificationClient(config=config)
            logger.info("✅ NotificationClient initialized for token service")
        except Exception as e:
            logger.warning(f"⚠️ Failed to initialize NotificationClient: {e}")
            logger.warning("Token service will operate without notifications")

    if clock is None:
        clock = SystemClock.for_zone(token_config.scheduler_timezone)

    token_service = TokenService(
        repository=repository,
        event_bus=event_bus,
        notification_client=notification_client,
        clock=clock,
        config=token_config,
    )
    settlement_handler = SettlementHandler(
        repository=repository,
        token_service=token_service,
        event_bus=event_bus,
    )
    scheduler = LifecycleScheduler(token_service=token_service)

    return TokenServiceComponents(
        token_service=token_service,
        settlement_handler=settlement_handler,
        scheduler=scheduler,
    )


__all__ = ["create_token_service", "TokenServiceComponents"]
