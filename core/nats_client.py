"""
NATS Event Bus for Python Microservices

Event envelope, subject catalogue and an async bus over nats-py. Services
publish domain events best effort and subscribe with queue groups so that
each event is handled by one replica.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

import nats
from nats.aio.client import Client as NATS
from nats.aio.msg import Msg
from nats.errors import Error as NATSError

if TYPE_CHECKING:
    from core.config_manager import ConfigManager

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime values"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class EventType(Enum):
    """Subjects used on the bus"""

    # User Events (consumed)
    USER_CREATED = "user.created"
    USER_DELETED = "user.deleted"

    # Payment Events (consumed)
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"

    # Token ledger Events
    TOKENS_SPENT = "tokens.spent"
    BONUS_GRANTED = "tokens.bonus.granted"
    BONUS_EXPIRED = "tokens.bonus.expired"

    # Subscription Events
    SUBSCRIPTION_REFRESHED = "subscription.refreshed"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_EXPIRED = "subscription.expired"

    # Settlement Events
    SETTLEMENT_APPLIED = "settlement.applied"
    SETTLEMENT_INCONSISTENT = "settlement.inconsistent"


class ServiceSource(Enum):
    """Publishing services"""
    TOKEN_SERVICE = "token_service"
    ACCOUNT_SERVICE = "account_service"
    PAYMENT_SERVICE = "payment_service"


class Event:
    """Event model"""

    def __init__(
        self,
        event_type: EventType,
        source: ServiceSource,
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type.value
        self.source = source.value
        self.data = data
        self.subject = subject
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event = cls.__new__(cls)
        event.id = data.get("id")
        event.type = data.get("type")
        event.source = data.get("source")
        event.subject = data.get("subject")
        event.timestamp = data.get("timestamp")
        event.data = data.get("data", {})
        event.metadata = data.get("metadata", {})
        event.version = data.get("version", "1.0.0")
        return event

    @classmethod
    def from_raw(cls, subject: str, payload: Dict[str, Any]) -> "Event":
        """Wrap a bare payload published without the envelope"""
        event = cls.__new__(cls)
        event.id = str(payload.get("id") or uuid.uuid4())
        event.type = subject
        event.source = payload.get("source", "unknown")
        event.subject = subject
        event.timestamp = payload.get("timestamp", datetime.now(timezone.utc).isoformat())
        event.data = payload
        event.metadata = {}
        event.version = "1.0.0"
        return event


EventHandler = Callable[[Event], Awaitable[Any]]


class NATSEventBus:
    """Async NATS event bus"""

    def __init__(
        self,
        service_name: str,
        config: Optional["ConfigManager"] = None,
        url: Optional[str] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used as connection name)
            config: Optional ConfigManager instance for service discovery
            url: Optional explicit server URL
        """
        from core.config_manager import ConfigManager

        self.service_name = service_name

        if config is None:
            config = ConfigManager(service_name)

        infra = config.get_service_config().infra
        self.url = url or infra.resolved_nats_url

        self._client: Optional[NATS] = None
        self._subscriptions: Dict[str, Any] = {}  # pattern -> nats subscription

        logger.info(f"NATS EventBus initialized: {self.url}")

    async def connect(self):
        """Connect to the NATS server"""
        try:
            self._client = await nats.connect(
                servers=[self.url],
                name=self.service_name,
                max_reconnect_attempts=-1,
                reconnected_cb=self._on_reconnected,
                disconnected_cb=self._on_disconnected,
            )
            logger.info(f"Connected to NATS at {self.url} as {self.service_name}")
        except (OSError, NATSError) as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def _on_reconnected(self):
        logger.info("NATS connection re-established")

    async def _on_disconnected(self):
        logger.warning("NATS connection lost")

    async def publish_event(self, event: Event) -> bool:
        """Publish an event on its type subject. Returns False on failure."""
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return False

        try:
            data = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()
            await self._client.publish(event.type, data)
            logger.info(f"Published event {event.type} [{event.id}]")
            return True
        except (NATSError, TypeError, ValueError) as e:
            logger.error(f"Error publishing event {event.id}: {e}")
            return False

    async def subscribe_to_events(
        self, pattern: str, handler: EventHandler, durable: Optional[str] = None
    ) -> Optional[str]:
        """
        Subscribe to a subject pattern.

        Args:
            pattern: Subject pattern (e.g. "payment.*")
            handler: Async callback receiving an Event
            durable: Queue group name; replicas sharing it split the load
        """
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return None

        async def _dispatch(msg: Msg):
            try:
                payload = json.loads(msg.data.decode())
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.error(f"Dropping undecodable message on {msg.subject}: {e}")
                return

            if isinstance(payload, dict) and {"type", "source", "data"} <= payload.keys():
                event = Event.from_dict(payload)
            else:
                event = Event.from_raw(msg.subject, payload if isinstance(payload, dict) else {"value": payload})

            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Handler error for {event.type} [{event.id}]: {e}", exc_info=True)

        queue = durable or f"{self.service_name}-{pattern.replace('.', '-').replace('*', 'all')}"
        subscription = await self._client.subscribe(pattern, queue=queue, cb=_dispatch)
        self._subscriptions[pattern] = subscription
        logger.info(f"Subscribed to {pattern} (queue={queue})")
        return queue

    async def unsubscribe(self, pattern: str) -> bool:
        subscription = self._subscriptions.pop(pattern, None)
        if subscription is None:
            return False
        await subscription.unsubscribe()
        logger.info(f"Unsubscribed from {pattern}")
        return True

    async def close(self):
        """Drain subscriptions and close the connection"""
        self._subscriptions.clear()
        if self._client is not None:
            try:
                await self._client.drain()
            except NATSError as e:
                logger.warning(f"NATS drain failed, closing: {e}")
                await self._client.close()
            self._client = None
        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        """Check if connected to NATS"""
        return self._client is not None and self._client.is_connected


# Singleton instance
_event_bus: Optional[NATSEventBus] = None


async def get_event_bus(
    service_name: str,
    config: Optional["ConfigManager"] = None,
) -> NATSEventBus:
    """
    Get or create event bus instance.

    Args:
        service_name: Name of the service using the event bus
        config: Optional ConfigManager instance for service discovery

    Returns:
        Connected NATSEventBus instance
    """
    global _event_bus

    if _event_bus is None:
        bus = NATSEventBus(service_name=service_name, config=config)
        await bus.connect()
        _event_bus = bus

    return _event_bus


def create_event(
    event_type: EventType,
    source: ServiceSource,
    data: Dict[str, Any],
    subject: Optional[str] = None,
    metadata: Optional[Dict[str, str]] = None,
) -> Event:
    """Create an Event instance"""
    return Event(
        event_type=event_type,
        source=source,
        data=data,
        subject=subject,
        metadata=metadata,
    )


__all__ = [
    "Event",
    "EventType",
    "ServiceSource",
    "NATSEventBus",
    "get_event_bus",
    "create_event",
]
