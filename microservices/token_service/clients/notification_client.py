"""
Notification Service HTTP Client

Delivers expiry warnings, expiry notices, win-back reminders and bonus
notices. Implements NotificationClientProtocol: the only signal the token
service needs is whether delivery was accepted.
"""

import httpx
import logging
from typing import Any, Dict, Optional

from core.service_client_base import BaseServiceClient

from ..models import NotificationKind

logger = logging.getLogger(__name__)


class NotificationClient(BaseServiceClient):
    """Async HTTP client for notification_service"""

    service_name = "notification_service"
    default_port = 8206

    SEND_PATH = "/api/v1/notifications/send"

    def __init__(self, base_url: Optional[str] = None, config=None, timeout: float = 10.0, **kwargs):
        """
        Initialize NotificationClient

        Args:
            base_url: Base URL for notification_service
            config: ConfigManager instance; NOTIFICATION_SERVICE_URL overrides base_url
            timeout: Request timeout in seconds
        """
        if config:
            services = config.get_service_config().services
            base_url = config.get("NOTIFICATION_SERVICE_URL", base_url or services.notification_service_url)
            timeout = services.notification_timeout
        super().__init__(base_url=base_url, timeout=timeout, **kwargs)
        logger.info(f"NotificationClient initialized with base_url: {self.base_url}")

    async def send_notification(
        self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]
    ) -> bool:
        """
        Send one notification

        Args:
            user_id: Recipient
            kind: Notification kind
            payload: Template data for the kind

        Returns:
            True if the service accepted it, False otherwise
        """
        body = {
            "user_id": user_id,
            "type": kind.value,
            "data": payload,
        }
        try:
            response = await self.post(self.SEND_PATH, json=body)
            if response.status_code in (200, 201, 202):
                logger.debug(f"Sent {kind.value} notification to {user_id}")
                return True
            logger.warning(
                f"Notification {kind.value} to {user_id} rejected: HTTP {response.status_code}"
            )
            return False
        except httpx.RequestError as e:
            logger.error(f"Request error sending {kind.value} to {user_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Unexpected error sending {kind.value} to {user_id}: {e}", exc_info=True)
            return False


__all__ = ["NotificationClient"]
