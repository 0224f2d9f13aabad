"""
Base Service Client for Internal Microservice Communication

Base class of every outbound service client; attaches internal service
authentication headers automatically.
"""

import httpx
import logging
from typing import Optional, Dict, Any
from abc import ABC

logger = logging.getLogger(__name__)


class BaseServiceClient(ABC):
    """
    Base class for microservice clients

    Handles:
    1. Endpoint resolution
    2. Internal service authentication
    3. HTTP client lifecycle
    4. Timeouts

    Example:
        class NotificationClient(BaseServiceClient):
            service_name = "notification_service"
            default_port = 8206

            async def send(self, payload):
                response = await self.post("/api/v1/notifications/send", json=payload)
                return response.status_code == 200
    """

    # Subclasses define these
    service_name: str = None  # e.g. "notification_service"
    default_port: int = None   # e.g. 8206

    def __init__(
        self,
        base_url: Optional[str] = None,
        use_internal_auth: bool = True,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client

        Args:
            base_url: Base URL of the service (resolved from the environment if omitted)
            use_internal_auth: Send internal service auth headers (default True)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not self.service_name:
            raise ValueError(f"{self.__class__.__name__} must define 'service_name'")

        if base_url:
            self.base_url = base_url.rstrip('/')
        else:
            self.base_url = self._discover_service()

        default_headers = self._build_default_headers(use_internal_auth)

        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers=default_headers,
            transport=transport,
        )

        logger.debug(
            f"Initialized {self.service_name} client: {self.base_url} "
            f"(internal_auth={'enabled' if use_internal_auth else 'disabled'})"
        )

    def _discover_service(self) -> str:
        """
        Resolve the service URL from <SERVICE>_HOST / <SERVICE>_PORT

        Returns:
            Base URL of the service
        """
        from core.config_manager import ConfigManager

        prefix = self.service_name.upper()
        host, port = ConfigManager(self.service_name).discover_service(
            service_name=self.service_name,
            default_host="localhost",
            default_port=self.default_port or 8000,
            env_host_key=f"{prefix}_HOST",
            env_port_key=f"{prefix}_PORT",
        )
        url = f"http://{host}:{port}"
        logger.debug(f"Resolved {self.service_name} at {url}")
        return url

    def _build_default_headers(self, use_internal_auth: bool) -> Dict[str, str]:
        """
        Build default request headers

        Args:
            use_internal_auth: Include internal service authentication

        Returns:
            Header dict
        """
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"token-internal-client/{self.service_name}"
        }

        if use_internal_auth:
            from core.internal_service_auth import InternalServiceAuth
            headers.update(InternalServiceAuth.get_internal_service_headers())

        return headers

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()
        logger.debug(f"Closed {self.service_name} client")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ========================================
    # HTTP helpers
    # ========================================

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        response = await self.client.get(url, params=params, headers=headers)
        return response

    async def post(
        self,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        response = await self.client.post(url, json=json, headers=headers)
        return response

    async def health_check(self) -> bool:
        """
        Health check

        Returns:
            Whether the service answered 200
        """
        try:
            response = await self.get("/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"{self.service_name} health check failed: {e}")
            return False


__all__ = ["BaseServiceClient"]
