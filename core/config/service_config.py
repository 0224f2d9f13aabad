#!/usr/bin/env python3
"""Service configuration for peer services

External collaborators the token service calls over HTTP.
"""
import os
from dataclasses import dataclass

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class ServiceConfig:
    """Peer service endpoints"""

    # ===========================================
    # Notification delivery (email / in-app)
    # ===========================================
    notification_service_url: str = "http://localhost:8206"
    notification_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> 'ServiceConfig':
        """Load service configuration from environment variables"""
        return cls(
            notification_service_url=os.getenv("NOTIFICATION_SERVICE_URL", "http://localhost:8206"),
            notification_timeout=_float(os.getenv("NOTIFICATION_TIMEOUT", "10"), 10.0),
        )
