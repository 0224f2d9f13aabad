#!/usr/bin/env python3
"""
Core Module for the token platform microservices

Shared infrastructure used by every service:

COMPONENTS:
    - config/: dataclass settings loaded from the environment (python-dotenv)
    - config_manager.py: per-service configuration entry point
    - logger.py: logging setup
    - postgres_client.py: asyncpg pool wrapper
    - nats_client.py: NATS event bus
    - service_client_base.py: base class for outbound HTTP clients
    - internal_service_auth.py: shared-secret auth for internal and cron calls

USAGE:
    from core.config_manager import ConfigManager

    config = ConfigManager("token_service")
"""

from .config_manager import ConfigManager, Environment, create_config

__all__ = [
    "ConfigManager",
    "Environment",
    "create_config",
]

__version__ = "2.0.0"
