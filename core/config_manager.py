#!/usr/bin/env python3
"""
Centralized configuration management

Every service builds one ConfigManager at import time:

    config_manager = ConfigManager("token_service")
    config = config_manager.get_service_config()

Values resolve in this order: process environment, the environment file
selected by ENV (loaded by core.config with python-dotenv), then defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .config import InfraConfig, LoggingConfig, ServiceConfig, TokenConfig

logger = logging.getLogger(__name__)


class Environment(Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "Environment":
        aliases = {"dev": "development", "test": "testing", "prod": "production"}
        value = (value or "development").lower()
        value = aliases.get(value, value)
        for env in cls:
            if env.value == value:
                return env
        return cls.DEVELOPMENT


# Default ports per service
DEFAULT_SERVICE_PORTS: Dict[str, int] = {
    "token_service": 8231,
    "notification_service": 8206,
}


@dataclass
class ServiceRuntimeConfig:
    """Process-level settings of one service"""
    service_name: str
    service_host: str = "0.0.0.0"
    service_port: int = 8000
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    log_level: str = "INFO"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infra: InfraConfig = field(default_factory=InfraConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)


class ConfigManager:
    """Configuration entry point for a microservice"""

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.environment = Environment.from_string(
            os.getenv("ENV") or os.getenv("ENVIRONMENT")
        )
        self._service_config: Optional[ServiceRuntimeConfig] = None
        self._token_config: Optional[TokenConfig] = None

    def _env_prefix(self) -> str:
        return self.service_name.upper()

    def get_service_config(self) -> ServiceRuntimeConfig:
        """Build (once) and return the runtime config of this service"""
        if self._service_config is None:
            logging_config = LoggingConfig.from_env(self.service_name)
            default_port = DEFAULT_SERVICE_PORTS.get(self.service_name, 8000)
            port_raw = os.getenv(f"{self._env_prefix()}_PORT") or os.getenv("SERVICE_PORT")
            try:
                port = int(port_raw) if port_raw else default_port
            except ValueError:
                logger.warning(f"Invalid port '{port_raw}' for {self.service_name}, using {default_port}")
                port = default_port

            debug_raw = os.getenv("DEBUG")
            debug = (
                debug_raw.lower() == "true"
                if debug_raw is not None
                else self.environment == Environment.DEVELOPMENT
            )

            self._service_config = ServiceRuntimeConfig(
                service_name=self.service_name,
                service_host=os.getenv(f"{self._env_prefix()}_HOST", "0.0.0.0"),
                service_port=port,
                environment=self.environment,
                debug=debug,
                log_level=logging_config.log_level,
                logging=logging_config,
                infra=InfraConfig.from_env(),
                services=ServiceConfig.from_env(),
            )
        return self._service_config

    def get_token_config(self) -> TokenConfig:
        """Ledger rules and sweep schedule"""
        if self._token_config is None:
            self._token_config = TokenConfig.from_env()
        return self._token_config

    def discover_service(
        self,
        service_name: str,
        default_host: str,
        default_port: int,
        env_host_key: Optional[str] = None,
        env_port_key: Optional[str] = None,
    ) -> Tuple[str, int]:
        """
        Resolve host and port of a collaborator.

        Priority: explicit environment variables, then the defaults.
        """
        host = os.getenv(env_host_key) if env_host_key else None
        port_raw = os.getenv(env_port_key) if env_port_key else None

        port = default_port
        if port_raw:
            try:
                port = int(port_raw)
            except ValueError:
                logger.warning(f"Invalid {env_port_key}='{port_raw}', using {default_port}")

        resolved = (host or default_host, port)
        logger.debug(f"Resolved {service_name} at {resolved[0]}:{resolved[1]}")
        return resolved

    def get(self, key: str, default: Any = None) -> Any:
        """Raw lookup: exact key, then upper-cased key"""
        value = os.getenv(key)
        if value is None:
            value = os.getenv(key.upper())
        return default if value is None else value

    def print_config_summary(self, show_secrets: bool = False):
        """Log the effective configuration (development aid)"""
        config = self.get_service_config()
        token = self.get_token_config()

        def mask(value: str) -> str:
            if show_secrets or not value:
                return value
            return "***"

        lines = [
            f"Configuration summary for {self.service_name}",
            f"  environment: {config.environment.value}",
            f"  listen: {config.service_host}:{config.service_port}",
            f"  debug: {config.debug}  log_level: {config.log_level}",
            f"  postgres: {config.infra.postgres_user}:{mask(config.infra.postgres_password)}"
            f"@{config.infra.postgres_host}:{config.infra.postgres_port}/{config.infra.postgres_db}",
            f"  nats: {config.infra.resolved_nats_url} (enabled={config.infra.nats_enabled})",
            f"  notifications: {config.services.notification_service_url}",
            f"  scheduler: enabled={token.scheduler_enabled} tz={token.scheduler_timezone} "
            f"refresh={token.refresh_sweep_time} lifecycle={token.lifecycle_sweep_time}",
            f"  cron secret: {mask(token.cron_secret) or '(unset)'}",
        ]
        for line in lines:
            logger.info(line)


def create_config(service_name: str) -> ConfigManager:
    """Shorthand used by scripts"""
    return ConfigManager(service_name)


__all__ = [
    "ConfigManager",
    "Environment",
    "ServiceRuntimeConfig",
    "create_config",
]
