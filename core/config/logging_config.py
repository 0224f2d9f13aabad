#!/usr/bin/env python3
"""Logging configuration

LOG_LEVEL applies to every service; <SERVICE_NAME>_LOG_LEVEL overrides it
for one service (TOKEN_SERVICE_LOG_LEVEL=DEBUG while chasing a sweep).
"""
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that log every request or job run at INFO
DEFAULT_QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default", "asyncio")


def _bool(val: str) -> bool:
    return val.lower() == "true"


def _names(val: str) -> Tuple[str, ...]:
    return tuple(name.strip() for name in val.split(",") if name.strip())


@dataclass
class LoggingConfig:
    """Logging configuration"""
    log_level: str = "INFO"
    log_format: str = DEFAULT_FORMAT
    log_file: str = ""
    enable_console: bool = True
    enable_structured: bool = False
    quiet_loggers: Tuple[str, ...] = field(default=DEFAULT_QUIET_LOGGERS)

    # Service identity for structured lines
    service_name: str = "token_service"
    environment: str = "development"

    @classmethod
    def from_env(cls, service_name: Optional[str] = None) -> 'LoggingConfig':
        """Load logging config from environment variables"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        service_name = service_name or os.getenv("SERVICE_NAME", "token_service")

        level = os.getenv(f"{service_name.upper()}_LOG_LEVEL") or os.getenv(
            "LOG_LEVEL", "DEBUG" if env == "development" else "INFO"
        )
        quiet = os.getenv("LOG_QUIET_LOGGERS")

        return cls(
            log_level=level.upper(),
            log_format=os.getenv("LOG_FORMAT", DEFAULT_FORMAT),
            log_file=os.getenv("LOG_FILE", ""),
            enable_console=_bool(os.getenv("LOG_CONSOLE", "true")),
            enable_structured=_bool(os.getenv("ENABLE_STRUCTURED_LOGGING", "false")),
            quiet_loggers=_names(quiet) if quiet is not None else DEFAULT_QUIET_LOGGERS,
            service_name=service_name,
            environment=env,
        )
