#!/usr/bin/env python3
"""
Service logging setup

One call per process configures the root logger for a service:

    logger = setup_service_logger("token_service", level="INFO")

Console output uses the configured text format; ENABLE_STRUCTURED_LOGGING
switches to one JSON object per line. LOG_FILE adds a file handler.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from .config import LoggingConfig


class JsonLineFormatter(logging.Formatter):
    """Formats records as single-line JSON"""

    def __init__(self, service_name: str, environment: str):
        super().__init__()
        self.service_name = service_name
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service_name,
            "environment": self.environment,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured_services = set()


def setup_service_logger(
    service_name: str,
    level: Optional[str] = None,
    config: Optional[LoggingConfig] = None,
) -> logging.Logger:
    """
    Configure logging for a service and return its named logger.

    Repeated calls for the same service return the existing logger
    without stacking handlers.
    """
    config = config or LoggingConfig.from_env(service_name)
    level_name = (level or config.log_level or "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)

    service_logger = logging.getLogger(service_name)
    if service_name in _configured_services:
        service_logger.setLevel(log_level)
        return service_logger

    if config.enable_structured:
        formatter: logging.Formatter = JsonLineFormatter(service_name, config.environment)
    else:
        formatter = logging.Formatter(config.log_format)

    root = logging.getLogger()
    root.setLevel(log_level)

    if config.enable_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        root.addHandler(console)

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for noisy in config.quiet_loggers:
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    service_logger.setLevel(log_level)
    _configured_services.add(service_name)
    return service_logger


__all__ = ["setup_service_logger", "JsonLineFormatter"]
