#!/usr/bin/env python3
"""Token ledger configuration

Settings for the token ledger, the two daily sweeps and settlement rules.
"""
import os
from dataclasses import dataclass
from typing import Tuple

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


def parse_clock_time(value: str) -> Tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)"""
    try:
        hour_str, minute_str = value.strip().split(":")
        hour, minute = int(hour_str), int(minute_str)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid time of day '{value}', expected HH:MM")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time of day '{value}', expected HH:MM")
    return hour, minute


@dataclass
class TokenConfig:
    """Token ledger and lifecycle scheduler settings"""

    # ===========================================
    # Scheduler
    # ===========================================
    scheduler_enabled: bool = True
    scheduler_timezone: str = "Asia/Kolkata"
    refresh_sweep_time: str = "01:00"
    lifecycle_sweep_time: str = "09:00"
    sweep_batch_size: int = 200

    # ===========================================
    # Ledger rules
    # ===========================================
    default_daily_rate: int = 100
    bonus_validity_hours: int = 24
    max_topups_per_day: int = 10
    cas_max_retries: int = 5

    # ===========================================
    # On-demand sweep trigger
    # ===========================================
    cron_secret: str = ""

    def __post_init__(self):
        refresh = parse_clock_time(self.refresh_sweep_time)
        lifecycle = parse_clock_time(self.lifecycle_sweep_time)
        if refresh == lifecycle:
            raise ValueError("Refresh and lifecycle sweeps must run at different times")
        if self.cas_max_retries < 1:
            raise ValueError("LEDGER_CAS_MAX_RETRIES must be at least 1")
        if self.sweep_batch_size < 1:
            raise ValueError("SWEEP_BATCH_SIZE must be at least 1")

    @property
    def refresh_sweep_at(self) -> Tuple[int, int]:
        return parse_clock_time(self.refresh_sweep_time)

    @property
    def lifecycle_sweep_at(self) -> Tuple[int, int]:
        return parse_clock_time(self.lifecycle_sweep_time)

    @classmethod
    def from_env(cls) -> 'TokenConfig':
        """Load token config from environment variables"""
        return cls(
            scheduler_enabled=_bool(os.getenv("SCHEDULER_ENABLED", "true")),
            scheduler_timezone=os.getenv("SCHEDULER_TIMEZONE", "Asia/Kolkata"),
            refresh_sweep_time=os.getenv("REFRESH_SWEEP_TIME", "01:00"),
            lifecycle_sweep_time=os.getenv("LIFECYCLE_SWEEP_TIME", "09:00"),
            sweep_batch_size=_int(os.getenv("SWEEP_BATCH_SIZE", "200"), 200),
            default_daily_rate=_int(os.getenv("DEFAULT_DAILY_RATE", "100"), 100),
            bonus_validity_hours=_int(os.getenv("BONUS_VALIDITY_HOURS", "24"), 24),
            max_topups_per_day=_int(os.getenv("MAX_TOPUPS_PER_DAY", "10"), 10),
            cas_max_retries=_int(os.getenv("LEDGER_CAS_MAX_RETRIES", "5"), 5),
            cron_secret=os.getenv("CRON_SECRET", ""),
        )
