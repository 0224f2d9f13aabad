"""
Token Service Contracts

This module provides the contracts for token_service testing.
"""

from .data_contract import (
    SCHEDULER_TZ,
    SpendResponseContract,
    BalanceResponseContract,
    SettlementResponseContract,
    TokenTestDataFactory,
)

__all__ = [
    "SCHEDULER_TZ",
    "SpendResponseContract",
    "BalanceResponseContract",
    "SettlementResponseContract",
    "TokenTestDataFactory",
]
