"""
Token Service Protocols

Interfaces for dependency injection and testing, plus the exception
hierarchy raised by the business layer.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .models import (
    NotificationKind,
    Plan,
    SettlementTransaction,
    TokenLedger,
    TransactionStatus,
)


# ====================
# Repository Protocol
# ====================


@runtime_checkable
class LedgerRepositoryProtocol(Protocol):
    """Persistence of ledgers, plans and settlement transactions"""

    async def create_ledger(self, user_id: str, now: datetime) -> Optional[TokenLedger]:
        """
        Insert a zero ledger.

        Returns:
            The new ledger, or None if one already exists for the user
        """
        ...

    async def get_ledger(self, user_id: str) -> Optional[TokenLedger]:
        ...

    async def compare_and_swap(
        self, ledger: TokenLedger, expected_version: int, now: datetime
    ) -> Optional[TokenLedger]:
        """
        Write every mutable field of ``ledger`` if the stored version still
        equals ``expected_version``; the stored version is incremented.

        Returns:
            The stored ledger, or None when the version moved (lost race)
        """
        ...

    async def delete_ledger(self, user_id: str) -> bool:
        ...

    async def list_subscribed_ledgers(
        self, after_user_id: Optional[str], limit: int
    ) -> List[TokenLedger]:
        """
        Keyset page of ledgers that carry a plan reference, ordered by user_id.
        """
        ...

    async def create_plan(self, plan: Plan) -> Optional[Plan]:
        """Returns None if the plan id is taken"""
        ...

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        ...

    async def create_transaction(self, txn: SettlementTransaction) -> SettlementTransaction:
        ...

    async def get_transaction(self, transaction_id: str) -> Optional[SettlementTransaction]:
        ...

    async def transition_transaction(
        self,
        transaction_id: str,
        from_statuses: List[TransactionStatus],
        to_status: TransactionStatus,
        now: datetime,
    ) -> Optional[SettlementTransaction]:
        """
        Conditional status flip. Only one concurrent caller wins.

        Returns:
            The updated transaction, or None if its status was not in from_statuses
        """
        ...

    async def flag_reconciliation(self, transaction_id: str, now: datetime) -> bool:
        ...

    async def count_completed_topups(
        self, user_id: str, since: datetime, until: datetime
    ) -> int:
        ...


# ====================
# Collaborator Protocols
# ====================


@runtime_checkable
class NotificationClientProtocol(Protocol):
    """Outbound notification delivery"""

    async def send_notification(
        self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]
    ) -> bool:
        """
        Deliver one notification.

        Returns:
            True if the collaborator accepted it; never raises
        """
        ...


@runtime_checkable
class EventBusProtocol(Protocol):
    """Event publishing interface"""

    async def publish_event(self, event: Any) -> bool:
        ...


@runtime_checkable
class ClockProtocol(Protocol):
    """Source of the current time (timezone aware)"""

    def now(self) -> datetime:
        ...


# ====================
# Custom Exceptions (no I/O operations)
# ====================


class TokenServiceError(Exception):
    """Base exception for token service errors"""
    pass


class LedgerNotFoundError(TokenServiceError):
    """Raised when a user has no ledger"""

    def __init__(self, user_id: str):
        super().__init__(f"No token ledger for user {user_id}")
        self.user_id = user_id


class PlanNotFoundError(TokenServiceError):
    """Raised when a plan reference does not resolve"""

    def __init__(self, plan_id: Optional[str]):
        super().__init__(f"Plan not found: {plan_id}")
        self.plan_id = plan_id


class PlanAlreadyExistsError(TokenServiceError):
    """Raised when creating a plan whose id is taken"""

    def __init__(self, plan_id: str):
        super().__init__(f"Plan already exists: {plan_id}")
        self.plan_id = plan_id


class InsufficientBalanceError(TokenServiceError):
    """Raised when a spend exceeds the effective balance"""

    def __init__(self, available: int, required: int):
        super().__init__(f"Insufficient tokens: available {available}, required {required}")
        self.available = available
        self.required = required

    @property
    def shortfall(self) -> int:
        return self.required - self.available


class BonusAlreadyActiveError(TokenServiceError):
    """Raised when granting a bonus while a live one exists"""

    def __init__(self, user_id: str, expires_at: Optional[datetime] = None):
        super().__init__(f"User {user_id} already has an active bonus")
        self.user_id = user_id
        self.expires_at = expires_at


class TransactionNotFoundError(TokenServiceError):
    """Raised when a settlement references an unknown transaction"""

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction not found: {transaction_id}")
        self.transaction_id = transaction_id


class InconsistentSettlementError(TokenServiceError):
    """Ledger write failed after the transaction was marked completed"""

    def __init__(self, transaction_id: str, reason: str):
        super().__init__(
            f"Transaction {transaction_id} marked completed but ledger not credited: {reason}"
        )
        self.transaction_id = transaction_id
        self.reason = reason


class ConcurrentModificationError(TokenServiceError):
    """Optimistic write retries exhausted"""

    def __init__(self, user_id: str, attempts: int):
        super().__init__(f"Ledger of user {user_id} changed concurrently {attempts} times")
        self.user_id = user_id
        self.attempts = attempts


class TopUpNotAllowedError(TokenServiceError):
    """Token top-up refused"""

    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    DAILY_LIMIT_REACHED = "daily_limit_reached"

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


__all__ = [
    "LedgerRepositoryProtocol",
    "NotificationClientProtocol",
    "EventBusProtocol",
    "ClockProtocol",
    "TokenServiceError",
    "LedgerNotFoundError",
    "PlanNotFoundError",
    "PlanAlreadyExistsError",
    "InsufficientBalanceError",
    "BonusAlreadyActiveError",
    "TransactionNotFoundError",
    "InconsistentSettlementError",
    "ConcurrentModificationError",
    "TopUpNotAllowedError",
]
