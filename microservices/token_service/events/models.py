"""
Token Service Event Models

Event payloads for ledger, subscription and settlement events.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Event Type Definitions (Service-Specific)
# =============================================================================

class TokenEventType(str, Enum):
    """
    Events published by token_service.

    Subjects: tokens.>, subscription.>, settlement.>
    """
    TOKENS_SPENT = "tokens.spent"
    BONUS_GRANTED = "tokens.bonus.granted"
    BONUS_EXPIRED = "tokens.bonus.expired"
    SUBSCRIPTION_REFRESHED = "subscription.refreshed"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SETTLEMENT_APPLIED = "settlement.applied"
    SETTLEMENT_INCONSISTENT = "settlement.inconsistent"


class TokenSubscribedEventType(str, Enum):
    """Events that token_service subscribes to from other services."""
    USER_CREATED = "user.created"
    USER_DELETED = "user.deleted"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"


# ============================================================================
# Ledger Event Models
# ============================================================================


class TokensSpentEventData(BaseModel):
    """
    Event: tokens.spent
    Triggered after a successful spend
    """
    user_id: str
    amount: int
    daily_remaining: int
    bonus_remaining: int
    total_remaining: int
    timestamp: datetime = Field(default_factory=_utcnow)


class BonusGrantedEventData(BaseModel):
    """
    Event: tokens.bonus.granted
    """
    user_id: str
    amount: int
    expires_at: datetime
    granted_by: str
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class BonusExpiredEventData(BaseModel):
    """
    Event: tokens.bonus.expired
    Triggered when reconciliation clears an expired bonus
    """
    user_id: str
    timestamp: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Subscription Event Models
# ============================================================================


class SubscriptionRefreshedEventData(BaseModel):
    user_id: str
    plan_ref: Optional[str] = None
    daily_balance: int
    timestamp: datetime = Field(default_factory=_utcnow)


class SubscriptionRenewedEventData(BaseModel):
    user_id: str
    plan_ref: str
    start_date: datetime
    end_date: datetime
    daily_rate: int
    monthly_allocation: int
    trigger: str = Field(..., description="sweep, manual or settlement")
    timestamp: datetime = Field(default_factory=_utcnow)


class SubscriptionExpiredEventData(BaseModel):
    user_id: str
    plan_ref: Optional[str] = None
    end_date: Optional[datetime] = None
    timestamp: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Settlement Event Models
# ============================================================================


class SettlementAppliedEventData(BaseModel):
    transaction_id: str
    user_id: str
    subject_type: str
    subject_ref: str
    tokens: Optional[int] = None
    amount: float = 0
    timestamp: datetime = Field(default_factory=_utcnow)


class SettlementInconsistentEventData(BaseModel):
    """
    Event: settlement.inconsistent
    The transaction is completed but the ledger was not credited; an
    operator must reconcile it by hand.
    """
    transaction_id: str
    user_id: str
    reason: str
    timestamp: datetime = Field(default_factory=_utcnow)


__all__ = [
    "TokenEventType",
    "TokenSubscribedEventType",
    "TokensSpentEventData",
    "BonusGrantedEventData",
    "BonusExpiredEventData",
    "SubscriptionRefreshedEventData",
    "SubscriptionRenewedEventData",
    "SubscriptionExpiredEventData",
    "SettlementAppliedEventData",
    "SettlementInconsistentEventData",
]
