"""
Token Service Event Publishers

Best-effort publishing: a missing bus is a no-op and a failed publish is
logged, never raised into the business operation.
"""

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from core.nats_client import Event, EventType, ServiceSource

from .models import (
    BonusExpiredEventData,
    BonusGrantedEventData,
    SettlementAppliedEventData,
    SettlementInconsistentEventData,
    SubscriptionExpiredEventData,
    SubscriptionRefreshedEventData,
    SubscriptionRenewedEventData,
    TokensSpentEventData,
)

logger = logging.getLogger(__name__)


async def _publish(event_bus, event_type: EventType, data: BaseModel) -> bool:
    if event_bus is None:
        return False
    try:
        event = Event(
            event_type=event_type,
            source=ServiceSource.TOKEN_SERVICE,
            data=data.model_dump(mode='json'),
        )
        published = await event_bus.publish_event(event)
        if published is False:
            logger.warning(f"Event bus rejected {event_type.value}")
            return False
        return True
    except Exception as e:
        logger.error(f"Failed to publish {event_type.value}: {e}")
        return False


# ============================================================================
# Ledger Event Publishers
# ============================================================================


async def publish_tokens_spent(
    event_bus,
    user_id: str,
    amount: int,
    daily_remaining: int,
    bonus_remaining: int,
    total_remaining: int,
) -> bool:
    return await _publish(event_bus, EventType.TOKENS_SPENT, TokensSpentEventData(
        user_id=user_id,
        amount=amount,
        daily_remaining=daily_remaining,
        bonus_remaining=bonus_remaining,
        total_remaining=total_remaining,
    ))


async def publish_bonus_granted(
    event_bus,
    user_id: str,
    amount: int,
    expires_at: datetime,
    granted_by: str,
    reason: Optional[str] = None,
) -> bool:
    """
    Publish tokens.bonus.granted event

    Args:
        event_bus: NATS event bus instance
        user_id: User receiving the bonus
        amount: Bonus credits
        expires_at: Expiry of the grant
        granted_by: Admin identity
        reason: Optional free-text reason
    """
    return await _publish(event_bus, EventType.BONUS_GRANTED, BonusGrantedEventData(
        user_id=user_id,
        amount=amount,
        expires_at=expires_at,
        granted_by=granted_by,
        reason=reason,
    ))


async def publish_bonus_expired(event_bus, user_id: str) -> bool:
    return await _publish(event_bus, EventType.BONUS_EXPIRED, BonusExpiredEventData(user_id=user_id))


# ============================================================================
# Subscription Event Publishers
# ============================================================================


async def publish_subscription_refreshed(
    event_bus, user_id: str, plan_ref: Optional[str], daily_balance: int
) -> bool:
    return await _publish(event_bus, EventType.SUBSCRIPTION_REFRESHED, SubscriptionRefreshedEventData(
        user_id=user_id,
        plan_ref=plan_ref,
        daily_balance=daily_balance,
    ))


async def publish_subscription_renewed(
    event_bus,
    user_id: str,
    plan_ref: str,
    start_date: datetime,
    end_date: datetime,
    daily_rate: int,
    monthly_allocation: int,
    trigger: str,
) -> bool:
    """
    Publish subscription.renewed event

    Args:
        trigger: "sweep" for automatic renewal, "manual" for an admin
            renewal, "settlement" for a paid plan purchase
    """
    return await _publish(event_bus, EventType.SUBSCRIPTION_RENEWED, SubscriptionRenewedEventData(
        user_id=user_id,
        plan_ref=plan_ref,
        start_date=start_date,
        end_date=end_date,
        daily_rate=daily_rate,
        monthly_allocation=monthly_allocation,
        trigger=trigger,
    ))


async def publish_subscription_expired(
    event_bus, user_id: str, plan_ref: Optional[str], end_date: Optional[datetime]
) -> bool:
    return await _publish(event_bus, EventType.SUBSCRIPTION_EXPIRED, SubscriptionExpiredEventData(
        user_id=user_id,
        plan_ref=plan_ref,
        end_date=end_date,
    ))


# ============================================================================
# Settlement Event Publishers
# ============================================================================


async def publish_settlement_applied(
    event_bus,
    transaction_id: str,
    user_id: str,
    subject_type: str,
    subject_ref: str,
    tokens: Optional[int],
    amount: float,
) -> bool:
    return await _publish(event_bus, EventType.SETTLEMENT_APPLIED, SettlementAppliedEventData(
        transaction_id=transaction_id,
        user_id=user_id,
        subject_type=subject_type,
        subject_ref=subject_ref,
        tokens=tokens,
        amount=amount,
    ))


async def publish_settlement_inconsistent(
    event_bus, transaction_id: str, user_id: str, reason: str
) -> bool:
    return await _publish(event_bus, EventType.SETTLEMENT_INCONSISTENT, SettlementInconsistentEventData(
        transaction_id=transaction_id,
        user_id=user_id,
        reason=reason,
    ))


__all__ = [
    "publish_tokens_spent",
    "publish_bonus_granted",
    "publish_bonus_expired",
    "publish_subscription_refreshed",
    "publish_subscription_renewed",
    "publish_subscription_expired",
    "publish_settlement_applied",
    "publish_settlement_inconsistent",
]
