"""
Token Service Event Package

Event-driven architecture for token service:
- Publishing: ledger, subscription and settlement events
- Subscription: user lifecycle and payment outcome events
"""

from .models import (
    TokenEventType,
    TokenSubscribedEventType,
    TokensSpentEventData,
    BonusGrantedEventData,
    BonusExpiredEventData,
    SubscriptionRefreshedEventData,
    SubscriptionRenewedEventData,
    SubscriptionExpiredEventData,
    SettlementAppliedEventData,
    SettlementInconsistentEventData,
)

from .publishers import (
    publish_tokens_spent,
    publish_bonus_granted,
    publish_bonus_expired,
    publish_subscription_refreshed,
    publish_subscription_renewed,
    publish_subscription_expired,
    publish_settlement_applied,
    publish_settlement_inconsistent,
)

from .handlers import get_event_handlers

__all__ = [
    # Event models
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
    # Publishers
    "publish_tokens_spent",
    "publish_bonus_granted",
    "publish_bonus_expired",
    "publish_subscription_refreshed",
    "publish_subscription_renewed",
    "publish_subscription_expired",
    "publish_settlement_applied",
    "publish_settlement_inconsistent",
    # Handlers
    "get_event_handlers",
]
