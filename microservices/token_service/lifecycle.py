"""
Subscription lifecycle state machine

derive_state maps a subscription window onto a LifecycleState from the
calendar days left until end_date, counted in the scheduler time zone.
plan_transition compares that state with the one stored on the ledger and
says what the lifecycle sweep must do. Both are pure.

States are banded so a missed run still lands in the right state and each
state is claimed once. Notices go out only on the threshold day itself:
warnings at 7, 3 and 1 days left, the expiry notice on the end date, and
win-back reminders 3, 7 and 14 days after it. A ledger first seen mid-band
moves into the state silently.

    days_until_expiry   state
    > 7                 ACTIVE
    4..7                WARNED_T7
    2..3                WARNED_T3
    1                   WARNED_T1
    -2..0               EXPIRED
    -6..-3              POST_EXPIRY_3
    -13..-7             POST_EXPIRY_7
    -14                 POST_EXPIRY_14
    < -14               DORMANT
"""

from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Dict, Optional

from .models import LifecycleState, NotificationKind, SubscriptionWindow


WARNING_STATES = {
    LifecycleState.WARNED_T7: (7, "notice"),
    LifecycleState.WARNED_T3: (3, "warning"),
    LifecycleState.WARNED_T1: (1, "critical"),
}

REMINDER_STATES = {
    LifecycleState.POST_EXPIRY_3: (3, "10% extra tokens"),
    LifecycleState.POST_EXPIRY_7: (7, "10% extra tokens"),
    LifecycleState.POST_EXPIRY_14: (14, "5% extra tokens"),
}

# States at or past expiry; a window still marked active here is deactivated
EXPIRED_STATES = {
    LifecycleState.EXPIRED,
    LifecycleState.POST_EXPIRY_3,
    LifecycleState.POST_EXPIRY_7,
    LifecycleState.POST_EXPIRY_14,
    LifecycleState.DORMANT,
}


def days_until_expiry(now: datetime, end_date: datetime, tz: Optional[tzinfo] = None) -> int:
    """Calendar days from now's date to end_date's date (negative once past)"""
    if tz is not None:
        now = now.astimezone(tz)
        end_date = end_date.astimezone(tz)
    return (end_date.date() - now.date()).days


def state_for_days(days: int) -> LifecycleState:
    if days > 7:
        return LifecycleState.ACTIVE
    if days >= 4:
        return LifecycleState.WARNED_T7
    if days >= 2:
        return LifecycleState.WARNED_T3
    if days == 1:
        return LifecycleState.WARNED_T1
    if days >= -2:
        return LifecycleState.EXPIRED
    if days >= -6:
        return LifecycleState.POST_EXPIRY_3
    if days >= -13:
        return LifecycleState.POST_EXPIRY_7
    if days == -14:
        return LifecycleState.POST_EXPIRY_14
    return LifecycleState.DORMANT


def derive_state(
    now: datetime, window: SubscriptionWindow, tz: Optional[tzinfo] = None
) -> LifecycleState:
    if window.end_date is None:
        return LifecycleState.NO_SUBSCRIPTION
    return state_for_days(days_until_expiry(now, window.end_date, tz))


@dataclass
class LifecycleTransition:
    """What the lifecycle sweep does for one ledger"""
    previous: Optional[LifecycleState]
    derived: LifecycleState
    deactivate: bool = False
    notification: Optional[NotificationKind] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def changes_ledger(self) -> bool:
        return self.deactivate or self.previous != self.derived


def plan_transition(
    previous: Optional[LifecycleState],
    derived: LifecycleState,
    window: SubscriptionWindow,
    days_left: Optional[int] = None,
) -> LifecycleTransition:
    """
    Diff the stored state against the derived one.

    Notifications fire only on entering a state, and only when days_left is
    that state's threshold day. Warnings require an active window;
    deactivation applies to any active window at or past expiry.
    """
    transition = LifecycleTransition(
        previous=previous,
        derived=derived,
        deactivate=derived in EXPIRED_STATES and window.active,
    )
    if previous == derived:
        return transition

    base_payload: Dict[str, Any] = {
        "plan_ref": window.plan_ref,
        "end_date": window.end_date.isoformat() if window.end_date else None,
    }

    if derived in WARNING_STATES and window.active:
        tier_days, urgency = WARNING_STATES[derived]
        if days_left != tier_days:
            return transition
        transition.notification = NotificationKind.EXPIRY_WARNING
        transition.payload = {
            **base_payload,
            "days_left": days_left,
            "urgency": urgency,
        }
    elif derived == LifecycleState.EXPIRED:
        if days_left != 0:
            return transition
        transition.notification = NotificationKind.SUBSCRIPTION_EXPIRED
        transition.payload = base_payload
    elif derived in REMINDER_STATES:
        tier, offer = REMINDER_STATES[derived]
        if days_left != -tier:
            return transition
        transition.notification = NotificationKind.RENEWAL_REMINDER
        transition.payload = {
            **base_payload,
            "tier": tier,
            "offer": offer,
            "days_since_expiry": tier,
        }

    return transition


__all__ = [
    "WARNING_STATES",
    "REMINDER_STATES",
    "EXPIRED_STATES",
    "days_until_expiry",
    "state_for_days",
    "derive_state",
    "LifecycleTransition",
    "plan_transition",
]
