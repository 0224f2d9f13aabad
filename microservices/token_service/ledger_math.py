"""
Pure ledger arithmetic

Every function takes a ledger snapshot and returns a new ledger; nothing
here performs I/O. The service layer persists the result with a single
conditional write, so reconcile, check and deduct always see the same
snapshot.
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple

from .models import BonusGrant, SpendResult, TokenLedger
from .protocols import BonusAlreadyActiveError, InsufficientBalanceError


def bonus_is_live(bonus: BonusGrant, now: datetime) -> bool:
    """A bonus counts while it has credits and now <= expires_at"""
    if bonus.amount <= 0:
        return False
    return bonus.expires_at is None or now <= bonus.expires_at


def effective_balance(ledger: TokenLedger, now: datetime) -> int:
    """daily_balance plus the bonus if unexpired; an expired bonus never counts"""
    bonus = ledger.bonus.amount if bonus_is_live(ledger.bonus, now) else 0
    return ledger.daily_balance + bonus


def reconcile_bonus(ledger: TokenLedger, now: datetime) -> Tuple[TokenLedger, bool]:
    """
    Clear an expired bonus.

    Returns:
        (ledger, changed). The input is returned untouched when nothing expired.
    """
    bonus = ledger.bonus
    if bonus.amount > 0 and bonus.expires_at is not None and now > bonus.expires_at:
        return ledger.model_copy(update={"bonus": BonusGrant.empty()}), True
    return ledger, False


def validate_amount(amount) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"amount must be a positive integer, got {amount!r}")
    if amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount}")
    return amount


def apply_spend(ledger: TokenLedger, amount: int, now: datetime) -> Tuple[TokenLedger, SpendResult]:
    """
    Reconcile, check and deduct in one step.

    Daily balance is drawn first, down to zero; the remainder comes out of
    the bonus. Monthly figures move for reporting only.

    Raises:
        ValueError: amount is not a positive integer
        InsufficientBalanceError: amount exceeds the effective balance
    """
    amount = validate_amount(amount)
    ledger, _ = reconcile_bonus(ledger, now)

    available = effective_balance(ledger, now)
    if available < amount:
        raise InsufficientBalanceError(available=available, required=amount)

    from_daily = min(ledger.daily_balance, amount)
    from_bonus = amount - from_daily

    bonus = ledger.bonus
    if from_bonus:
        bonus = bonus.model_copy(update={"amount": bonus.amount - from_bonus})

    updated = ledger.model_copy(update={
        "daily_balance": ledger.daily_balance - from_daily,
        "bonus": bonus,
        "daily_spent_today": ledger.daily_spent_today + amount,
        "monthly_spent": ledger.monthly_spent + amount,
        "monthly_remaining": max(0, ledger.monthly_remaining - amount),
        "total_spent_lifetime": ledger.total_spent_lifetime + amount,
    })

    result = SpendResult(
        user_id=ledger.user_id,
        amount=amount,
        daily_remaining=updated.daily_balance,
        bonus_remaining=updated.bonus.amount,
        total_remaining=effective_balance(updated, now),
    )
    return updated, result


def grant_bonus(
    ledger: TokenLedger,
    amount: int,
    now: datetime,
    validity: timedelta,
    granted_by: str,
    reason: Optional[str] = None,
) -> TokenLedger:
    """
    Replace an empty or expired bonus with a fresh grant.

    Raises:
        BonusAlreadyActiveError: a live bonus exists
    """
    amount = validate_amount(amount)
    ledger, _ = reconcile_bonus(ledger, now)
    if bonus_is_live(ledger.bonus, now):
        raise BonusAlreadyActiveError(ledger.user_id, ledger.bonus.expires_at)

    bonus = BonusGrant(
        amount=amount,
        granted_at=now,
        expires_at=now + validity,
        granted_by=granted_by,
        reason=reason,
    )
    return ledger.model_copy(update={"bonus": bonus})


def refresh_daily_quota(ledger: TokenLedger, daily_rate: int, now: datetime) -> TokenLedger:
    """Reset the daily pool; monthly figures and bonus stay as they are"""
    window = ledger.window.model_copy(update={"last_refreshed_at": now})
    return ledger.model_copy(update={
        "daily_balance": daily_rate,
        "daily_spent_today": 0,
        "window": window,
    })


def renew_window(
    ledger: TokenLedger,
    plan_ref: str,
    duration_days: int,
    daily_rate: int,
    now: datetime,
) -> TokenLedger:
    """
    Grant a full subscription window starting now.

    Used by renewal, manual renewal and plan purchase settlement alike.
    """
    monthly_allocation = duration_days * daily_rate
    window = ledger.window.model_copy(update={
        "plan_ref": plan_ref,
        "start_date": now,
        "end_date": now + timedelta(days=duration_days),
        "daily_rate": daily_rate,
        "last_refreshed_at": now,
        "active": True,
        "lifecycle_state": None,
    })
    return ledger.model_copy(update={
        "monthly_allocation": monthly_allocation,
        "monthly_remaining": monthly_allocation,
        "monthly_spent": 0,
        "daily_balance": daily_rate,
        "daily_spent_today": 0,
        "window": window,
    })


def add_topup(ledger: TokenLedger, tokens: int) -> TokenLedger:
    """Purchased tokens land in the daily pool"""
    tokens = validate_amount(tokens)
    return ledger.model_copy(update={"daily_balance": ledger.daily_balance + tokens})


def deactivate(ledger: TokenLedger) -> TokenLedger:
    """Zero the spendable quota and close the window; the bonus is untouched"""
    window = ledger.window.model_copy(update={"active": False})
    return ledger.model_copy(update={
        "daily_balance": 0,
        "daily_spent_today": 0,
        "monthly_remaining": 0,
        "window": window,
    })


def bonus_seconds_remaining(bonus: BonusGrant, now: datetime) -> int:
    if not bonus_is_live(bonus, now) or bonus.expires_at is None:
        return 0
    return max(0, int((bonus.expires_at - now).total_seconds()))


__all__ = [
    "bonus_is_live",
    "effective_balance",
    "reconcile_bonus",
    "validate_amount",
    "apply_spend",
    "grant_bonus",
    "refresh_daily_quota",
    "renew_window",
    "add_topup",
    "deactivate",
    "bonus_seconds_remaining",
]
