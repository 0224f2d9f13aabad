"""
Token Service Data Models

Per-user token ledger (daily quota, informational monthly allocation,
temporary bonus), subscription plans, settlement transactions and the
request/response shapes of the HTTP surface.
"""

import uuid
from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import BaseModel, Field, field_validator, model_validator


# ====================
# Enumerations
# ====================

class LifecycleState(str, Enum):
    """Subscription lifecycle state, derived from days until expiry"""
    NO_SUBSCRIPTION = "no_subscription"
    ACTIVE = "active"
    WARNED_T7 = "warned_t7"
    WARNED_T3 = "warned_t3"
    WARNED_T1 = "warned_t1"
    EXPIRED = "expired"
    POST_EXPIRY_3 = "post_expiry_3"
    POST_EXPIRY_7 = "post_expiry_7"
    POST_EXPIRY_14 = "post_expiry_14"
    DORMANT = "dormant"


class SubjectType(str, Enum):
    """What a settlement transaction pays for"""
    SUBSCRIPTION = "subscription"
    TOKEN_TOPUP = "token_topup"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SettlementOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class NotificationKind(str, Enum):
    """Notification kinds sent to the delivery collaborator"""
    EXPIRY_WARNING = "expiry_warning"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    RENEWAL_REMINDER = "renewal_reminder"
    BONUS_GRANTED = "bonus_granted"


class SweepKind(str, Enum):
    REFRESH = "refresh"
    LIFECYCLE = "lifecycle"


class SweepOutcome(str, Enum):
    """Per-user result of one sweep step"""
    REFRESHED = "refreshed"
    RENEWED = "renewed"
    WARNED = "warned"
    EXPIRED = "expired"
    REMINDED = "reminded"
    DEACTIVATED = "deactivated"
    STATE_CHANGED = "state_changed"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


# ====================
# Core Data Models
# ====================

class BonusGrant(BaseModel):
    """
    Temporary bonus credits. At most one live grant per user; an empty
    grant has amount 0 and no metadata.
    """
    amount: int = Field(default=0, ge=0)
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def empty(cls) -> "BonusGrant":
        return cls()


class SubscriptionWindow(BaseModel):
    """Subscription period embedded in the ledger row"""
    plan_ref: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    daily_rate: int = Field(default=0, ge=0, description="Copied from the plan at grant time")
    last_refreshed_at: Optional[datetime] = None
    active: bool = False
    auto_renew: bool = True
    lifecycle_state: Optional[LifecycleState] = Field(
        None, description="Last lifecycle state acted on by the lifecycle sweep"
    )


class TokenLedger(BaseModel):
    """
    Token ledger - one per user.

    daily_balance is the only spendable pool besides the bonus. The monthly
    figures track the cycle's grant for reporting and are never a cap.
    """
    user_id: str = Field(..., min_length=1, max_length=100)

    daily_balance: int = Field(default=0, ge=0)
    daily_spent_today: int = Field(default=0, ge=0)

    monthly_allocation: int = Field(default=0, ge=0)
    monthly_spent: int = Field(default=0, ge=0)
    monthly_remaining: int = Field(default=0, ge=0)

    total_spent_lifetime: int = Field(default=0, ge=0)

    bonus: BonusGrant = Field(default_factory=BonusGrant)
    window: SubscriptionWindow = Field(default_factory=SubscriptionWindow)

    version: int = Field(default=0, ge=0, description="Optimistic concurrency token")

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('user_id')
    @classmethod
    def validate_user_id(cls, v):
        if not v or not v.strip():
            raise ValueError("user_id cannot be empty")
        return v.strip()


class Plan(BaseModel):
    """Subscription plan; immutable after creation"""
    plan_id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    price: float = Field(..., ge=0)
    duration_days: int = Field(..., gt=0)
    daily_rate: int = Field(..., gt=0)
    created_at: Optional[datetime] = None

    @property
    def monthly_allocation(self) -> int:
        return self.duration_days * self.daily_rate


class SettlementTransaction(BaseModel):
    """Payment transaction; transaction_id is the idempotency key"""
    transaction_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    status: TransactionStatus = TransactionStatus.PENDING
    subject_type: SubjectType
    subject_ref: str = Field(..., min_length=1, description="Plan id or token package id")
    tokens: Optional[int] = Field(None, gt=0, description="Credits purchased (top-ups only)")
    amount: float = Field(default=0, ge=0, description="Money paid")
    reconciliation_required: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ====================
# Operation Results
# ====================

class SpendResult(BaseModel):
    success: bool = True
    user_id: str
    amount: int
    daily_remaining: int
    bonus_remaining: int
    total_remaining: int


class BalanceBreakdown(BaseModel):
    """Balance view shown to users and admins"""
    user_id: str
    daily_balance: int
    daily_spent_today: int
    bonus_amount: int
    bonus_expires_at: Optional[datetime] = None
    bonus_seconds_remaining: int = 0
    effective_balance: int
    monthly_allocation: int
    monthly_spent: int
    monthly_remaining: int
    total_spent_lifetime: int
    subscription_active: bool
    plan_ref: Optional[str] = None
    end_date: Optional[datetime] = None
    auto_renew: bool = True


class BonusGrantResult(BaseModel):
    granted: bool
    rejected: Optional[str] = None
    user_id: str
    amount: int = 0
    expires_at: Optional[datetime] = None


class SettlementResult(BaseModel):
    applied: bool
    transaction_id: str
    status: TransactionStatus
    reason: Optional[str] = None


class SweepFailure(BaseModel):
    """One user's sweep step that failed; recorded, never raised"""
    user_id: str
    stage: str
    error: str


class SweepReport(BaseModel):
    sweep: SweepKind
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)
    outcomes: Dict[str, SweepOutcome] = Field(default_factory=dict)
    failures: List[SweepFailure] = Field(default_factory=list)

    def record(self, user_id: str, outcome: SweepOutcome) -> None:
        self.processed += 1
        self.outcomes[user_id] = outcome
        self.counts[outcome.value] = self.counts.get(outcome.value, 0) + 1

    def fail(self, user_id: str, stage: str, error: Exception) -> None:
        self.failures.append(SweepFailure(user_id=user_id, stage=stage, error=str(error) or type(error).__name__))
        self.record(user_id, SweepOutcome.FAILED)


# ====================
# Request Models
# ====================

class CreateLedgerRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=100)


class SpendRequest(BaseModel):
    """Spend one or more tokens; bulk access passes the unit count as amount"""
    user_id: str = Field(..., min_length=1)
    amount: int = Field(1, gt=0, strict=True)


class BonusGrantRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, strict=True)
    reason: Optional[str] = Field(None, max_length=500)
    granted_by: str = Field(default="admin", min_length=1)


class CreatePlanRequest(BaseModel):
    plan_id: Optional[str] = Field(None, min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    price: float = Field(..., ge=0)
    duration_days: int = Field(..., gt=0)
    daily_rate: int = Field(..., gt=0)


class OpenTransactionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    subject_type: SubjectType
    subject_ref: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    tokens: Optional[int] = Field(None, gt=0)

    @model_validator(mode="after")
    def validate_tokens(self):
        if self.subject_type == SubjectType.TOKEN_TOPUP and not self.tokens:
            raise ValueError("tokens is required for a token top-up")
        return self


class SettlementRequest(BaseModel):
    """Settlement notification from the payment gateway"""
    transaction_id: str = Field(..., min_length=1)
    outcome: SettlementOutcome
    subject_type: Optional[SubjectType] = None
    subject_ref: Optional[str] = None
    amount: Optional[float] = Field(None, ge=0)


class AutoRenewRequest(BaseModel):
    enabled: bool


# ====================
# Response Models
# ====================

class LedgerResponse(BaseModel):
    user_id: str
    created: bool
    ledger: TokenLedger


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    price: float
    duration_days: int
    daily_rate: int
    monthly_allocation: int

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            plan_id=plan.plan_id,
            name=plan.name,
            price=plan.price,
            duration_days=plan.duration_days,
            daily_rate=plan.daily_rate,
            monthly_allocation=plan.monthly_allocation,
        )


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    port: int
    version: str
    timestamp: str
    dependencies: Dict[str, str] = Field(default_factory=dict)


__all__ = [
    "LifecycleState",
    "SubjectType",
    "TransactionStatus",
    "SettlementOutcome",
    "NotificationKind",
    "SweepKind",
    "SweepOutcome",
    "BonusGrant",
    "SubscriptionWindow",
    "TokenLedger",
    "Plan",
    "SettlementTransaction",
    "SpendResult",
    "BalanceBreakdown",
    "BonusGrantResult",
    "SettlementResult",
    "SweepFailure",
    "SweepReport",
    "CreateLedgerRequest",
    "SpendRequest",
    "BonusGrantRequest",
    "CreatePlanRequest",
    "OpenTransactionRequest",
    "SettlementRequest",
    "AutoRenewRequest",
    "LedgerResponse",
    "PlanResponse",
    "HealthCheckResponse",
]
