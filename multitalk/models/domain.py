from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

UNLIMITED_CREDITS = 999999


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Plan(str, Enum):
    FREE = "free"
    STARTER = "starter"
    MID = "mid"
    PRO = "pro"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "pastDue"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"


class BillingEventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscriptionCreated"
    SUBSCRIPTION_UPDATED = "subscriptionUpdated"
    SUBSCRIPTION_CANCELLED = "subscriptionCancelled"


class Account(BaseModel):
    id: str
    balance: int = Field(ge=0)
    plan: Plan = Plan.FREE
    plan_status: PlanStatus = PlanStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Job(BaseModel):
    id: UUID
    account_id: str
    status: JobStatus
    prompt: str
    resolution: str
    frame_num: int
    audio_ref: str
    image_ref: str
    artifact_ref: Optional[str] = None
    error_detail: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class BillingEvent(BaseModel):
    external_event_id: str
    # Kept as a plain string so unknown event types can be acknowledged.
    type: str
    account_id: str
    target_plan: Optional[Plan] = None
    target_status: Optional[PlanStatus] = None
    processed: bool = False
    received_at: datetime = Field(default_factory=utcnow)


class Subscription(BaseModel):
    """A checkout the user started; the billing webhook later activates it."""

    id: UUID
    account_id: str
    plan: Plan
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ReplenishmentRule(BaseModel):
    plan: Plan
    cadence_expression: str
    target_balance: int = Field(ge=0)


class SynthesisTask(BaseModel):
    job_id: UUID
    prompt: str
    audio_ref: str
    image_ref: str
    resolution: str
    frame_num: int


class WorkerOutcome(BaseModel):
    success: bool
    artifact_ref: Optional[str] = None
    error_detail: Optional[str] = None


def default_replenishment_rules() -> list[ReplenishmentRule]:
    return [
        # Every Monday at midnight
        ReplenishmentRule(plan=Plan.STARTER, cadence_expression="0 0 * * 1", target_balance=10),
        # 1st and 15th of every month
        ReplenishmentRule(plan=Plan.MID, cadence_expression="0 0 1,15 * *", target_balance=UNLIMITED_CREDITS),
        # 1st of every month
        ReplenishmentRule(plan=Plan.PRO, cadence_expression="0 0 1 * *", target_balance=UNLIMITED_CREDITS),
    ]
