"""Subscription and plan models (read from the catalog, never edited here)."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Lifecycle states of a subscription."""

    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class BillingPeriod(str, Enum):
    """How often a plan is billed."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class PlanFeatures(BaseModel):
    """Feature set of a plan. Unknown feature keys are kept as extras."""

    model_config = ConfigDict(extra="allow")

    characters_per_month: int = Field(default=0, ge=0)
    voices_available: int = Field(default=1, ge=0)
    audio_formats: list[str] = Field(default_factory=lambda: ["mp3"])
    # None means "use the service default"
    concurrency_limit: int | None = Field(default=None, ge=1)
    api_access: bool = False
    priority_support: bool = False
    commercial_use: bool = False


class Plan(BaseModel):
    """Subscription plan from the catalog."""

    id: str
    name: str
    price_amount: float = Field(default=0.0, ge=0)
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    features: PlanFeatures = Field(default_factory=PlanFeatures)
    is_active: bool = True


class Subscription(BaseModel):
    """A user's subscription to a plan."""

    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    start_date: datetime | None = None
    end_date: datetime | None = None
    payment_method: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_past_end(self, now: datetime) -> bool:
        return self.end_date is not None and self.end_date < now


class Entitlement(BaseModel):
    """Resolved right to use the service."""

    subscription: Subscription
    plan: Plan
