"""Entitlement gate: resolves a user's active subscription and plan."""

from datetime import UTC, datetime
from typing import Protocol

import structlog

from ttsgate.config import TableConfig
from ttsgate.errors import (
    NoSubscriptionError,
    SubscriptionExpiredError,
    SubscriptionInactiveError,
)
from ttsgate.models.subscription import Entitlement, Plan, Subscription, SubscriptionStatus
from ttsgate.services import supabase_client as db

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _pick_current(subscriptions: list[Subscription]) -> Subscription | None:
    """The active subscription if any, else the most recently created one."""
    if not subscriptions:
        return None
    for subscription in subscriptions:
        if subscription.status == SubscriptionStatus.ACTIVE:
            return subscription
    return subscriptions[0]


class SubscriptionRepository(Protocol):
    """Read access to the subscription/plan catalog plus the lazy-expiry write."""

    async def get_current_subscription(self, user_id: str) -> Subscription | None:
        """Fetch the subscription that governs the user's access."""

    async def get_plan(self, plan_id: str) -> Plan | None:
        """Fetch a plan by ID."""

    async def mark_expired(self, subscription_id: str) -> bool:
        """Move an active subscription to expired.

        Returns True if this call changed the status, False if it was no
        longer active.
        """


class InMemorySubscriptionRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, Subscription] = {}
        self.plans: dict[str, Plan] = {}

    def add_plan(self, plan: Plan) -> Plan:
        self.plans[plan.id] = plan.model_copy(deep=True)
        return plan

    def add_subscription(self, subscription: Subscription) -> Subscription:
        stored = subscription.model_copy(deep=True)
        if stored.created_at is None:
            stored.created_at = _utcnow()
        self.subscriptions[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_current_subscription(self, user_id: str) -> Subscription | None:
        owned = sorted(
            (s for s in self.subscriptions.values() if s.user_id == user_id),
            key=lambda s: s.created_at or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )
        current = _pick_current(owned)
        return current.model_copy(deep=True) if current else None

    async def get_plan(self, plan_id: str) -> Plan | None:
        plan = self.plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def mark_expired(self, subscription_id: str) -> bool:
        stored = self.subscriptions.get(subscription_id)
        if stored is None or stored.status != SubscriptionStatus.ACTIVE:
            return False
        stored.status = SubscriptionStatus.EXPIRED
        stored.updated_at = _utcnow()
        return True


class SupabaseSubscriptionRepository:
    """Supabase-backed subscription/plan catalog."""

    def __init__(self, client, tables: TableConfig):
        self.client = client
        self.tables = tables

    async def get_current_subscription(self, user_id: str) -> Subscription | None:
        rows = await db.list_user_subscriptions(self.client, self.tables, user_id)
        return _pick_current([Subscription.model_validate(row) for row in rows])

    async def get_plan(self, plan_id: str) -> Plan | None:
        row = await db.get_plan(self.client, self.tables, plan_id)
        return Plan.model_validate(row) if row else None

    async def mark_expired(self, subscription_id: str) -> bool:
        return await db.expire_subscription(self.client, self.tables, subscription_id)


class EntitlementService:
    """Decides whether a user currently holds a usable subscription."""

    def __init__(self, repository: SubscriptionRepository, now_provider=_utcnow) -> None:
        self.repository = repository
        self.now_provider = now_provider

    async def expire_if_due(self, subscription: Subscription) -> bool:
        """
        Lazily expire a subscription whose end date has passed.

        This is the one write allowed on the entitlement read path. It is
        idempotent: only an ``active`` subscription past its ``end_date`` is
        touched, and the storage-level update is conditional on the status
        still being ``active``.

        Returns:
            True if the subscription is (now) past its end date.
        """
        if not subscription.is_past_end(self.now_provider()):
            return False
        if subscription.status == SubscriptionStatus.ACTIVE:
            changed = await self.repository.mark_expired(subscription.id)
            if changed:
                logger.info(
                    "subscription_expired_lazily",
                    subscription_id=subscription.id,
                    user_id=subscription.user_id,
                    end_date=subscription.end_date.isoformat() if subscription.end_date else None,
                )
        return True

    async def resolve(self, user_id: str) -> Entitlement:
        """
        Resolve the user's subscription and plan.

        Raises:
            NoSubscriptionError: No subscription, or its plan is missing.
            SubscriptionInactiveError: Subscription status is not active.
            SubscriptionExpiredError: Subscription end date has passed.
        """
        subscription = await self.repository.get_current_subscription(user_id)
        if subscription is None:
            raise NoSubscriptionError()

        if subscription.status != SubscriptionStatus.ACTIVE:
            raise SubscriptionInactiveError(
                telemetry={
                    "subscription_status": subscription.status.value,
                    "subscription_id": subscription.id,
                }
            )

        if await self.expire_if_due(subscription):
            raise SubscriptionExpiredError(
                telemetry={
                    "expired_at": subscription.end_date.isoformat() if subscription.end_date else None,
                    "subscription_id": subscription.id,
                }
            )

        plan = await self.repository.get_plan(subscription.plan_id)
        if plan is None:
            logger.warning(
                "subscription_plan_missing",
                subscription_id=subscription.id,
                plan_id=subscription.plan_id,
            )
            raise NoSubscriptionError("Subscription plan not found")

        return Entitlement(subscription=subscription, plan=plan)
