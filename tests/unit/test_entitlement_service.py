"""Unit tests for the entitlement gate."""

from datetime import timedelta

import pytest

from ttsgate.errors import (
    ErrorKind,
    NoSubscriptionError,
    SubscriptionExpiredError,
    SubscriptionInactiveError,
)
from ttsgate.models.subscription import Subscription, SubscriptionStatus


class TestResolve:
    async def test_active_subscription_resolves_plan(self, pipeline):
        pipeline.subscribe("user-a", characters_per_month=5000)

        entitlement = await pipeline.entitlements.resolve("user-a")

        assert entitlement.subscription.id == "sub-user-a"
        assert entitlement.plan.features.characters_per_month == 5000

    async def test_no_subscription(self, pipeline):
        with pytest.raises(NoSubscriptionError) as exc_info:
            await pipeline.entitlements.resolve("nobody")

        assert exc_info.value.kind == ErrorKind.NO_SUBSCRIPTION
        assert exc_info.value.status_code == 403

    @pytest.mark.parametrize(
        "status", [SubscriptionStatus.PENDING, SubscriptionStatus.CANCELLED]
    )
    async def test_inactive_subscription(self, pipeline, status):
        pipeline.subscribe("user-a", status=status)

        with pytest.raises(SubscriptionInactiveError) as exc_info:
            await pipeline.entitlements.resolve("user-a")

        assert exc_info.value.telemetry["subscription_status"] == status.value

    async def test_past_end_date_expires_lazily(self, pipeline, clock):
        pipeline.subscribe("user-a", end_date=clock.now() - timedelta(minutes=1))

        with pytest.raises(SubscriptionExpiredError):
            await pipeline.entitlements.resolve("user-a")

        stored = pipeline.subscriptions.subscriptions["sub-user-a"]
        assert stored.status == SubscriptionStatus.EXPIRED

    async def test_expired_subscription_then_reports_inactive(self, pipeline, clock):
        pipeline.subscribe("user-a", end_date=clock.now() - timedelta(minutes=1))
        with pytest.raises(SubscriptionExpiredError):
            await pipeline.entitlements.resolve("user-a")

        with pytest.raises(SubscriptionInactiveError) as exc_info:
            await pipeline.entitlements.resolve("user-a")

        assert exc_info.value.telemetry["subscription_status"] == "expired"

    async def test_end_date_in_future_is_valid(self, pipeline, clock):
        pipeline.subscribe("user-a", end_date=clock.now() + timedelta(days=3))

        entitlement = await pipeline.entitlements.resolve("user-a")

        assert entitlement.subscription.status == SubscriptionStatus.ACTIVE

    async def test_missing_plan(self, pipeline, clock):
        pipeline.subscriptions.add_subscription(
            Subscription(
                id="sub-orphan",
                user_id="user-a",
                plan_id="does-not-exist",
                status=SubscriptionStatus.ACTIVE,
                created_at=clock.now(),
            )
        )

        with pytest.raises(NoSubscriptionError, match="plan not found"):
            await pipeline.entitlements.resolve("user-a")

    async def test_active_preferred_over_newer_inactive(self, pipeline, clock):
        pipeline.subscribe("user-a")
        pipeline.subscriptions.add_subscription(
            Subscription(
                id="sub-newer",
                user_id="user-a",
                plan_id="plan-user-a",
                status=SubscriptionStatus.CANCELLED,
                created_at=clock.now() + timedelta(hours=1),
            )
        )

        entitlement = await pipeline.entitlements.resolve("user-a")

        assert entitlement.subscription.id == "sub-user-a"


class TestExpireIfDue:
    async def test_idempotent(self, pipeline, clock):
        subscription, _ = pipeline.subscribe(
            "user-a", end_date=clock.now() - timedelta(seconds=1)
        )

        first = await pipeline.entitlements.expire_if_due(subscription)
        second = await pipeline.entitlements.expire_if_due(subscription)

        assert first is True
        assert second is True
        assert pipeline.subscriptions.subscriptions[subscription.id].status == SubscriptionStatus.EXPIRED
        assert await pipeline.subscriptions.mark_expired(subscription.id) is False

    async def test_not_due(self, pipeline):
        subscription, _ = pipeline.subscribe("user-a")

        assert await pipeline.entitlements.expire_if_due(subscription) is False
        assert pipeline.subscriptions.subscriptions[subscription.id].status == SubscriptionStatus.ACTIVE
