"""
Test Subscription Maintenance
Scheduled sweeps wired to the lifecycle service
"""

import pytest
from datetime import timedelta
from unittest.mock import patch

from jobs.subscription_maintenance import SubscriptionMaintenance, run_subscription_expiry
from models import utcnow
from services.subscription_lifecycle import SubscriptionLifecycle


@pytest.fixture
def maintenance(session_factory):
    return SubscriptionMaintenance(SubscriptionLifecycle(), session_factory)


class TestSubscriptionMaintenance:

    def test_process_expirations(self, maintenance, make_subscription):
        now = utcnow()
        subscription = make_subscription(now=now - timedelta(days=31))

        stats = maintenance.process_expirations(now)

        assert stats["expired"] == 1
        assert stats["errors"] == 0
        assert stats["processing_time_seconds"] >= 0
        assert subscription.status == "expired"

    def test_lifecycle_transitions(self, maintenance, make_subscription):
        now = utcnow()
        trial = make_subscription(now=now - timedelta(days=20), status="trial", is_trial=True,
                                  trial_ends_at=now - timedelta(hours=1))
        overdue = make_subscription(now=now - timedelta(days=5), status="past_due", failed_payment_count=1,
                                    grace_period_ends_at=now - timedelta(hours=1))

        stats = maintenance.process_lifecycle_transitions(now)

        assert stats == {"trials_ended": 1, "overdue_cancelled": 1, "plan_changes_applied": 0}
        assert trial.status == "active"
        assert overdue.status == "cancelled"

    def test_idle_transitions(self, maintenance):
        assert maintenance.process_lifecycle_transitions() == {
            "trials_ended": 0, "overdue_cancelled": 0, "plan_changes_applied": 0
        }

    def test_upcoming_renewals(self, maintenance, make_subscription, notifications):
        now = utcnow()
        make_subscription(now=now, next_billing_date=now + timedelta(days=1))

        stats = maintenance.notify_upcoming_renewals(now)

        assert stats == {"upcoming": 1, "days_ahead": 3}
        assert [name for name, _ in notifications] == ["subscription_renewal_upcoming"]

    @pytest.mark.asyncio
    async def test_scheduled_wrapper_contains_errors(self):
        with patch("jobs.subscription_maintenance.subscription_maintenance.process_expirations",
                   side_effect=RuntimeError("database unavailable")):
            assert await run_subscription_expiry() == {"error": "database unavailable"}
