"""
Test Subscription Lifecycle
Creation from payments, renewals, customer operations, plan changes, sweeps and reporting
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select, func

from models import Invoice, NotificationEvent, Payment, Subscription, SubscriptionEvent, utcnow
from services.subscription_lifecycle import SubscriptionLifecycle, invoice_number


@pytest.fixture
def lifecycle():
    return SubscriptionLifecycle()


@pytest.fixture
def now():
    return utcnow().replace(microsecond=0)


@pytest.fixture
def completed_payment(make_payment, make_plan, now):
    def factory(plan=None, **overrides):
        plan = plan or make_plan()
        values = {"status": "completed", "plan_id": plan.id, "amount": plan.price,
                  "confirmed_at": now, "paid_at": now}
        values.update(overrides)
        return make_payment(**values)
    return factory


def _event_types(session, subscription):
    return [e.event_type for e in session.execute(
        select(SubscriptionEvent)
        .where(SubscriptionEvent.subscription_id == subscription.id)
        .order_by(SubscriptionEvent.id)
    ).scalars()]


class TestCreation:

    def test_creates_active_subscription_with_invoice(self, session, lifecycle, completed_payment, now,
                                                      notifications):
        payment = completed_payment()

        result = lifecycle.create_from_payment(session, payment, now)

        subscription = result.subscription
        assert result.success and result.created
        assert subscription.status == "active"
        assert subscription.expires_at == now + timedelta(days=30)
        assert subscription.next_billing_date == now + timedelta(days=30)
        assert subscription.plan_data["name"] == "Pro Monthly"
        assert payment.subscription_id == subscription.id
        invoice = session.execute(select(Invoice).where(Invoice.payment_id == payment.id)).scalar_one()
        assert invoice.invoice_number == f"INV-{now.year}-{payment.id:06d}"
        assert _event_types(session, subscription) == ["created"]
        assert [name for name, _ in notifications] == ["subscription_activated"]

    def test_second_call_returns_existing(self, session, lifecycle, completed_payment, now):
        payment = completed_payment()
        first = lifecycle.create_from_payment(session, payment, now)

        second = lifecycle.create_from_payment(session, payment, now)

        assert second.success and not second.created
        assert second.subscription.id == first.subscription.id
        assert session.execute(select(func.count(Subscription.id))).scalar() == 1

    def test_pending_payment_is_rejected(self, session, lifecycle, make_payment, make_plan, now):
        payment = make_payment(plan_id=make_plan().id)

        result = lifecycle.create_from_payment(session, payment, now)

        assert not result.success
        assert "not completed" in result.error

    def test_missing_plan_is_rejected(self, session, lifecycle, make_payment, now):
        payment = make_payment(status="completed", confirmed_at=now)

        assert lifecycle.create_from_payment(session, payment, now).error == f"Plan not found for payment {payment.id}"

    def test_trial_plan_starts_in_trial(self, session, lifecycle, completed_payment, make_plan, now):
        plan = make_plan(name="Trial Plan", trial_period_days=14)

        subscription = lifecycle.create_from_payment(session, completed_payment(plan), now).subscription

        assert subscription.status == "trial"
        assert subscription.trial_ends_at == now + timedelta(days=14)
        assert subscription.next_billing_date == subscription.trial_ends_at

    def test_invoice_number_format(self, make_payment, now):
        payment = make_payment()
        assert invoice_number(payment, now) == f"INV-{now.year}-{payment.id:06d}"


class TestRenewal:

    def test_renew_extends_from_previous_expiry(self, session, lifecycle, make_subscription, completed_payment, now):
        subscription = make_subscription(now=now, expires_at=now + timedelta(days=2))
        payment = completed_payment(subscription_id=subscription.id)

        result = lifecycle.renew(session, subscription, payment, now)

        assert result.success
        assert subscription.expires_at == now + timedelta(days=32)
        assert subscription.next_billing_date == subscription.expires_at
        assert subscription.billing_cycle_count == 2
        assert payment.type == "renewal"
        assert payment.is_renewal is True

    def test_renew_is_idempotent_per_payment(self, session, lifecycle, make_subscription, completed_payment, now):
        subscription = make_subscription(now=now)
        payment = completed_payment(subscription_id=subscription.id)
        lifecycle.renew(session, subscription, payment, now)
        expires_at = subscription.expires_at

        again = lifecycle.renew(session, subscription, payment, now)

        assert again.success
        assert again.details == {"already_renewed": True}
        assert subscription.expires_at == expires_at
        assert _event_types(session, subscription).count("renewed") == 1

    def test_renew_reactivates_past_due(self, session, lifecycle, make_subscription, completed_payment, now):
        subscription = make_subscription(now=now, status="past_due", failed_payment_count=1,
                                         grace_period_ends_at=now + timedelta(days=2))

        lifecycle.renew(session, subscription, completed_payment(subscription_id=subscription.id), now)

        assert subscription.status == "active"
        assert subscription.grace_period_ends_at is None
        assert subscription.failed_payment_count == 0

    def test_cannot_renew_cancelled(self, session, lifecycle, make_subscription, completed_payment, now):
        subscription = make_subscription(now=now, status="cancelled")

        result = lifecycle.renew(session, subscription, completed_payment(), now)

        assert not result.success
        assert result.error == "Cannot renew a cancelled subscription"

    def test_reactivate_expired(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now - timedelta(days=40), status="expired", expired_at=now)

        result = lifecycle.reactivate(session, subscription, now=now)

        assert result.success
        assert subscription.status == "active"
        assert subscription.expires_at == now + timedelta(days=30)
        assert subscription.expired_at is None


class TestCustomerOperations:

    def test_cancel_immediately(self, session, lifecycle, make_subscription, now, notifications):
        subscription = make_subscription(now=now)

        result = lifecycle.cancel(session, subscription, immediately=True, reason="too expensive", now=now)

        assert result.success
        assert subscription.status == "cancelled"
        assert subscription.cancellation_reason == "Customer requested: too expensive"
        assert subscription.cancelled_at == now
        assert subscription.expires_at == now
        assert [name for name, _ in notifications] == ["subscription_cancelled"]

    def test_cancel_at_period_end_keeps_access(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now)

        lifecycle.cancel(session, subscription, immediately=False, now=now)

        assert subscription.status == "active"
        assert subscription.will_cancel_at_period_end is True

        stats = lifecycle.process_expirations(session, subscription.expires_at + timedelta(minutes=1))

        assert stats["cancelled"] == 1
        assert subscription.status == "cancelled"

    def test_cancel_twice_fails(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now)
        lifecycle.cancel(session, subscription, now=now)

        assert not lifecycle.cancel(session, subscription, now=now).success

    def test_pause_and_resume_extend_expiry(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now)
        expires_at = subscription.expires_at

        assert lifecycle.pause(session, subscription, reason="vacation", now=now).success
        assert subscription.status == "paused"
        assert lifecycle.pause(session, subscription, now=now).error == "Subscription is already paused"

        result = lifecycle.resume(session, subscription, now=now + timedelta(days=5))

        assert result.success
        assert subscription.status == "active"
        assert subscription.expires_at == expires_at + timedelta(days=5)
        assert subscription.paused_at is None

    def test_resume_requires_paused(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now)
        assert lifecycle.resume(session, subscription, now=now).error == "Subscription is not paused"

    def test_paused_cannot_be_paused_from_cancelled(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now, status="cancelled")

        result = lifecycle.pause(session, subscription, now=now)

        assert not result.success
        assert subscription.status == "cancelled"


class TestPlanChanges:

    def test_proration(self, lifecycle, make_subscription, make_plan, now):
        old_plan = make_plan(price=Decimal("30.00"))
        new_plan = make_plan(name="Business", price=Decimal("60.00"))
        subscription = make_subscription(plan=old_plan, now=now, next_billing_date=now + timedelta(days=15))

        assert lifecycle.calculate_proration(subscription, old_plan, new_plan, now) == Decimal("15.00")

    def test_upgrade_charges_proration(self, session, lifecycle, make_subscription, make_plan, now):
        old_plan = make_plan(price=Decimal("30.00"))
        new_plan = make_plan(name="Business", price=Decimal("60.00"))
        subscription = make_subscription(plan=old_plan, now=now, next_billing_date=now + timedelta(days=15))

        result = lifecycle.upgrade_plan(session, subscription, new_plan, now=now)

        assert result.success
        assert result.details["proration_amount"] == Decimal("15.00")
        charge = session.get(Payment, result.details["payment_id"])
        assert charge.type == "upgrade"
        assert charge.status == "completed"
        assert charge.payment_gateway == "system"
        assert subscription.plan_id == new_plan.id
        assert subscription.plan_changes_history[-1]["type"] == "upgrade"

    def test_upgrade_requires_active(self, session, lifecycle, make_subscription, make_plan, now):
        subscription = make_subscription(now=now, status="paused", paused_at=now)

        result = lifecycle.upgrade_plan(session, subscription, make_plan(name="Business"), now=now)

        assert result.error == "Only active subscriptions can be upgraded"

    def test_downgrade_at_period_end_is_scheduled(self, session, lifecycle, make_subscription, make_plan, now):
        old_plan = make_plan(price=Decimal("60.00"))
        new_plan = make_plan(name="Starter", price=Decimal("10.00"))
        subscription = make_subscription(plan=old_plan, now=now)

        assert lifecycle.downgrade_plan(session, subscription, new_plan, now=now).success
        assert subscription.plan_id == old_plan.id
        assert subscription.scheduled_plan_id == new_plan.id

        assert lifecycle.apply_scheduled_plan_changes(session, now) == 0
        applied = lifecycle.apply_scheduled_plan_changes(session, subscription.next_billing_date + timedelta(minutes=1))

        assert applied == 1
        assert subscription.plan_id == new_plan.id
        assert subscription.scheduled_plan_id is None

    def test_immediate_downgrade(self, session, lifecycle, make_subscription, make_plan, now):
        new_plan = make_plan(name="Starter", price=Decimal("10.00"))
        subscription = make_subscription(now=now)

        lifecycle.downgrade_plan(session, subscription, new_plan, at_period_end=False, now=now)

        assert subscription.plan_id == new_plan.id
        assert subscription.plan_data["name"] == "Starter"


class TestSweeps:

    def test_lapsed_subscription_expires(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now - timedelta(days=31))

        stats = lifecycle.process_expirations(session, now)

        assert stats["expired"] == 1
        assert subscription.status == "expired"
        assert subscription.expired_at == now

    def test_plan_grace_then_expiry(self, session, lifecycle, make_subscription, make_plan, now):
        plan = make_plan(grace_period_days=3)
        subscription = make_subscription(plan=plan, now=now - timedelta(days=31))

        stats = lifecycle.process_expirations(session, now)

        assert stats["grace_period"] == 1
        assert subscription.status == "past_due"
        assert subscription.grace_period_ends_at == subscription.expires_at + timedelta(days=3)

        later = lifecycle.process_expirations(session, now + timedelta(days=3))

        assert later["expired"] == 1
        assert subscription.status == "expired"

    def test_expiry_sweep_notifies_once(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now - timedelta(days=31))

        lifecycle.process_expirations(session, now)
        lifecycle.process_expirations(session, now)

        count = session.execute(select(func.count(NotificationEvent.id)).where(
            NotificationEvent.event_name == "subscription_expired",
            NotificationEvent.entity_id == subscription.id,
        )).scalar()
        assert count == 1

    def test_failed_payment_grace_then_overdue_cancel(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now)

        lifecycle.record_failed_payment(session, subscription, now=now)

        assert subscription.status == "past_due"
        assert subscription.grace_period_ends_at == now + timedelta(days=3)
        assert lifecycle.process_overdue_subscriptions(session, now + timedelta(days=1)) == 0

        cancelled = lifecycle.process_overdue_subscriptions(session, now + timedelta(days=4))

        assert cancelled == 1
        assert subscription.status == "cancelled"
        assert subscription.cancellation_reason == "Payment overdue - grace period expired"

    def test_successful_payment_clears_past_due(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now)
        lifecycle.record_failed_payment(session, subscription, now=now)

        lifecycle.record_successful_payment(session, subscription, now=now)

        assert subscription.status == "active"
        assert subscription.failed_payment_count == 0

    def test_trial_end(self, session, lifecycle, make_subscription, now):
        subscription = make_subscription(now=now - timedelta(days=15), status="trial", is_trial=True,
                                         trial_ends_at=now - timedelta(days=1))

        assert lifecycle.process_trial_ends(session, now) == 1
        assert subscription.status == "active"
        assert subscription.is_trial is False

    def test_upcoming_renewals_notify_once(self, session, lifecycle, make_subscription, now):
        soon = make_subscription(now=now, next_billing_date=now + timedelta(days=2))
        make_subscription(now=now, next_billing_date=now + timedelta(days=20))

        first = lifecycle.find_upcoming_renewals(session, 3, now)
        lifecycle.find_upcoming_renewals(session, 3, now)

        assert [s.id for s in first] == [soon.id]
        count = session.execute(select(func.count(NotificationEvent.id)).where(
            NotificationEvent.event_name == "subscription_renewal_upcoming"
        )).scalar()
        assert count == 1


class TestReporting:

    def test_mrr_normalizes_intervals(self, session, lifecycle, make_subscription, make_plan, now):
        make_subscription(plan=make_plan(price=Decimal("30.00")), now=now)
        make_subscription(plan=make_plan(name="Annual", price=Decimal("120.00"), billing_interval="yearly",
                                         duration_days=365), now=now)
        make_subscription(plan=make_plan(name="Paused", price=Decimal("99.00")), now=now, status="paused")

        assert lifecycle.calculate_mrr(session) == Decimal("40.00")

    def test_churn_rate(self, session, lifecycle, make_subscription):
        make_subscription()
        cancelled = make_subscription()
        lifecycle.cancel(session, cancelled)

        assert lifecycle.calculate_churn_rate(session) == 50.0

    def test_subscription_stats(self, session, lifecycle, make_subscription):
        make_subscription()
        make_subscription(status="trial", is_trial=True)

        stats = lifecycle.get_subscription_stats(session)

        assert stats["total"] == 2
        assert stats["by_status"]["active"] == 1
        assert stats["by_status"]["trial"] == 1
        assert stats["by_status"]["expired"] == 0
