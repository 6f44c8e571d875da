"""
Subscription Lifecycle Service
Creates subscriptions from completed payments and drives every later transition.

trial -> active -> {past_due, paused} -> {active, cancelled, expired}

Every mutating operation runs inside a SAVEPOINT: a missing payment or plan,
or an invalid transition, returns LifecycleResult(success=False) and leaves
the subscription untouched. Each transition writes a SubscriptionEvent row
and notifies through NotificationService, keyed so repeated sweeps notify once.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Invoice, Payment, PaymentStatus, PaymentType, Plan, Subscription, SubscriptionEvent,
    SubscriptionStatus, BillingInterval, utcnow
)
from services.notification_service import NotificationEvents, NotificationService, notification_service
from utils.payment_state_validator import StateTransitionError
from utils.subscription_state_validator import SubscriptionStateValidator

logger = logging.getLogger(__name__)

SYSTEM_GATEWAY = "system"


@dataclass
class LifecycleResult:
    success: bool
    subscription: Optional[Subscription] = None
    error: Optional[str] = None
    created: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


class SubscriptionEventType:
    CREATED = "created"
    RENEWED = "renewed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    GRACE_PERIOD_STARTED = "grace_period_started"
    GRACE_PERIOD_ENDED = "grace_period_ended"
    CANCELLED = "cancelled"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    PAUSED = "paused"
    RESUMED = "resumed"
    PLAN_UPGRADED = "plan_upgraded"
    PLAN_DOWNGRADED = "plan_downgraded"
    TRIAL_ENDED = "trial_ended"
    EXPIRED = "expired"
    REACTIVATED = "reactivated"


def invoice_number(payment: Payment, issued_at: datetime) -> str:
    return f"INV-{issued_at.year}-{payment.id:06d}"


class SubscriptionLifecycle:
    """Subscription state machine over Subscription rows"""

    def __init__(self, notifier: Optional[NotificationService] = None):
        self.notifier = notifier or notification_service

    # ------------------------------------------------------------------
    # Creation and renewal
    # ------------------------------------------------------------------

    def create_from_payment(self, session: Session, payment: Payment,
                            now: Optional[datetime] = None) -> LifecycleResult:
        """Create the subscription for a completed payment; a second call returns the first subscription"""
        now = now or utcnow()
        if payment is None:
            return LifecycleResult(False, error="Payment not found")
        if payment.status != PaymentStatus.COMPLETED.value:
            return LifecycleResult(False, error=f"Payment {payment.id} is {payment.status}, not completed")

        existing = self._subscription_for_payment(session, payment.id)
        if existing is not None:
            logger.info(f"🔁 SUBSCRIPTION_EXISTS: Payment {payment.id} already has subscription {existing.id}")
            return LifecycleResult(True, existing, created=False)

        plan = session.get(Plan, payment.plan_id) if payment.plan_id else None
        if plan is None:
            return LifecycleResult(False, error=f"Plan not found for payment {payment.id}")

        def create() -> Subscription:
            expires_at = now + timedelta(days=plan.subscription_duration_days())
            subscription = Subscription(
                payment_id=payment.id,
                plan_id=plan.id,
                customer_email=payment.customer_email,
                status=(SubscriptionStatus.TRIAL if plan.has_trial() else SubscriptionStatus.ACTIVE).value,
                starts_at=now,
                expires_at=expires_at,
                last_billing_date=now,
                plan_data=plan.snapshot(),
                billing_cycle_count=1,
                failed_payment_count=0,
                plan_changes_history=[],
            )
            if plan.has_trial():
                subscription.is_trial = True
                subscription.trial_ends_at = now + timedelta(days=plan.trial_period_days)
                subscription.next_billing_date = subscription.trial_ends_at
            else:
                subscription.next_billing_date = plan.calculate_next_billing_date(now) or expires_at
            session.add(subscription)
            session.flush()

            payment.subscription_id = subscription.id
            self._issue_invoice(session, payment, subscription, "subscription", now)
            self._log_event(session, subscription, SubscriptionEventType.CREATED,
                            f"Subscription created from payment {payment.id}",
                            {"plan": plan.name, "trial": plan.has_trial()}, payment_id=payment.id, plan_id=plan.id)
            return subscription

        try:
            with session.begin_nested():
                subscription = create()
        except IntegrityError:
            # Lost the race on the unique payment_id
            existing = self._subscription_for_payment(session, payment.id)
            if existing is None:
                raise
            return LifecycleResult(True, existing, created=False)

        self.notifier.emit(
            session, NotificationEvents.SUBSCRIPTION_ACTIVATED, "subscription", subscription.id,
            transition_key="created",
            payload={"email": subscription.customer_email, "plan": plan.name,
                     "expires_at": subscription.expires_at.isoformat()},
        )
        logger.info(f"✅ SUBSCRIPTION_CREATED: {subscription.id} for payment {payment.id} ({subscription.status})")
        return LifecycleResult(True, subscription, created=True)

    def renew(self, session: Session, subscription: Subscription, payment: Payment,
              now: Optional[datetime] = None) -> LifecycleResult:
        """Extend by one plan duration from the previous expires_at"""
        now = now or utcnow()
        if subscription is None or payment is None:
            return LifecycleResult(False, subscription, error="Subscription or payment not found")
        if payment.status != PaymentStatus.COMPLETED.value:
            return LifecycleResult(False, subscription, error=f"Payment {payment.id} is not completed")
        if subscription.status not in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value):
            return LifecycleResult(False, subscription,
                                   error=f"Cannot renew a {subscription.status} subscription")
        if self._has_event(session, subscription.id, SubscriptionEventType.RENEWED, payment.id):
            return LifecycleResult(True, subscription, details={"already_renewed": True})
        plan = subscription.plan
        if plan is None:
            return LifecycleResult(False, subscription, error="Plan not found")

        def apply() -> None:
            previous_expiry = subscription.expires_at
            SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.ACTIVE)
            subscription.expires_at = previous_expiry + timedelta(days=plan.subscription_duration_days())
            subscription.next_billing_date = subscription.expires_at
            subscription.last_billing_date = now
            subscription.billing_cycle_count = (subscription.billing_cycle_count or 0) + 1
            subscription.failed_payment_count = 0
            subscription.grace_period_ends_at = None

            payment.subscription_id = subscription.id
            payment.is_renewal = True
            payment.type = PaymentType.RENEWAL.value
            self._issue_invoice(session, payment, subscription, "renewal", now)
            self._log_event(session, subscription, SubscriptionEventType.RENEWED,
                            f"Renewed until {subscription.expires_at.isoformat()}",
                            {"previous_expires_at": previous_expiry.isoformat(),
                             "billing_cycle": subscription.billing_cycle_count},
                            payment_id=payment.id)

        result = self._atomic(session, subscription, "renew", apply)
        if result.success:
            self.notifier.emit(
                session, NotificationEvents.SUBSCRIPTION_RENEWED, "subscription", subscription.id,
                transition_key=f"cycle-{subscription.billing_cycle_count}",
                payload={"email": subscription.customer_email,
                         "expires_at": subscription.expires_at.isoformat()},
            )
            logger.info(f"🔄 SUBSCRIPTION_RENEWED: {subscription.id} until {subscription.expires_at}")
        return result

    def reactivate(self, session: Session, subscription: Subscription, payment: Optional[Payment] = None,
                   now: Optional[datetime] = None) -> LifecycleResult:
        now = now or utcnow()
        plan = subscription.plan if subscription else None
        if plan is None:
            return LifecycleResult(False, subscription, error="Subscription or plan not found")

        def apply() -> None:
            SubscriptionStateValidator.validate_and_transition(
                subscription, SubscriptionStatus.ACTIVE, reactivation=True
            )
            subscription.reactivated_at = now
            subscription.expired_at = None
            subscription.expires_at = now + timedelta(days=plan.subscription_duration_days())
            subscription.next_billing_date = subscription.expires_at
            subscription.failed_payment_count = 0
            subscription.grace_period_ends_at = None
            subscription.will_cancel_at_period_end = False
            if payment is not None:
                payment.subscription_id = subscription.id
            self._log_event(session, subscription, SubscriptionEventType.REACTIVATED,
                            "Subscription reactivated", payment_id=payment.id if payment else None)

        result = self._atomic(session, subscription, "reactivate", apply)
        if result.success:
            self.notifier.emit(
                session, NotificationEvents.SUBSCRIPTION_ACTIVATED, "subscription", subscription.id,
                transition_key=f"reactivated-{now.isoformat()}",
                payload={"email": subscription.customer_email, "reactivated": True},
            )
        return result

    # ------------------------------------------------------------------
    # Payment outcomes
    # ------------------------------------------------------------------

    def record_failed_payment(self, session: Session, subscription: Subscription,
                              payment: Optional[Payment] = None, now: Optional[datetime] = None) -> LifecycleResult:
        """First failure moves the subscription to past_due with a grace window"""
        now = now or utcnow()
        state = {"grace_started": False}

        def apply() -> None:
            subscription.failed_payment_count = (subscription.failed_payment_count or 0) + 1
            if subscription.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value):
                SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.PAST_DUE)
                subscription.grace_period_ends_at = now + timedelta(days=Config.SUBSCRIPTION_GRACE_DAYS_ON_FAILURE)
                state["grace_started"] = True
                self._log_event(session, subscription, SubscriptionEventType.GRACE_PERIOD_STARTED,
                                f"Grace period until {subscription.grace_period_ends_at.isoformat()}")
            self._log_event(session, subscription, SubscriptionEventType.PAYMENT_FAILED,
                            f"Payment failed ({subscription.failed_payment_count} consecutive)",
                            payment_id=payment.id if payment else None)

        result = self._atomic(session, subscription, "record_failed_payment", apply)
        if result.success and state["grace_started"]:
            self.notifier.emit(
                session, NotificationEvents.SUBSCRIPTION_GRACE_PERIOD_STARTED, "subscription", subscription.id,
                transition_key=f"payment-failed-{subscription.billing_cycle_count}",
                payload={"email": subscription.customer_email,
                         "grace_period_ends_at": subscription.grace_period_ends_at.isoformat()},
            )
        return result

    def record_successful_payment(self, session: Session, subscription: Subscription,
                                  payment: Optional[Payment] = None, now: Optional[datetime] = None) -> LifecycleResult:
        def apply() -> None:
            if subscription.status == SubscriptionStatus.PAST_DUE.value:
                SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.ACTIVE)
                self._log_event(session, subscription, SubscriptionEventType.GRACE_PERIOD_ENDED,
                                "Payment received during grace period")
            subscription.failed_payment_count = 0
            subscription.grace_period_ends_at = None
            self._log_event(session, subscription, SubscriptionEventType.PAYMENT_SUCCEEDED,
                            "Payment succeeded", payment_id=payment.id if payment else None)

        return self._atomic(session, subscription, "record_successful_payment", apply)

    # ------------------------------------------------------------------
    # Customer operations
    # ------------------------------------------------------------------

    def cancel(self, session: Session, subscription: Subscription, immediately: bool = True,
               reason: Optional[str] = None, now: Optional[datetime] = None) -> LifecycleResult:
        now = now or utcnow()
        note = f"Customer requested: {reason}" if reason else "Customer requested"

        def apply() -> None:
            if SubscriptionStatus(subscription.status) in SubscriptionStateValidator.TERMINAL_STATES:
                raise StateTransitionError(f"Subscription {subscription.id} is already {subscription.status}")
            subscription.cancellation_reason = note
            if immediately:
                SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.CANCELLED)
                subscription.cancelled_at = now
                subscription.expires_at = now
                subscription.cancellation_type = "immediate"
                subscription.will_cancel_at_period_end = False
                self._log_event(session, subscription, SubscriptionEventType.CANCELLED, note,
                                {"immediately": True})
            else:
                subscription.will_cancel_at_period_end = True
                subscription.cancellation_type = "at_period_end"
                self._log_event(session, subscription, SubscriptionEventType.CANCELLATION_SCHEDULED, note,
                                {"effective_at": subscription.expires_at.isoformat()})

        result = self._atomic(session, subscription, "cancel", apply)
        if result.success and immediately:
            self._notify_cancelled(session, subscription, note)
        return result

    def pause(self, session: Session, subscription: Subscription, reason: Optional[str] = None,
              now: Optional[datetime] = None) -> LifecycleResult:
        now = now or utcnow()
        if subscription.status == SubscriptionStatus.PAUSED.value:
            return LifecycleResult(False, subscription, error="Subscription is already paused")

        def apply() -> None:
            SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.PAUSED)
            subscription.paused_at = now
            subscription.pause_reason = reason
            self._log_event(session, subscription, SubscriptionEventType.PAUSED, reason or "Paused")

        return self._atomic(session, subscription, "pause", apply)

    def resume(self, session: Session, subscription: Subscription,
               now: Optional[datetime] = None) -> LifecycleResult:
        """Extends expires_at (and next_billing_date) by the time spent paused"""
        now = now or utcnow()
        if subscription.status != SubscriptionStatus.PAUSED.value or subscription.paused_at is None:
            return LifecycleResult(False, subscription, error="Subscription is not paused")

        def apply() -> None:
            paused_for = max(now - subscription.paused_at, timedelta(0))
            SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.ACTIVE)
            subscription.expires_at = subscription.expires_at + paused_for
            if subscription.next_billing_date is not None:
                subscription.next_billing_date = subscription.next_billing_date + paused_for
            subscription.resumed_at = now
            subscription.paused_at = None
            subscription.pause_reason = None
            self._log_event(session, subscription, SubscriptionEventType.RESUMED,
                            f"Resumed after {paused_for.days} days",
                            {"paused_seconds": int(paused_for.total_seconds())})

        return self._atomic(session, subscription, "resume", apply)

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    def calculate_proration(self, subscription: Subscription, old_plan: Plan, new_plan: Plan,
                            now: Optional[datetime] = None) -> Decimal:
        """(new price - old price) x remaining days / old billing period"""
        now = now or utcnow()
        boundary = subscription.next_billing_date or subscription.expires_at
        days_remaining = max((boundary - now).days, 0)
        period_days = old_plan.billing_period_days() or old_plan.subscription_duration_days()
        if period_days <= 0:
            return Decimal("0.00")
        difference = Decimal(str(new_plan.price)) - Decimal(str(old_plan.price))
        amount = difference * Decimal(days_remaining) / Decimal(period_days)
        return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def upgrade_plan(self, session: Session, subscription: Subscription, new_plan: Plan,
                     prorate: bool = True, now: Optional[datetime] = None) -> LifecycleResult:
        """Immediate plan switch; a positive proration is charged as a completed 'upgrade' payment"""
        now = now or utcnow()
        old_plan = subscription.plan if subscription else None
        if old_plan is None or new_plan is None:
            return LifecycleResult(False, subscription, error="Plan not found")
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            return LifecycleResult(False, subscription, error="Only active subscriptions can be upgraded")

        state: Dict[str, Any] = {"proration": Decimal("0.00"), "payment_id": None}

        def apply() -> None:
            proration = self.calculate_proration(subscription, old_plan, new_plan, now)
            if prorate and old_plan.prorate_on_change and proration > 0:
                charge = Payment(
                    amount=proration,
                    currency=new_plan.currency,
                    status=PaymentStatus.COMPLETED.value,
                    type=PaymentType.UPGRADE.value,
                    payment_gateway=SYSTEM_GATEWAY,
                    customer_email=subscription.customer_email,
                    plan_id=new_plan.id,
                    subscription_id=subscription.id,
                    confirmed_at=now,
                    paid_at=now,
                    notes=f"Prorated upgrade from {old_plan.name} to {new_plan.name}",
                )
                session.add(charge)
                session.flush()
                state["proration"] = proration
                state["payment_id"] = charge.id
            self._switch_plan(subscription, old_plan, new_plan, "upgrade", now, state["proration"])
            self._log_event(session, subscription, SubscriptionEventType.PLAN_UPGRADED,
                            f"Upgraded from {old_plan.name} to {new_plan.name}",
                            {"proration_amount": str(state["proration"])},
                            payment_id=state["payment_id"], plan_id=new_plan.id)

        result = self._atomic(session, subscription, "upgrade_plan", apply)
        result.details.update({"proration_amount": state["proration"], "payment_id": state["payment_id"]})
        return result

    def downgrade_plan(self, session: Session, subscription: Subscription, new_plan: Plan,
                       at_period_end: bool = True, now: Optional[datetime] = None) -> LifecycleResult:
        now = now or utcnow()
        old_plan = subscription.plan if subscription else None
        if old_plan is None or new_plan is None:
            return LifecycleResult(False, subscription, error="Plan not found")
        if not subscription.is_active():
            return LifecycleResult(False, subscription, error=f"Cannot change plan of a {subscription.status} subscription")

        def apply() -> None:
            if at_period_end:
                effective_at = subscription.next_billing_date or subscription.expires_at
                subscription.scheduled_plan_id = new_plan.id
                self._append_history(subscription, {
                    "type": "downgrade",
                    "from_plan_id": old_plan.id,
                    "to_plan_id": new_plan.id,
                    "scheduled_at": now.isoformat(),
                    "effective_at": effective_at.isoformat(),
                })
                description = f"Downgrade to {new_plan.name} scheduled for {effective_at.isoformat()}"
            else:
                self._switch_plan(subscription, old_plan, new_plan, "downgrade", now, Decimal("0.00"))
                description = f"Downgraded from {old_plan.name} to {new_plan.name}"
            self._log_event(session, subscription, SubscriptionEventType.PLAN_DOWNGRADED, description,
                            {"at_period_end": at_period_end}, plan_id=new_plan.id)

        return self._atomic(session, subscription, "downgrade_plan", apply)

    def apply_scheduled_plan_changes(self, session: Session, now: Optional[datetime] = None) -> int:
        """Apply scheduled downgrades whose billing boundary has passed"""
        now = now or utcnow()
        due = session.execute(
            select(Subscription).where(
                Subscription.scheduled_plan_id.is_not(None),
                Subscription.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value]),
                func.coalesce(Subscription.next_billing_date, Subscription.expires_at) <= now,
            ).limit(Config.SUBSCRIPTION_SWEEP_BATCH_SIZE)
        ).scalars().all()

        applied = 0
        for subscription in due:
            old_plan, new_plan = subscription.plan, subscription.scheduled_plan
            if new_plan is None:
                continue

            def apply(subscription=subscription, old_plan=old_plan, new_plan=new_plan) -> None:
                self._switch_plan(subscription, old_plan, new_plan, "scheduled_downgrade", now, Decimal("0.00"))
                self._log_event(session, subscription, SubscriptionEventType.PLAN_DOWNGRADED,
                                f"Scheduled change to {new_plan.name} applied", plan_id=new_plan.id)

            if self._atomic(session, subscription, "apply_scheduled_plan_change", apply).success:
                applied += 1
        return applied

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def process_expirations(self, session: Session, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Expire sweep:
        - at-period-end cancellations past expires_at -> cancelled
        - active/trial past expires_at -> past_due (plan grace) or expired
        - past_due whose grace window ended after expiry -> expired
        """
        now = now or utcnow()
        stats = {"cancelled": 0, "grace_period": 0, "expired": 0, "errors": 0}
        batch = Config.SUBSCRIPTION_SWEEP_BATCH_SIZE
        live = [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value]

        ending = session.execute(
            select(Subscription).where(
                Subscription.status.in_(live),
                Subscription.will_cancel_at_period_end.is_(True),
                Subscription.expires_at <= now,
            ).limit(batch)
        ).scalars().all()
        for subscription in ending:
            if self._cancel_at_period_end(session, subscription, now).success:
                stats["cancelled"] += 1
            else:
                stats["errors"] += 1

        lapsed = session.execute(
            select(Subscription).where(
                Subscription.status.in_(live),
                Subscription.will_cancel_at_period_end.is_(False),
                Subscription.expires_at <= now,
            ).limit(batch)
        ).scalars().all()
        for subscription in lapsed:
            grace_days = subscription.plan.grace_period_days if subscription.plan else 0
            grace_ends = subscription.expires_at + timedelta(days=grace_days or 0)
            if grace_days and grace_ends > now:
                result = self._enter_expiry_grace(session, subscription, grace_ends)
                key = "grace_period"
            else:
                result = self._expire(session, subscription, now)
                key = "expired"
            stats[key if result.success else "errors"] += 1

        overdue = session.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.grace_period_ends_at <= now,
                Subscription.expires_at <= now,
            ).limit(batch)
        ).scalars().all()
        for subscription in overdue:
            stats["expired" if self._expire(session, subscription, now).success else "errors"] += 1

        logger.info(f"📅 SUBSCRIPTION_EXPIRY_SWEEP: {stats}", extra=stats)
        return stats

    def process_overdue_subscriptions(self, session: Session, now: Optional[datetime] = None) -> int:
        """Cancel past_due subscriptions whose payment-failure grace period ran out before expiry"""
        now = now or utcnow()
        overdue = session.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.grace_period_ends_at <= now,
                Subscription.expires_at > now,
            ).limit(Config.SUBSCRIPTION_SWEEP_BATCH_SIZE)
        ).scalars().all()

        cancelled = 0
        reason = "Payment overdue - grace period expired"
        for subscription in overdue:
            def apply(subscription=subscription) -> None:
                SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.CANCELLED)
                subscription.cancelled_at = now
                subscription.cancellation_reason = reason
                subscription.cancellation_type = "overdue"
                self._log_event(session, subscription, SubscriptionEventType.CANCELLED, reason)

            if self._atomic(session, subscription, "process_overdue", apply).success:
                self._notify_cancelled(session, subscription, reason)
                cancelled += 1
        if cancelled:
            logger.info(f"⏰ OVERDUE_SUBSCRIPTIONS_CANCELLED: {cancelled}")
        return cancelled

    def process_trial_ends(self, session: Session, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        ended = session.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.TRIAL.value,
                Subscription.is_trial.is_(True),
                Subscription.trial_ends_at <= now,
            ).limit(Config.SUBSCRIPTION_SWEEP_BATCH_SIZE)
        ).scalars().all()
        return sum(1 for subscription in ended if self.end_trial_period(session, subscription, now).success)

    def end_trial_period(self, session: Session, subscription: Subscription,
                         now: Optional[datetime] = None) -> LifecycleResult:
        now = now or utcnow()

        def apply() -> None:
            SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.ACTIVE)
            subscription.is_trial = False
            self._log_event(session, subscription, SubscriptionEventType.TRIAL_ENDED,
                            f"Trial ended at {now.isoformat()}")

        return self._atomic(session, subscription, "end_trial_period", apply)

    def find_upcoming_renewals(self, session: Session, days_ahead: Optional[int] = None,
                               now: Optional[datetime] = None) -> List[Subscription]:
        """Active subscriptions billing within days_ahead; each is notified once per billing date"""
        now = now or utcnow()
        days_ahead = Config.UPCOMING_RENEWAL_DAYS if days_ahead is None else days_ahead
        upcoming = session.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.will_cancel_at_period_end.is_(False),
                Subscription.next_billing_date > now,
                Subscription.next_billing_date <= now + timedelta(days=days_ahead),
            ).order_by(Subscription.next_billing_date)
        ).scalars().all()

        for subscription in upcoming:
            self.notifier.emit(
                session, NotificationEvents.SUBSCRIPTION_RENEWAL_UPCOMING, "subscription", subscription.id,
                transition_key=f"renewal-{subscription.next_billing_date.date().isoformat()}",
                payload={"email": subscription.customer_email,
                         "next_billing_date": subscription.next_billing_date.isoformat()},
            )
        return list(upcoming)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def calculate_mrr(self, session: Session) -> Decimal:
        """Monthly recurring revenue over active subscriptions of recurring plans"""
        rows = session.execute(
            select(Plan.price, Plan.billing_interval, Plan.billing_interval_count)
            .join(Subscription, Subscription.plan_id == Plan.id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value)
        ).all()
        factors: Dict[str, Callable[[Decimal, int], Decimal]] = {
            BillingInterval.DAILY.value: lambda price, count: price * 30 / count,
            BillingInterval.WEEKLY.value: lambda price, count: price * Decimal("4.33") / count,
            BillingInterval.MONTHLY.value: lambda price, count: price / count,
            BillingInterval.QUARTERLY.value: lambda price, count: price / (3 * count),
            BillingInterval.YEARLY.value: lambda price, count: price / (12 * count),
        }
        total = Decimal("0")
        for price, interval, count in rows:
            convert = factors.get(interval)
            if convert is not None:
                total += convert(Decimal(str(price)), count or 1)
        return total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def calculate_churn_rate(self, session: Session, days: int = 30, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        since = now - timedelta(days=days)
        cancelled = session.execute(
            select(func.count(Subscription.id)).where(Subscription.cancelled_at >= since)
        ).scalar() or 0
        created = session.execute(
            select(func.count(Subscription.id)).where(Subscription.created_at >= since)
        ).scalar() or 0
        if created == 0:
            return 0.0
        return round(cancelled / created * 100, 2)

    def get_subscription_stats(self, session: Session) -> Dict[str, Any]:
        counts = dict(session.execute(
            select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)
        ).all())
        return {
            "total": sum(counts.values()),
            "by_status": {status.value: counts.get(status.value, 0) for status in SubscriptionStatus},
            "mrr": self.calculate_mrr(session),
            "churn_rate": self.calculate_churn_rate(session),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _atomic(self, session: Session, subscription: Optional[Subscription], operation: str,
                apply: Callable[[], None]) -> LifecycleResult:
        if subscription is None:
            return LifecycleResult(False, error="Subscription not found")
        try:
            with session.begin_nested():
                apply()
                session.flush()
        except StateTransitionError as e:
            logger.warning(f"⚠️ SUBSCRIPTION_{operation.upper()}_REJECTED: {subscription.id}: {e}")
            return LifecycleResult(False, subscription, error=str(e))
        return LifecycleResult(True, subscription)

    def _cancel_at_period_end(self, session: Session, subscription: Subscription, now: datetime) -> LifecycleResult:
        def apply() -> None:
            SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.CANCELLED)
            subscription.cancelled_at = now
            subscription.will_cancel_at_period_end = False
            self._log_event(session, subscription, SubscriptionEventType.CANCELLED,
                            "Cancelled at period end")

        result = self._atomic(session, subscription, "cancel_at_period_end", apply)
        if result.success:
            self._notify_cancelled(session, subscription, subscription.cancellation_reason or "At period end")
        return result

    def _enter_expiry_grace(self, session: Session, subscription: Subscription,
                            grace_ends: datetime) -> LifecycleResult:
        def apply() -> None:
            SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.PAST_DUE)
            subscription.grace_period_ends_at = grace_ends
            self._log_event(session, subscription, SubscriptionEventType.GRACE_PERIOD_STARTED,
                            f"Expired; grace period until {grace_ends.isoformat()}")

        result = self._atomic(session, subscription, "enter_grace", apply)
        if result.success:
            self.notifier.emit(
                session, NotificationEvents.SUBSCRIPTION_GRACE_PERIOD_STARTED, "subscription", subscription.id,
                transition_key=f"expiry-{subscription.expires_at.isoformat()}",
                payload={"email": subscription.customer_email, "grace_period_ends_at": grace_ends.isoformat()},
            )
        return result

    def _expire(self, session: Session, subscription: Subscription, now: datetime) -> LifecycleResult:
        def apply() -> None:
            SubscriptionStateValidator.validate_and_transition(subscription, SubscriptionStatus.EXPIRED)
            subscription.expired_at = now
            subscription.grace_period_ends_at = None
            self._log_event(session, subscription, SubscriptionEventType.EXPIRED, "Subscription expired")

        result = self._atomic(session, subscription, "expire", apply)
        if result.success:
            self.notifier.emit(
                session, NotificationEvents.SUBSCRIPTION_EXPIRED, "subscription", subscription.id,
                transition_key=f"expired-{subscription.expires_at.isoformat()}",
                payload={"email": subscription.customer_email},
            )
        return result

    def _notify_cancelled(self, session: Session, subscription: Subscription, reason: str) -> None:
        self.notifier.emit(
            session, NotificationEvents.SUBSCRIPTION_CANCELLED, "subscription", subscription.id,
            transition_key="cancelled",
            payload={"email": subscription.customer_email, "reason": reason},
        )

    def _switch_plan(self, subscription: Subscription, old_plan: Plan, new_plan: Plan, change_type: str,
                     now: datetime, proration: Decimal) -> None:
        subscription.plan_id = new_plan.id
        subscription.plan = new_plan
        subscription.plan_data = new_plan.snapshot()
        subscription.scheduled_plan_id = None
        self._append_history(subscription, {
            "type": change_type,
            "from_plan_id": old_plan.id,
            "to_plan_id": new_plan.id,
            "changed_at": now.isoformat(),
            "proration_amount": str(proration),
        })

    @staticmethod
    def _append_history(subscription: Subscription, entry: Dict[str, Any]) -> None:
        # Reassign so the JSON column is flagged dirty
        subscription.plan_changes_history = list(subscription.plan_changes_history or []) + [entry]

    def _issue_invoice(self, session: Session, payment: Payment, subscription: Subscription,
                       invoice_type: str, now: datetime) -> Invoice:
        invoice = Invoice(
            invoice_number=invoice_number(payment, now),
            payment_id=payment.id,
            subscription_id=subscription.id,
            amount=payment.amount,
            currency=payment.currency,
            status="paid",
            type=invoice_type,
            customer_email=payment.customer_email,
            issued_at=now,
            paid_at=payment.paid_at or now,
        )
        session.add(invoice)
        return invoice

    @staticmethod
    def _log_event(session: Session, subscription: Subscription, event_type: str, description: str,
                   metadata: Optional[Dict[str, Any]] = None, payment_id: Optional[int] = None,
                   plan_id: Optional[int] = None) -> SubscriptionEvent:
        event = SubscriptionEvent(
            subscription_id=subscription.id,
            event_type=event_type,
            description=description,
            event_metadata=metadata or {},
            related_payment_id=payment_id,
            related_plan_id=plan_id,
        )
        session.add(event)
        return event

    @staticmethod
    def _subscription_for_payment(session: Session, payment_id: int) -> Optional[Subscription]:
        return session.execute(
            select(Subscription).where(Subscription.payment_id == payment_id)
        ).scalar_one_or_none()

    @staticmethod
    def _has_event(session: Session, subscription_id: int, event_type: str, payment_id: int) -> bool:
        return session.execute(
            select(func.count(SubscriptionEvent.id)).where(
                SubscriptionEvent.subscription_id == subscription_id,
                SubscriptionEvent.event_type == event_type,
                SubscriptionEvent.related_payment_id == payment_id,
            )
        ).scalar() > 0


# Global instance
subscription_lifecycle = SubscriptionLifecycle()
