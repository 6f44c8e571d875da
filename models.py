"""
Payment Reconciliation Platform - Database Schema
=================================================

Schema for the payment pipeline:
- Payments reconciled against third-party gateways
- Merchant accounts per gateway with selection audit trail
- Fraud rules, black/white lists, risk profiles and alerts
- Plans, subscriptions and their lifecycle events
- Notification log guaranteeing at-most-once event delivery
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text, Float, JSON,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite test databases)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns below"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class PaymentStatus(Enum):
    """Payment lifecycle states"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class PaymentType(Enum):
    """Why a payment was created"""
    PAYMENT = "payment"
    RENEWAL = "renewal"
    UPGRADE = "upgrade"


class FraudAction(Enum):
    """Decision produced by fraud screening"""
    ALLOW = "allow"
    FLAG = "flag"
    BLOCK = "block"
    REVIEW = "review"
    MONITOR = "monitor"


class ListEntryType(Enum):
    """Attribute a blacklist/whitelist entry matches on"""
    EMAIL = "email"
    IP = "ip"
    DEVICE = "device"
    COUNTRY = "country"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BLOCKED = "blocked"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class SelectionStrategy(Enum):
    """Merchant account selection strategies"""
    LEAST_USED = "least_used"
    ROUND_ROBIN = "round_robin"
    WEIGHTED = "weighted"
    MANUAL = "manual"
    RANDOM = "random"
    UNUSED = "unused"


class SubscriptionStatus(Enum):
    """Subscription lifecycle states"""
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    PENDING_CANCELLATION = "pending_cancellation"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingInterval(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


BILLING_INTERVAL_DAYS = {
    BillingInterval.DAILY.value: 1,
    BillingInterval.WEEKLY.value: 7,
    BillingInterval.MONTHLY.value: 30,
    BillingInterval.QUARTERLY.value: 90,
    BillingInterval.YEARLY.value: 365,
}


# ============================================================================
# PLANS
# ============================================================================

class Plan(Base):
    """Purchasable plan; subscriptions snapshot it at creation time"""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="USD")
    duration_days = Column(Integer, nullable=False, default=30)

    # Recurring billing (NULL interval = one-off plan)
    billing_interval = Column(String(20), nullable=True)
    billing_interval_count = Column(Integer, nullable=False, default=1)
    trial_period_days = Column(Integer, nullable=False, default=0)
    grace_period_days = Column(Integer, nullable=False, default=0)
    setup_fee = Column(Numeric(12, 2), nullable=False, default=0)
    prorate_on_change = Column(Boolean, nullable=False, default=True)
    features = Column(JSONType, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def is_recurring(self) -> bool:
        return self.billing_interval is not None

    def has_trial(self) -> bool:
        return (self.trial_period_days or 0) > 0

    def get_first_payment_amount(self) -> Decimal:
        return Decimal(str(self.price)) + Decimal(str(self.setup_fee or 0))

    def billing_period_days(self) -> int:
        """Billing period length in days; months are approximated as 30 days"""
        if not self.billing_interval:
            return 0
        return BILLING_INTERVAL_DAYS.get(self.billing_interval, 0) * (self.billing_interval_count or 1)

    def subscription_duration_days(self) -> int:
        return self.duration_days or self.billing_period_days() or 30

    def calculate_next_billing_date(self, start: datetime) -> Optional[datetime]:
        if not self.is_recurring():
            return None
        return start + timedelta(days=self.billing_period_days())

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "price": str(self.price),
            "currency": self.currency,
            "duration_days": self.duration_days,
            "billing_interval": self.billing_interval,
            "billing_interval_count": self.billing_interval_count,
            "features": self.features,
        }

    def __repr__(self):
        return f"<Plan(id={self.id}, name={self.name}, price={self.price} {self.currency})>"


# ============================================================================
# MERCHANT ACCOUNTS AND SELECTION
# ============================================================================

class PaymentAccount(Base):
    """
    Merchant credential set under a gateway.
    Counters are mutated only through AccountSelector.record_transaction_outcome,
    which performs a version-checked update.
    """
    __tablename__ = "payment_accounts"

    id = Column(Integer, primary_key=True)
    account_id = Column(String(100), nullable=False, unique=True)
    gateway_name = Column(String(50), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    credentials = Column(JSONType, nullable=True)
    settings = Column(JSONType, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    is_sandbox = Column(Boolean, nullable=False, default=False)

    successful_transactions = Column(Integer, nullable=False, default=0)
    failed_transactions = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=True)
    last_failed_at = Column(DateTime, nullable=True)

    # Optimistic locking
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_accounts_gateway_active", "gateway_name", "is_active"),
    )

    @property
    def total_transactions(self) -> int:
        return (self.successful_transactions or 0) + (self.failed_transactions or 0)

    @property
    def success_rate(self) -> float:
        total = self.total_transactions
        if total == 0:
            return 0.0
        return round((self.successful_transactions or 0) / total * 100, 2)

    def stats_snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "name": self.name,
            "is_active": bool(self.is_active),
            "successful_transactions": self.successful_transactions or 0,
            "failed_transactions": self.failed_transactions or 0,
            "total_amount": str(self.total_amount or 0),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "last_failed_at": self.last_failed_at.isoformat() if self.last_failed_at else None,
        }

    def __repr__(self):
        return f"<PaymentAccount(id={self.id}, gateway={self.gateway_name}, account_id={self.account_id})>"


class PaymentSelectionConfig(Base):
    """Per-gateway (name = gateway) or global (name = 'global') selection settings"""
    __tablename__ = "payment_selection_configs"

    id = Column(Integer, primary_key=True)
    name = Column(String(50), nullable=False, unique=True)
    selection_strategy = Column(String(30), nullable=False, default=SelectionStrategy.LEAST_USED.value)
    strategy_config = Column(JSONType, nullable=True)

    enable_fallback = Column(Boolean, nullable=False, default=True)
    max_fallback_attempts = Column(Integer, nullable=False, default=3)
    account_weights = Column(JSONType, nullable=True)  # {account_id: weight}
    account_priorities = Column(JSONType, nullable=True)  # {account_id: priority}

    exclude_failed_accounts = Column(Boolean, nullable=False, default=True)
    failed_account_cooldown_minutes = Column(Integer, nullable=False, default=30)
    enable_load_balancing = Column(Boolean, nullable=False, default=False)
    max_account_load_percentage = Column(Float, nullable=False, default=100.0)

    is_active = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<PaymentSelectionConfig(name={self.name}, strategy={self.selection_strategy})>"


class SelectionCursor(Base):
    """Shared round-robin position per gateway, advanced by compare-and-swap"""
    __tablename__ = "selection_cursors"

    gateway_name = Column(String(50), primary_key=True)
    position = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PaymentAccountSelection(Base):
    """Immutable audit row, one per selection decision (success or exhaustion)"""
    __tablename__ = "payment_account_selections"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)
    payment_account_id = Column(Integer, ForeignKey("payment_accounts.id"), nullable=True)
    gateway_name = Column(String(50), nullable=False)

    selection_method = Column(String(30), nullable=False)
    selection_reason = Column(Text, nullable=False)
    selection_priority = Column(Integer, nullable=True)
    was_fallback = Column(Boolean, nullable=False, default=False)
    previous_account_id = Column(Integer, nullable=True)
    fallback_reasons = Column(JSONType, nullable=True)

    selection_criteria = Column(JSONType, nullable=True)
    available_accounts = Column(JSONType, nullable=True)  # snapshot of all candidates
    account_stats = Column(JSONType, nullable=True)
    selection_time_ms = Column(Float, nullable=True)
    succeeded = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    account = relationship("PaymentAccount")

    __table_args__ = (
        Index("ix_account_selections_gateway_created", "gateway_name", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentAccountSelection(id={self.id}, payment_id={self.payment_id}, "
            f"account={self.payment_account_id}, method={self.selection_method})>"
        )


# ============================================================================
# PAYMENTS
# ============================================================================

class Payment(Base):
    """
    Payment initiated against a gateway.
    confirmed_at is set if and only if status == completed.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    type = Column(String(20), nullable=False, default=PaymentType.PAYMENT.value)

    # Gateway routing
    payment_gateway = Column(String(50), nullable=False)
    gateway_payment_id = Column(String(255), nullable=True, index=True)
    payment_account_id = Column(Integer, ForeignKey("payment_accounts.id"), nullable=True)
    gateway_response = Column(JSONType, nullable=True)

    # Customer
    customer_email = Column(String(255), nullable=False, index=True)
    customer_name = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)
    country_code = Column(String(2), nullable=True)
    device_fingerprint = Column(String(255), nullable=True)

    # Subscription linkage (no FK: subscriptions reference payments, not the reverse)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    subscription_id = Column(Integer, nullable=True, index=True)
    is_renewal = Column(Boolean, nullable=False, default=False)

    # Fraud screening outcome
    fraud_score = Column(Integer, nullable=True)
    fraud_action = Column(String(20), nullable=True)

    # Reconciliation bookkeeping
    attempts = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    account = relationship("PaymentAccount")
    plan = relationship("Plan")

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
        Index("ix_payments_email_created", "customer_email", "created_at"),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value

    @property
    def is_terminal(self) -> bool:
        return self.status in (PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value)

    def append_note(self, line: str) -> None:
        self.notes = f"{self.notes}\n{line}" if self.notes else line

    def last_note(self) -> Optional[str]:
        if not self.notes:
            return None
        return self.notes.strip().split("\n")[-1]

    def settlement_key(self, status: str) -> str:
        """Notification transition key; each reassignment starts a new settlement cycle"""
        reassignments = (self.gateway_response or {}).get("reassignments") or []
        return f"{status}-{len(reassignments)}"

    def __repr__(self):
        return f"<Payment(id={self.id}, gateway={self.payment_gateway}, status={self.status}, amount={self.amount} {self.currency})>"


# ============================================================================
# FRAUD
# ============================================================================

class FraudRule(Base):
    """Configurable rule: all conditions must match for the rule to fire"""
    __tablename__ = "fraud_rules"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    rule_type = Column(String(30), nullable=False, default="custom")
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=50)  # 1-100, higher fires first

    conditions = Column(JSONType, nullable=False)  # [{field, operator, value}, ...]
    action = Column(String(20), nullable=False, default=FraudAction.FLAG.value)
    risk_score_impact = Column(Integer, nullable=False, default=0)  # -50..100

    times_triggered = Column(Integer, nullable=False, default=0)
    false_positives = Column(Integer, nullable=False, default=0)
    accuracy_rate = Column(Float, nullable=False, default=0.0)
    last_triggered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_fraud_rules_active_priority", "is_active", "priority"),
    )

    def calculate_accuracy_rate(self) -> float:
        if not self.times_triggered:
            return 0.0
        return (self.times_triggered - (self.false_positives or 0)) / self.times_triggered * 100

    def mark_false_positive(self) -> None:
        self.false_positives = (self.false_positives or 0) + 1
        self.accuracy_rate = self.calculate_accuracy_rate()

    def __repr__(self):
        return f"<FraudRule(id={self.id}, name={self.name}, priority={self.priority}, action={self.action})>"


class _ListEntryColumns:
    id = Column(Integer, primary_key=True)
    type = Column(String(20), nullable=False)
    value = Column(String(255), nullable=False)
    reason = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    added_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())


class Blacklist(_ListEntryColumns, Base):
    """Entries that force a block decision"""
    __tablename__ = "blacklist"

    __table_args__ = (
        Index("ix_blacklist_type_value", "type", "value"),
    )

    def __repr__(self):
        return f"<Blacklist(type={self.type}, value={self.value}, active={self.is_active})>"


class Whitelist(_ListEntryColumns, Base):
    """Entries that short-circuit screening to allow"""
    __tablename__ = "whitelist"

    __table_args__ = (
        Index("ix_whitelist_type_value", "type", "value"),
    )

    def __repr__(self):
        return f"<Whitelist(type={self.type}, value={self.value}, active={self.is_active})>"


class RiskProfile(Base):
    """Per-customer payment history used by rules and pattern checks"""
    __tablename__ = "risk_profiles"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    ip_address = Column(String(64), nullable=True)
    country_code = Column(String(2), nullable=True)
    risk_score = Column(Integer, nullable=False, default=0)
    risk_level = Column(String(20), nullable=False, default=RiskLevel.LOW.value)

    successful_payments = Column(Integer, nullable=False, default=0)
    failed_payments = Column(Integer, nullable=False, default=0)
    chargebacks = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)
    payment_patterns = Column(JSONType, nullable=True)  # {average_amount, typical_hours}
    device_fingerprints = Column(JSONType, nullable=True)

    is_blocked = Column(Boolean, nullable=False, default=False)
    blocked_until = Column(DateTime, nullable=True)
    blocked_reason = Column(Text, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def as_context(self) -> Dict[str, Any]:
        return {
            "successful_payments": self.successful_payments or 0,
            "failed_payments": self.failed_payments or 0,
            "chargebacks": self.chargebacks or 0,
            "total_amount": float(self.total_amount or 0),
            "risk_score": self.risk_score or 0,
            "is_blocked": bool(self.is_blocked),
        }

    def __repr__(self):
        return f"<RiskProfile(email={self.email}, score={self.risk_score}, level={self.risk_level})>"


class FraudAlert(Base):
    """Alert raised for blacklist hits and high scores"""
    __tablename__ = "fraud_alerts"

    id = Column(Integer, primary_key=True)
    alert_id = Column(String(20), nullable=False, unique=True)
    alert_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)
    email = Column(String(255), nullable=True, index=True)
    ip_address = Column(String(64), nullable=True)
    risk_score = Column(Integer, nullable=True)
    triggered_rules = Column(JSONType, nullable=True)

    status = Column(String(20), nullable=False, default=AlertStatus.OPEN.value)
    resolution = Column(Text, nullable=True)
    alert_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_fraud_alerts_severity_status", "severity", "status"),
    )

    def __repr__(self):
        return f"<FraudAlert(alert_id={self.alert_id}, severity={self.severity}, status={self.status})>"


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

class Subscription(Base):
    """Created only from a completed payment; never deleted (soft states only)"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True)
    # UNIQUE payment_id: at most one subscription per payment
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, unique=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    customer_email = Column(String(255), nullable=False, index=True)
    status = Column(String(30), nullable=False, index=True)

    starts_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    next_billing_date = Column(DateTime, nullable=True)
    last_billing_date = Column(DateTime, nullable=True)
    plan_data = Column(JSONType, nullable=True)
    billing_cycle_count = Column(Integer, nullable=False, default=1)
    failed_payment_count = Column(Integer, nullable=False, default=0)

    # Trial
    is_trial = Column(Boolean, nullable=False, default=False)
    trial_ends_at = Column(DateTime, nullable=True)

    # Cancellation
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancellation_type = Column(String(20), nullable=True)
    will_cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # Grace period / pause
    grace_period_ends_at = Column(DateTime, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    pause_reason = Column(Text, nullable=True)
    resumed_at = Column(DateTime, nullable=True)

    # Plan changes
    plan_changes_history = Column(JSONType, nullable=True)
    scheduled_plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)

    reactivated_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    plan = relationship("Plan", foreign_keys=[plan_id])
    scheduled_plan = relationship("Plan", foreign_keys=[scheduled_plan_id])
    payment = relationship("Payment", foreign_keys=[payment_id])
    events = relationship("SubscriptionEvent", back_populates="subscription",
                          order_by="SubscriptionEvent.id")

    __table_args__ = (
        Index("ix_subscriptions_status_expires", "status", "expires_at"),
    )

    def is_active(self) -> bool:
        return self.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value)

    def is_on_trial(self, now: Optional[datetime] = None) -> bool:
        return bool(self.is_trial) and self.trial_ends_at is not None and self.trial_ends_at > (now or utcnow())

    def is_in_grace_period(self, now: Optional[datetime] = None) -> bool:
        return self.grace_period_ends_at is not None and self.grace_period_ends_at > (now or utcnow())

    def __repr__(self):
        return f"<Subscription(id={self.id}, payment_id={self.payment_id}, status={self.status}, expires_at={self.expires_at})>"


class SubscriptionEvent(Base):
    """Lifecycle event log for a subscription"""
    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    event_metadata = Column("metadata", JSONType, nullable=True)
    related_payment_id = Column(Integer, nullable=True)
    related_plan_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="events")

    def __repr__(self):
        return f"<SubscriptionEvent(subscription_id={self.subscription_id}, type={self.event_type})>"


class Invoice(Base):
    """Invoice issued for a completed subscription payment"""
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True)
    invoice_number = Column(String(30), nullable=False, unique=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default="paid")
    type = Column(String(20), nullable=False, default="subscription")
    customer_email = Column(String(255), nullable=False)
    issued_at = Column(DateTime, default=utcnow, nullable=False)
    paid_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Invoice(number={self.invoice_number}, amount={self.amount} {self.currency})>"


# ============================================================================
# NOTIFICATIONS AND SETTINGS
# ============================================================================

class NotificationEvent(Base):
    """Delivery log; the unique key makes each event fire at most once per transition"""
    __tablename__ = "notification_events"

    id = Column(Integer, primary_key=True)
    event_name = Column(String(60), nullable=False)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(Integer, nullable=False)
    transition_key = Column(String(100), nullable=False, default="")
    payload = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_name", "entity_type", "entity_id", "transition_key",
                         name="uq_notification_event_once"),
    )

    def __repr__(self):
        return f"<NotificationEvent(event={self.event_name}, {self.entity_type}={self.entity_id})>"


class SystemConfig(Base):
    """System configuration settings"""
    __tablename__ = "system_config"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    value_type = Column(String(20), default="string", nullable=False)  # string, int, float, bool, json
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
