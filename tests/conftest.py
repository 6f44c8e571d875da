"""
Shared fixtures for the payment reconciliation test suite.

Every test gets a fresh in-memory SQLite database with the full schema, the
global caches reset, and a FakeGatewayClient standing in for the real
gateways. No test talks to the network.
"""

import os

# Must be set before config/database are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from database import build_engine
from models import (
    Base, Payment, PaymentAccount, PaymentStatus, Plan, Subscription, SubscriptionStatus, utcnow
)
from services.gateway_client import (
    GatewayClient, GatewayStatus, GatewayStatusResult, PaymentRequest, RefundResult
)
from services.notification_service import notification_service
from services.payment_config_manager import payment_config_manager
from services.payment_processor_manager import payment_processor_manager
from services.settings_store import settings_store


class FakeGatewayClient(GatewayClient):
    """In-memory gateway: statuses are scripted per reference"""

    def __init__(self, name: str = "fake"):
        self.name = name
        self.statuses: Dict[str, Any] = {}
        self.submitted: List[Tuple[str, PaymentRequest]] = []
        self.status_calls: List[str] = []
        self.submit_error: Optional[Exception] = None
        self._counter = 0

    async def submit_payment(self, request, timeout=None):
        if self.submit_error is not None:
            raise self.submit_error
        self._counter += 1
        reference = f"{self.name}_ref_{self._counter}"
        self.submitted.append((reference, request))
        return reference

    async def get_status(self, reference, timeout=None):
        self.status_calls.append(reference)
        outcome = self.statuses.get(reference, GatewayStatus.PROCESSING)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, GatewayStatusResult):
            return outcome
        return GatewayStatusResult(status=outcome, reference=reference, message=outcome.value)

    async def refund(self, reference, amount, timeout=None):
        return RefundResult(success=True, reference=reference, amount=Decimal(str(amount)))


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def session_factory(session):
    """Stand-in for managed_session() that shares the test session"""
    @contextmanager
    def factory():
        yield session
        session.flush()
    return factory


@pytest.fixture(autouse=True)
def reset_global_state():
    payment_config_manager.invalidate()
    settings_store.invalidate()
    notification_service.clear_sinks()
    payment_processor_manager.reset()
    yield
    payment_config_manager.invalidate()
    settings_store.invalidate()
    notification_service.clear_sinks()
    payment_processor_manager.reset()


@pytest.fixture
def stripe_client():
    client = FakeGatewayClient("stripe")
    payment_processor_manager.register_client("stripe", client)
    return client


@pytest.fixture
def paypal_client():
    client = FakeGatewayClient("paypal")
    payment_processor_manager.register_client("paypal", client)
    return client


@pytest.fixture
def notifications():
    """Events dispatched to sinks during the test"""
    received: List[Tuple[str, Dict[str, Any]]] = []
    notification_service.register_sink(lambda name, message: received.append((name, message)))
    return received


@pytest.fixture
def make_plan(session):
    def factory(**overrides) -> Plan:
        values = {
            "name": "Pro Monthly",
            "price": Decimal("30.00"),
            "currency": "USD",
            "duration_days": 30,
            "billing_interval": "monthly",
            "billing_interval_count": 1,
            "trial_period_days": 0,
            "grace_period_days": 0,
            "setup_fee": Decimal("0"),
            "prorate_on_change": True,
            "is_active": True,
        }
        values.update(overrides)
        plan = Plan(**values)
        session.add(plan)
        session.flush()
        return plan
    return factory


@pytest.fixture
def make_account(session):
    def factory(account_id: str, gateway_name: str = "stripe", **overrides) -> PaymentAccount:
        values = {
            "account_id": account_id,
            "gateway_name": gateway_name,
            "name": f"Account {account_id}",
            "credentials": {},
            "is_active": True,
            "successful_transactions": 0,
            "failed_transactions": 0,
            "total_amount": Decimal("0"),
            "version": 1,
        }
        values.update(overrides)
        account = PaymentAccount(**values)
        session.add(account)
        session.flush()
        return account
    return factory


@pytest.fixture
def make_payment(session):
    def factory(age_minutes: float = 10, **overrides) -> Payment:
        created_at = overrides.pop("created_at", None) or utcnow() - timedelta(minutes=age_minutes)
        values = {
            "amount": Decimal("25.00"),
            "currency": "USD",
            "status": PaymentStatus.PENDING.value,
            "payment_gateway": "stripe",
            "customer_email": "customer@shop.example",
            "attempts": 0,
            "created_at": created_at,
            "updated_at": created_at,
        }
        values.update(overrides)
        payment = Payment(**values)
        session.add(payment)
        session.flush()
        return payment
    return factory


@pytest.fixture
def make_subscription(session, make_plan, make_payment):
    def factory(plan: Optional[Plan] = None, now=None, **overrides) -> Subscription:
        now = now or utcnow()
        plan = plan or make_plan()
        payment = make_payment(
            status=PaymentStatus.COMPLETED.value, plan_id=plan.id,
            confirmed_at=now, paid_at=now, amount=plan.price,
        )
        values = {
            "payment_id": payment.id,
            "plan_id": plan.id,
            "customer_email": payment.customer_email,
            "status": SubscriptionStatus.ACTIVE.value,
            "starts_at": now,
            "expires_at": now + timedelta(days=plan.subscription_duration_days()),
            "next_billing_date": now + timedelta(days=plan.subscription_duration_days()),
            "last_billing_date": now,
            "plan_data": plan.snapshot(),
            "billing_cycle_count": 1,
            "failed_payment_count": 0,
            "plan_changes_history": [],
        }
        values.update(overrides)
        subscription = Subscription(**values)
        session.add(subscription)
        session.flush()
        payment.subscription_id = subscription.id
        session.flush()
        return subscription
    return factory
