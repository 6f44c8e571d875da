"""
Payment Verification Service
Reconciles one pending payment against its gateway.

verify() is safe to run any number of times: terminal payments are skipped,
and the pending -> terminal move is a conditional UPDATE, so two workers that
race on the same payment settle it once. Side effects of completion (account
stats, risk profile, subscription, notification) only run for the winner.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from config import Config
from models import Payment, PaymentStatus, Subscription, utcnow
from services.account_selector import AccountSelector, account_selector
from services.fraud_detection_service import FraudDetectionService, fraud_detection_service
from services.gateway_client import GatewayStatus, GatewayStatusResult, GatewayTerminalError
from services.notification_service import NotificationEvents, NotificationService, notification_service
from services.payment_processor_manager import PaymentProcessorManager, payment_processor_manager
from services.subscription_lifecycle import SubscriptionLifecycle, subscription_lifecycle
from utils.payment_state_validator import PaymentStateValidator, StateTransitionError

logger = logging.getLogger(__name__)


class VerificationOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    RESCHEDULE = "reschedule"
    SKIPPED = "skipped"


@dataclass
class VerificationResult:
    outcome: VerificationOutcome
    payment_id: int
    message: str = ""

    @property
    def is_final(self) -> bool:
        return self.outcome != VerificationOutcome.RESCHEDULE


class PaymentVerificationService:
    """Drives a payment from pending to completed or failed"""

    def __init__(self, processors: Optional[PaymentProcessorManager] = None,
                 selector: Optional[AccountSelector] = None,
                 fraud: Optional[FraudDetectionService] = None,
                 lifecycle: Optional[SubscriptionLifecycle] = None,
                 notifier: Optional[NotificationService] = None):
        self.processors = processors or payment_processor_manager
        self.selector = selector or account_selector
        self.fraud = fraud or fraud_detection_service
        self.lifecycle = lifecycle or subscription_lifecycle
        self.notifier = notifier or notification_service

    def is_expired(self, payment: Payment, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return payment.created_at <= now - timedelta(hours=Config.PAYMENT_EXPIRY_HOURS)

    async def verify(self, session: Session, payment_id: int, now: Optional[datetime] = None,
                     failure_prefix: str = "Payment failed") -> VerificationResult:
        """
        Check a payment against its gateway once.

        Raises:
            GatewayTransientError: timeout, rate limit or 5xx; the payment stays pending
            GatewayResponseError: malformed gateway response
        """
        now = now or utcnow()
        payment = session.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            logger.warning(f"⚠️ VERIFY_SKIPPED: Payment {payment_id} not found")
            return VerificationResult(VerificationOutcome.SKIPPED, payment_id, "Payment not found")

        # Status guard
        if not payment.is_pending:
            logger.info(f"⏭️ VERIFY_SKIPPED: Payment {payment_id} already {payment.status}")
            return VerificationResult(VerificationOutcome.SKIPPED, payment_id, f"Payment is {payment.status}")

        if self.is_expired(payment, now):
            message = f"Payment expired after {Config.PAYMENT_EXPIRY_HOURS} hours"
            if self.fail_payment(session, payment, message, note=message, now=now):
                logger.warning(f"⌛ PAYMENT_EXPIRED: Payment {payment_id}")
                return VerificationResult(VerificationOutcome.EXPIRED, payment_id, message)
            return VerificationResult(VerificationOutcome.SKIPPED, payment_id, "Settled concurrently")

        payment.attempts = (payment.attempts or 0) + 1
        session.flush()

        if not payment.gateway_payment_id:
            logger.warning(f"⚠️ VERIFY_NO_REFERENCE: Payment {payment_id} has no gateway reference yet")
            return VerificationResult(VerificationOutcome.RESCHEDULE, payment_id, "No gateway reference")

        client = self.processors.client_for_payment(session, payment)
        try:
            status = await client.get_status(payment.gateway_payment_id, timeout=Config.GATEWAY_REQUEST_TIMEOUT)
        except GatewayTerminalError as e:
            message = str(e)
            settled = self.fail_payment(session, payment, message, note=f"{failure_prefix}: {message}", now=now)
            outcome = VerificationOutcome.FAILED if settled else VerificationOutcome.SKIPPED
            return VerificationResult(outcome, payment_id, message)

        if status.status == GatewayStatus.SUCCEEDED:
            if self.complete_payment(session, payment, status, now=now):
                return VerificationResult(VerificationOutcome.COMPLETED, payment_id, "Payment completed")
            return VerificationResult(VerificationOutcome.SKIPPED, payment_id, "Settled concurrently")

        if status.status == GatewayStatus.FAILED:
            message = status.message or "Declined by gateway"
            if self.fail_payment(session, payment, message, note=f"{failure_prefix}: {message}", now=now):
                self._store_gateway_status(payment, status)
                session.flush()
                return VerificationResult(VerificationOutcome.FAILED, payment_id, message)
            return VerificationResult(VerificationOutcome.SKIPPED, payment_id, "Settled concurrently")

        logger.info(f"⏳ PAYMENT_PROCESSING: Payment {payment_id} still processing at {payment.payment_gateway}")
        return VerificationResult(VerificationOutcome.RESCHEDULE, payment_id, status.message or "Processing")

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def complete_payment(self, session: Session, payment: Payment, status: Optional[GatewayStatusResult] = None,
                         now: Optional[datetime] = None) -> bool:
        """Settle as completed; False when another worker settled it first"""
        now = now or utcnow()
        if not self._claim(session, payment, PaymentStatus.COMPLETED, confirmed_at=now, paid_at=now):
            return False

        if status is not None:
            self._store_gateway_status(payment, status)
        payment.append_note(f"Payment verified and completed at {now.isoformat()}")

        if payment.payment_account_id:
            self.selector.record_transaction_outcome(session, payment.payment_account_id, True, payment.amount, now)
        self.fraud.record_payment_outcome(session, payment.customer_email, payment.amount, True, now)
        self._drive_subscription(session, payment, now)
        session.flush()

        self.notifier.emit(
            session, NotificationEvents.PAYMENT_COMPLETED, "payment", payment.id,
            transition_key=payment.settlement_key("completed"),
            payload={"email": payment.customer_email, "amount": str(payment.amount), "currency": payment.currency},
        )
        logger.info(f"✅ PAYMENT_VERIFIED: Payment {payment.id} completed ({payment.amount} {payment.currency})")
        return True

    def fail_payment(self, session: Session, payment: Payment, reason: str, note: Optional[str] = None,
                     now: Optional[datetime] = None) -> bool:
        """Settle as failed; False when another worker settled it first"""
        now = now or utcnow()
        if not self._claim(session, payment, PaymentStatus.FAILED):
            return False

        payment.failure_reason = reason
        payment.append_note(note or f"Payment failed: {reason}")
        if payment.payment_account_id:
            self.selector.record_transaction_outcome(session, payment.payment_account_id, False, payment.amount, now)
        self.fraud.record_payment_outcome(session, payment.customer_email, payment.amount, False, now)

        if payment.subscription_id:
            subscription = session.get(Subscription, payment.subscription_id)
            if subscription is not None:
                self.lifecycle.record_failed_payment(session, subscription, payment, now)
        session.flush()

        self.notifier.emit(
            session, NotificationEvents.PAYMENT_FAILED, "payment", payment.id,
            transition_key=payment.settlement_key("failed"),
            payload={"email": payment.customer_email, "reason": reason},
        )
        logger.warning(f"❌ PAYMENT_FAILED: Payment {payment.id}: {reason}")
        return True

    def _claim(self, session: Session, payment: Payment, new_status: PaymentStatus, **values) -> bool:
        """Conditional pending -> new_status update; only one caller wins"""
        is_valid, reason = PaymentStateValidator.validate_transition(PaymentStatus.PENDING, new_status, payment.id)
        if not is_valid:
            raise StateTransitionError(reason)
        result = session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=new_status.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        session.refresh(payment)
        if result.rowcount == 0:
            logger.info(f"🔒 PAYMENT_ALREADY_SETTLED: Payment {payment.id} is {payment.status}")
            return False
        return True

    def _drive_subscription(self, session: Session, payment: Payment, now: datetime) -> None:
        if payment.subscription_id and payment.is_renewal:
            subscription = session.get(Subscription, payment.subscription_id)
            result = self.lifecycle.renew(session, subscription, payment, now)
        elif payment.plan_id:
            result = self.lifecycle.create_from_payment(session, payment, now)
        else:
            return
        if not result.success:
            # Payment stays completed; the subscription can be repaired from the payment later
            logger.error(f"❌ SUBSCRIPTION_SYNC_FAILED: Payment {payment.id}: {result.error}")
            payment.append_note(f"Subscription update failed: {result.error}")

    @staticmethod
    def _store_gateway_status(payment: Payment, status: GatewayStatusResult) -> None:
        response = dict(payment.gateway_response or {})
        response["last_status"] = {"status": status.status.value, "message": status.message}
        payment.gateway_response = response


# Global instance
payment_verification_service = PaymentVerificationService()
