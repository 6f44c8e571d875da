"""
Payment State Transition Validator
==================================

Keeps payment status monotonic: pending may only move forward to a terminal
outcome (or stay pending across retries), completed payments may only be
disputed or refunded.
"""

import logging
from typing import Dict, Set, Optional, Tuple
from models import PaymentStatus

logger = logging.getLogger(__name__)


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted"""
    pass


class PaymentStateValidator:
    """Validates payment status changes"""

    VALID_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
        },
        PaymentStatus.COMPLETED: {
            PaymentStatus.DISPUTED,
            PaymentStatus.REFUNDED,
        },
        # FAILED may be re-opened only by an explicit gateway reassignment
        PaymentStatus.FAILED: set(),
        PaymentStatus.DISPUTED: {
            PaymentStatus.COMPLETED,
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.REFUNDED: set(),
    }

    TERMINAL_STATES: Set[PaymentStatus] = {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.REFUNDED,
    }

    # Statuses from which reassign_payment may reset a payment to pending
    REASSIGNABLE_STATES: Set[PaymentStatus] = {
        PaymentStatus.PENDING,
        PaymentStatus.FAILED,
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        payment_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """Return (is_valid, reason)"""
        payment_ref = f"Payment {payment_id}" if payment_id else "Payment"

        if from_status == to_status:
            return True, "No status change required"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())
        if to_status in valid_next_states:
            logger.debug(f"✅ VALID_TRANSITION: {payment_ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        error_msg = (
            f"Invalid transition: {from_status.value} -> {to_status.value}. "
            f"Valid transitions from {from_status.value}: "
            f"{sorted(s.value for s in valid_next_states)}"
        )
        logger.error(f"❌ INVALID_TRANSITION: {payment_ref} {error_msg}")
        return False, error_msg

    @classmethod
    def validate_and_transition(cls, payment, new_status: PaymentStatus) -> None:
        """Apply new_status to the payment or raise StateTransitionError"""
        current = PaymentStatus(payment.status)
        is_valid, reason = cls.validate_transition(current, new_status, payment.id)
        if not is_valid:
            raise StateTransitionError(reason)
        payment.status = new_status.value

    @classmethod
    def reopen_for_reassignment(cls, payment) -> None:
        """Reset a pending or failed payment to pending for a new gateway/account"""
        current = PaymentStatus(payment.status)
        if current not in cls.REASSIGNABLE_STATES:
            raise StateTransitionError(
                f"Payment {payment.id} cannot be reassigned from {current.value}; "
                f"allowed from {sorted(s.value for s in cls.REASSIGNABLE_STATES)}"
            )
        if current != PaymentStatus.PENDING:
            logger.info(f"♻️ PAYMENT_REOPENED: Payment {payment.id} {current.value} -> pending")
        payment.status = PaymentStatus.PENDING.value
