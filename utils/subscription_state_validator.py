"""
Subscription State Transition Validator
======================================

trial -> active -> {past_due, paused, pending_cancellation} -> {active, cancelled, expired}
cancelled and expired are terminal except for an explicit reactivation.
"""

import logging
from typing import Dict, Set, Optional, Tuple
from models import SubscriptionStatus
from utils.payment_state_validator import StateTransitionError

logger = logging.getLogger(__name__)


class SubscriptionStateValidator:
    """Validates subscription status changes"""

    VALID_TRANSITIONS: Dict[SubscriptionStatus, Set[SubscriptionStatus]] = {
        SubscriptionStatus.TRIAL: {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.PENDING_CANCELLATION,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
        },
        SubscriptionStatus.ACTIVE: {
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.PENDING_CANCELLATION,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
        },
        SubscriptionStatus.PAST_DUE: {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
        },
        SubscriptionStatus.PAUSED: {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
        },
        SubscriptionStatus.PENDING_CANCELLATION: {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
        },
        SubscriptionStatus.CANCELLED: set(),
        SubscriptionStatus.EXPIRED: set(),
    }

    TERMINAL_STATES: Set[SubscriptionStatus] = {
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: SubscriptionStatus,
        to_status: SubscriptionStatus,
        subscription_id: Optional[int] = None,
        reactivation: bool = False,
    ) -> Tuple[bool, str]:
        """Return (is_valid, reason); reactivation allows expired -> active"""
        ref = f"Subscription {subscription_id}" if subscription_id else "Subscription"

        if from_status == to_status:
            return True, "No status change required"

        if reactivation and from_status == SubscriptionStatus.EXPIRED and to_status == SubscriptionStatus.ACTIVE:
            logger.info(f"♻️ REACTIVATION: {ref} expired -> active")
            return True, "Reactivation"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())
        if to_status in valid_next_states:
            return True, "Valid state transition"

        error_msg = (
            f"Invalid transition: {from_status.value} -> {to_status.value}. "
            f"Valid transitions from {from_status.value}: "
            f"{sorted(s.value for s in valid_next_states)}"
        )
        logger.error(f"❌ INVALID_TRANSITION: {ref} {error_msg}")
        return False, error_msg

    @classmethod
    def validate_and_transition(cls, subscription, new_status: SubscriptionStatus,
                                reactivation: bool = False) -> None:
        current = SubscriptionStatus(subscription.status)
        is_valid, reason = cls.validate_transition(current, new_status, subscription.id, reactivation)
        if not is_valid:
            raise StateTransitionError(reason)
        subscription.status = new_status.value
