"""
Subscription Maintenance Jobs
Scheduled sweeps over subscriptions: expiry, trial ends, overdue grace
periods, scheduled plan changes and upcoming renewal notices.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from config import Config
from database import managed_session
from models import utcnow
from services.subscription_lifecycle import SubscriptionLifecycle, subscription_lifecycle

logger = logging.getLogger(__name__)


class SubscriptionMaintenance:
    """Each process_* call runs in its own transaction and returns stats"""

    def __init__(self, lifecycle: Optional[SubscriptionLifecycle] = None, session_factory=None):
        self.lifecycle = lifecycle or subscription_lifecycle
        self.session_factory = session_factory or managed_session
        self.upcoming_days = Config.UPCOMING_RENEWAL_DAYS

    def process_expirations(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        start_time = utcnow()
        with self.session_factory() as session:
            stats = self.lifecycle.process_expirations(session, now)
        stats["processing_time_seconds"] = (utcnow() - start_time).total_seconds()
        return stats

    def process_lifecycle_transitions(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Trial ends, overdue cancellations and scheduled plan changes"""
        with self.session_factory() as session:
            stats = {
                "trials_ended": self.lifecycle.process_trial_ends(session, now),
                "overdue_cancelled": self.lifecycle.process_overdue_subscriptions(session, now),
                "plan_changes_applied": self.lifecycle.apply_scheduled_plan_changes(session, now),
            }
        if any(stats.values()):
            logger.info(f"📅 SUBSCRIPTION_TRANSITIONS: {stats}", extra=stats)
        else:
            logger.debug("📅 SUBSCRIPTION_TRANSITIONS_IDLE")
        return stats

    def notify_upcoming_renewals(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        with self.session_factory() as session:
            upcoming = self.lifecycle.find_upcoming_renewals(session, self.upcoming_days, now)
            stats = {"upcoming": len(upcoming), "days_ahead": self.upcoming_days}
        logger.info(f"🔔 UPCOMING_RENEWALS: {stats['upcoming']} within {self.upcoming_days} days", extra=stats)
        return stats


subscription_maintenance = SubscriptionMaintenance()


async def run_subscription_expiry() -> Dict[str, Any]:
    try:
        return subscription_maintenance.process_expirations()
    except Exception as e:
        logger.error(f"❌ SUBSCRIPTION_EXPIRY_ERROR: {e}", exc_info=True)
        return {"error": str(e)}


async def run_subscription_transitions() -> Dict[str, Any]:
    try:
        return subscription_maintenance.process_lifecycle_transitions()
    except Exception as e:
        logger.error(f"❌ SUBSCRIPTION_TRANSITIONS_ERROR: {e}", exc_info=True)
        return {"error": str(e)}


async def run_upcoming_renewal_notices() -> Dict[str, Any]:
    try:
        return subscription_maintenance.notify_upcoming_renewals()
    except Exception as e:
        logger.error(f"❌ UPCOMING_RENEWALS_ERROR: {e}", exc_info=True)
        return {"error": str(e)}
