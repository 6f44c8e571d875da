"""
Consolidated Background Job Scheduler

Core jobs:
1. Verify Pending - queue background verification for pending payments (every 5 minutes)
2. Subscription Expiry - expire / grace / period-end cancellations (every 15 minutes)
3. Subscription Transitions - trial ends, overdue grace periods, scheduled plan changes (hourly)
4. Renewal Notices - upcoming renewal notifications (daily cron)
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from config import Config
from jobs.payment_verification_job import VerificationJobRunner, verification_runner
from jobs.verify_pending_payments import run_verify_pending
from jobs.subscription_maintenance import (
    run_subscription_expiry, run_subscription_transitions, run_upcoming_renewal_notices
)

logger = logging.getLogger(__name__)


class ConsolidatedScheduler:
    """
    Scheduling strategy (jobs are staggered to avoid contention):
    - Verify Pending: every VERIFY_PENDING_INTERVAL_MINUTES at :05s
    - Subscription Expiry: every 15 minutes at :25s
    - Subscription Transitions: hourly at :45s
    - Renewal Notices: daily at 09:00 UTC
    """

    def __init__(self, runner: Optional[VerificationJobRunner] = None):
        self.runner = runner or verification_runner

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120  # 2-minute grace for missed jobs
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    async def run_verify_pending_job(self) -> Dict[str, Any]:
        try:
            return await run_verify_pending(runner=self.runner)
        except Exception as e:
            logger.error(f"❌ VERIFY_PENDING_JOB_ERROR: {e}", exc_info=True)
            return {"error": str(e)}

    def setup_jobs(self):
        """Register the core jobs"""
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        # ===== CORE JOB 1: VERIFY PENDING PAYMENTS =====
        interval = Config.VERIFY_PENDING_INTERVAL_MINUTES
        self.scheduler.add_job(
            self.run_verify_pending_job,
            trigger=IntervalTrigger(minutes=interval, start_date=datetime.now().replace(second=5, microsecond=0)),
            id="core_verify_pending",
            name="🔎 Verify Pending Payments",
            replace_existing=True
        )
        logger.info(f"✅ Verify Pending scheduled every {interval} minutes")

        # ===== CORE JOB 2: SUBSCRIPTION EXPIRY =====
        self.scheduler.add_job(
            run_subscription_expiry,
            trigger=IntervalTrigger(minutes=15, start_date=datetime.now().replace(second=25, microsecond=0)),
            id="core_subscription_expiry",
            name="📅 Subscription Expiry Sweep",
            replace_existing=True
        )
        logger.info("✅ Subscription Expiry scheduled every 15 minutes")

        # ===== CORE JOB 3: SUBSCRIPTION TRANSITIONS =====
        self.scheduler.add_job(
            run_subscription_transitions,
            trigger=IntervalTrigger(hours=1, start_date=datetime.now().replace(second=45, microsecond=0)),
            id="core_subscription_transitions",
            name="🔁 Trial Ends, Overdue & Plan Changes",
            replace_existing=True
        )
        logger.info("✅ Subscription Transitions scheduled hourly")

        # ===== CORE JOB 4: RENEWAL NOTICES =====
        self.scheduler.add_job(
            run_upcoming_renewal_notices,
            trigger=CronTrigger(hour=9, minute=0),
            id="core_renewal_notices",
            name="🔔 Upcoming Renewal Notices",
            replace_existing=True
        )
        logger.info("✅ Renewal Notices scheduled daily at 09:00 UTC")

        jobs = self.scheduler.get_jobs()
        logger.info(f"🎯 SCHEDULER READY: {len(jobs)} jobs registered")

    async def start(self):
        """Start the verification workers and the scheduler (inside a running event loop)"""
        await self.runner.start()
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ SCHEDULER STARTED")

    async def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.runner.stop()
        logger.info("🛑 SCHEDULER STOPPED")
