"""
Payment Verification Job
Background verification of a single pending payment, plus the asyncio worker
pool that runs those jobs.

ProcessPendingPaymentJob.handle() verifies once and returns a
VerificationOutcome; only unexpected errors and transient gateway errors
raise. VerificationJobRunner applies the retry policy:

- RESCHEDULE (gateway still processing): re-queued after the backoff delay,
  without consuming a try; the 24 hour expiry ends the loop
- raised errors: retried with backoff until max_tries, then failed() runs
- unexpected errors roll back that attempt's writes but still count the attempt
- a payment id is never processed by two workers at once
"""

import asyncio
import logging
from contextlib import AbstractContextManager
from typing import Any, Callable, Dict, Optional, Set

from config import Config
from database import managed_session
from models import Payment, utcnow
from services.payment_verification_service import (
    PaymentVerificationService, VerificationOutcome, VerificationResult, payment_verification_service
)
from services.gateway_client import GatewayResponseError, GatewayTransientError

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager]


def backoff_seconds(attempts: int) -> int:
    """min(2**attempts * 60, 3600)"""
    return min((2 ** max(attempts, 0)) * 60, Config.VERIFICATION_MAX_BACKOFF_SECONDS)


class ProcessPendingPaymentJob:
    """Verify one payment in its own database transaction"""

    def __init__(self, payment_id: int, verifier: Optional[PaymentVerificationService] = None,
                 session_factory: Optional[SessionFactory] = None):
        self.payment_id = payment_id
        self.verifier = verifier or payment_verification_service
        self.session_factory = session_factory or managed_session
        self.tries = 0
        self.attempts = 0

    async def handle(self) -> VerificationResult:
        error: Optional[Exception] = None
        result: Optional[VerificationResult] = None
        rolled_back = False

        with self.session_factory() as session:
            savepoint = session.begin_nested()
            try:
                result = await self.verifier.verify(session, self.payment_id, failure_prefix="Background verification")
                savepoint.commit()
            except (GatewayTransientError, GatewayResponseError) as e:
                # Raised before any settlement: keep the attempt counter and note, the runner re-queues
                savepoint.commit()
                error = e
            except Exception as e:
                # Discard any partial settlement; the attempt itself still counts
                savepoint.rollback()
                logger.error(f"❌ VERIFY_JOB_ERROR: Payment {self.payment_id}: {e}", exc_info=True)
                error = e
                rolled_back = True

            payment = session.get(Payment, self.payment_id)
            if payment is not None:
                if rolled_back:
                    payment.attempts = (payment.attempts or 0) + 1
                self.attempts = payment.attempts or 0
                if error is not None or (result and result.outcome == VerificationOutcome.RESCHEDULE):
                    detail = str(error) if error is not None else result.message
                    payment.append_note(
                        f"Background verification attempt {self.attempts} at {utcnow().isoformat()}: {detail}"
                    )

        if error is not None:
            logger.warning(f"⏳ VERIFY_ATTEMPT_ERROR: Payment {self.payment_id} attempt {self.attempts}: {error}")
            raise error

        logger.info(f"🔎 VERIFY_JOB: Payment {self.payment_id} -> {result.outcome.value} ({result.message})")
        return result

    def failed(self, exc: BaseException) -> None:
        """Final failure hook: record the reason on the payment, never raise"""
        try:
            with self.session_factory() as session:
                payment = session.get(Payment, self.payment_id)
                if payment is None:
                    return
                payment.append_note(
                    f"Background verification failed after {payment.attempts or 0} attempts: {exc} "
                    f"({utcnow().isoformat()})"
                )
            logger.error(f"❌ VERIFY_JOB_FAILED: Payment {self.payment_id}: {exc}")
        except Exception as e:
            logger.error(f"❌ VERIFY_JOB_FAILED_HOOK_ERROR: Payment {self.payment_id}: {e}", exc_info=True)

    def __repr__(self):
        return f"<ProcessPendingPaymentJob(payment_id={self.payment_id}, tries={self.tries})>"


class VerificationJobRunner:
    """asyncio.Queue worker pool for ProcessPendingPaymentJob"""

    def __init__(self, workers: Optional[int] = None, max_tries: Optional[int] = None,
                 verifier: Optional[PaymentVerificationService] = None,
                 session_factory: Optional[SessionFactory] = None,
                 delay_factor: float = 1.0):
        self.workers = workers or Config.VERIFICATION_WORKERS
        self.max_tries = max_tries or Config.VERIFICATION_MAX_TRIES
        self.verifier = verifier
        self.session_factory = session_factory
        self.delay_factor = delay_factor

        self._queue: Optional[asyncio.Queue] = None
        self._tasks = []
        self._delayed: Set[asyncio.TimerHandle] = set()
        self._queued: Set[int] = set()
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}
        self.stats: Dict[str, int] = {
            "processed": 0, "completed": 0, "failed": 0, "expired": 0,
            "rescheduled": 0, "skipped": 0, "retried": 0, "errors": 0,
        }

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]
        logger.info(f"🚀 VERIFICATION_RUNNER_STARTED: {self.workers} workers, max_tries={self.max_tries}")

    async def stop(self) -> None:
        for handle in self._delayed:
            handle.cancel()
        self._delayed.clear()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queued.clear()
        logger.info(f"🛑 VERIFICATION_RUNNER_STOPPED: {self.stats}")

    async def drain(self) -> None:
        """Wait until every queued job has been processed (delayed re-queues excluded)"""
        if self._queue is not None:
            await self._queue.join()

    def make_job(self, payment_id: int) -> ProcessPendingPaymentJob:
        return ProcessPendingPaymentJob(payment_id, self.verifier, self.session_factory)

    def enqueue(self, payment_id: int) -> bool:
        """Queue a payment once; False when it is already queued"""
        if payment_id in self._queued:
            return False
        if self._queue is None:
            raise RuntimeError("VerificationJobRunner is not started")
        self._queued.add(payment_id)
        self._queue.put_nowait(self.make_job(payment_id))
        return True

    def _requeue_later(self, job: ProcessPendingPaymentJob, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._queued.add(job.payment_id)

        def release() -> None:
            self._delayed.discard(handle)
            if self._queue is not None:
                self._queue.put_nowait(job)

        handle = loop.call_later(delay * self.delay_factor, release)
        self._delayed.add(handle)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            except Exception as e:
                logger.error(f"❌ VERIFICATION_WORKER_{index}_ERROR: {job}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def process(self, job: ProcessPendingPaymentJob) -> Optional[VerificationResult]:
        """Run one job under its payment lock and apply the retry policy"""
        payment_id = job.payment_id
        lock = self._locks.setdefault(payment_id, asyncio.Lock())
        self._lock_users[payment_id] = self._lock_users.get(payment_id, 0) + 1
        try:
            async with lock:
                return await self._process_locked(job)
        finally:
            self._lock_users[payment_id] -= 1
            if not self._lock_users[payment_id]:
                # Nobody holds or waits on it
                del self._lock_users[payment_id]
                del self._locks[payment_id]

    async def _process_locked(self, job: ProcessPendingPaymentJob) -> Optional[VerificationResult]:
        self._queued.discard(job.payment_id)
        self.stats["processed"] += 1
        try:
            result = await job.handle()
        except Exception as e:
            # Only raised errors consume a try
            job.tries += 1
            self.stats["errors"] += 1
            if job.tries < self.max_tries:
                delay = backoff_seconds(job.attempts)
                self.stats["retried"] += 1
                logger.info(f"🔁 VERIFY_RETRY: Payment {job.payment_id} try {job.tries}/{self.max_tries} in {delay}s")
                self._requeue_later(job, delay)
            else:
                job.failed(e)
            return None

        key = {
            VerificationOutcome.COMPLETED: "completed",
            VerificationOutcome.FAILED: "failed",
            VerificationOutcome.EXPIRED: "expired",
            VerificationOutcome.RESCHEDULE: "rescheduled",
            VerificationOutcome.SKIPPED: "skipped",
        }[result.outcome]
        self.stats[key] += 1
        if result.outcome == VerificationOutcome.RESCHEDULE:
            self._requeue_later(job, backoff_seconds(job.attempts))
        return result

    def summary(self) -> Dict[str, Any]:
        return {**self.stats, "queued": len(self._queued), "delayed": len(self._delayed)}


# Shared runner used by the scheduler and the verify-pending command
verification_runner = VerificationJobRunner()
