"""
Verify Pending Payments
Sweep that queues background verification for pending payments.

Command line:
    verify-pending --min-age=5 --max-age=1440 --limit=100

Selects pending payments whose age (minutes) is within [min-age, max-age],
newest first, skips payments with a recent background attempt and queues one
ProcessPendingPaymentJob per remaining payment. Always exits 0; individual
job outcomes are reported in the logs.
"""

import argparse
import asyncio
import logging
import re
import sys
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from models import Payment, PaymentStatus, utcnow
from jobs.payment_verification_job import VerificationJobRunner, verification_runner

logger = logging.getLogger(__name__)

_NOTE_TIMESTAMP = re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?")


def find_payments_to_verify(session: Session, min_age: int, max_age: int, limit: int,
                            now: Optional[datetime] = None) -> List[Payment]:
    now = now or utcnow()
    stmt = (
        select(Payment)
        .where(
            Payment.status == PaymentStatus.PENDING.value,
            Payment.created_at <= now - timedelta(minutes=min_age),
            Payment.created_at >= now - timedelta(minutes=max_age),
        )
        .order_by(Payment.created_at.desc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def has_recent_background_attempt(payment: Payment, now: Optional[datetime] = None) -> bool:
    """
    A payment was attempted recently when a background verification note is
    stamped inside the window, or when it was touched inside the window more
    than a minute after creation.
    """
    now = now or utcnow()
    window_start = now - timedelta(minutes=Config.RECENT_ATTEMPT_WINDOW_MINUTES)

    for line in (payment.notes or "").split("\n"):
        if "background verification" not in line.casefold():
            continue
        match = _NOTE_TIMESTAMP.search(line)
        if match is None:
            continue
        try:
            stamped = datetime.fromisoformat(match.group(0).replace(" ", "T"))
        except ValueError:
            continue
        if stamped >= window_start:
            return True

    if payment.updated_at is None or payment.created_at is None:
        return False
    return payment.updated_at > window_start and payment.updated_at - payment.created_at > timedelta(minutes=1)


async def run_verify_pending(min_age: Optional[int] = None, max_age: Optional[int] = None,
                             limit: Optional[int] = None, runner: Optional[VerificationJobRunner] = None,
                             session_factory=None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Queue verification jobs for eligible pending payments"""
    min_age = Config.VERIFY_PENDING_MIN_AGE if min_age is None else min_age
    max_age = Config.VERIFY_PENDING_MAX_AGE if max_age is None else max_age
    limit = Config.VERIFY_PENDING_LIMIT if limit is None else limit
    runner = runner or verification_runner
    session_factory = session_factory or managed_session
    now = now or utcnow()

    if not runner.running:
        await runner.start()

    queued = skipped = 0
    with session_factory() as session:
        payments = find_payments_to_verify(session, min_age, max_age, limit, now)
        for payment in payments:
            if has_recent_background_attempt(payment, now):
                logger.info(f"⏭️ VERIFY_PENDING_SKIP: Payment {payment.id} has a recent background attempt")
                skipped += 1
                continue
            if runner.enqueue(payment.id):
                logger.info(f"📥 VERIFY_PENDING_QUEUED: Payment {payment.id} (gateway: {payment.payment_gateway})")
                queued += 1
            else:
                skipped += 1

    stats = {
        "found": len(payments),
        "queued": queued,
        "skipped": skipped,
        "min_age_minutes": min_age,
        "max_age_minutes": max_age,
        "limit": limit,
    }
    logger.info(f"🔎 VERIFY_PENDING_BATCH: queued={queued} skipped={skipped}", extra=stats)
    return stats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="verify-pending",
        description="Queue background verification for pending payments",
    )
    parser.add_argument("--min-age", type=int, default=Config.VERIFY_PENDING_MIN_AGE,
                        help="Minimum payment age in minutes (default: %(default)s)")
    parser.add_argument("--max-age", type=int, default=Config.VERIFY_PENDING_MAX_AGE,
                        help="Maximum payment age in minutes (default: %(default)s)")
    parser.add_argument("--limit", type=int, default=Config.VERIFY_PENDING_LIMIT,
                        help="Maximum number of payments to queue (default: %(default)s)")
    return parser


async def _run_once(args: argparse.Namespace) -> Dict[str, Any]:
    runner = VerificationJobRunner()
    try:
        stats = await run_verify_pending(args.min_age, args.max_age, args.limit, runner=runner)
        await runner.drain()
        return {**stats, "jobs": runner.summary()}
    finally:
        await runner.stop()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        stats = asyncio.run(_run_once(args))
        logger.info(f"✅ VERIFY_PENDING_COMPLETE: {stats}")
    except Exception as e:
        # Job outcomes never change the exit status
        logger.error(f"❌ VERIFY_PENDING_ERROR: {e}", exc_info=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
