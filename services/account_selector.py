"""
Merchant Account Selector
Chooses which PaymentAccount of a gateway handles a new transaction.

Strategies form a closed set (SelectionStrategy); the configured value is
parsed once per decision and an unknown value fails closed. Each strategy
produces a ranked candidate list; the selector walks that list, skipping
accounts that are inactive, cooling down after a failure, or overloaded,
up to max_fallback_attempts. Every decision, including exhaustion, writes
one immutable PaymentAccountSelection row.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from config import Config
from models import (
    PaymentAccount, PaymentAccountSelection, SelectionCursor, SelectionStrategy, utcnow
)
from services.payment_config_manager import PaymentConfigManager, SelectionSettings, payment_config_manager
from utils.optimistic_locking import OptimisticLockManager, OptimisticLockingError, with_optimistic_locking

logger = logging.getLogger(__name__)


class AccountSelectionError(Exception):
    """Base class for selection failures (distinct from gateway errors)"""
    pass


class NoAvailableAccount(AccountSelectionError):
    """Every candidate account was rejected"""

    def __init__(self, gateway_name: str, fallback_reasons: List[Dict[str, Any]], selection_id: Optional[int] = None):
        self.gateway_name = gateway_name
        self.fallback_reasons = fallback_reasons
        self.selection_id = selection_id
        super().__init__(
            f"No available account for gateway '{gateway_name}' "
            f"({len(fallback_reasons)} candidates rejected)"
        )


class InvalidSelectionStrategy(AccountSelectionError):
    """Configured strategy is not one of SelectionStrategy"""
    pass


class FallbackReason:
    PRIMARY_INACTIVE = "primary_inactive"
    PRIMARY_COOLING_DOWN = "primary_cooling_down"
    PRIMARY_OVERLOADED = "primary_overloaded"


@dataclass
class AccountSelectionResult:
    account: PaymentAccount
    method: str
    reason: str
    priority: int
    was_fallback: bool
    candidates_snapshot: List[Dict[str, Any]]
    fallback_reasons: List[Dict[str, Any]] = field(default_factory=list)
    selection_id: Optional[int] = None
    previous_account_id: Optional[int] = None


class AccountSelector:
    """Strategy-driven account selection with fallback and audit"""

    def __init__(self, config_manager: Optional[PaymentConfigManager] = None,
                 rng: Optional[random.Random] = None, max_conflict_retries: Optional[int] = None):
        self.config_manager = config_manager or payment_config_manager
        self.rng = rng or random.Random()
        self.max_conflict_retries = (
            Config.ACCOUNT_COUNTER_MAX_RETRIES if max_conflict_retries is None else max_conflict_retries
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def select_account(self, session: Session, gateway_name: str,
                       context: Optional[Dict[str, Any]] = None) -> AccountSelectionResult:
        """
        Select an account for gateway_name.

        Args:
            context: optional {payment_id, exclude_account_ids, now}

        Raises:
            InvalidSelectionStrategy: configured strategy is unknown
            NoAvailableAccount: every candidate was rejected
        """
        context = context or {}
        for attempt in range(self.max_conflict_retries + 1):
            try:
                return self._select_once(session, gateway_name, context)
            except OptimisticLockingError as e:
                if attempt >= self.max_conflict_retries:
                    raise
                logger.info(f"🔄 ACCOUNT_SELECTION_RETRY: {gateway_name} attempt {attempt + 1}: {e}")
                session.expire_all()
        raise AccountSelectionError("unreachable")

    @with_optimistic_locking(max_retries=Config.ACCOUNT_COUNTER_MAX_RETRIES)
    def record_transaction_outcome(self, session: Session, account_id: int, succeeded: bool,
                                   amount=0, when: Optional[datetime] = None) -> PaymentAccount:
        """
        Single mutation path for account counters, guarded by a version check.
        """
        when = when or utcnow()
        account = session.get(PaymentAccount, account_id)
        if account is None:
            raise ValueError(f"PaymentAccount {account_id} not found")
        session.refresh(account)

        if succeeded:
            updates = {
                "successful_transactions": PaymentAccount.successful_transactions + 1,
                "total_amount": PaymentAccount.total_amount + Decimal(str(amount)),
                "last_used_at": when,
            }
        else:
            updates = {
                "failed_transactions": PaymentAccount.failed_transactions + 1,
                "last_failed_at": when,
                "last_used_at": when,
            }
        OptimisticLockManager(session).versioned_update(PaymentAccount, account.id, updates, account.version)
        session.refresh(account)
        logger.info(
            f"📊 ACCOUNT_STATS: {account.account_id} {'success' if succeeded else 'failure'} "
            f"(ok={account.successful_transactions}, failed={account.failed_transactions})"
        )
        return account

    def get_selection_stats(self, session: Session, gateway_name: Optional[str] = None,
                            days: int = 7) -> Dict[str, Any]:
        since = utcnow() - timedelta(days=days)
        base = select(PaymentAccountSelection).where(PaymentAccountSelection.created_at >= since)
        if gateway_name:
            base = base.where(PaymentAccountSelection.gateway_name == gateway_name)
        rows = list(session.execute(base).scalars())

        by_method: Dict[str, int] = {}
        by_account: Dict[int, int] = {}
        fallbacks = failures = 0
        total_time = 0.0
        for row in rows:
            by_method[row.selection_method] = by_method.get(row.selection_method, 0) + 1
            if row.payment_account_id is not None:
                by_account[row.payment_account_id] = by_account.get(row.payment_account_id, 0) + 1
            fallbacks += 1 if row.was_fallback else 0
            failures += 0 if row.succeeded else 1
            total_time += row.selection_time_ms or 0.0

        total = len(rows)
        return {
            "total_selections": total,
            "by_method": by_method,
            "by_account": by_account,
            "fallback_rate": round(fallbacks / total * 100, 2) if total else 0.0,
            "failed_selections": failures,
            "average_selection_time_ms": round(total_time / total, 3) if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _select_once(self, session: Session, gateway_name: str, context: Dict[str, Any]) -> AccountSelectionResult:
        started = time.perf_counter()
        now = context.get("now") or utcnow()
        settings = self.config_manager.get_config(session, gateway_name)

        accounts = list(session.execute(
            select(PaymentAccount)
            .where(PaymentAccount.gateway_name == gateway_name)
            .order_by(PaymentAccount.id)
            .execution_options(populate_existing=True)
        ).scalars())
        excluded = set(context.get("exclude_account_ids") or [])
        snapshot = [account.stats_snapshot() for account in accounts]
        pool = [account for account in accounts if account.id not in excluded]

        try:
            strategy = SelectionStrategy(settings.selection_strategy)
        except ValueError:
            self._write_audit(session, gateway_name, context, None, settings.selection_strategy,
                              f"Unknown selection strategy '{settings.selection_strategy}'",
                              None, [], snapshot, settings, started, succeeded=False)
            logger.error(f"❌ INVALID_STRATEGY: {gateway_name} configured with '{settings.selection_strategy}'")
            raise InvalidSelectionStrategy(
                f"Unknown selection strategy '{settings.selection_strategy}' for gateway '{gateway_name}'"
            )

        cursor = None
        if strategy == SelectionStrategy.ROUND_ROBIN:
            cursor = self._get_cursor(session, gateway_name)
            ranked = self._rank_round_robin(pool, cursor.position)
        else:
            ranked = self._rank(strategy, pool, settings)

        total_volume = sum(account.total_transactions for account in accounts)
        fallback_reasons: List[Dict[str, Any]] = []
        selected: Optional[PaymentAccount] = None
        position = 0
        for position, account in enumerate(ranked, start=1):
            rejection = self._rejection_reason(account, settings, total_volume, now)
            if rejection is None:
                selected = account
                break
            fallback_reasons.append({"account_id": account.id, "reason": rejection})
            logger.info(f"↪️ ACCOUNT_SKIPPED: {gateway_name}/{account.account_id} {rejection}")
            if not settings.enable_fallback or len(fallback_reasons) > settings.max_fallback_attempts:
                break

        if selected is None:
            audit = self._write_audit(
                session, gateway_name, context, None, strategy.value,
                f"No available account ({len(fallback_reasons)} candidates rejected)",
                None, fallback_reasons, snapshot, settings, started, succeeded=False,
            )
            logger.error(f"❌ NO_AVAILABLE_ACCOUNT: {gateway_name} reasons={fallback_reasons}")
            raise NoAvailableAccount(gateway_name, fallback_reasons, audit.id)

        method, reason = self._describe(strategy, selected, settings)
        if fallback_reasons:
            reason = f"{reason} (fallback after {', '.join(r['reason'] for r in fallback_reasons)})"

        if cursor is not None:
            stable_order = [account.id for account in sorted(pool, key=lambda a: a.id)]
            next_position = (stable_order.index(selected.id) + 1) % max(len(stable_order), 1)
            OptimisticLockManager(session).versioned_update(
                SelectionCursor, gateway_name, {"position": next_position}, cursor.version,
                id_column="gateway_name",
            )

        # Bookkeeping: mark the account as in use so concurrent least_used picks see it
        OptimisticLockManager(session).versioned_update(
            PaymentAccount, selected.id, {"last_used_at": now}, selected.version
        )
        session.refresh(selected)

        audit = self._write_audit(
            session, gateway_name, context, selected, method, reason, position,
            fallback_reasons, snapshot, settings, started, succeeded=True,
        )
        logger.info(
            f"✅ ACCOUNT_SELECTED: {gateway_name}/{selected.account_id} via {method} "
            f"(priority={position}, fallback={bool(fallback_reasons)})"
        )
        return AccountSelectionResult(
            account=selected,
            method=method,
            reason=reason,
            priority=position,
            was_fallback=bool(fallback_reasons),
            candidates_snapshot=snapshot,
            fallback_reasons=fallback_reasons,
            selection_id=audit.id,
            previous_account_id=fallback_reasons[0]["account_id"] if fallback_reasons else None,
        )

    def _rejection_reason(self, account: PaymentAccount, settings: SelectionSettings,
                          total_volume: int, now: datetime) -> Optional[str]:
        if not account.is_active:
            return FallbackReason.PRIMARY_INACTIVE
        if (settings.exclude_failed_accounts and account.last_failed_at is not None
                and settings.failed_account_cooldown_minutes > 0
                and account.last_failed_at > now - timedelta(minutes=settings.failed_account_cooldown_minutes)):
            return FallbackReason.PRIMARY_COOLING_DOWN
        if settings.enable_load_balancing and total_volume > 0:
            share = account.total_transactions / total_volume * 100
            if share > settings.max_account_load_percentage:
                return FallbackReason.PRIMARY_OVERLOADED
        return None

    # ------------------------------------------------------------------
    # Strategy rankings
    # ------------------------------------------------------------------

    def _rank(self, strategy: SelectionStrategy, pool: List[PaymentAccount],
              settings: SelectionSettings) -> List[PaymentAccount]:
        if strategy == SelectionStrategy.LEAST_USED:
            return self._active_first(sorted(pool, key=self._least_used_key))
        if strategy == SelectionStrategy.UNUSED:
            unused = [a for a in pool if a.total_transactions == 0]
            used = sorted((a for a in pool if a.total_transactions > 0), key=self._least_used_key)
            return self._active_first(sorted(unused, key=lambda a: a.id) + used)
        if strategy == SelectionStrategy.WEIGHTED:
            return self._active_first(self._rank_weighted(pool, settings))
        if strategy == SelectionStrategy.MANUAL:
            return sorted(pool, key=lambda a: (self._priority_for(a, settings), a.id))
        if strategy == SelectionStrategy.RANDOM:
            shuffled = list(pool)
            self.rng.shuffle(shuffled)
            return self._active_first(shuffled)
        raise InvalidSelectionStrategy(f"Strategy {strategy} has no ranking")

    @staticmethod
    def _active_first(accounts: List[PaymentAccount]) -> List[PaymentAccount]:
        # Stable sort keeps the strategy's order within each group
        return sorted(accounts, key=lambda a: 0 if a.is_active else 1)

    @staticmethod
    def _least_used_key(account: PaymentAccount) -> Tuple[int, int, datetime, int]:
        never_used = 0 if account.last_used_at is None else 1
        return (account.total_transactions, never_used, account.last_used_at or datetime.min, account.id)

    def _rank_round_robin(self, pool: List[PaymentAccount], position: int) -> List[PaymentAccount]:
        ordered = sorted(pool, key=lambda a: a.id)
        if not ordered:
            return []
        start = position % len(ordered)
        return ordered[start:] + ordered[:start]

    def _rank_weighted(self, pool: List[PaymentAccount], settings: SelectionSettings) -> List[PaymentAccount]:
        """Weighted draw without replacement; weight 0 removes an account from the pool"""
        remaining = [(a, self._weight_for(a, settings)) for a in pool]
        remaining = [(a, w) for a, w in remaining if w > 0]
        ranked: List[PaymentAccount] = []
        while remaining:
            total = sum(w for _, w in remaining)
            pick = self.rng.uniform(0, total)
            cumulative = 0.0
            for index, (account, weight) in enumerate(remaining):
                cumulative += weight
                if pick <= cumulative:
                    ranked.append(account)
                    remaining.pop(index)
                    break
            else:
                ranked.append(remaining.pop()[0])
        return ranked

    @staticmethod
    def _config_value(account: PaymentAccount, mapping: Dict[str, Any], default: Any) -> Any:
        for key in (account.account_id, str(account.id)):
            if key in mapping:
                return mapping[key]
        return default

    def _weight_for(self, account: PaymentAccount, settings: SelectionSettings) -> float:
        try:
            return max(float(self._config_value(account, settings.account_weights, 1)), 0.0)
        except (TypeError, ValueError):
            return 0.0

    def _priority_for(self, account: PaymentAccount, settings: SelectionSettings) -> int:
        try:
            return int(self._config_value(account, settings.account_priorities, 999))
        except (TypeError, ValueError):
            return 999

    def _describe(self, strategy: SelectionStrategy, account: PaymentAccount,
                  settings: SelectionSettings) -> Tuple[str, str]:
        if strategy in (SelectionStrategy.LEAST_USED, SelectionStrategy.UNUSED):
            if account.total_transactions == 0:
                return strategy.value, "Unused account - never processed transactions"
            method = SelectionStrategy.LEAST_USED.value
            return method, f"Least used account - {account.successful_transactions} successful transactions"
        if strategy == SelectionStrategy.ROUND_ROBIN:
            last_used = account.last_used_at.isoformat() if account.last_used_at else "never"
            return strategy.value, f"Round-robin selection - last used: {last_used}"
        if strategy == SelectionStrategy.WEIGHTED:
            return strategy.value, f"Weighted selection - weight: {self._weight_for(account, settings):g}"
        if strategy == SelectionStrategy.MANUAL:
            return strategy.value, f"Manual priority selection - priority: {self._priority_for(account, settings)}"
        return strategy.value, "Random selection"

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _get_cursor(self, session: Session, gateway_name: str) -> SelectionCursor:
        cursor = session.get(SelectionCursor, gateway_name)
        if cursor is None:
            cursor = SelectionCursor(gateway_name=gateway_name, position=0, version=1)
            session.add(cursor)
            session.flush()
        else:
            session.refresh(cursor)
        return cursor

    def _write_audit(self, session: Session, gateway_name: str, context: Dict[str, Any],
                     account: Optional[PaymentAccount], method: str, reason: str,
                     priority: Optional[int], fallback_reasons: List[Dict[str, Any]],
                     snapshot: List[Dict[str, Any]], settings: SelectionSettings,
                     started: float, succeeded: bool) -> PaymentAccountSelection:
        audit = PaymentAccountSelection(
            payment_id=context.get("payment_id"),
            payment_account_id=account.id if account else None,
            gateway_name=gateway_name,
            selection_method=method,
            selection_reason=reason,
            selection_priority=priority,
            was_fallback=bool(fallback_reasons),
            previous_account_id=fallback_reasons[0]["account_id"] if fallback_reasons else None,
            fallback_reasons=fallback_reasons,
            selection_criteria={
                "total_accounts_available": len(snapshot),
                "config_used": settings.name,
                "strategy": settings.selection_strategy,
                "settings": settings.as_dict(),
            },
            available_accounts=snapshot,
            account_stats={
                "selected_account": {**account.stats_snapshot(), "success_rate": account.success_rate}
            } if account else None,
            selection_time_ms=round((time.perf_counter() - started) * 1000, 3),
            succeeded=succeeded,
        )
        session.add(audit)
        session.flush()
        return audit


# Global instance
account_selector = AccountSelector()
