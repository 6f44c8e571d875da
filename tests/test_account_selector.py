"""
Test Merchant Account Selector
Strategy rankings, fallback walk, round-robin cursor and selection audit
"""

import random
import pytest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from models import PaymentAccount, PaymentAccountSelection, PaymentSelectionConfig, utcnow
from services.account_selector import (
    AccountSelector, FallbackReason, InvalidSelectionStrategy, NoAvailableAccount
)
from services.payment_config_manager import PaymentConfigManager


@pytest.fixture
def config_manager():
    return PaymentConfigManager()


@pytest.fixture
def selector(config_manager):
    return AccountSelector(config_manager=config_manager, rng=random.Random(7))


def _audits(session):
    return list(session.execute(select(PaymentAccountSelection).order_by(PaymentAccountSelection.id)).scalars())


class TestLeastUsed:
    """Default strategy"""

    def test_picks_account_with_fewest_transactions(self, session, selector, make_account):
        make_account("acct_busy", successful_transactions=5)
        quiet = make_account("acct_quiet", successful_transactions=2)
        make_account("acct_off", is_active=False)

        result = selector.select_account(session, "stripe", {"payment_id": None})

        assert result.account.id == quiet.id
        assert result.method == "least_used"
        assert result.reason == "Least used account - 2 successful transactions"
        assert result.was_fallback is False
        assert result.priority == 1
        assert len(result.candidates_snapshot) == 3
        assert result.account.last_used_at is not None

    def test_unused_account_is_described(self, session, selector, make_account):
        make_account("acct_used", successful_transactions=1)
        fresh = make_account("acct_fresh")

        result = selector.select_account(session, "stripe")

        assert result.account.id == fresh.id
        assert result.reason == "Unused account - never processed transactions"

    def test_writes_audit_row(self, session, selector, make_account, make_payment):
        account = make_account("acct_a")
        payment = make_payment()

        result = selector.select_account(session, "stripe", {"payment_id": payment.id})

        audit = session.get(PaymentAccountSelection, result.selection_id)
        assert audit.payment_id == payment.id
        assert audit.payment_account_id == account.id
        assert audit.succeeded is True
        assert audit.selection_criteria["config_used"] == "global"
        assert audit.account_stats["selected_account"]["account_id"] == "acct_a"

    def test_excluded_accounts_are_skipped(self, session, selector, make_account):
        first = make_account("acct_a")
        second = make_account("acct_b", successful_transactions=3)

        result = selector.select_account(session, "stripe", {"exclude_account_ids": [first.id]})

        assert result.account.id == second.id


class TestFallback:
    """Eligibility walk over the ranked candidates"""

    def test_cooling_down_account_falls_back(self, session, selector, config_manager, make_account):
        primary = make_account("acct_a", last_failed_at=utcnow() - timedelta(minutes=5))
        backup = make_account("acct_b")
        config_manager.save_config(session, "stripe", selection_strategy="manual",
                                   account_priorities={"acct_a": 1, "acct_b": 2})

        result = selector.select_account(session, "stripe")

        assert result.account.id == backup.id
        assert result.was_fallback is True
        assert result.previous_account_id == primary.id
        assert result.fallback_reasons == [{"account_id": primary.id, "reason": FallbackReason.PRIMARY_COOLING_DOWN}]
        assert result.priority == 2
        assert "fallback after primary_cooling_down" in result.reason

    def test_cooldown_elapsed_account_is_eligible(self, session, selector, config_manager, make_account):
        primary = make_account("acct_a", last_failed_at=utcnow() - timedelta(hours=2))
        make_account("acct_b")
        config_manager.save_config(session, "stripe", selection_strategy="manual",
                                   account_priorities={"acct_a": 1, "acct_b": 2})

        assert selector.select_account(session, "stripe").account.id == primary.id

    def test_manual_inactive_primary_falls_back(self, session, selector, config_manager, make_account):
        primary = make_account("acct_a", is_active=False)
        backup = make_account("acct_b")
        config_manager.save_config(session, "stripe", selection_strategy="manual",
                                   account_priorities={"acct_a": 1, "acct_b": 5})

        result = selector.select_account(session, "stripe")

        assert result.account.id == backup.id
        assert result.fallback_reasons[0] == {"account_id": primary.id, "reason": FallbackReason.PRIMARY_INACTIVE}

    def test_overloaded_account_falls_back(self, session, selector, config_manager, make_account):
        heavy = make_account("acct_heavy", successful_transactions=8)
        light = make_account("acct_light", successful_transactions=2)
        config_manager.save_config(session, "stripe", selection_strategy="manual",
                                   account_priorities={"acct_heavy": 1, "acct_light": 2},
                                   enable_load_balancing=True, max_account_load_percentage=50.0)

        result = selector.select_account(session, "stripe")

        assert result.account.id == light.id
        assert result.fallback_reasons == [{"account_id": heavy.id, "reason": FallbackReason.PRIMARY_OVERLOADED}]

    def test_fallback_disabled_stops_at_first_rejection(self, session, selector, config_manager, make_account):
        make_account("acct_a", is_active=False)
        make_account("acct_b")
        config_manager.save_config(session, "stripe", selection_strategy="manual", enable_fallback=False,
                                   account_priorities={"acct_a": 1, "acct_b": 2})

        with pytest.raises(NoAvailableAccount) as exc_info:
            selector.select_account(session, "stripe")

        assert len(exc_info.value.fallback_reasons) == 1
        audit = session.get(PaymentAccountSelection, exc_info.value.selection_id)
        assert audit.succeeded is False
        assert audit.payment_account_id is None

    @pytest.mark.parametrize("max_attempts,selects", [(1, False), (2, True)])
    def test_max_fallback_attempts_bounds_the_walk(self, session, selector, config_manager, make_account,
                                                   max_attempts, selects):
        make_account("acct_a", is_active=False)
        make_account("acct_b", is_active=False)
        third = make_account("acct_c")
        config_manager.save_config(session, "stripe", selection_strategy="manual",
                                   max_fallback_attempts=max_attempts,
                                   account_priorities={"acct_a": 1, "acct_b": 2, "acct_c": 3})

        if selects:
            assert selector.select_account(session, "stripe").account.id == third.id
        else:
            with pytest.raises(NoAvailableAccount) as exc_info:
                selector.select_account(session, "stripe")
            assert len(exc_info.value.fallback_reasons) == 2

    def test_no_accounts_raises_and_audits(self, session, selector):
        with pytest.raises(NoAvailableAccount) as exc_info:
            selector.select_account(session, "paypal")

        assert exc_info.value.fallback_reasons == []
        assert _audits(session)[-1].succeeded is False


class TestStrategies:

    def test_round_robin_rotates_through_accounts(self, session, selector, config_manager, make_account):
        accounts = [make_account(f"acct_{name}") for name in ("a", "b", "c")]
        config_manager.save_config(session, "stripe", selection_strategy="round_robin")

        picked = [selector.select_account(session, "stripe").account.id for _ in range(4)]

        assert picked == [accounts[0].id, accounts[1].id, accounts[2].id, accounts[0].id]
        assert all(audit.selection_method == "round_robin" for audit in _audits(session))

    def test_weighted_zero_weight_is_never_chosen(self, session, selector, config_manager, make_account):
        make_account("acct_zero")
        chosen = make_account("acct_one")
        config_manager.save_config(session, "stripe", selection_strategy="weighted",
                                   account_weights={"acct_zero": 0, "acct_one": 3})

        picks = {selector.select_account(session, "stripe").account.id for _ in range(10)}

        assert picks == {chosen.id}

    def test_weighted_all_zero_has_no_candidates(self, session, selector, config_manager, make_account):
        make_account("acct_a")
        config_manager.save_config(session, "stripe", selection_strategy="weighted",
                                   account_weights={"acct_a": 0})

        with pytest.raises(NoAvailableAccount):
            selector.select_account(session, "stripe")

    def test_manual_uses_configured_priority(self, session, selector, config_manager, make_account):
        make_account("acct_a")
        preferred = make_account("acct_b", successful_transactions=50)
        config_manager.save_config(session, "stripe", selection_strategy="manual",
                                   account_priorities={"acct_b": 1})

        result = selector.select_account(session, "stripe")

        assert result.account.id == preferred.id
        assert result.reason == "Manual priority selection - priority: 1"

    def test_random_picks_an_active_account(self, session, selector, config_manager, make_account):
        make_account("acct_off", is_active=False)
        active = make_account("acct_on")
        config_manager.save_config(session, "stripe", selection_strategy="random")

        assert selector.select_account(session, "stripe").account.id == active.id

    def test_unknown_strategy_fails_closed(self, session, selector, make_account):
        make_account("acct_a")
        session.add(PaymentSelectionConfig(name="stripe", selection_strategy="fastest"))
        session.flush()

        with pytest.raises(InvalidSelectionStrategy):
            selector.select_account(session, "stripe")

        audit = _audits(session)[-1]
        assert audit.succeeded is False
        assert audit.selection_method == "fastest"

    def test_gateway_without_config_uses_global(self, session, config_manager):
        config_manager.save_config(session, "global", selection_strategy="round_robin")
        assert config_manager.get_config(session, "paypal").selection_strategy == "round_robin"

    def test_save_config_rejects_unknown_strategy(self, session, config_manager):
        result = config_manager.save_config(session, "stripe", selection_strategy="fastest")
        assert result == {"success": False, "error": "Unknown selection strategy 'fastest'"}

    def test_save_config_with_unknown_field_writes_nothing(self, session, config_manager):
        result = config_manager.save_config(session, "stripe", selection_strategy="random", bogus_field=1)
        session.flush()

        assert result == {"success": False, "error": "Unknown config field(s): bogus_field"}
        rows = session.execute(
            select(PaymentSelectionConfig).where(PaymentSelectionConfig.name == "stripe")
        ).scalars().all()
        assert rows == []

    def test_failed_update_leaves_existing_row_alone(self, session, config_manager):
        config_manager.save_config(session, "stripe", selection_strategy="manual")

        config_manager.save_config(session, "stripe", selection_strategy="random", version=9)

        assert config_manager.get_config(session, "stripe").selection_strategy == "manual"


class TestTransactionOutcomes:
    """Counter mutation through the versioned update"""

    def test_success_increments_counters_and_version(self, session, selector, make_account):
        account = make_account("acct_a")

        updated = selector.record_transaction_outcome(session, account.id, True, Decimal("19.99"))

        assert updated.successful_transactions == 1
        assert Decimal(str(updated.total_amount)) == Decimal("19.99")
        assert updated.version == 2
        assert updated.last_used_at is not None

    def test_failure_starts_cooldown(self, session, selector, make_account):
        account = make_account("acct_a")

        updated = selector.record_transaction_outcome(session, account.id, False)

        assert updated.failed_transactions == 1
        assert updated.last_failed_at is not None
        assert updated.success_rate == 0.0

    def test_unknown_account_raises(self, session, selector):
        with pytest.raises(ValueError):
            selector.record_transaction_outcome(session, 424242, True)

    def test_selection_stats(self, session, selector, config_manager, make_account):
        make_account("acct_a", is_active=False)
        make_account("acct_b")
        config_manager.save_config(session, "stripe", selection_strategy="manual",
                                   account_priorities={"acct_a": 1, "acct_b": 2})
        selector.select_account(session, "stripe")
        selector.select_account(session, "stripe")

        stats = selector.get_selection_stats(session, "stripe")

        assert stats["total_selections"] == 2
        assert stats["by_method"] == {"manual": 2}
        assert stats["fallback_rate"] == 100.0
        assert stats["failed_selections"] == 0
