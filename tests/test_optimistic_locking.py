"""
Test Optimistic Locking
Compare-and-swap on the version column and the retry decorator
"""

import pytest
from sqlalchemy import select

from models import PaymentAccount
from utils.optimistic_locking import OptimisticLockManager, OptimisticLockingError, with_optimistic_locking


def _version(session, account_id):
    return session.execute(select(PaymentAccount.version).where(PaymentAccount.id == account_id)).scalar_one()


class TestVersionedUpdate:

    def test_update_bumps_version(self, session, make_account):
        account = make_account("acct_a")

        new_version = OptimisticLockManager(session).versioned_update(
            PaymentAccount, account.id, {"successful_transactions": PaymentAccount.successful_transactions + 1}
        )

        assert new_version == 2
        assert _version(session, account.id) == 2
        session.refresh(account)
        assert account.successful_transactions == 1

    def test_stale_version_raises(self, session, make_account):
        account = make_account("acct_a")
        manager = OptimisticLockManager(session)
        manager.versioned_update(PaymentAccount, account.id, {"failed_transactions": 1}, current_version=1)

        with pytest.raises(OptimisticLockingError):
            manager.versioned_update(PaymentAccount, account.id, {"failed_transactions": 2}, current_version=1)

        assert _version(session, account.id) == 2

    def test_missing_row_raises_value_error(self, session):
        with pytest.raises(ValueError):
            OptimisticLockManager(session).versioned_update(PaymentAccount, 999, {"failed_transactions": 1})

    def test_get_with_version(self, session, make_account):
        account = make_account("acct_a")

        assert OptimisticLockManager(session).get_with_version(PaymentAccount, account.id) == (account, 1)
        assert OptimisticLockManager(session).get_with_version(PaymentAccount, 999) is None


class TestRetryDecorator:

    def test_retries_until_success(self):
        calls = []

        @with_optimistic_locking(max_retries=3, retry_delay=0)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OptimisticLockingError("conflict")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_gives_up_after_max_retries(self):
        calls = []

        @with_optimistic_locking(max_retries=2, retry_delay=0)
        def always_conflicts():
            calls.append(1)
            raise OptimisticLockingError("conflict")

        with pytest.raises(OptimisticLockingError):
            always_conflicts()
        assert len(calls) == 3

    def test_other_errors_are_not_retried(self):
        calls = []

        @with_optimistic_locking(max_retries=3, retry_delay=0)
        def broken():
            calls.append(1)
            raise KeyError("boom")

        with pytest.raises(KeyError):
            broken()
        assert len(calls) == 1
