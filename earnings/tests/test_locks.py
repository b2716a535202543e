"""
Tests for the keyed lock registry
"""

import threading
from uuid import uuid4

import pytest

from earnings.errors import NotFoundError
from earnings.locks import LockManager

from conftest import make_user


class TestLockRegistry:

    def test_released_key_is_dropped(self):
        locks = LockManager()

        with locks.user("a"):
            with locks.withdrawal("a"):
                assert len(locks) == 2

        assert len(locks) == 0

    def test_key_kept_while_waited_on(self):
        """A waiter keeps the entry alive, so both sides use the same lock."""
        locks = LockManager()
        entered = threading.Event()
        order = []

        def waiter():
            entered.set()
            with locks.user("a"):
                order.append("waiter")

        with locks.user("a"):
            thread = threading.Thread(target=waiter)
            thread.start()
            entered.wait()
            order.append("holder")
        thread.join(timeout=5)

        assert order == ["holder", "waiter"]
        assert len(locks) == 0

    def test_released_on_error(self):
        locks = LockManager()

        with pytest.raises(RuntimeError):
            with locks.user("a"):
                raise RuntimeError("boom")

        assert len(locks) == 0
        with locks.user("a"):
            pass

    def test_unknown_users_leave_no_entries(self, ledger):
        for _ in range(1000):
            with pytest.raises(NotFoundError):
                ledger.claim_earnings(uuid4())
            with pytest.raises(NotFoundError):
                ledger.record_ad_watch(uuid4())

        assert len(ledger.locks) == 0

    def test_registry_empty_after_activity(self, ledger):
        users = [make_user(ledger, external_id=str(i)) for i in range(50)]
        for user in users:
            ledger.record_ad_watch(user.id)
            ledger.claim_earnings(user.id)

        assert len(ledger.locks) == 0
