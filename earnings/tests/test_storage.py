"""
Repository contract tests, run against both storage backends.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from earnings.models import (
    GlobalSettings,
    Referral,
    User,
    WithdrawalRequest,
    WithdrawalStatus,
    utcnow,
)
from earnings.sql_storage import SqlStorage
from earnings.storage import InMemoryStorage, StorageConflictError


@pytest.fixture(params=["memory", "sql"])
def storage(request):
    if request.param == "memory":
        return InMemoryStorage()
    return SqlStorage("sqlite://")


def new_user(external_id="1001", referral_code=None, **kwargs):
    return User(
        external_id=external_id,
        display_name=f"user-{external_id}",
        referral_code=referral_code or f"LSATS{external_id:0>6}",
        **kwargs,
    )


class TestUsers:

    def test_create_and_lookup(self, storage):
        user = storage.create_user(new_user())

        assert storage.get_user(user.id).external_id == "1001"
        assert storage.get_user_by_external_id("1001").id == user.id
        assert storage.get_user_by_referral_code(user.referral_code).id == user.id
        assert storage.get_user(uuid4()) is None
        assert storage.get_user_by_external_id("nobody") is None

    def test_duplicate_external_id(self, storage):
        storage.create_user(new_user("1", referral_code="LSATSAAAAAA"))

        with pytest.raises(StorageConflictError):
            storage.create_user(new_user("1", referral_code="LSATSBBBBBB"))

    def test_duplicate_referral_code(self, storage):
        storage.create_user(new_user("1", referral_code="LSATSAAAAAA"))

        with pytest.raises(StorageConflictError):
            storage.create_user(new_user("2", referral_code="LSATSAAAAAA"))
        assert storage.get_user_by_external_id("2") is None

    def test_referral_created_with_user(self, storage):
        referrer = storage.create_user(new_user("1"))
        referee = new_user("2", referred_by=referrer.id)

        storage.create_user(referee, Referral(referrer_id=referrer.id, referee_id=referee.id))

        referral = storage.get_referral(referrer.id, referee.id)
        assert referral is not None
        assert referral.commission == Decimal("0")
        assert [r.referee_id for r in storage.list_referrals(referrer.id)] == [referee.id]

    def test_returned_records_are_copies(self, storage):
        """A record only changes through an update call."""
        user = storage.create_user(new_user())
        user.daily_earnings = Decimal("1")

        assert storage.get_user(user.id).daily_earnings == Decimal("0")

    def test_update_round_trips_money_and_times(self, storage):
        user = storage.create_user(new_user())
        watched = utcnow()

        def change(stored):
            stored.daily_earnings = Decimal("0.0000350")
            stored.total_earnings = Decimal("12.3456789")
            stored.last_ad_watch = watched
            stored.banned = True
            return stored

        storage.update_user(user.id, change)
        saved = storage.get_user(user.id)

        assert saved.daily_earnings == Decimal("0.000035")
        assert saved.total_earnings == Decimal("12.3456789")
        assert saved.last_ad_watch == watched
        assert saved.banned is True
        assert saved.last_ad_watch.tzinfo is not None

    def test_update_bumps_version(self, storage):
        user = storage.create_user(new_user())
        assert user.version == 0

        first = storage.update_user(user.id, lambda u: u)
        second = storage.update_user(user.id, lambda u: u)

        assert (first.version, second.version) == (1, 2)
        assert storage.get_user(user.id).version == 2

    def test_update_sees_current_record(self, storage):
        user = storage.create_user(new_user())
        storage.update_user(user.id, lambda u: u.model_copy(update={"ads_watched": 1}))

        seen = []

        def change(stored):
            seen.append(stored.ads_watched)
            stored.ads_watched += 1
            return stored

        updated = storage.update_user(user.id, change)

        assert seen == [1]
        assert updated.ads_watched == 2

    def test_failed_update_changes_nothing(self, storage):
        user = storage.create_user(new_user())

        def change(stored):
            stored.total_earnings = Decimal("5")
            raise ValueError("rejected")

        with pytest.raises(ValueError):
            storage.update_user(user.id, change)
        stored = storage.get_user(user.id)
        assert stored.total_earnings == Decimal("0")
        assert stored.version == 0

    def test_update_unknown_user(self, storage):
        assert storage.update_user(uuid4(), lambda u: u) is None

    def test_list_users(self, storage):
        storage.create_user(new_user("1"))
        storage.create_user(new_user("2"))

        assert sorted(u.external_id for u in storage.list_users()) == ["1", "2"]


class TestWithdrawalRequests:

    def test_lifecycle(self, storage):
        user = storage.create_user(new_user())
        request = storage.create_withdrawal_request(
            WithdrawalRequest(user_id=user.id, amount=Decimal("1.5"), telegram_username="alice")
        )
        assert request.status == WithdrawalStatus.PENDING

        def approve(stored):
            stored.status = WithdrawalStatus.APPROVED
            stored.processed_at = utcnow()
            return stored

        saved = storage.update_withdrawal_request(request.id, approve)

        assert saved.status == WithdrawalStatus.APPROVED
        assert storage.get_withdrawal_request(request.id).processed_at is not None
        assert storage.update_withdrawal_request(uuid4(), approve) is None

    def test_list_filters_newest_first(self, storage):
        alice = storage.create_user(new_user("1"))
        bob = storage.create_user(new_user("2"))
        now = utcnow()
        older = storage.create_withdrawal_request(
            WithdrawalRequest(user_id=alice.id, amount=Decimal("1"), created_at=now - timedelta(minutes=5))
        )
        newer = storage.create_withdrawal_request(
            WithdrawalRequest(user_id=alice.id, amount=Decimal("2"), created_at=now)
        )
        other = storage.create_withdrawal_request(
            WithdrawalRequest(
                user_id=bob.id, amount=Decimal("3"), status=WithdrawalStatus.REJECTED,
                created_at=now - timedelta(minutes=1),
            )
        )

        assert [r.id for r in storage.list_withdrawal_requests(user_id=alice.id)] == [newer.id, older.id]
        assert [r.id for r in storage.list_withdrawal_requests(status=WithdrawalStatus.REJECTED)] == [other.id]
        assert len(storage.list_withdrawal_requests()) == 3


class TestReferrals:

    def test_add_commission(self, storage):
        referrer = storage.create_user(new_user("1"))
        referee = new_user("2", referred_by=referrer.id)
        storage.create_user(referee, Referral(referrer_id=referrer.id, referee_id=referee.id))

        storage.add_referral_commission(referrer.id, referee.id, Decimal("0.000035"))
        updated = storage.add_referral_commission(referrer.id, referee.id, Decimal("0.000035"))

        assert updated.commission == Decimal("0.00007")
        assert storage.get_referral(referrer.id, referee.id).commission == Decimal("0.00007")

    def test_add_commission_without_referral(self, storage):
        first = storage.create_user(new_user("1"))
        second = storage.create_user(new_user("2"))

        assert storage.add_referral_commission(first.id, second.id, Decimal("0.000035")) is None

    def test_referee_has_one_referrer(self, storage):
        first = storage.create_user(new_user("1"))
        second = storage.create_user(new_user("2"))
        referee = new_user("3", referred_by=first.id)
        storage.create_user(referee, Referral(referrer_id=first.id, referee_id=referee.id))

        with pytest.raises(StorageConflictError):
            storage.create_user(
                new_user("4"), Referral(referrer_id=second.id, referee_id=referee.id)
            )
        assert storage.get_user_by_external_id("4") is None


class TestSettings:

    def test_default_settings(self, storage):
        settings = storage.get_settings()

        assert settings.id == "main"
        assert settings.earnings_per_ad == Decimal("0.00035")
        assert settings.daily_ad_limit == 250
        assert settings.cpm_rate == Decimal("0.35")

    def test_change_applies_and_bumps_version(self, storage):
        saved = storage.change_settings(lambda s: {"daily_ad_limit": 10, "total_users": s.total_users + 1})

        assert saved.daily_ad_limit == 10
        assert saved.total_users == 1
        assert saved.version == 1
        assert storage.get_settings().daily_ad_limit == 10

        again = storage.change_settings(lambda s: {"total_users": s.total_users + 1})
        assert (again.total_users, again.version) == (2, 2)
        assert again.daily_ad_limit == 10
        assert saved.version == 1
        assert storage.get_settings().daily_ad_limit == 10

    def test_sql_initial_settings(self):
        storage = SqlStorage("sqlite://", settings=GlobalSettings(daily_ad_limit=5))

        assert storage.get_settings().daily_ad_limit == 5
