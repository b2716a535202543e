from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from earnings.admin import AdminService
from earnings.config import Settings
from earnings.models import CreateUserRequest
from earnings.service import LedgerService, default_global_settings
from earnings.storage import InMemoryStorage


ADMIN_ID = "6653616672"


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def config():
    return Settings(_env_file=None, ADMIN_EXTERNAL_ID=ADMIN_ID)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(config, clock):
    storage = InMemoryStorage(default_global_settings(config))
    return LedgerService(storage, config=config, clock=clock)


@pytest.fixture
def admin(ledger):
    return AdminService(ledger)


def make_user(ledger, external_id="1001", display_name="alice", referral_code=None):
    return ledger.get_or_create_user(CreateUserRequest(
        external_id=external_id, display_name=display_name, referral_code=referral_code,
    ))


def fund(ledger, user, amount):
    """Set a user's withdrawable balance directly."""
    return ledger.storage.update_user(
        user.id, lambda stored: stored.model_copy(update={"withdraw_balance": Decimal(amount)})
    )
