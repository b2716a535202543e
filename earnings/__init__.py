"""
Ad-Watch Earnings Ledger

This package provides:
- Ad-watch crediting with a per-user cooldown and a lazily reset daily cap
- Claiming of daily earnings into a withdrawable balance
- 10% referral commission on referred users' ad earnings
- Withdrawal requests with an operator approval lifecycle: pending -> approved / rejected
- Interchangeable in-memory and SQLAlchemy repositories
"""

from .admin import AdminService
from .errors import (
    ForbiddenError,
    InvalidStateError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
    RateLimitedError,
)
from .models import (
    GlobalSettings,
    Referral,
    User,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .service import LedgerService
from .storage import InMemoryStorage, Repository

__all__ = [
    "AdminService",
    "ForbiddenError",
    "InvalidStateError",
    "LedgerError",
    "LedgerValidationError",
    "NotFoundError",
    "RateLimitedError",
    "GlobalSettings",
    "Referral",
    "User",
    "WithdrawalRequest",
    "WithdrawalStatus",
    "LedgerService",
    "InMemoryStorage",
    "Repository",
]
