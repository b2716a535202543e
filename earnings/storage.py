"""
Persistence for the earnings ledger.

``Repository`` is the only surface the services depend on. Implementations
hand out copies of stored records. Changes go through ``update_*`` calls that
apply a function to the freshest stored record and write the result in one
atomic step, so two processes sharing a store cannot both act on a stale read.
"""

import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional
from uuid import UUID

from .models import (
    GlobalSettings,
    Referral,
    User,
    WithdrawalRequest,
    WithdrawalStatus,
    quantize_money,
    utcnow,
)

UserChange = Callable[[User], User]
WithdrawalChange = Callable[[WithdrawalRequest], WithdrawalRequest]
SettingsChange = Callable[[GlobalSettings], dict]


class StorageConflictError(Exception):
    """A unique constraint was violated, or a record kept changing under an update."""


class Repository(ABC):

    # Users
    @abstractmethod
    def get_user(self, user_id: UUID) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_external_id(self, external_id: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_referral_code(self, referral_code: str) -> Optional[User]: ...

    @abstractmethod
    def create_user(self, user: User, referral: Optional[Referral] = None) -> User:
        """Insert ``user`` and, in the same step, its ``referral`` record."""

    @abstractmethod
    def update_user(self, user_id: UUID, change: UserChange) -> Optional[User]:
        """Apply ``change`` to the current stored user and persist the result atomically.

        ``change`` receives a copy and may raise to abort; it can be called more
        than once when a concurrent writer gets in first. Returns None for an
        unknown id. Bumps ``version``.
        """

    @abstractmethod
    def list_users(self) -> list[User]: ...

    # Withdrawal requests
    @abstractmethod
    def create_withdrawal_request(self, request: WithdrawalRequest) -> WithdrawalRequest: ...

    @abstractmethod
    def get_withdrawal_request(self, request_id: UUID) -> Optional[WithdrawalRequest]: ...

    @abstractmethod
    def update_withdrawal_request(
        self, request_id: UUID, change: WithdrawalChange
    ) -> Optional[WithdrawalRequest]:
        """Like ``update_user``; the write only lands if the status is unchanged since the read."""

    @abstractmethod
    def list_withdrawal_requests(
        self, user_id: Optional[UUID] = None, status: Optional[WithdrawalStatus] = None
    ) -> list[WithdrawalRequest]: ...

    # Referrals
    @abstractmethod
    def get_referral(self, referrer_id: UUID, referee_id: UUID) -> Optional[Referral]: ...

    @abstractmethod
    def list_referrals(self, referrer_id: UUID) -> list[Referral]: ...

    @abstractmethod
    def add_referral_commission(self, referrer_id: UUID, referee_id: UUID, amount) -> Optional[Referral]:
        """Atomically add ``amount`` to the referral's commission. None if there is no such referral."""

    # Global settings
    @abstractmethod
    def get_settings(self) -> GlobalSettings: ...

    @abstractmethod
    def change_settings(self, change: SettingsChange) -> GlobalSettings:
        """Replace the settings record with ``change(current)`` applied and ``version + 1``."""


class InMemoryStorage(Repository):
    def __init__(self, settings: Optional[GlobalSettings] = None):
        self.users: dict[UUID, User] = {}
        self.withdrawal_requests: dict[UUID, WithdrawalRequest] = {}
        self.referrals: dict[UUID, Referral] = {}
        self.settings: GlobalSettings = settings or GlobalSettings()
        self.external_id_index: dict[str, UUID] = {}
        self.referral_code_index: dict[str, UUID] = {}
        self._lock = threading.RLock()

    def get_user(self, user_id: UUID) -> Optional[User]:
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        user_id = self.external_id_index.get(external_id)
        return self.get_user(user_id) if user_id else None

    def get_user_by_referral_code(self, referral_code: str) -> Optional[User]:
        user_id = self.referral_code_index.get(referral_code)
        return self.get_user(user_id) if user_id else None

    def create_user(self, user: User, referral: Optional[Referral] = None) -> User:
        with self._lock:
            if user.external_id in self.external_id_index:
                raise StorageConflictError(f"external id {user.external_id} already registered")
            if user.referral_code in self.referral_code_index:
                raise StorageConflictError(f"referral code {user.referral_code} already taken")
            if referral and any(r.referee_id == referral.referee_id for r in self.referrals.values()):
                raise StorageConflictError(f"user {referral.referee_id} already has a referrer")

            self.users[user.id] = user.model_copy(deep=True)
            self.external_id_index[user.external_id] = user.id
            self.referral_code_index[user.referral_code] = user.id
            if referral:
                self.referrals[referral.id] = referral.model_copy(deep=True)
        return user.model_copy(deep=True)

    def update_user(self, user_id: UUID, change: UserChange) -> Optional[User]:
        with self._lock:
            stored = self.users.get(user_id)
            if stored is None:
                return None
            updated = change(stored.model_copy(deep=True)).model_copy(
                update={"version": stored.version + 1, "updated_at": utcnow()}, deep=True
            )
            self.users[user_id] = updated
        return updated.model_copy(deep=True)

    def list_users(self) -> list[User]:
        return [u.model_copy(deep=True) for u in list(self.users.values())]

    def create_withdrawal_request(self, request: WithdrawalRequest) -> WithdrawalRequest:
        with self._lock:
            self.withdrawal_requests[request.id] = request.model_copy(deep=True)
        return request.model_copy(deep=True)

    def get_withdrawal_request(self, request_id: UUID) -> Optional[WithdrawalRequest]:
        request = self.withdrawal_requests.get(request_id)
        return request.model_copy(deep=True) if request else None

    def update_withdrawal_request(
        self, request_id: UUID, change: WithdrawalChange
    ) -> Optional[WithdrawalRequest]:
        with self._lock:
            stored = self.withdrawal_requests.get(request_id)
            if stored is None:
                return None
            updated = change(stored.model_copy(deep=True)).model_copy(deep=True)
            self.withdrawal_requests[request_id] = updated
        return updated.model_copy(deep=True)

    def list_withdrawal_requests(
        self, user_id: Optional[UUID] = None, status: Optional[WithdrawalStatus] = None
    ) -> list[WithdrawalRequest]:
        requests = [
            r for r in list(self.withdrawal_requests.values())
            if (user_id is None or r.user_id == user_id) and (status is None or r.status == status)
        ]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in requests]

    def _find_referral(self, referrer_id: UUID, referee_id: UUID) -> Optional[Referral]:
        for referral in list(self.referrals.values()):
            if referral.referrer_id == referrer_id and referral.referee_id == referee_id:
                return referral
        return None

    def get_referral(self, referrer_id: UUID, referee_id: UUID) -> Optional[Referral]:
        referral = self._find_referral(referrer_id, referee_id)
        return referral.model_copy(deep=True) if referral else None

    def list_referrals(self, referrer_id: UUID) -> list[Referral]:
        referrals = [r for r in list(self.referrals.values()) if r.referrer_id == referrer_id]
        referrals.sort(key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in referrals]

    def add_referral_commission(self, referrer_id: UUID, referee_id: UUID, amount) -> Optional[Referral]:
        with self._lock:
            referral = self._find_referral(referrer_id, referee_id)
            if referral is None:
                return None
            referral.commission = quantize_money(referral.commission + amount)
            return referral.model_copy(deep=True)

    def get_settings(self) -> GlobalSettings:
        return self.settings.model_copy(deep=True)

    def change_settings(self, change: SettingsChange) -> GlobalSettings:
        with self._lock:
            current = self.settings
            updates = {**change(current.model_copy(deep=True)), "version": current.version + 1, "updated_at": utcnow()}
            self.settings = current.model_copy(update=updates, deep=True)
            return self.settings.model_copy(deep=True)
