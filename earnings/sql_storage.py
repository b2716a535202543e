"""
Relational implementation of the ledger repository (SQLAlchemy 2.0).

Each repository call runs in its own transaction. ``create_user`` inserts the
user and its referral record in one transaction. Updates are optimistic: the
row is read, the change applied in Python, and the write is an
``UPDATE ... WHERE version = :seen`` (``status`` for withdrawal requests) that
is retried from a fresh read when another writer got in first. This holds
across processes sharing the database, not only across threads.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid,
    create_engine, select, update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import (
    GlobalSettings,
    Referral,
    User,
    WithdrawalRequest,
    WithdrawalStatus,
    utcnow,
)
from .storage import (
    Repository,
    SettingsChange,
    StorageConflictError,
    UserChange,
    WithdrawalChange,
)

logger = logging.getLogger(__name__)

Money = Numeric(18, 7)
MAX_UPDATE_ATTEMPTS = 10
M = TypeVar("M", bound=BaseModel)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String(255))
    referral_code: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    referred_by: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("users.id"), nullable=True)
    withdraw_balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    daily_earnings: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total_earnings: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    ads_watched: Mapped[int] = mapped_column(Integer, default=0)
    daily_ads_watched: Mapped[int] = mapped_column(Integer, default=0)
    last_ad_watch: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    level: Mapped[int] = mapped_column(Integer, default=1)
    banned: Mapped[bool] = mapped_column(Boolean, default=False)
    flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    flag_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class WithdrawalRequestRow(Base):
    __tablename__ = "withdrawal_requests"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Money)
    status: Mapped[str] = mapped_column(String(16), default=WithdrawalStatus.PENDING.value, index=True)
    method: Mapped[str] = mapped_column(String(16))
    telegram_username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ReferralRow(Base):
    __tablename__ = "referrals"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    referrer_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), index=True)
    referee_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), unique=True)
    commission: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class GlobalSettingsRow(Base):
    __tablename__ = "global_settings"

    id: Mapped[str] = mapped_column(String(16), primary_key=True, default="main")
    earnings_per_ad: Mapped[Decimal] = mapped_column(Numeric(18, 5))
    daily_ad_limit: Mapped[int] = mapped_column(Integer)
    cpm_rate: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    total_users: Mapped[int] = mapped_column(Integer, default=0)
    total_ads_watched: Mapped[int] = mapped_column(Integer, default=0)
    total_earnings: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total_withdrawals: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    active_users_24h: Mapped[int] = mapped_column(Integer, default=0)
    version: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything in the ledger is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_model(model: type[M], row: Base) -> M:
    data = {}
    for name in model.model_fields:
        if hasattr(row, name):
            value = getattr(row, name)
            data[name] = _aware(value) if isinstance(value, datetime) else value
    return model.model_validate(data)


def _fields(model: BaseModel) -> dict:
    data = model.model_dump()
    for key, value in data.items():
        if isinstance(value, Enum):
            data[key] = value.value
    return data


class SqlStorage(Repository):
    def __init__(
        self,
        url: Optional[str] = None,
        engine: Optional[Engine] = None,
        settings: Optional[GlobalSettings] = None,
        echo: bool = False,
    ):
        if engine is None:
            url = url or "sqlite://"
            kwargs = {"echo": echo}
            if url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
                if url in ("sqlite://", "sqlite:///:memory:"):
                    kwargs["poolclass"] = StaticPool
            engine = create_engine(url, **kwargs)
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)
        Base.metadata.create_all(engine)
        try:
            with self.Session.begin() as session:
                if session.get(GlobalSettingsRow, "main") is None:
                    logger.info("Initialising global settings record")
                    session.add(GlobalSettingsRow(**{**_fields(settings or GlobalSettings()), "updated_at": utcnow()}))
        except IntegrityError:
            logger.info("Global settings record created by another instance")

    def _conditional_update(self, row_type: type[Base], conditions: list, values: dict) -> bool:
        with self.Session.begin() as session:
            result = session.execute(
                update(row_type).where(*conditions).values(**values),
                execution_options={"synchronize_session": False},
            )
            return result.rowcount == 1

    # Users

    def get_user(self, user_id: UUID) -> Optional[User]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return _to_model(User, row) if row else None

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        with self.Session() as session:
            row = session.scalar(select(UserRow).where(UserRow.external_id == external_id))
            return _to_model(User, row) if row else None

    def get_user_by_referral_code(self, referral_code: str) -> Optional[User]:
        with self.Session() as session:
            row = session.scalar(select(UserRow).where(UserRow.referral_code == referral_code))
            return _to_model(User, row) if row else None

    def create_user(self, user: User, referral: Optional[Referral] = None) -> User:
        try:
            with self.Session.begin() as session:
                session.add(UserRow(**_fields(user)))
                session.flush()
                if referral:
                    session.add(ReferralRow(**_fields(referral)))
        except IntegrityError as e:
            raise StorageConflictError(str(e.orig)) from e
        return self.get_user(user.id)

    def update_user(self, user_id: UUID, change: UserChange) -> Optional[User]:
        for _ in range(MAX_UPDATE_ATTEMPTS):
            current = self.get_user(user_id)
            if current is None:
                return None
            updated = change(current.model_copy(deep=True)).model_copy(
                update={"id": user_id, "version": current.version + 1, "updated_at": utcnow()}
            )
            values = _fields(updated)
            del values["id"]
            if self._conditional_update(
                UserRow, [UserRow.id == user_id, UserRow.version == current.version], values
            ):
                return updated
            logger.info(f"User {user_id} changed since read (version {current.version}); retrying")
        raise StorageConflictError(f"User {user_id} kept changing; gave up after {MAX_UPDATE_ATTEMPTS} attempts")

    def list_users(self) -> list[User]:
        with self.Session() as session:
            return [_to_model(User, row) for row in session.scalars(select(UserRow))]

    # Withdrawal requests

    def create_withdrawal_request(self, request: WithdrawalRequest) -> WithdrawalRequest:
        with self.Session.begin() as session:
            session.add(WithdrawalRequestRow(**_fields(request)))
        return self.get_withdrawal_request(request.id)

    def get_withdrawal_request(self, request_id: UUID) -> Optional[WithdrawalRequest]:
        with self.Session() as session:
            row = session.get(WithdrawalRequestRow, request_id)
            return _to_model(WithdrawalRequest, row) if row else None

    def update_withdrawal_request(
        self, request_id: UUID, change: WithdrawalChange
    ) -> Optional[WithdrawalRequest]:
        for _ in range(MAX_UPDATE_ATTEMPTS):
            current = self.get_withdrawal_request(request_id)
            if current is None:
                return None
            updated = change(current.model_copy(deep=True)).model_copy(update={"id": request_id})
            values = _fields(updated)
            del values["id"]
            seen = [WithdrawalRequestRow.id == request_id, WithdrawalRequestRow.status == current.status.value]
            if self._conditional_update(WithdrawalRequestRow, seen, values):
                return updated
            logger.info(f"Withdrawal request {request_id} changed since read; retrying")
        raise StorageConflictError(f"Withdrawal request {request_id} kept changing")

    def list_withdrawal_requests(
        self, user_id: Optional[UUID] = None, status: Optional[WithdrawalStatus] = None
    ) -> list[WithdrawalRequest]:
        query = select(WithdrawalRequestRow).order_by(WithdrawalRequestRow.created_at.desc())
        if user_id is not None:
            query = query.where(WithdrawalRequestRow.user_id == user_id)
        if status is not None:
            query = query.where(WithdrawalRequestRow.status == WithdrawalStatus(status).value)
        with self.Session() as session:
            return [_to_model(WithdrawalRequest, row) for row in session.scalars(query)]

    # Referrals

    def get_referral(self, referrer_id: UUID, referee_id: UUID) -> Optional[Referral]:
        query = select(ReferralRow).where(
            ReferralRow.referrer_id == referrer_id, ReferralRow.referee_id == referee_id
        )
        with self.Session() as session:
            row = session.scalar(query)
            return _to_model(Referral, row) if row else None

    def list_referrals(self, referrer_id: UUID) -> list[Referral]:
        query = select(ReferralRow).where(ReferralRow.referrer_id == referrer_id).order_by(ReferralRow.created_at)
        with self.Session() as session:
            return [_to_model(Referral, row) for row in session.scalars(query)]

    def add_referral_commission(self, referrer_id: UUID, referee_id: UUID, amount) -> Optional[Referral]:
        added = self._conditional_update(
            ReferralRow,
            [ReferralRow.referrer_id == referrer_id, ReferralRow.referee_id == referee_id],
            {"commission": ReferralRow.commission + amount},
        )
        return self.get_referral(referrer_id, referee_id) if added else None

    # Global settings

    def get_settings(self) -> GlobalSettings:
        with self.Session() as session:
            return _to_model(GlobalSettings, session.get(GlobalSettingsRow, "main"))

    def change_settings(self, change: SettingsChange) -> GlobalSettings:
        for _ in range(MAX_UPDATE_ATTEMPTS):
            current = self.get_settings()
            updated = current.model_copy(update={
                **change(current.model_copy(deep=True)),
                "id": current.id,
                "version": current.version + 1,
                "updated_at": utcnow(),
            })
            values = _fields(updated)
            del values["id"]
            seen = [GlobalSettingsRow.id == current.id, GlobalSettingsRow.version == current.version]
            if self._conditional_update(GlobalSettingsRow, seen, values):
                return updated
            logger.info(f"Global settings changed since read (version {current.version}); retrying")
        raise StorageConflictError("Global settings kept changing")
