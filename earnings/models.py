from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict


MONEY_QUANTUM = Decimal("0.0000001")
RATE_QUANTUM = Decimal("0.00001")
CPM_QUANTUM = Decimal("0.01")
ZERO = Decimal("0")


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_rate(value: Decimal) -> Decimal:
    return Decimal(value).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalMethod(str, Enum):
    TELEGRAM = "telegram"
    WALLET = "wallet"


class UserFilter(str, Enum):
    ALL = "all"
    BANNED = "banned"
    FLAGGED = "flagged"
    PENDING_CLAIMS = "pending-claims"


# Entities

class User(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    external_id: str
    display_name: str
    referral_code: str
    referred_by: Optional[UUID] = None
    withdraw_balance: Decimal = ZERO
    daily_earnings: Decimal = ZERO
    total_earnings: Decimal = ZERO
    ads_watched: int = 0
    daily_ads_watched: int = 0
    last_ad_watch: Optional[datetime] = None
    level: int = 1
    banned: bool = False
    flagged: bool = False
    flag_reason: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class WithdrawalRequest(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    amount: Decimal
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    method: WithdrawalMethod = WithdrawalMethod.TELEGRAM
    telegram_username: Optional[str] = None
    wallet_address: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    admin_notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_process(self) -> bool:
        return self.status == WithdrawalStatus.PENDING


class Referral(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    referrer_id: UUID
    referee_id: UUID
    commission: Decimal = ZERO
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class GlobalSettings(BaseModel):
    """Singleton economic parameters plus aggregate counters.

    Always replaced as a whole record; ``version`` increases with every write.
    """
    id: str = "main"
    earnings_per_ad: Decimal = Decimal("0.00035")
    daily_ad_limit: int = 250
    cpm_rate: Decimal = Decimal("0.35")
    total_users: int = 0
    total_ads_watched: int = 0
    total_earnings: Decimal = ZERO
    total_withdrawals: Decimal = ZERO
    active_users_24h: int = 0
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


# Request payloads

class CreateUserRequest(BaseModel):
    external_id: str = Field(..., min_length=1, description="Messaging-platform identity")
    display_name: str = Field(..., min_length=1)
    referral_code: Optional[str] = Field(default=None, description="Referral code of the inviting user")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "external_id": "123456789",
            "display_name": "alice",
            "referral_code": "LSATSAB12CD",
        }
    })


class UserActionRequest(BaseModel):
    user_id: UUID


class AdCallbackRequest(BaseModel):
    """Ad-network completion event. Any reward the network reports is ignored;
    the credit is always the current ``earnings_per_ad``."""
    user_id: UUID
    status: str


class CreateWithdrawalRequest(BaseModel):
    user_id: UUID
    amount: Decimal
    method: WithdrawalMethod = WithdrawalMethod.TELEGRAM
    telegram_username: Optional[str] = None
    wallet_address: Optional[str] = None


class AdminRequest(BaseModel):
    admin_id: Optional[str] = Field(default=None, description="External identity of the caller")


class BanUserRequest(AdminRequest):
    user_id: UUID
    banned: bool
    reason: Optional[str] = None


class FlagUserRequest(AdminRequest):
    user_id: UUID
    flagged: bool
    reason: Optional[str] = None


class ClaimDecisionRequest(AdminRequest):
    user_id: UUID
    reason: Optional[str] = None


class ProcessWithdrawalRequest(AdminRequest):
    request_id: UUID
    status: WithdrawalStatus
    admin_notes: Optional[str] = None


class UpdateSettingsRequest(AdminRequest):
    earnings_per_ad: Optional[Decimal] = None
    daily_ad_limit: Optional[int] = None


# Results

class WatchAdResult(BaseModel):
    success: bool = True
    earnings: Decimal
    user: User


class ClaimResult(BaseModel):
    success: bool = True
    claimed: Decimal
    user: User


class UserResult(BaseModel):
    success: bool = True
    user: User


class WithdrawalResult(BaseModel):
    success: bool = True
    request: WithdrawalRequest


class UserPreview(BaseModel):
    display_name: str
    external_id: Optional[str] = None
    total_earnings: Optional[Decimal] = None
    ads_watched: Optional[int] = None


class ReferralSummary(Referral):
    referee: Optional[UserPreview] = None


class PendingWithdrawal(WithdrawalRequest):
    user: Optional[UserPreview] = None


class StatsResponse(GlobalSettings):
    pending_withdrawals: int = 0
    total_pending_amount: Decimal = ZERO


class SettingsResult(BaseModel):
    success: bool = True
    stats: GlobalSettings


class PriceQuote(BaseModel):
    price: Decimal
    change_24h: Decimal = ZERO
