import logging
import secrets
import string
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from .config import Settings, get_settings
from .errors import (
    ForbiddenError,
    InvalidStateError,
    LedgerValidationError,
    NotFoundError,
    RateLimitedError,
)
from .locks import LockManager
from .models import (
    CPM_QUANTUM,
    ZERO,
    AdCallbackRequest,
    ClaimResult,
    CreateUserRequest,
    CreateWithdrawalRequest,
    GlobalSettings,
    Referral,
    ReferralSummary,
    User,
    UserPreview,
    WatchAdResult,
    WithdrawalMethod,
    WithdrawalRequest,
    quantize_money,
    quantize_rate,
    utcnow,
)
from .storage import InMemoryStorage, Repository, StorageConflictError

logger = logging.getLogger(__name__)

REFERRAL_CODE_PREFIX = "LSATS"
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_ATTEMPTS = 5

MembershipCheck = Callable[[str], bool]


def generate_referral_code() -> str:
    return REFERRAL_CODE_PREFIX + "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(6))


def ledger_date(moment: datetime) -> date:
    """Calendar day used for the daily cap: the UTC date of ``moment``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date()


def default_global_settings(config: Settings) -> GlobalSettings:
    earnings_per_ad = quantize_rate(config.DEFAULT_EARNINGS_PER_AD)
    return GlobalSettings(
        earnings_per_ad=earnings_per_ad,
        daily_ad_limit=config.DEFAULT_DAILY_AD_LIMIT,
        cpm_rate=cpm_for(earnings_per_ad),
    )


def cpm_for(earnings_per_ad: Decimal) -> Decimal:
    return (earnings_per_ad * 1000).quantize(CPM_QUANTUM)


class LedgerService:
    """Earnings ledger: ad-watch credits, claims, referral commission and payout requests.

    Every operation re-reads the records it needs from the repository. A user
    record only changes through ``change_user``: the check-and-write runs as one
    atomic repository update (serialized in-process by the user's lock), so the
    cooldown and daily cap hold even when several instances share one database.
    """

    def __init__(
        self,
        storage: Optional[Repository] = None,
        config: Optional[Settings] = None,
        membership_check: Optional[MembershipCheck] = None,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[LockManager] = None,
    ):
        self.config = config or get_settings()
        self.storage = storage or InMemoryStorage(default_global_settings(self.config))
        self.membership_check = membership_check
        self.clock = clock
        self.locks = locks or LockManager()
        self.cooldown_seconds = self.config.AD_COOLDOWN_SECONDS
        self.commission_rate = self.config.REFERRAL_COMMISSION_RATE
        self.min_withdrawal = self.config.MIN_WITHDRAWAL

    # Users

    def get_or_create_user(self, request: CreateUserRequest) -> User:
        external_id = request.external_id.strip()
        display_name = request.display_name.strip()
        if not external_id or not display_name:
            raise LedgerValidationError("missing-field", "External ID and display name required")

        existing = self.storage.get_user_by_external_id(external_id)
        if existing:
            return existing

        with self.locks.external_id(external_id):
            existing = self.storage.get_user_by_external_id(external_id)
            if existing:
                return existing

            referrer = None
            if request.referral_code:
                referrer = self.storage.get_user_by_referral_code(request.referral_code.strip())
                if referrer is None:
                    logger.info(f"Ignoring unknown referral code {request.referral_code!r} for {external_id}")

            created = None
            for _ in range(REFERRAL_CODE_ATTEMPTS):
                user = User(
                    external_id=external_id,
                    display_name=display_name,
                    referral_code=generate_referral_code(),
                    referred_by=referrer.id if referrer else None,
                )
                referral = Referral(referrer_id=referrer.id, referee_id=user.id) if referrer else None
                try:
                    created = self.storage.create_user(user, referral)
                    break
                except StorageConflictError as e:
                    existing = self.storage.get_user_by_external_id(external_id)
                    if existing:
                        return existing
                    logger.warning(f"Retrying user creation for {external_id}: {e}")
            if created is None:
                raise RuntimeError(f"Could not allocate a unique referral code for {external_id}")

        self.apply_settings_change(lambda s: {"total_users": s.total_users + 1})
        if referrer:
            logger.info(f"Referral record created: {referrer.id} -> {created.id}")
        logger.info(f"Created user {created.id} for external id {external_id}")
        return created

    def get_user(self, user_id: UUID) -> User:
        user = self.storage.get_user(user_id)
        if not user:
            raise NotFoundError("not-found", f"User {user_id} not found")
        return user

    def change_user(self, user_id: UUID, change: Callable[[User], User]) -> User:
        with self.locks.user(user_id):
            updated = self.storage.update_user(user_id, change)
        if updated is None:
            raise NotFoundError("not-found", f"User {user_id} not found")
        return updated

    # Ad watching

    def record_ad_watch(self, user_id: UUID) -> WatchAdResult:
        user = self.get_user(user_id)
        self._ensure_not_banned(user)
        # External call, made before any lock is taken
        if self.membership_check is not None and not self.membership_check(user.external_id):
            raise ForbiddenError(
                "membership-required", "Channel membership required", channel_url=self.config.CHANNEL_URL
            )

        settings = self.storage.get_settings()
        earnings = settings.earnings_per_ad

        def credit(user: User) -> User:
            # Runs against the freshest stored record; may be re-run on a concurrent write
            now = self.clock()
            self._ensure_not_banned(user)
            self._check_cooldown(user, now)
            daily_count = self._effective_daily_count(user, now)
            if daily_count >= settings.daily_ad_limit:
                raise RateLimitedError("daily-limit", "Daily limit reached", limit=settings.daily_ad_limit)

            user.daily_earnings = quantize_money(user.daily_earnings + earnings)
            user.total_earnings = quantize_money(user.total_earnings + earnings)
            user.ads_watched += 1
            user.daily_ads_watched = daily_count + 1
            user.last_ad_watch = now
            return user

        updated = self.change_user(user_id, credit)

        self.apply_settings_change(lambda s: {
            "total_ads_watched": s.total_ads_watched + 1,
            "total_earnings": quantize_money(s.total_earnings + earnings),
        })
        logger.info(f"Ad reward processed for user {user_id}: +${earnings}")

        if updated.referred_by:
            self._credit_referrer(updated, earnings)

        return WatchAdResult(earnings=earnings, user=updated)

    def handle_ad_callback(self, request: AdCallbackRequest) -> bool:
        """Ad-network completion callback. Only ``completed`` events credit the user."""
        if request.status != "completed":
            logger.info(f"Ignoring ad callback for {request.user_id} with status {request.status!r}")
            return False
        self.record_ad_watch(request.user_id)
        return True

    def _ensure_not_banned(self, user: User) -> None:
        if user.banned:
            raise ForbiddenError("banned", "Account has been banned")

    def _check_cooldown(self, user: User, now: datetime) -> None:
        if user.last_ad_watch is None:
            return
        elapsed = (now - user.last_ad_watch).total_seconds()
        if elapsed < self.cooldown_seconds:
            raise RateLimitedError(
                "cooldown", "Cooldown active", retry_after=round(self.cooldown_seconds - elapsed, 3)
            )

    def _effective_daily_count(self, user: User, now: datetime) -> int:
        # dailyAdsWatched is reset lazily on the first watch of a new day
        if user.last_ad_watch is None or ledger_date(user.last_ad_watch) != ledger_date(now):
            return 0
        return user.daily_ads_watched

    def _credit_referrer(self, referee: User, earnings: Decimal) -> None:
        commission = quantize_money(earnings * self.commission_rate)
        referrer_id = referee.referred_by

        def credit(referrer: User) -> User:
            referrer.total_earnings = quantize_money(referrer.total_earnings + commission)
            referrer.daily_earnings = quantize_money(referrer.daily_earnings + commission)
            return referrer

        with self.locks.user(referrer_id):
            referrer = self.storage.update_user(referrer_id, credit)
        if referrer is None:
            logger.warning(f"Referrer {referrer_id} of user {referee.id} not found; commission skipped")
            return

        if self.storage.add_referral_commission(referrer_id, referee.id, commission) is None:
            logger.warning(f"No referral record for {referrer_id} -> {referee.id}; commission not tracked")
            return

        logger.info(f"Referral commission: +${commission} to {referrer.external_id}")

    # Claims

    def claim_earnings(self, user_id: UUID) -> ClaimResult:
        self.get_user(user_id)
        claimed = ZERO

        def claim(user: User) -> User:
            nonlocal claimed
            self._ensure_not_banned(user)
            if user.daily_earnings <= ZERO:
                raise InvalidStateError("nothing-to-claim", "No earnings to claim")
            claimed = user.daily_earnings
            user.withdraw_balance = quantize_money(user.withdraw_balance + claimed)
            user.daily_earnings = ZERO
            return user

        updated = self.change_user(user_id, claim)
        logger.info(f"User {user_id} claimed ${claimed}")
        return ClaimResult(claimed=quantize_rate(claimed), user=updated)

    # Withdrawals

    def request_withdrawal(self, request: CreateWithdrawalRequest) -> WithdrawalRequest:
        user = self.get_user(request.user_id)
        self._ensure_not_banned(user)

        amount = request.amount
        if not amount.is_finite() or amount <= ZERO:
            raise LedgerValidationError("invalid-amount", "Withdrawal amount must be a positive number")
        if amount < self.min_withdrawal:
            raise LedgerValidationError(
                "below-minimum", f"Minimum withdrawal is ${self.min_withdrawal:.2f}", minimum=self.min_withdrawal
            )
        if amount > user.withdraw_balance:
            raise LedgerValidationError(
                "insufficient-balance", "Insufficient balance", available=user.withdraw_balance
            )
        if request.method == WithdrawalMethod.WALLET and not request.wallet_address:
            raise LedgerValidationError("missing-destination", "Wallet address required")
        if request.method == WithdrawalMethod.TELEGRAM and not request.telegram_username:
            raise LedgerValidationError("missing-destination", "Telegram username required")

        # Balance is debited on approval, not here
        withdrawal = WithdrawalRequest(
            user_id=user.id,
            amount=quantize_money(amount),
            method=request.method,
            telegram_username=request.telegram_username,
            wallet_address=request.wallet_address,
        )
        created = self.storage.create_withdrawal_request(withdrawal)
        logger.info(f"Withdrawal request {created.id} created for user {user.id}: ${created.amount}")
        return created

    def list_user_withdrawals(self, user_id: UUID) -> list[WithdrawalRequest]:
        return self.storage.list_withdrawal_requests(user_id=user_id)

    # Referrals

    def list_user_referrals(self, user_id: UUID) -> list[ReferralSummary]:
        summaries = []
        for referral in self.storage.list_referrals(user_id):
            referee = self.storage.get_user(referral.referee_id)
            preview = UserPreview(
                display_name=referee.display_name,
                total_earnings=referee.total_earnings,
                ads_watched=referee.ads_watched,
            ) if referee else None
            summaries.append(ReferralSummary(**referral.model_dump(), referee=preview))
        return summaries

    # Global settings

    def get_global_settings(self) -> GlobalSettings:
        return self.storage.get_settings()

    def apply_settings_change(self, change: Callable[[GlobalSettings], dict]) -> GlobalSettings:
        """Replace the settings record as a whole with ``change(current)`` applied."""
        with self.locks.settings():
            return self.storage.change_settings(change)
