"""
Operator-facing ledger operations.

Every public method takes the caller's external identity first and rejects
anyone other than the configured administrator before doing anything else.
"""

import csv
import io
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from rules import build_user_query

from .errors import ForbiddenError, InvalidStateError, LedgerValidationError, NotFoundError
from .models import (
    ZERO,
    ClaimResult,
    GlobalSettings,
    PendingWithdrawal,
    StatsResponse,
    User,
    UserPreview,
    WithdrawalRequest,
    WithdrawalStatus,
    quantize_money,
    quantize_rate,
)
from .service import LedgerService, cpm_for

logger = logging.getLogger(__name__)

CSV_HEADER = [
    "Username", "External ID", "Total Earnings", "Withdraw Balance",
    "Ads Watched", "Level", "Banned", "Flagged", "Created At",
]


class AdminService:
    def __init__(self, ledger: LedgerService, admin_external_id: Optional[str] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.locks = ledger.locks
        self.admin_external_id = admin_external_id or ledger.config.ADMIN_EXTERNAL_ID

    def _authorize(self, caller_id: Optional[str]) -> None:
        if not caller_id or str(caller_id) != self.admin_external_id:
            logger.warning(f"Rejected admin call from {caller_id!r}")
            raise ForbiddenError("admin-only", "Access denied")

    # Users

    def ban_user(self, caller_id: str, user_id: UUID, banned: bool, reason: Optional[str] = None) -> User:
        self._authorize(caller_id)
        def apply(user: User) -> User:
            user.banned = banned
            # Unbanning leaves any flag in place
            if banned:
                user.flagged = True
                user.flag_reason = reason or "Banned by admin"
            return user

        updated = self.ledger.change_user(user_id, apply)
        logger.info(f"User {user_id} {'banned' if banned else 'unbanned'} by admin")
        return updated

    def flag_user(self, caller_id: str, user_id: UUID, flagged: bool, reason: Optional[str] = None) -> User:
        self._authorize(caller_id)
        def apply(user: User) -> User:
            user.flagged = flagged
            user.flag_reason = reason if flagged else None
            return user

        updated = self.ledger.change_user(user_id, apply)
        logger.info(f"User {user_id} {'flagged' if flagged else 'unflagged'} by admin")
        return updated

    def list_users(self, caller_id: str, search: Optional[str] = None, filter: Optional[str] = None) -> list[User]:
        self._authorize(caller_id)
        try:
            query = build_user_query(search=search, status=filter)
        except ValueError as e:
            raise LedgerValidationError("invalid-filter", str(e))

        users = [u for u in self.storage.list_users() if query.evaluate(u.model_dump())]
        # Most recent activity first
        users.sort(key=lambda u: u.last_ad_watch.timestamp() if u.last_ad_watch else 0, reverse=True)
        return users

    def export_users_csv(self, caller_id: str) -> str:
        self._authorize(caller_id)
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for user in self.storage.list_users():
            writer.writerow([
                user.display_name,
                user.external_id,
                user.total_earnings,
                user.withdraw_balance,
                user.ads_watched,
                user.level,
                "Yes" if user.banned else "No",
                "Yes" if user.flagged else "No",
                user.created_at.isoformat(),
            ])
        return buffer.getvalue()

    # Claims

    def approve_claim(self, caller_id: str, user_id: UUID) -> ClaimResult:
        self._authorize(caller_id)
        result = self.ledger.claim_earnings(user_id)
        logger.info(f"Admin approved claim of ${result.claimed} for user {user_id}")
        return result

    def reject_claim(self, caller_id: str, user_id: UUID, reason: Optional[str] = None) -> User:
        self._authorize(caller_id)
        forfeited = ZERO

        def apply(user: User) -> User:
            nonlocal forfeited
            forfeited = user.daily_earnings
            user.daily_earnings = ZERO
            user.flagged = True
            user.flag_reason = reason or "Claim rejected by admin"
            return user

        updated = self.ledger.change_user(user_id, apply)
        logger.info(f"Admin rejected claim of ${forfeited} for user {user_id}")
        return updated

    # Withdrawals

    def list_pending_withdrawals(self, caller_id: str) -> list[PendingWithdrawal]:
        self._authorize(caller_id)
        pending = []
        for request in self.storage.list_withdrawal_requests(status=WithdrawalStatus.PENDING):
            user = self.storage.get_user(request.user_id)
            preview = UserPreview(display_name=user.display_name, external_id=user.external_id) if user else None
            pending.append(PendingWithdrawal(**request.model_dump(), user=preview))
        return pending

    def process_withdrawal(
        self,
        caller_id: str,
        request_id: UUID,
        status: WithdrawalStatus,
        notes: Optional[str] = None,
    ) -> WithdrawalRequest:
        self._authorize(caller_id)
        try:
            status = WithdrawalStatus(status)
        except ValueError:
            raise LedgerValidationError("invalid-status", f"Unknown withdrawal status: {status}")
        if status == WithdrawalStatus.PENDING:
            raise LedgerValidationError("invalid-status", "Status must be approved or rejected")

        def decide(request: WithdrawalRequest) -> WithdrawalRequest:
            if not request.can_process():
                raise InvalidStateError(
                    "already-processed", f"Withdrawal request already {request.status.value}"
                )
            request.status = status
            request.admin_notes = notes
            request.processed_at = self.ledger.clock()
            return request

        # The transition lands at most once, even across instances; only its winner debits
        with self.locks.withdrawal(request_id):
            updated = self.storage.update_withdrawal_request(request_id, decide)
        if updated is None:
            raise NotFoundError("not-found", "Withdrawal request not found")

        if status == WithdrawalStatus.APPROVED:
            self._debit_for_withdrawal(updated)

        logger.info(f"Withdrawal request {request_id} {status.value} (${updated.amount})")
        return updated

    def _debit_for_withdrawal(self, request: WithdrawalRequest) -> None:
        def debit(user: User) -> User:
            remaining = user.withdraw_balance - request.amount
            if remaining < ZERO:
                # Balance changed since the request was made; clamp rather than block
                logger.warning(
                    f"Withdrawal {request.id} exceeds current balance {user.withdraw_balance}; clamping to 0"
                )
                remaining = ZERO
            user.withdraw_balance = quantize_money(remaining)
            return user

        with self.locks.user(request.user_id):
            user = self.storage.update_user(request.user_id, debit)
        if user is None:
            logger.warning(f"Owner {request.user_id} of withdrawal {request.id} not found; no debit")
            return

        self.ledger.apply_settings_change(lambda s: {
            "total_withdrawals": quantize_money(s.total_withdrawals + request.amount),
        })

    # Settings & stats

    def update_settings(
        self,
        caller_id: str,
        earnings_per_ad: Optional[Decimal] = None,
        daily_ad_limit: Optional[int] = None,
    ) -> GlobalSettings:
        self._authorize(caller_id)
        updates = {}
        if earnings_per_ad is not None:
            # Finer than 5 decimal places is rejected, not rounded
            try:
                rate = Decimal(str(earnings_per_ad))
                valid = rate.is_finite() and rate > ZERO and rate == quantize_rate(rate)
            except (ArithmeticError, ValueError):
                valid = False
            if not valid:
                raise InvalidStateError(
                    "invalid-settings", "Earnings per ad must be positive with at most 5 decimal places"
                )
            rate = quantize_rate(rate)
            updates["earnings_per_ad"] = rate
            updates["cpm_rate"] = cpm_for(rate)
        if daily_ad_limit is not None:
            try:
                valid = not isinstance(daily_ad_limit, bool) and int(daily_ad_limit) == daily_ad_limit >= 1
            except (TypeError, ValueError):
                valid = False
            if not valid:
                raise InvalidStateError("invalid-settings", "Valid daily ad limit required")
            updates["daily_ad_limit"] = int(daily_ad_limit)
        if not updates:
            raise InvalidStateError("invalid-settings", "No valid updates provided")

        updated = self.ledger.apply_settings_change(lambda s: dict(updates))
        logger.info(f"Settings updated by admin: {updates}")
        return updated

    def get_stats(self, caller_id: str) -> StatsResponse:
        self._authorize(caller_id)
        cutoff = self.ledger.clock() - timedelta(hours=24)
        active = sum(1 for u in self.storage.list_users() if u.last_ad_watch and u.last_ad_watch > cutoff)
        settings = self.ledger.apply_settings_change(lambda s: {"active_users_24h": active})

        pending = self.storage.list_withdrawal_requests(status=WithdrawalStatus.PENDING)
        return StatsResponse(
            **settings.model_dump(),
            pending_withdrawals=len(pending),
            total_pending_amount=quantize_money(sum((r.amount for r in pending), ZERO)),
        )
