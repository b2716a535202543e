import logging
import math
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .admin import AdminService
from .config import Settings, get_settings
from .errors import LedgerError, RateLimitedError
from .external import PriceOracle, TelegramMembershipChecker
from .models import (
    AdCallbackRequest,
    BanUserRequest,
    ClaimDecisionRequest,
    ClaimResult,
    CreateUserRequest,
    CreateWithdrawalRequest,
    FlagUserRequest,
    PendingWithdrawal,
    PriceQuote,
    ProcessWithdrawalRequest,
    ReferralSummary,
    SettingsResult,
    StatsResponse,
    UpdateSettingsRequest,
    User,
    UserActionRequest,
    UserFilter,
    UserResult,
    WatchAdResult,
    WithdrawalRequest,
    WithdrawalResult,
)
from .service import LedgerService, default_global_settings
from .storage import InMemoryStorage, Repository

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "not-found": status.HTTP_404_NOT_FOUND,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "rate-limited": status.HTTP_429_TOO_MANY_REQUESTS,
    "invalid-state": status.HTTP_400_BAD_REQUEST,
    "validation": status.HTTP_400_BAD_REQUEST,
}


def build_storage(settings: Settings) -> Repository:
    defaults = default_global_settings(settings)
    if settings.DATABASE_URL:
        from .sql_storage import SqlStorage
        return SqlStorage(settings.DATABASE_URL, settings=defaults, echo=settings.DEBUG)
    return InMemoryStorage(defaults)


def build_ledger(settings: Settings) -> LedgerService:
    membership_check = TelegramMembershipChecker(settings) if settings.REQUIRE_CHANNEL_MEMBERSHIP else None
    return LedgerService(build_storage(settings), config=settings, membership_check=membership_check)


def ledger_error_response(error: LedgerError) -> JSONResponse:
    headers = None
    if isinstance(error, RateLimitedError) and error.retry_after is not None:
        headers = {"Retry-After": str(math.ceil(error.retry_after))}
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(error.kind, status.HTTP_400_BAD_REQUEST),
        content=jsonable_encoder(error.to_dict()),
        headers=headers,
    )


def create_app(
    ledger: Optional[LedgerService] = None,
    admin: Optional[AdminService] = None,
    settings: Optional[Settings] = None,
    price_oracle: Optional[PriceOracle] = None,
) -> FastAPI:
    settings = settings or (ledger.config if ledger else get_settings())
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    ledger = ledger or build_ledger(settings)
    admin = admin or AdminService(ledger)
    price_oracle = price_oracle or PriceOracle(settings)

    app = FastAPI(
        title=settings.APP_NAME,
        description="Earnings ledger for ad-watch rewards, referral commission and manual payouts",
        version=settings.APP_VERSION,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.ledger = ledger
    app.state.admin = admin

    @app.exception_handler(LedgerError)
    async def handle_ledger_error(request: Request, exc: LedgerError):
        logger.info(f"{request.method} {request.url.path} rejected: {exc.reason}")
        return ledger_error_response(exc)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Error in {request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "earnings-ledger"}

    # Users

    @app.post("/api/user", response_model=User, tags=["Users"])
    def get_or_create_user(request: CreateUserRequest) -> User:
        return ledger.get_or_create_user(request)

    @app.get("/api/user/{user_id}", response_model=User, tags=["Users"])
    def get_user(user_id: UUID) -> User:
        return ledger.get_user(user_id)

    @app.get("/api/user/{user_id}/withdrawals", response_model=list[WithdrawalRequest], tags=["Users"])
    def get_user_withdrawals(user_id: UUID) -> list[WithdrawalRequest]:
        return ledger.list_user_withdrawals(user_id)

    @app.get("/api/user/{user_id}/referrals", response_model=list[ReferralSummary], tags=["Users"])
    def get_user_referrals(user_id: UUID) -> list[ReferralSummary]:
        return ledger.list_user_referrals(user_id)

    # Earnings

    @app.post("/api/watch-ad", response_model=WatchAdResult, tags=["Earnings"])
    def watch_ad(request: UserActionRequest) -> WatchAdResult:
        return ledger.record_ad_watch(request.user_id)

    @app.post("/ads/callback", tags=["Earnings"])
    def ad_callback(request: AdCallbackRequest):
        # The ad network only needs an acknowledgement
        try:
            return {"success": ledger.handle_ad_callback(request)}
        except LedgerError as e:
            return {"success": False, "error": e.message, "code": e.reason}

    @app.post("/api/claim-earnings", response_model=ClaimResult, tags=["Earnings"])
    def claim_earnings(request: UserActionRequest) -> ClaimResult:
        return ledger.claim_earnings(request.user_id)

    @app.post("/api/withdrawal-request", response_model=WithdrawalResult, tags=["Earnings"])
    def create_withdrawal_request(request: CreateWithdrawalRequest) -> WithdrawalResult:
        return WithdrawalResult(request=ledger.request_withdrawal(request))

    @app.get("/api/price", response_model=PriceQuote, tags=["Earnings"])
    def get_price() -> PriceQuote:
        return price_oracle.fetch()

    # Admin

    @app.get("/api/admin/stats", response_model=StatsResponse, tags=["Admin"])
    def admin_stats(admin_id: Optional[str] = None) -> StatsResponse:
        return admin.get_stats(admin_id)

    @app.get("/api/admin/users", response_model=list[User], tags=["Admin"])
    def admin_users(
        admin_id: Optional[str] = None,
        search: Optional[str] = None,
        filter: Optional[UserFilter] = None,
    ) -> list[User]:
        return admin.list_users(admin_id, search=search, filter=filter.value if filter else None)

    @app.get("/api/admin/pending-withdrawals", response_model=list[PendingWithdrawal], tags=["Admin"])
    def admin_pending_withdrawals(admin_id: Optional[str] = None) -> list[PendingWithdrawal]:
        return admin.list_pending_withdrawals(admin_id)

    @app.get("/api/admin/export/csv", tags=["Admin"])
    def admin_export_csv(admin_id: Optional[str] = None) -> Response:
        return Response(
            content=admin.export_users_csv(admin_id),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="users.csv"'},
        )

    @app.post("/api/admin/user/ban", response_model=UserResult, tags=["Admin"])
    def admin_ban_user(request: BanUserRequest) -> UserResult:
        return UserResult(user=admin.ban_user(request.admin_id, request.user_id, request.banned, request.reason))

    @app.post("/api/admin/user/flag", response_model=UserResult, tags=["Admin"])
    def admin_flag_user(request: FlagUserRequest) -> UserResult:
        return UserResult(user=admin.flag_user(request.admin_id, request.user_id, request.flagged, request.reason))

    @app.post("/api/admin/claim/approve", response_model=ClaimResult, tags=["Admin"])
    def admin_approve_claim(request: ClaimDecisionRequest) -> ClaimResult:
        return admin.approve_claim(request.admin_id, request.user_id)

    @app.post("/api/admin/claim/reject", response_model=UserResult, tags=["Admin"])
    def admin_reject_claim(request: ClaimDecisionRequest) -> UserResult:
        return UserResult(user=admin.reject_claim(request.admin_id, request.user_id, request.reason))

    @app.post("/api/admin/process-withdrawal", response_model=WithdrawalResult, tags=["Admin"])
    def admin_process_withdrawal(request: ProcessWithdrawalRequest) -> WithdrawalResult:
        processed = admin.process_withdrawal(
            request.admin_id, request.request_id, request.status, request.admin_notes
        )
        return WithdrawalResult(request=processed)

    @app.post("/api/admin/update-settings", response_model=SettingsResult, tags=["Admin"])
    def admin_update_settings(request: UpdateSettingsRequest) -> SettingsResult:
        stats = admin.update_settings(
            request.admin_id,
            earnings_per_ad=request.earnings_per_ad,
            daily_ad_limit=request.daily_ad_limit,
        )
        return SettingsResult(stats=stats)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
