"""
External collaborators of the ledger.

Both are called outside any ledger lock and always with a bounded timeout.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from .config import Settings
from .models import PriceQuote

logger = logging.getLogger(__name__)

JOINED_STATUSES = {"member", "administrator", "creator", "restricted"}


class PriceOracle:
    """Spot price of the payout currency in USD, for display."""

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.url = settings.PRICE_FEED_URL
        self.coin_id = settings.PRICE_FEED_COIN_ID
        self.fallback = PriceQuote(price=settings.PRICE_FALLBACK)
        self.timeout = settings.PRICE_TIMEOUT_SECONDS
        self.client = client

    def fetch(self) -> PriceQuote:
        params = {"ids": self.coin_id, "vs_currencies": "usd", "include_24hr_change": "true"}
        try:
            if self.client is not None:
                response = self.client.get(self.url, params=params, timeout=self.timeout)
            else:
                response = httpx.get(self.url, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Price feed unavailable, using fallback: {e}")
            return self.fallback

        data = payload.get(self.coin_id) if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            logger.warning(f"Price feed returned no quote for {self.coin_id}, using fallback")
            return self.fallback
        try:
            price = Decimal(str(data["usd"]))
            change = Decimal(str(data.get("usd_24h_change") or 0))
        except (KeyError, InvalidOperation) as e:
            logger.warning(f"Price feed returned unexpected payload, using fallback: {e}")
            return self.fallback
        return PriceQuote(price=price, change_24h=change)


class TelegramMembershipChecker:
    """Callable predicate: is ``external_id`` a member of the configured channel?"""

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.url = f"{settings.TELEGRAM_API_URL}/bot{settings.TELEGRAM_BOT_TOKEN}/getChatMember"
        self.channel_id = settings.CHANNEL_ID
        self.timeout = settings.MEMBERSHIP_TIMEOUT_SECONDS
        self.client = client

    def __call__(self, external_id: str) -> bool:
        params = {"chat_id": self.channel_id, "user_id": external_id}
        try:
            if self.client is not None:
                response = self.client.get(self.url, params=params, timeout=self.timeout)
            else:
                response = httpx.get(self.url, params=params, timeout=self.timeout)
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Channel membership check failed for {external_id}: {e}")
            return False

        if not isinstance(payload, dict):
            logger.warning(f"Channel membership check for {external_id} returned a non-object reply")
            return False
        if not payload.get("ok"):
            logger.warning(f"Channel membership check rejected for {external_id}: {payload.get('description')}")
            return False
        result = payload.get("result")
        status = result.get("status") if isinstance(result, dict) else None
        return status in JOINED_STATUSES
