"""
Google Ads API Client
Talks to the Google Ads REST API (googleAds:search) over httpx.
Handles OAuth refresh, GAQL paging, and normalization of campaign and
daily metrics rows (micros -> currency, lowercase statuses).
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional
import httpx
from metrics_hub.config import DEFAULT_GOOGLE_ADS_API_VERSION, get_settings
from metrics_hub.crypto import decrypt_value, CredentialDecryptionError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
API_BASE_URL = "https://googleads.googleapis.com"

# Refresh 5 minutes before actual expiry to avoid race conditions
REFRESH_BUFFER = timedelta(minutes=5)

MICROS = 1_000_000

# Numeric status codes some API surfaces return instead of enum names
_STATUS_CODES = {
    0: "unspecified",
    1: "unknown",
    2: "enabled",
    3: "paused",
    4: "removed",
}


class GoogleAdsError(Exception):
    """Raised when a Google Ads API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GoogleAdsRateLimitError(GoogleAdsError):
    """HTTP 429 / RESOURCE_EXHAUSTED from the Google Ads API."""
    pass


class GoogleAdsClient:
    """
    Minimal Google Ads client scoped to one customer account.
    Each instance caches its OAuth access token until shortly before expiry.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        developer_token: Optional[str],
        refresh_token: Optional[str],
        customer_id: Optional[str],
        login_customer_id: Optional[str] = None,
        api_version: str = DEFAULT_GOOGLE_ADS_API_VERSION,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.developer_token = developer_token
        self.refresh_token = refresh_token
        # Google Ads expects the customer id without dashes
        self.customer_id = customer_id.replace("-", "").strip() if customer_id else None
        self.login_customer_id = login_customer_id.replace("-", "").strip() if login_customer_id else None
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport
        self._access_token: Optional[str] = None
        self.token_expires_at: Optional[datetime] = None

    @property
    def search_url(self) -> str:
        return f"{API_BASE_URL}/{self.api_version}/customers/{self.customer_id}/googleAds:search"

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _ensure_initialized(self) -> None:
        if not self.customer_id or not self.refresh_token:
            raise GoogleAdsError(
                "Customer not initialized. Please provide customer_id and refresh_token."
            )
        if not self.developer_token:
            raise GoogleAdsError("A developer token is required to call the Google Ads API.")

    # ── OAuth ─────────────────────────────────────────────────────────

    def _token_is_fresh(self) -> bool:
        if not self._access_token or not self.token_expires_at:
            return False
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        return now < self.token_expires_at - REFRESH_BUFFER

    async def _get_access_token(self, http: httpx.AsyncClient) -> str:
        """Exchange the refresh token for an access token (cached per instance)."""
        if self._token_is_fresh():
            return self._access_token

        try:
            response = await http.post(
                TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self.refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise GoogleAdsError(f"OAuth token refresh failed: {e}") from e

        if response.status_code != 200:
            raise GoogleAdsError(
                f"OAuth token refresh failed: {_error_message(response)}",
                status_code=response.status_code,
            )

        token_data = response.json()
        self._access_token = token_data["access_token"]
        expires_in = int(token_data.get("expires_in", 3600))
        self.token_expires_at = (
            datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=expires_in)
        )
        logger.info(f"Refreshed Google Ads access token for customer {self.customer_id}")
        return self._access_token

    # ── GAQL search ───────────────────────────────────────────────────

    async def search(self, query: str, max_pages: int = 50) -> list[dict]:
        """
        Run a GAQL query and return every result row, following nextPageToken
        until the last page (or max_pages) is reached.
        """
        self._ensure_initialized()
        rows: list[dict] = []

        async with self._http() as http:
            access_token = await self._get_access_token(http)
            headers = {
                "Authorization": f"Bearer {access_token}",
                "developer-token": self.developer_token,
            }
            if self.login_customer_id:
                headers["login-customer-id"] = self.login_customer_id

            page_token = None
            page = 0
            while page < max_pages:
                body: dict[str, Any] = {"query": query}
                if page_token:
                    body["pageToken"] = page_token

                try:
                    response = await http.post(self.search_url, json=body, headers=headers)
                except httpx.HTTPError as e:
                    raise GoogleAdsError(f"Google Ads request failed: {e}") from e

                if response.status_code == 429:
                    raise GoogleAdsRateLimitError(
                        f"Google Ads rate limit exceeded: {_error_message(response)}",
                        status_code=429,
                    )
                if response.status_code >= 400:
                    raise GoogleAdsError(
                        f"Google Ads API error ({response.status_code}): {_error_message(response)}",
                        status_code=response.status_code,
                    )

                payload = response.json()
                rows.extend(payload.get("results", []))
                page += 1
                page_token = payload.get("nextPageToken")
                if not page_token:
                    break

        logger.info(f"GAQL search for customer {self.customer_id}: {len(rows)} rows in {page} page(s)")
        return rows

    # ── Convenience Methods ──────────────────────────────────────────

    async def test_connection(self) -> dict:
        """Fetch the customer record to prove the credentials work. Never raises."""
        try:
            rows = await self.search(
                "SELECT customer.id, customer.descriptive_name, customer.currency_code, "
                "customer.time_zone FROM customer LIMIT 1"
            )
            if not rows or "customer" not in rows[0]:
                raise GoogleAdsError("No customer data returned")
            customer = rows[0]["customer"]
            return {
                "success": True,
                "details": (
                    f"Successfully connected to Google Ads account: "
                    f"{customer.get('descriptiveName')} ({customer.get('id')})"
                ),
                "data": {
                    "customer_id": str(customer.get("id")),
                    "account_name": customer.get("descriptiveName"),
                    "currency": customer.get("currencyCode"),
                    "time_zone": customer.get("timeZone"),
                },
            }
        except Exception as e:
            logger.error(f"Google Ads connection test failed: {e}")
            return {
                "success": False,
                "details": str(e) or "Failed to connect to Google Ads API",
            }

    async def get_campaigns(self) -> list[dict]:
        """All non-removed campaigns, normalized."""
        rows = await self.search(
            "SELECT campaign.id, campaign.name, campaign.status, campaign.start_date, "
            "campaign.end_date, campaign_budget.amount_micros "
            "FROM campaign "
            "WHERE campaign.status != 'REMOVED' "
            "ORDER BY campaign.name"
        )
        return [_normalize_campaign(row) for row in rows]

    async def get_metrics(
        self,
        campaign_ids: list[str],
        start_date: date,
        end_date: date,
    ) -> list[dict]:
        """Daily metrics rows for the given campaigns over [start_date, end_date]."""
        ids = [str(c).strip() for c in campaign_ids if str(c).strip().isdigit()]
        if not ids:
            logger.info("No campaign IDs provided for daily metrics fetch")
            return []

        id_list = ", ".join(ids)
        rows = await self.search(
            "SELECT campaign.id, segments.date, metrics.impressions, metrics.clicks, "
            "metrics.conversions, metrics.cost_micros, metrics.ctr, metrics.average_cpc "
            "FROM campaign "
            f"WHERE campaign.id IN ({id_list}) "
            f"AND segments.date >= '{start_date.isoformat()}' "
            f"AND segments.date <= '{end_date.isoformat()}' "
            "ORDER BY campaign.id, segments.date"
        )
        return [_normalize_metrics_row(row) for row in rows]


# ── Helpers ───────────────────────────────────────────────────────────

def _error_message(response: httpx.Response) -> str:
    """Pull the most useful message out of a Google error payload."""
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return error.get("message") or str(error)
        if isinstance(error, str):
            return payload.get("error_description") or error
    return str(payload)[:500]


def _micros_to_currency(value: Any) -> float:
    if not value:
        return 0.0
    return float(value) / MICROS


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _normalize_status(status: Any) -> str:
    if isinstance(status, int):
        return _STATUS_CODES.get(status, "unknown")
    if not status:
        return "unknown"
    return str(status).lower()


def _normalize_campaign(row: dict) -> dict:
    campaign = row.get("campaign", {})
    budget = row.get("campaignBudget", {})
    return {
        "id": str(campaign.get("id")),
        "name": campaign.get("name") or "",
        "status": _normalize_status(campaign.get("status")),
        "budget": round(_micros_to_currency(budget.get("amountMicros")), 2),
        "start_date": campaign.get("startDate"),
        "end_date": campaign.get("endDate"),
    }


def _normalize_metrics_row(row: dict) -> dict:
    campaign = row.get("campaign", {})
    metrics = row.get("metrics", {})
    segments = row.get("segments", {})

    clicks = _to_int(metrics.get("clicks"))
    conversions = _to_float(metrics.get("conversions"))
    conversion_rate = (conversions / clicks) * 100 if clicks > 0 else 0.0

    return {
        "campaign_id": str(campaign.get("id")),
        "date": segments.get("date"),
        "impressions": _to_int(metrics.get("impressions")),
        "clicks": clicks,
        "conversions": conversions,
        "cost": round(_micros_to_currency(metrics.get("costMicros")), 2),
        "ctr": _to_float(metrics.get("ctr")),
        "average_cpc": round(_micros_to_currency(metrics.get("averageCpc")), 2),
        "conversion_rate": round(conversion_rate, 2),
    }


def build_client_for_config(config, transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[GoogleAdsClient]:
    """
    Decrypt a stored ApiConfiguration and build a client for it.
    Returns None when the stored secrets cannot be decrypted.
    """
    settings = get_settings()
    try:
        client_secret = decrypt_value(config.client_secret)
        developer_token = decrypt_value(config.developer_token)
        refresh_token = decrypt_value(config.refresh_token)
    except CredentialDecryptionError as e:
        logger.error(f"Cannot decrypt credentials for API configuration {config.id}: {e}")
        return None

    return GoogleAdsClient(
        client_id=config.client_id,
        client_secret=client_secret,
        developer_token=developer_token,
        refresh_token=refresh_token,
        customer_id=config.customer_id,
        login_customer_id=settings.google_ads_login_customer_id or None,
        api_version=settings.google_ads_api_version,
        timeout=settings.http_timeout_seconds,
        transport=transport,
    )
