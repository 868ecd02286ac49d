"""Salesforce Apex REST client.

WHAT:
    - Merchant directory: users and each portal's merchants
    - Downstream: bulk upsert of each user's top merchants

WHY:
    Salesforce is both where runs start (who are the users, which merchants
    do they own) and where results land, so one client owns the OAuth token.

AUTH:
    OAuth client-credentials flow. Tokens are cached in-process for 55 min
    (Salesforce sessions last at least an hour).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from merchant_analytics.models import Merchant, PortalUser
from merchant_analytics.schemas import DispatchRecord, Top10Result
from merchant_analytics.services.errors import DownstreamError

logger = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = 55 * 60

USERS_PATH = "/services/apexrest/v1/user/alluserlist"
MERCHANTS_PATH = "/services/apexrest/v1/user/allmerchant"
TOP_TEN_PATH = "/services/apexrest/v1/user/toptenmerchant/"


def _first(record: Dict[str, Any], *fields: str) -> Optional[str]:
    """Salesforce returns custom fields with or without the __c suffix."""
    for name in fields:
        value = record.get(name)
        if value not in (None, ""):
            return str(value)
    return None


class SalesforceClient:
    """Usage:
        client = SalesforceClient.from_settings(settings, http_client)
        merchants = await client.get_merchants_for_portal("PORTAL-42")
        await client.bulk_update_top10([result])
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        client_id: Optional[str],
        client_secret: Optional[str],
        auth_url: Optional[str],
        base_url: Optional[str],
    ):
        self.http = http_client
        self.client_id = client_id
        self.client_secret = client_secret
        self.auth_url = auth_url
        self.base_url = base_url.rstrip("/") if base_url else None

        self._access_token: Optional[str] = None
        self._token_expiry: float = 0.0

    @classmethod
    def from_settings(cls, settings, http_client: httpx.AsyncClient) -> "SalesforceClient":
        return cls(
            http_client=http_client,
            client_id=settings.SALESFORCE_CLIENT_ID,
            client_secret=settings.SALESFORCE_CLIENT_SECRET,
            auth_url=settings.SALESFORCE_AUTH_URL,
            base_url=settings.SALESFORCE_BASE_URL,
        )

    async def _authenticate(self) -> str:
        if self._access_token and time.monotonic() < self._token_expiry:
            return self._access_token

        if not all([self.client_id, self.client_secret, self.auth_url, self.base_url]):
            raise DownstreamError("Salesforce configuration is incomplete.")

        logger.info("[SALESFORCE] Authenticating with Salesforce...")
        try:
            response = await self.http.post(
                self.auth_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise DownstreamError(f"Salesforce authentication failed: {e}") from e

        if response.status_code >= 400:
            logger.error("[SALESFORCE] Auth error: %s", response.text[:500])
            raise DownstreamError("Salesforce authentication failed", status_code=response.status_code)

        self._access_token = response.json()["access_token"]
        self._token_expiry = time.monotonic() + TOKEN_TTL_SECONDS
        logger.info("[SALESFORCE] Successfully authenticated with Salesforce.")
        return self._access_token

    async def _call_api(
        self,
        path: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
    ) -> Any:
        token = await self._authenticate()
        url = f"{self.base_url}{path}"
        try:
            response = await self.http.request(
                method,
                url,
                params=params,
                json=body,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            raise DownstreamError(f"Salesforce API error on {method} {url}: {e}") from e

        if response.status_code == 401:
            # Session revoked early; force re-auth on the next call
            self._access_token = None
        if response.status_code >= 400:
            logger.error(
                "[SALESFORCE] API error on %s %s: %s", method, url, response.text[:500]
            )
            raise DownstreamError(
                f"Salesforce API error on {method} {path} (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()

    async def get_all_users(self) -> List[PortalUser]:
        records = await self._call_api(USERS_PATH) or []
        users = []
        for record in records:
            user_id = _first(record, "Id")
            portal_id = _first(record, "PortalId__c", "PortalId")
            if not user_id or not portal_id:
                logger.warning("[SALESFORCE] Skipping user record without Id/PortalId: %s", record)
                continue
            users.append(PortalUser(user_id=user_id, portal_id=portal_id))
        return users

    async def get_merchants_for_portal(self, portal_id: str) -> List[Merchant]:
        records = await self._call_api(MERCHANTS_PATH, params={"portalPartnerId": portal_id}) or []
        merchants = []
        for record in records:
            merchant_id = _first(record, "MerchantID__c", "MerchantID")
            if not merchant_id:
                logger.warning("[SALESFORCE] Skipping merchant record without MerchantID: %s", record.get("Id"))
                continue
            merchants.append(Merchant(
                merchant_id=merchant_id,
                processor_name=_first(record, "ProcessorName__c", "ProcessorName"),
                name=_first(record, "Name", "name"),
            ))
        return merchants

    async def bulk_update_top10(self, results: List[Top10Result]) -> Any:
        records = [r.model_dump() for result in results for r in DispatchRecord.from_result(result)]
        logger.debug("[SALESFORCE] Sending bulk update. Items count: %d", len(records))
        return await self._call_api(TOP_TEN_PATH, method="POST", body=records)
