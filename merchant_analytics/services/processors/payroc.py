"""Payroc batch API client.

WHAT:
    Computes a merchant's net volume from Payroc settlement batches, one
    calendar day at a time, with cursor pagination inside each day.

WHY:
    - Payroc is partitioned by office; the office code is the trailing number
      in the directory's processor name ("Payroc 12" -> office 12)
    - Each office has its own API key (PAYROC_<office>_API_TOKEN_B64), which
      is exchanged for a short-lived bearer token
    - Batch amounts are in cents

REFERENCES:
    - merchant_analytics/services/processors/base.py (error mapping)
"""

from __future__ import annotations

import logging
import re
import time
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

import httpx

from merchant_analytics.models import DateRange, ProcessorKind, VolumeAndCount
from merchant_analytics.services.errors import ProcessorConfigError, UpstreamError
from merchant_analytics.services.processors.base import (
    PAGE_SIZE,
    VolumeCalculator,
    get_json,
    to_decimal,
)

logger = logging.getLogger(__name__)

OFFICE_CODE_PATTERN = re.compile(r"\s(\d+)$")

# Refresh tokens a minute before Payroc says they expire
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def parse_office_code(processor_name: str) -> Optional[str]:
    match = OFFICE_CODE_PATTERN.search((processor_name or "").strip().lower())
    return match.group(1) if match else None


class PayrocAuth:
    """Per-office bearer token cache.

    Tokens live in-process only; each worker fetches its own.
    """

    def __init__(self, client: httpx.AsyncClient, auth_url: str):
        self.client = client
        self.auth_url = auth_url
        self._tokens: Dict[str, Tuple[str, float]] = {}

    async def get_access_token(self, office_code: str, api_key: str) -> str:
        cached = self._tokens.get(office_code)
        if cached and time.monotonic() < cached[1]:
            return cached[0]
        return await self._fetch_access_token(office_code, api_key)

    async def _fetch_access_token(self, office_code: str, api_key: str) -> str:
        logger.debug("[PAYROC] Fetching new token for office code %s", office_code)
        try:
            response = await self.client.post(
                self.auth_url,
                content=b"",
                headers={"x-api-key": api_key, "Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Payroc authentication request failed: {e}") from e

        if response.status_code in (400, 401, 403):
            raise ProcessorConfigError(
                f"Payroc authentication failed for office code {office_code} (HTTP {response.status_code})",
                processor_name="payroc",
            )
        if response.status_code >= 400:
            raise UpstreamError(
                f"Payroc authentication returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        body = response.json()
        token = body["access_token"]
        expires_in = int(body.get("expires_in", 3600))
        expiry = time.monotonic() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
        self._tokens[office_code] = (token, expiry)
        logger.debug("[PAYROC] Cached new token for office code %s", office_code)
        return token


class PayrocCalculator(VolumeCalculator):
    kind = ProcessorKind.payroc

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: Optional[str],
        api_key_lookup: Callable[[str], Optional[str]],
        auth: PayrocAuth,
        today: Optional[Callable[[], date]] = None,
    ):
        """
        Args:
            client: Shared async HTTP client
            base_url: PAYROC_BASE_URL (None -> every call fails with a config error)
            api_key_lookup: office code -> decoded API key (Settings.payroc_api_key)
            auth: Token cache
            today: Clock override for tests
        """
        self.client = client
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key_lookup = api_key_lookup
        self.auth = auth
        self._today = today or (lambda: datetime.now(timezone.utc).date())

    def _get_config(self, processor_name: str) -> Tuple[str, str]:
        if not self.base_url:
            raise ProcessorConfigError("Required configuration PAYROC_BASE_URL is missing.", processor_name)
        office_code = parse_office_code(processor_name)
        if not office_code:
            raise ProcessorConfigError(
                f'Could not parse office code from processor: "{processor_name}"', processor_name
            )
        api_key = self.api_key_lookup(office_code)
        if not api_key:
            raise ProcessorConfigError(
                f"API Key config not found for Payroc office code: {office_code}", processor_name
            )
        return office_code, api_key

    async def calculate_volume_and_count(
        self,
        merchant_id: str,
        processor_name: str,
        date_range: DateRange,
    ) -> VolumeAndCount:
        office_code, api_key = self._get_config(processor_name)
        logger.info(
            "[PAYROC] Calculating volume for merchant %s (office %s) from %s to %s",
            merchant_id, office_code, date_range.start, date_range.end,
        )

        total_cents = Decimal("0")
        total_count = 0

        # Days after today have no batches yet
        last_day = min(date_range.end, self._today())
        day = date_range.start
        while day <= last_day:
            token = await self.auth.get_access_token(office_code, api_key)
            cents, count = await self._sum_day(merchant_id, day, token, processor_name)
            total_cents += cents
            total_count += count
            day += timedelta(days=1)

        return VolumeAndCount(
            net_volume=total_cents / Decimal(100),
            transaction_count=total_count,
        )

    async def _sum_day(
        self, merchant_id: str, day: date, token: str, processor_name: str
    ) -> Tuple[Decimal, int]:
        cents = Decimal("0")
        count = 0
        after: Optional[int] = None
        has_more = True

        while has_more:
            params = {"merchantId": merchant_id, "date": day.isoformat(), "limit": PAGE_SIZE}
            if after:
                params["after"] = after

            body = await get_json(
                self.client,
                f"{self.base_url}/v1/batches",
                processor_name=processor_name,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                params=params,
            )
            batches = body.get("data") or []
            for batch in batches:
                cents += to_decimal(batch.get("saleAmount")) - to_decimal(batch.get("returnAmount"))
                count += int(batch.get("transactionCount") or 0)

            has_more = bool(body.get("hasMore")) and bool(batches)
            if batches:
                after = batches[-1].get("batchId")

        return cents, count
