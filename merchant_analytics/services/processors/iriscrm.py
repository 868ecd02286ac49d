"""IRIS CRM transaction API client (Argyle and Merchant Lynx tenants).

WHAT:
    Pages through a merchant's transactions (newest first) and sums the ones
    inside the reporting window.

WHY:
    Argyle and Merchant Lynx run the same IRIS CRM API on different hosts
    with different tokens, so one class serves both kinds.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Optional

import httpx

from merchant_analytics.models import DateRange, ProcessorKind, VolumeAndCount
from merchant_analytics.services.errors import ProcessorConfigError
from merchant_analytics.services.processors.base import (
    PAGE_SIZE,
    VolumeCalculator,
    get_json,
    to_decimal,
)

logger = logging.getLogger(__name__)

SALE_TYPES = {"sale"}
REFUND_TYPES = {"refund", "return"}


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


class IrisCrmCalculator(VolumeCalculator):
    def __init__(
        self,
        client: httpx.AsyncClient,
        kind: ProcessorKind,
        api_token: Optional[str],
        base_url: Optional[str],
    ):
        self.client = client
        self.kind = kind
        self.api_token = api_token
        self.base_url = base_url.rstrip("/") if base_url else None

    async def calculate_volume_and_count(
        self,
        merchant_id: str,
        processor_name: str,
        date_range: DateRange,
    ) -> VolumeAndCount:
        if not self.api_token or not self.base_url:
            raise ProcessorConfigError(
                f"{self.kind.value} configuration is incomplete.", processor_name
            )
        logger.info(
            "[IRIS] Calculating %s volume for merchant %s from %s to %s",
            self.kind.value, merchant_id, date_range.start, date_range.end,
        )

        net = Decimal("0")
        count = 0
        page = 1

        while True:
            body = await get_json(
                self.client,
                f"{self.base_url}/merchants/{merchant_id}/transactions",
                processor_name=processor_name,
                headers={"X-API-KEY": self.api_token},
                params={"page": page, "per_page": PAGE_SIZE},
            )
            batches = body.get("data") or []
            if not batches:
                break

            reached_start = False
            for batch in batches:
                for trx in batch.get("transactions") or []:
                    trx_date = _parse_date(trx.get("date"))
                    if trx_date is None or trx_date > date_range.end:
                        continue
                    if trx_date < date_range.start:
                        reached_start = True
                        break

                    count += 1
                    amount = abs(to_decimal(trx.get("amount")))
                    trx_type = (trx.get("type") or "").lower()
                    if trx_type in SALE_TYPES:
                        net += amount
                    elif trx_type in REFUND_TYPES:
                        net -= amount
                if reached_start:
                    break

            if reached_start:
                break
            page += 1

        return VolumeAndCount(net_volume=net, transaction_count=count)
