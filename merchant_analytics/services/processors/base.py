"""VolumeCalculator contract shared by all processor integrations.

WHAT:
    Abstract base for "net volume + transaction count for a merchant over
    an inclusive date range", plus the HTTP error mapping the concrete
    clients share.

WHY:
    The orchestrator treats failures differently by kind, so every client
    must map HTTP failures the same way:
    - 401/403        -> ProcessorConfigError (bad credentials, fail the merchant)
    - 404            -> ProcessorNotFoundError (merchant unknown there, skip)
    - 429/5xx/network -> UpstreamError (retry with backoff)
"""

from __future__ import annotations

import abc
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from merchant_analytics.models import DateRange, ProcessorKind, VolumeAndCount
from merchant_analytics.services.errors import (
    ProcessorConfigError,
    ProcessorNotFoundError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class VolumeCalculator(abc.ABC):
    """One processor integration."""

    kind: ProcessorKind

    @abc.abstractmethod
    async def calculate_volume_and_count(
        self,
        merchant_id: str,
        processor_name: str,
        date_range: DateRange,
    ) -> VolumeAndCount:
        """Sum signed amounts (sales positive, refunds negative) over the range."""


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        logger.warning("[PROCESSOR] Unparseable amount %r, treating as zero", value)
        return Decimal("0")


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    processor_name: str,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """GET a JSON document, mapping failures onto the processor error taxonomy."""
    try:
        response = await client.get(url, headers=headers, params=params)
    except httpx.HTTPError as e:
        raise UpstreamError(f"{processor_name} request failed: {e}") from e

    status = response.status_code
    if status in (401, 403):
        raise ProcessorConfigError(
            f"{processor_name} rejected credentials (HTTP {status})",
            processor_name=processor_name,
        )
    if status == 404:
        raise ProcessorNotFoundError(processor_name)
    if status == 429 or status >= 500:
        raise UpstreamError(f"{processor_name} returned HTTP {status}", status_code=status)
    if status >= 400:
        raise UpstreamError(
            f"{processor_name} returned HTTP {status}: {response.text[:200]}",
            status_code=status,
        )

    try:
        return response.json()
    except ValueError as e:
        raise UpstreamError(f"{processor_name} returned invalid JSON") from e
