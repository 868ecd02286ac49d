"""Processor kind resolution and the calculator registry.

WHAT:
    - resolve_processor_kind: directory processor name -> ProcessorKind
    - CalculatorRegistry: ProcessorKind -> VolumeCalculator instance

WHY:
    The directory stores free-text processor names ("Payroc 12", "ArgyleX",
    "Merchant Lynx"). Names are resolved once at fan-out and the task carries
    the kind, so workers never re-parse names to pick an integration.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

import httpx

from merchant_analytics.models import ProcessorKind
from merchant_analytics.services.processors.base import VolumeCalculator
from merchant_analytics.services.processors.iriscrm import IrisCrmCalculator
from merchant_analytics.services.processors.payroc import PayrocAuth, PayrocCalculator

logger = logging.getLogger(__name__)


def resolve_processor_kind(processor_name: Optional[str]) -> Optional[ProcessorKind]:
    name = (processor_name or "").lower()
    if "payroc" in name:
        return ProcessorKind.payroc
    if "argyle" in name:
        return ProcessorKind.argyle
    if "merchant lynx" in name:
        return ProcessorKind.merchant_lynx
    return None


class CalculatorRegistry:
    def __init__(self, calculators: Mapping[ProcessorKind, VolumeCalculator]):
        self._calculators: Dict[ProcessorKind, VolumeCalculator] = dict(calculators)

    def get(self, kind: Optional[ProcessorKind]) -> Optional[VolumeCalculator]:
        if kind is None:
            return None
        return self._calculators.get(kind)

    @property
    def kinds(self) -> list:
        return sorted(k.value for k in self._calculators)


def build_registry(settings, client: httpx.AsyncClient) -> CalculatorRegistry:
    """Build every integration from settings.

    Integrations are registered even when unconfigured: a missing key is a
    configuration error for that merchant, not an unsupported processor.
    """
    registry = CalculatorRegistry({
        ProcessorKind.payroc: PayrocCalculator(
            client=client,
            base_url=settings.PAYROC_BASE_URL,
            api_key_lookup=settings.payroc_api_key,
            auth=PayrocAuth(client, settings.PAYROC_AUTH_URL),
        ),
        ProcessorKind.argyle: IrisCrmCalculator(
            client=client,
            kind=ProcessorKind.argyle,
            api_token=settings.ARGYLE_API_TOKEN,
            base_url=settings.ARGYLE_BASE_URL,
        ),
        ProcessorKind.merchant_lynx: IrisCrmCalculator(
            client=client,
            kind=ProcessorKind.merchant_lynx,
            api_token=settings.MERCHANT_LYNX_API_TOKEN,
            base_url=settings.MERCHANT_LYNX_BASE_URL,
        ),
    })
    logger.info("[PROCESSOR] Registry built: %s", ", ".join(registry.kinds))
    return registry
