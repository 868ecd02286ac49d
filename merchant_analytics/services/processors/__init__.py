"""Payment-processor integrations (VolumeCalculator implementations)."""

from merchant_analytics.services.processors.base import VolumeCalculator
from merchant_analytics.services.processors.registry import (
    CalculatorRegistry,
    build_registry,
    resolve_processor_kind,
)

__all__ = [
    "VolumeCalculator",
    "CalculatorRegistry",
    "build_registry",
    "resolve_processor_kind",
]
