"""Pydantic schemas for request/response payloads and queued results."""

from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Finalized results (pending-dispatch list entries)
# =============================================================================

class RankedMerchant(BaseModel):
    """One row of a user's top merchants."""

    merchant_id: str
    name: str
    total_volume: Decimal = Field(description="Net volume (sales minus refunds)")
    total_count: int = Field(ge=0, description="Transaction count")


class Top10Result(BaseModel):
    """A user's finalized ranking, queued for Salesforce.

    Serialized with `model_dump_json()` into the pending-dispatch list;
    Decimal volumes round-trip as strings.
    """

    user_id: str
    portal_id: str
    run_id: Optional[str] = None
    top_merchants: List[RankedMerchant] = Field(default_factory=list)


class DispatchRecord(BaseModel):
    """Flat upsert record in the shape Salesforce's top-ten endpoint expects.

    Keyed by (portalPartnerId, merchant) downstream, so redelivery overwrites.
    """

    portalPartnerId: str
    merchant: str
    name: str
    volume: str
    transactions: str

    @classmethod
    def from_result(cls, result: Top10Result) -> List["DispatchRecord"]:
        return [
            cls(
                portalPartnerId=result.portal_id,
                merchant=item.merchant_id,
                name=item.name,
                volume=str(item.total_volume),
                transactions=str(item.total_count),
            )
            for item in result.top_merchants
        ]


# =============================================================================
# API payloads
# =============================================================================

class TriggerRequest(BaseModel):
    """Payload for triggering a user's analytics run."""

    user_id: str = Field(min_length=1, description="Salesforce user id")
    portal_id: str = Field(min_length=1, description="Portal / tenant id")

    model_config = {
        "json_schema_extra": {
            "example": {"user_id": "0058c00000ABCDe", "portal_id": "PORTAL-42"}
        }
    }


class TriggerResponse(BaseModel):
    message: str
    run_id: str


class RunStatusResponse(BaseModel):
    run_id: str
    state: str = Field(description="waiting, delayed, active, completed, failed")
    progress: int = Field(ge=0, le=100, description="Percent of merchant tasks settled")
    lock_status: Optional[str] = None


class FlowDebugResponse(BaseModel):
    """Finalization job introspection for operators."""

    run_id: str
    state: str
    failed_reason: Optional[str] = None
    stacktrace: Optional[str] = None
    return_value: Optional[Any] = None
    settled: int = 0
    expected: Optional[int] = None
    is_stuck: bool = False


class ErrorResponse(BaseModel):
    detail: str
    status: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
