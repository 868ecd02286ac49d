"""Domain types shared by the orchestrator, the workers and the stores.

Job arguments travel through arq as plain dicts (see `to_dict`/`from_dict`)
so a worker running an older build can still read them.
"""

from __future__ import annotations

import calendar
import enum
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional


def merchant_job_id(run_id: str, merchant_id: str) -> str:
    return f"{run_id}:merchant:{merchant_id}"


def finalization_job_id(run_id: str) -> str:
    return f"{run_id}:finalize"


class LockStatus(str, enum.Enum):
    """Per-user run state stored in the lock key."""

    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class TaskOutcome(str, enum.Enum):
    """Terminal outcome of a merchant task. Every outcome counts as settled."""

    succeeded = "succeeded"
    skipped = "skipped"
    failed = "failed"


class ProcessorKind(str, enum.Enum):
    payroc = "payroc"
    argyle = "argyle"
    merchant_lynx = "merchant_lynx"


@dataclass(frozen=True)
class DateRange:
    """Inclusive reporting window."""

    start: date
    end: date

    @classmethod
    def current_month(cls, today: date) -> "DateRange":
        last_day = calendar.monthrange(today.year, today.month)[1]
        return cls(start=today.replace(day=1), end=today.replace(day=last_day))


@dataclass
class VolumeAndCount:
    net_volume: Decimal = Decimal("0")
    transaction_count: int = 0

    def __add__(self, other: "VolumeAndCount") -> "VolumeAndCount":
        return VolumeAndCount(
            net_volume=self.net_volume + other.net_volume,
            transaction_count=self.transaction_count + other.transaction_count,
        )


@dataclass(frozen=True)
class PortalUser:
    user_id: str
    portal_id: str


@dataclass(frozen=True)
class Merchant:
    """A merchant record from the directory (one per processor integration)."""

    merchant_id: str
    processor_name: Optional[str]
    name: Optional[str] = None


@dataclass(frozen=True)
class ProcessorRef:
    """Processor name as listed in the directory plus its resolved kind.

    `kind` is None when the name matches no integration; the task skips it.
    """

    name: Optional[str]
    kind: Optional[ProcessorKind]

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "kind": self.kind.value if self.kind else None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessorRef":
        kind = data.get("kind")
        return cls(name=data.get("name"), kind=ProcessorKind(kind) if kind else None)


@dataclass
class MerchantTask:
    """One child unit of work: compute a merchant's volume for a run."""

    run_id: str
    user_id: str
    merchant_id: str
    processors: List[ProcessorRef] = field(default_factory=list)

    @property
    def job_id(self) -> str:
        return merchant_job_id(self.run_id, self.merchant_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "user_id": self.user_id,
            "merchant_id": self.merchant_id,
            "processors": [p.to_dict() for p in self.processors],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MerchantTask":
        return cls(
            run_id=data["run_id"],
            user_id=data["user_id"],
            merchant_id=data["merchant_id"],
            processors=[ProcessorRef.from_dict(p) for p in data.get("processors", [])],
        )


@dataclass
class FinalizationContext:
    """Join metadata handed to the finalization job."""

    run_id: str
    user_id: str
    portal_id: str
    merchant_ids: List[str]
    merchant_names: Dict[str, str]

    @property
    def job_id(self) -> str:
        return finalization_job_id(self.run_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "user_id": self.user_id,
            "portal_id": self.portal_id,
            "merchant_ids": list(self.merchant_ids),
            "merchant_names": dict(self.merchant_names),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FinalizationContext":
        return cls(
            run_id=data["run_id"],
            user_id=data["user_id"],
            portal_id=data["portal_id"],
            merchant_ids=list(data["merchant_ids"]),
            merchant_names=dict(data["merchant_names"]),
        )
