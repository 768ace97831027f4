# BoostBackend/boost/types.py
# Plain value objects passed between the engine components.

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from uuid import UUID


@dataclass(frozen=True)
class Occupant:
    project_name: str
    project_link: str
    wallet_address: str
    project_logo: Optional[str] = None
    telegram_link: Optional[str] = None
    chart_link: Optional[str] = None

    def as_columns(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Submission:
    """A project submission as it arrives from the client (links not yet normalized)."""
    project_name: str
    project_link: str
    wallet_address: str
    contribution: Decimal
    project_logo: Optional[str] = None
    telegram_link: Optional[str] = None
    chart_link: Optional[str] = None

    def occupant(self) -> Occupant:
        return Occupant(
            project_name=self.project_name,
            project_link=self.project_link,
            wallet_address=self.wallet_address,
            project_logo=self.project_logo,
            telegram_link=self.telegram_link,
            chart_link=self.chart_link,
        )

    def to_payload(self) -> dict:
        d = asdict(self)
        d["contribution"] = str(self.contribution)
        return d

    @classmethod
    def from_payload(cls, d: dict) -> "Submission":
        return cls(**{**d, "contribution": Decimal(str(d["contribution"]))})


@dataclass(frozen=True)
class SlotView:
    slot_number: int
    version: int
    occupancy_id: Optional[UUID] = None
    occupant: Optional[Occupant] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    accumulated_contribution: Decimal = Decimal(0)
    contributor_count: int = 0

    @property
    def occupied(self) -> bool:
        return self.occupancy_id is not None

    def is_active(self, now: datetime) -> bool:
        return self.occupied and self.end_time is not None and now < self.end_time

    def remaining_seconds(self, now: datetime) -> float:
        if not self.is_active(now):
            return 0.0
        return (self.end_time - now).total_seconds()


@dataclass(frozen=True)
class WaitlistView:
    id: UUID
    occupant: Occupant
    contribution: Decimal
    payment_reference: str
    submitted_at: datetime


@dataclass(frozen=True)
class AdmissionResult:
    payment_reference: str
    wallet_address: str
    amount_usd: Decimal
    chain_amount: int
    exchange_rate: Decimal


@dataclass(frozen=True)
class Boosted:
    slot_number: int
    occupancy_id: UUID
    payment_reference: str
    end_time: datetime
    type: str = "boosted"


@dataclass(frozen=True)
class Waitlisted:
    entry_id: UUID
    position: int
    payment_reference: str
    type: str = "waitlist"


@dataclass
class SweepReport:
    evicted: List[int] = field(default_factory=list)
    promoted: List[int] = field(default_factory=list)
    reordered: bool = False
    skipped: bool = False
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BoostStats:
    active_slots: int
    free_slots: int
    waitlist_length: int
    total_revenue: Decimal
    total_contributors: int
