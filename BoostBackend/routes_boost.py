# routes_boost.py
# HTTP surface of the boost engine. Thin: every call goes through the
# LifecycleOrchestrator (or the sweeper for the manual tick), and engine
# errors are mapped onto HTTP status codes with {"code", "hint"} details.

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from . import config
from .auth_dep import get_current_wallet
from .boost.errors import (
    BoostError,
    CapacityExceeded,
    ClaimConflict,
    NotOwner,
    PaymentError,
    PaymentTimeout,
    PersistenceError,
    SlotNotFound,
    ValidationError,
)
from .boost.orchestrator import LifecycleOrchestrator
from .boost.sweeper import PromotionSweeper
from .boost.types import Boosted, SlotView, Submission, WaitlistView
from .deps import get_orchestrator, get_sweeper

router = APIRouter(prefix="/boost", tags=["boost"])


# -------------------------- Schemas --------------------------

class SubmitIn(BaseModel):
    project_name: str = Field(..., min_length=1, max_length=120)
    project_link: str = Field(..., min_length=1)
    project_logo: Optional[str] = None
    telegram_link: Optional[str] = None
    chart_link: Optional[str] = None
    contribution: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)

    @field_validator("project_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("project_name must not be blank")
        return v


class ContributeIn(BaseModel):
    contribution: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)


class SlotOut(BaseModel):
    slot_number: int
    occupied: bool
    active: bool
    occupancy_id: Optional[str] = None
    project_name: Optional[str] = None
    project_logo: Optional[str] = None
    project_link: Optional[str] = None
    telegram_link: Optional[str] = None
    chart_link: Optional[str] = None
    wallet_address: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    remaining_seconds: int = 0
    accumulated_contribution: str = "0.00"
    contributor_count: int = 0


class WaitlistOut(BaseModel):
    id: str
    position: int
    project_name: str
    project_logo: Optional[str] = None
    project_link: str
    telegram_link: Optional[str] = None
    chart_link: Optional[str] = None
    wallet_address: str
    contribution: str
    submitted_at: datetime


class StatsOut(BaseModel):
    active_slots: int
    free_slots: int
    waitlist_length: int
    total_revenue: str
    total_contributors: int


class StateOut(BaseModel):
    now: datetime
    slots: List[SlotOut]
    waitlist: List[WaitlistOut]
    stats: StatsOut


class SubmitOut(BaseModel):
    type: str                      # "boosted" | "waitlist"
    payment_reference: str
    slot_number: Optional[int] = None
    occupancy_id: Optional[str] = None
    end_time: Optional[datetime] = None
    entry_id: Optional[str] = None
    position: Optional[int] = None


class ContributeOut(BaseModel):
    slot_number: int
    end_time: datetime


# -------------------------- Helpers --------------------------

def _slot_out(v: SlotView, now: datetime) -> SlotOut:
    o = v.occupant
    return SlotOut(
        slot_number=v.slot_number,
        occupied=v.occupied,
        active=v.is_active(now),
        occupancy_id=str(v.occupancy_id) if v.occupancy_id else None,
        project_name=o.project_name if o else None,
        project_logo=o.project_logo if o else None,
        project_link=o.project_link if o else None,
        telegram_link=o.telegram_link if o else None,
        chart_link=o.chart_link if o else None,
        wallet_address=o.wallet_address if o else None,
        start_time=v.start_time,
        end_time=v.end_time,
        remaining_seconds=int(v.remaining_seconds(now)),
        accumulated_contribution=str(v.accumulated_contribution),
        contributor_count=v.contributor_count,
    )


def _waitlist_out(entries: List[WaitlistView]) -> List[WaitlistOut]:
    return [
        WaitlistOut(
            id=str(e.id),
            position=i,
            project_name=e.occupant.project_name,
            project_logo=e.occupant.project_logo,
            project_link=e.occupant.project_link,
            telegram_link=e.occupant.telegram_link,
            chart_link=e.occupant.chart_link,
            wallet_address=e.occupant.wallet_address,
            contribution=str(e.contribution),
            submitted_at=e.submitted_at,
        )
        for i, e in enumerate(entries, start=1)
    ]


def _raise_http(e: BoostError) -> None:
    """Map an engine error onto an HTTPException."""
    if isinstance(e, ValidationError):
        raise HTTPException(status_code=400, detail={"code": e.code, "hint": str(e), "field": e.field})
    if isinstance(e, PaymentTimeout):
        raise HTTPException(
            status_code=504,
            detail={"code": e.code, "hint": f"{e}. If your wallet was charged the payment will be refunded."},
        )
    if isinstance(e, PaymentError):
        raise HTTPException(status_code=402, detail={"code": e.code, "hint": str(e)})
    if isinstance(e, CapacityExceeded):
        raise HTTPException(status_code=409, detail={"code": e.code, "hint": str(e)})
    if isinstance(e, NotOwner):
        raise HTTPException(status_code=403, detail={"code": e.code, "hint": str(e)})
    if isinstance(e, SlotNotFound):
        raise HTTPException(status_code=404, detail={"code": e.code, "hint": str(e)})
    if isinstance(e, PersistenceError):
        raise HTTPException(
            status_code=503,
            detail={
                "code": e.code,
                "hint": str(e),
                "payment_reference": e.payment_reference,
                "wallet_address": e.wallet_address,
                "amount": str(e.amount) if e.amount is not None else None,
            },
        )
    if isinstance(e, ClaimConflict):
        raise HTTPException(status_code=409, detail={"code": e.code, "hint": "Slot is busy, please retry"})
    raise HTTPException(status_code=500, detail={"code": e.code, "hint": str(e)})


# -------------------------- Reads --------------------------

@router.get("/state", response_model=StateOut)
def get_state(orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    st = orch.state()
    now = st["now"]
    s = st["stats"]
    return StateOut(
        now=now,
        slots=[_slot_out(v, now) for v in st["slots"]],
        waitlist=_waitlist_out(st["waitlist"]),
        stats=StatsOut(
            active_slots=s.active_slots,
            free_slots=s.free_slots,
            waitlist_length=s.waitlist_length,
            total_revenue=str(s.total_revenue),
            total_contributors=s.total_contributors,
        ),
    )


@router.get("/slots", response_model=List[SlotOut])
def get_slots(orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    st = orch.state()
    return [_slot_out(v, st["now"]) for v in st["slots"]]


@router.get("/waitlist", response_model=List[WaitlistOut])
def get_waitlist(orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return _waitlist_out(orch.state()["waitlist"])


@router.get("/stats", response_model=StatsOut)
def get_stats(orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    s = orch.stats()
    return StatsOut(
        active_slots=s.active_slots,
        free_slots=s.free_slots,
        waitlist_length=s.waitlist_length,
        total_revenue=str(s.total_revenue),
        total_contributors=s.total_contributors,
    )


@router.get("/quote")
def get_quote(
    amount: Decimal = Query(..., gt=0),
    slot: Optional[int] = Query(default=None, ge=1),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    try:
        q = orch.quote(amount, slot_number=slot)
    except BoostError as e:
        _raise_http(e)
    out = {
        "contribution": str(q["contribution"]),
        "hours": q["hours"],
        "minutes": q["minutes"],
        "label": q["label"],
        "chain_amount": str(q["chain_amount"]) if q["chain_amount"] is not None else None,
        "exchange_rate": str(q["exchange_rate"]) if q["exchange_rate"] is not None else None,
    }
    if "max_additional_contribution" in q:
        out["max_additional_contribution"] = str(q["max_additional_contribution"])
    return out


@router.get("/reconciliation")
def get_reconciliation(
    wallet: str = Depends(get_current_wallet),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    """Payments of the caller that are still waiting for reconciliation or a refund."""
    return [p for p in orch.pending_reconciliation() if p["wallet_address"] == wallet]


# -------------------------- Writes --------------------------

@router.post("/submit", response_model=SubmitOut, status_code=status.HTTP_201_CREATED)
def submit_project(
    payload: SubmitIn,
    wallet: str = Depends(get_current_wallet),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    submission = Submission(
        project_name=payload.project_name,
        project_link=payload.project_link,
        wallet_address=wallet,
        contribution=payload.contribution,
        project_logo=payload.project_logo,
        telegram_link=payload.telegram_link,
        chart_link=payload.chart_link,
    )
    try:
        placed = orch.submit_project(submission)
    except BoostError as e:
        _raise_http(e)

    if isinstance(placed, Boosted):
        return SubmitOut(
            type=placed.type,
            payment_reference=placed.payment_reference,
            slot_number=placed.slot_number,
            occupancy_id=str(placed.occupancy_id),
            end_time=placed.end_time,
        )
    return SubmitOut(
        type=placed.type,
        payment_reference=placed.payment_reference,
        entry_id=str(placed.entry_id),
        position=placed.position,
    )


@router.post("/slots/{slot_number}/contribute", response_model=ContributeOut)
def contribute_more(
    slot_number: int,
    payload: ContributeIn,
    wallet: str = Depends(get_current_wallet),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    try:
        end_time = orch.contribute_more(slot_number, wallet, payload.contribution)
    except BoostError as e:
        _raise_http(e)
    return ContributeOut(slot_number=slot_number, end_time=end_time)


@router.delete("/waitlist/{entry_id}")
def withdraw_entry(
    entry_id: UUID,
    wallet: str = Depends(get_current_wallet),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    try:
        entry = orch.withdraw(entry_id, wallet)
    except BoostError as e:
        _raise_http(e)
    return {"ok": True, "entry_id": str(entry.id), "payment_reference": entry.payment_reference}


@router.post("/sweep")
def run_sweep(
    wallet: str = Depends(get_current_wallet),
    sweeper: PromotionSweeper = Depends(get_sweeper),
):
    """Run one sweep tick now (the scheduler runs it every BOOST_SWEEP_INTERVAL_SEC)."""
    if config.ADMIN_WALLETS and wallet not in config.ADMIN_WALLETS:
        raise HTTPException(status_code=403, detail={"code": "not_admin", "hint": "manual sweeps are restricted"})
    report = sweeper.tick()
    return {
        "evicted": report.evicted,
        "promoted": report.promoted,
        "reordered": report.reordered,
        "skipped": report.skipped,
        "errors": report.errors,
    }
