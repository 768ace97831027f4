# BoostBackend/deps.py
# Wiring of the boost engine: one set of components per process, built lazily
# on first use. Tests build their own with build_engine() and install it with
# set_engine().

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from . import config
from .Database.changes import ChangeFeed
from .Database.db import SessionLocal
from .boost.admission import AdmissionGate, PaymentCollaborator, RateCollaborator
from .boost.clock import Clock, utcnow
from .boost.orchestrator import LifecycleOrchestrator
from .boost.slot_store import SlotStore
from .boost.sweeper import PromotionSweeper
from .boost.waitlist import WaitlistQueue
from .services.exchange_rate import ExchangeRateCache
from .services.payment import SubstratePaymentClient


@dataclass
class BoostEngine:
    session_factory: sessionmaker
    rates: RateCollaborator
    gate: AdmissionGate
    store: SlotStore
    waitlist: WaitlistQueue
    orchestrator: LifecycleOrchestrator
    sweeper: PromotionSweeper
    feed: Optional[ChangeFeed] = None

    def shutdown(self) -> None:
        self.gate.shutdown()


def build_engine(
    session_factory: sessionmaker,
    payments: PaymentCollaborator,
    rates: RateCollaborator,
    *,
    clock: Clock = utcnow,
    capacity: int = config.BOOST_SLOT_COUNT,
    timeout_sec: float = config.PAYMENT_TIMEOUT_SEC,
    feed: Optional[ChangeFeed] = None,
) -> BoostEngine:
    if feed is not None:
        feed.attach(session_factory)
    gate = AdmissionGate(payments, rates, timeout_sec=timeout_sec)
    store = SlotStore(session_factory, capacity=capacity, clock=clock)
    waitlist = WaitlistQueue(session_factory, clock=clock)
    orchestrator = LifecycleOrchestrator(session_factory, gate, store, waitlist, clock=clock, feed=feed)
    sweeper = PromotionSweeper(store, waitlist, clock=clock)
    return BoostEngine(
        session_factory=session_factory,
        rates=rates,
        gate=gate,
        store=store,
        waitlist=waitlist,
        orchestrator=orchestrator,
        sweeper=sweeper,
        feed=feed,
    )


_engine: Optional[BoostEngine] = None


def get_engine() -> BoostEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(
            SessionLocal,
            SubstratePaymentClient(),
            ExchangeRateCache(),
            feed=ChangeFeed(),
        )
    return _engine


def set_engine(engine: Optional[BoostEngine]) -> None:
    global _engine
    _engine = engine


# ---- FastAPI dependencies ----

def get_orchestrator() -> LifecycleOrchestrator:
    return get_engine().orchestrator


def get_sweeper() -> PromotionSweeper:
    return get_engine().sweeper
