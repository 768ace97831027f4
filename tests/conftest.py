"""
Pytest configuration and shared fixtures for the boost engine tests.

This module provides:
- A throwaway SQLite database per test (file-backed so worker threads share it)
- A virtual clock the tests advance instead of sleeping
- Fake payment and exchange-rate collaborators
- A fully wired BoostEngine and JWT headers for the HTTP tests
"""

import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Set up test environment before any imports
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="boost-logs-"))
os.environ["BOOST_SWEEPER_ENABLED"] = "0"
os.environ["JWT_SECRET"] = "test-secret"

from BoostBackend.Database.changes import ChangeFeed
from BoostBackend.Database.db import make_engine, make_session_factory
from BoostBackend.boost.types import Submission
from BoostBackend.deps import build_engine, set_engine
from BoostBackend.models import Base

# Well-known dev accounts (//Alice, //Bob), generic substrate prefix 42
ALICE = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
BOB = "5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty"

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Virtual UTC clock; advance() moves it forward."""

    def __init__(self, start: datetime = T0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)
            return self.now


class FakePayments:
    """Records every pay() call and returns unique references."""

    def __init__(self):
        self.calls = []
        self.fail = None          # exception to raise
        self.gate = None          # threading.Event; pay() blocks until it is set
        self._lock = threading.Lock()

    def pay(self, payer: str, amount: int) -> str:
        with self._lock:
            self.calls.append((payer, amount))
            n = len(self.calls)
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail is not None:
            raise self.fail
        return f"0x{n:064x}"


class FakeRates:
    def __init__(self, value: Decimal = Decimal("5")):
        self.value = value

    def rate(self) -> Decimal:
        return self.value


def make_submission(name: str = "Project", contribution="10", wallet: str = ALICE, **extra) -> Submission:
    return Submission(
        project_name=name,
        project_link=extra.pop("project_link", f"https://{name.lower().replace(' ', '')}.io"),
        wallet_address=wallet,
        contribution=Decimal(str(contribution)),
        **extra,
    )


@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database with all tables."""
    engine = make_engine(f"sqlite:///{tmp_path / 'boost.db'}")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def rates():
    return FakeRates()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def engine(session_factory, payments, rates, clock, feed):
    """Fully wired engine with bootstrapped slots."""
    eng = build_engine(session_factory, payments, rates, clock=clock, timeout_sec=1, feed=feed)
    eng.store.bootstrap()
    yield eng
    eng.shutdown()


@pytest.fixture
def store(engine):
    return engine.store


@pytest.fixture
def waitlist(engine):
    return engine.waitlist


@pytest.fixture
def orchestrator(engine):
    return engine.orchestrator


@pytest.fixture
def sweeper(engine):
    return engine.sweeper


@pytest.fixture
def installed_engine(engine):
    """Install the engine as the process-wide one used by the FastAPI dependencies."""
    set_engine(engine)
    yield engine
    set_engine(None)


@pytest.fixture
def auth_headers():
    from BoostBackend.auth_dep import create_access_token

    def _headers(wallet: str = ALICE) -> dict:
        return {"Authorization": f"Bearer {create_access_token(wallet)}"}
    return _headers
