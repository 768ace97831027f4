# BoostBackend/main.py
# FastAPI app with CORS, DB health endpoints, routers, and the boost background
# jobs (sweep, reconcile, exchange-rate refresh) on APScheduler via Lifespan.

from __future__ import annotations

import logging, sys, os
from logging.handlers import RotatingFileHandler
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import config
from .Database.db import get_db
from .deps import get_engine
from .models import Base
from .services import scheduler

# Routers
from .routes_auth import router as auth_router
from .routes_boost import router as boost_router

# --------------------------- Logging setup ---------------------------
LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.path.dirname(__file__), "logs"))
os.makedirs(LOG_DIR, exist_ok=True)

def _setup_logger(name: str, filename: str) -> logging.Logger:
    """Create a named logger that logs to rotating file + stdout (for Docker/K8s)."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    fmt = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')

    fh = RotatingFileHandler(
        os.path.join(LOG_DIR, filename),
        maxBytes=2_000_000,
        backupCount=5,
        encoding="utf-8",
    )
    fh.setFormatter(fmt)

    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(fmt)

    # Avoid duplicate handlers on reload
    if not logger.handlers:
        logger.addHandler(fh)
        logger.addHandler(sh)

    return logger

_setup_logger("boost", "boost.log")
_setup_logger("sweeper", "sweeper.log")
_setup_logger("payment", "payment.log")
# unrecorded/unreconciled payments: keep this file, it is the refund trail
_setup_logger("reconcile", "reconcile.log")


logger = logging.getLogger("boost")

@asynccontextmanager
async def lifespan(app: FastAPI):
    # ---- Startup ----
    engine = get_engine()
    try:
        Base.metadata.create_all(bind=engine.session_factory.kw["bind"])
        engine.store.bootstrap()
    except Exception as e:  # pragma: no cover
        logger.exception("Failed to bootstrap boost slots: %s", e)

    try:
        if config.SWEEPER_ENABLED:
            scheduler.every(config.SWEEP_INTERVAL_SEC, engine.sweeper.run_job, "boost_sweep")
            scheduler.every(config.RECONCILE_INTERVAL_SEC, engine.orchestrator.reconcile_pending, "boost_reconcile")
            if hasattr(engine.rates, "refresh"):
                scheduler.every(config.RATE_REFRESH_SEC, engine.rates.refresh, "rate_refresh")
            scheduler.start()
            logger.info(
                "Scheduler started (sweep every %ss, reconcile every %ss)",
                config.SWEEP_INTERVAL_SEC, config.RECONCILE_INTERVAL_SEC,
            )
        else:
            logger.info("Sweeper disabled (BOOST_SWEEPER_ENABLED=0), scheduler not started")
    except Exception as e:  # pragma: no cover
        logger.exception("Failed to start scheduler: %s", e)

    yield

    # ---- Shutdown ----
    try:
        scheduler.shutdown()
        engine.shutdown()
        logger.info("Scheduler stopped")
    except Exception as e:  # pragma: no cover
        logger.exception("Failed to stop scheduler: %s", e)

app = FastAPI(title="Boost slots", lifespan=lifespan)

# --------------------------- CORS ---------------------------
# MVP: allow all; tighten in production by setting ALLOW_ORIGINS env (comma-separated).
allow_origins_env = os.getenv("ALLOW_ORIGINS")
allow_origins = [o.strip() for o in allow_origins_env.split(",")] if allow_origins_env else ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --------------------------- Health (ready + live) ---------------------------
@app.get("/health")
def health():
    """Basic liveness/ready probe (200 OK)."""
    return {"status": "ok"}

@app.get("/health/db")
def db_health(db: Session = Depends(get_db)):
    """Round-trips a trivial query to verify DB connectivity."""
    db.execute(text("SELECT 1")).scalar()
    return {"db": "ok"}

# --------------------------- Routers ---------------------------
app.include_router(auth_router)
app.include_router(boost_router)
