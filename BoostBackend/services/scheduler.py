# BoostBackend/services/scheduler.py
# APScheduler wrapper for the boost background jobs (sweep, reconcile, rate refresh).

from __future__ import annotations
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from typing import Callable, Optional

_scheduler: Optional[BackgroundScheduler] = None

def get_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler(timezone="UTC")
    return _scheduler

def every(seconds: int, fn: Callable, job_id: str, *args, **kwargs) -> str:
    """Register (or replace) an interval job. One instance at a time; missed runs coalesce."""
    sched = get_scheduler()
    job = sched.add_job(
        fn,
        trigger=IntervalTrigger(seconds=seconds),
        args=args,
        kwargs=kwargs,
        id=job_id,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=30,
    )
    return job.id

def start() -> None:
    sched = get_scheduler()
    if not sched.running:
        sched.start()

def shutdown() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None
