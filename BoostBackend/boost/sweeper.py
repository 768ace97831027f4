# BoostBackend/boost/sweeper.py
# Promotion sweeper: one tick evicts expired slots, re-ranks the rest by
# remaining time and promotes waitlisted projects into the freed slots.
#
# Each slot's step commits on its own, so a failure halfway through a tick
# keeps the evictions/promotions that already happened.

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..models import BoostContributions
from .clock import Clock, utcnow
from .duration import duration_delta
from .slot_store import SlotStore
from .types import SweepReport, WaitlistView
from .waitlist import WaitlistQueue

log = logging.getLogger("sweeper")


class PromotionSweeper:
    def __init__(self, store: SlotStore, waitlist: WaitlistQueue, clock: Clock = utcnow):
        self.store = store
        self.waitlist = waitlist
        self.clock = clock
        self._tick_lock = threading.Lock()

    # ------------------------------ steps ------------------------------

    def _evict(self, now: datetime, report: SweepReport) -> None:
        for v in self.store.snapshot():
            if not v.occupied or v.end_time > now:
                continue
            try:
                if self.store.vacate(v.slot_number, expected_version=v.version):
                    report.evicted.append(v.slot_number)
                    log.info(json.dumps({
                        "event": "slot_evicted",
                        "slot": v.slot_number,
                        "occupancy_id": str(v.occupancy_id),
                        "project": v.occupant.project_name if v.occupant else None,
                        "end_time": v.end_time.isoformat(),
                        "ts": int(now.timestamp()),
                    }))
            except Exception as e:
                log.exception("evict failed for slot %s", v.slot_number)
                report.errors.append(f"evict slot {v.slot_number}: {e}")

    def _claim_for(self, entry: WaitlistView, slot_number: int, now: datetime, s: Session) -> bool:
        end = now + duration_delta(entry.contribution)
        occupancy_id = self.store.try_claim(
            slot_number, entry.occupant, now, end, entry.contribution, db=s
        )
        if occupancy_id is None:
            return False
        s.add(BoostContributions(
            slot_number=slot_number,
            occupancy_id=occupancy_id,
            waitlist_entry_id=entry.id,
            wallet_address=entry.occupant.wallet_address,
            amount=entry.contribution,
            payment_reference=entry.payment_reference,
            origin="promotion",
            created_at=now,
        ))
        s.flush()
        return True

    def _promote(self, now: datetime, report: SweepReport) -> None:
        vacant = self.store.empty_slot_numbers()
        # Bounded by the number of vacant slots this tick; a failed claim
        # retries the same head entry on the next vacant slot.
        for slot_number in vacant:
            if self.waitlist.peek_front() is None:
                break
            try:
                with self.store.locked(slot_number):
                    entry = self.waitlist.promote_head(
                        lambda e, s: self._claim_for(e, slot_number, now, s)
                    )
            except Exception as e:
                log.exception("promotion into slot %s failed", slot_number)
                report.errors.append(f"promote slot {slot_number}: {e}")
                continue
            if entry is None:
                continue
            report.promoted.append(slot_number)
            log.info(json.dumps({
                "event": "waitlist_promoted",
                "slot": slot_number,
                "entry_id": str(entry.id),
                "project": entry.occupant.project_name,
                "contribution": str(entry.contribution),
                "payment_reference": entry.payment_reference,
                "ts": int(now.timestamp()),
            }))

    # ------------------------------ tick ------------------------------

    def tick(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one sweep. A tick that overlaps a running one is skipped."""
        report = SweepReport()
        if not self._tick_lock.acquire(blocking=False):
            report.skipped = True
            log.info("sweep skipped (previous tick still running)")
            return report
        try:
            now = now or self.clock()
            self._evict(now, report)
            try:
                report.reordered = self.store.reorder(now)
            except Exception as e:
                log.exception("reorder failed")
                report.errors.append(f"reorder: {e}")
            # promoted occupants are ranked on the next tick
            self._promote(now, report)
        finally:
            self._tick_lock.release()

        if report.evicted or report.promoted or report.errors:
            log.info(
                "sweep done evicted=%s promoted=%s reordered=%s errors=%s",
                report.evicted, report.promoted, report.reordered, len(report.errors),
            )
        return report

    def run_job(self) -> None:
        """Scheduler entry point."""
        try:
            self.tick()
        except Exception as e:  # pragma: no cover
            log.exception("Sweep job failed: %s", e)
