# BoostBackend/boost/slot_store.py
# Fixed pool of N boost slots.
#
# Mutual exclusion per slot number is two-layered:
#   - in-process: one RLock per slot (acquired in ascending order when several are needed)
#   - database:   conditional UPDATEs (claim only WHERE occupancy_id IS NULL,
#                 extend/vacate/reorder only WHERE version = observed version)
# so a claim on a just-vacated slot can never be lost to last-writer-wins.

from __future__ import annotations

import uuid
import logging
import threading
from contextlib import contextmanager, ExitStack
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterator, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from ..Database.db import session_scope
from ..models import BoostSlots
from .. import config
from .clock import Clock, utcnow, as_utc
from .duration import MAX_BOOST_DURATION, duration_delta
from .errors import CapacityExceeded, ClaimConflict, SlotNotFound
from .types import Occupant, SlotView

log = logging.getLogger("boost")

# Columns that travel with an occupant when it is moved between slot numbers.
OCCUPANCY_COLUMNS = (
    "occupancy_id",
    "project_name",
    "project_logo",
    "project_link",
    "telegram_link",
    "chart_link",
    "wallet_address",
    "start_time",
    "end_time",
    "accumulated_contribution",
    "contributor_count",
)

_EMPTY = {c: None for c in OCCUPANCY_COLUMNS}
_EMPTY.update({"accumulated_contribution": Decimal(0), "contributor_count": 0})


def _view(row: BoostSlots) -> SlotView:
    occupant = None
    if row.occupancy_id is not None:
        occupant = Occupant(
            project_name=row.project_name,
            project_link=row.project_link,
            wallet_address=row.wallet_address,
            project_logo=row.project_logo,
            telegram_link=row.telegram_link,
            chart_link=row.chart_link,
        )
    return SlotView(
        slot_number=row.slot_number,
        version=row.version or 0,
        occupancy_id=row.occupancy_id,
        occupant=occupant,
        start_time=as_utc(row.start_time),
        end_time=as_utc(row.end_time),
        accumulated_contribution=Decimal(row.accumulated_contribution or 0),
        contributor_count=row.contributor_count or 0,
    )


def _payload(row: BoostSlots) -> dict:
    return {c: getattr(row, c) for c in OCCUPANCY_COLUMNS}


class SlotStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        capacity: int = config.BOOST_SLOT_COUNT,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.capacity = capacity
        self.clock = clock
        self._locks: Dict[int, threading.RLock] = {n: threading.RLock() for n in self.slot_numbers}

    @property
    def slot_numbers(self) -> range:
        return range(1, self.capacity + 1)

    def _check_number(self, slot_number: int) -> None:
        if slot_number not in self._locks:
            raise SlotNotFound(f"Slot {slot_number} does not exist (1..{self.capacity})")

    @contextmanager
    def locked(self, *slot_numbers: int) -> Iterator[None]:
        """Hold the locks of the given slots; always taken in ascending order."""
        with ExitStack() as stack:
            for n in sorted(set(slot_numbers)):
                self._check_number(n)
                stack.enter_context(self._locks[n])
            yield

    # ------------------------------ bootstrap ------------------------------

    def bootstrap(self) -> int:
        """Create the N empty slot rows that do not exist yet. Returns how many were created."""
        created = 0
        with session_scope(self.session_factory) as s:
            existing = {n for (n,) in s.query(BoostSlots.slot_number).all()}
            for n in self.slot_numbers:
                if n not in existing:
                    s.add(BoostSlots(slot_number=n, version=0, accumulated_contribution=Decimal(0), contributor_count=0))
                    created += 1
        if created:
            log.info("bootstrapped %s empty boost slots", created)
        return created

    # ------------------------------ reads ------------------------------

    def snapshot(self, db: Optional[Session] = None) -> List[SlotView]:
        """All N slots, ordered by slot number."""
        with session_scope(self.session_factory, db) as s:
            rows = s.query(BoostSlots).order_by(BoostSlots.slot_number.asc()).all()
            return [_view(r) for r in rows]

    def get(self, slot_number: int, db: Optional[Session] = None) -> SlotView:
        self._check_number(slot_number)
        with session_scope(self.session_factory, db) as s:
            row = s.query(BoostSlots).filter(BoostSlots.slot_number == slot_number).one_or_none()
            if row is None:
                raise SlotNotFound(f"Slot {slot_number} is not bootstrapped")
            return _view(row)

    def list_active(self, now: Optional[datetime] = None) -> List[SlotView]:
        now = now or self.clock()
        return [v for v in self.snapshot() if v.is_active(now)]

    def empty_slot_numbers(self, db: Optional[Session] = None) -> List[int]:
        return [v.slot_number for v in self.snapshot(db) if not v.occupied]

    def find_occupancy(self, occupancy_id: UUID, db: Optional[Session] = None) -> Optional[SlotView]:
        with session_scope(self.session_factory, db) as s:
            row = s.query(BoostSlots).filter(BoostSlots.occupancy_id == occupancy_id).one_or_none()
            return _view(row) if row is not None else None

    # ------------------------------ claim ------------------------------

    def try_claim(
        self,
        slot_number: int,
        occupant: Occupant,
        start: datetime,
        end: datetime,
        contribution: Decimal,
        *,
        db: Optional[Session] = None,
    ) -> Optional[UUID]:
        """
        Put `occupant` into `slot_number` if and only if it is empty.
        Returns the new occupancy id, or None when the slot is taken (not an error).
        With an outer `db` the claim becomes visible when the caller commits; the
        caller should hold `locked(slot_number)` until then.
        """
        self._check_number(slot_number)
        if end < start:
            raise ValueError("end must not be before start")
        if end - start > MAX_BOOST_DURATION:
            raise CapacityExceeded(f"Occupancy longer than {config.MAX_BOOST_HOURS}h")

        occupancy_id = uuid.uuid4()
        values = {
            **occupant.as_columns(),
            "occupancy_id": occupancy_id,
            "start_time": start,
            "end_time": end,
            "accumulated_contribution": contribution,
            "contributor_count": 1,
            "version": BoostSlots.version + 1,
        }
        with self.locked(slot_number), session_scope(self.session_factory, db) as s:
            n = (
                s.query(BoostSlots)
                .filter(BoostSlots.slot_number == slot_number, BoostSlots.occupancy_id.is_(None))
                .update(values, synchronize_session=False)
            )
        if n != 1:
            log.info("claim lost on slot %s (%s)", slot_number, occupant.project_name)
            return None
        log.info("slot %s claimed by %s until %s", slot_number, occupant.project_name, end.isoformat())
        return occupancy_id

    # ------------------------------ extend ------------------------------

    def _check_extend(self, view: SlotView, additional: Decimal, now: datetime) -> timedelta:
        if not view.is_active(now):
            raise SlotNotFound(f"Slot {view.slot_number} has no active occupant")
        delta = duration_delta(additional)
        if (view.end_time - view.start_time) + delta > MAX_BOOST_DURATION:
            raise CapacityExceeded(
                f"Slot {view.slot_number} would exceed the {config.MAX_BOOST_HOURS}h maximum boost time"
            )
        return delta

    def check_extend(self, slot_number: int, additional: Decimal) -> SlotView:
        """Validate an extension without mutating. Returns the slot as observed."""
        view = self.get(slot_number)
        self._check_extend(view, additional, self.clock())
        return view

    def extend(
        self,
        slot_number: int,
        additional_contribution: Decimal,
        *,
        occupancy_id: Optional[UUID] = None,
        db: Optional[Session] = None,
    ) -> datetime:
        """
        Push the slot's end_time forward by duration_for(additional_contribution).
        With `occupancy_id`, raises ClaimConflict if that occupant is no longer
        in `slot_number` (a sweep re-ranked it); callers look it up again and retry.
        """
        self._check_number(slot_number)
        with self.locked(slot_number), session_scope(self.session_factory, db) as s:
            row = s.query(BoostSlots).filter(BoostSlots.slot_number == slot_number).one_or_none()
            if row is None:
                raise SlotNotFound(f"Slot {slot_number} is not bootstrapped")
            if occupancy_id is not None and row.occupancy_id != occupancy_id:
                raise ClaimConflict(f"Occupant moved away from slot {slot_number}")
            view = _view(row)
            delta = self._check_extend(view, additional_contribution, self.clock())
            new_end = view.end_time + delta
            n = (
                s.query(BoostSlots)
                .filter(BoostSlots.slot_number == slot_number, BoostSlots.version == view.version)
                .update(
                    {
                        "end_time": new_end,
                        "accumulated_contribution": view.accumulated_contribution + additional_contribution,
                        "contributor_count": view.contributor_count + 1,
                        "version": view.version + 1,
                    },
                    synchronize_session=False,
                )
            )
            if n != 1:
                raise ClaimConflict(f"Slot {slot_number} changed concurrently")
        log.info("slot %s extended by $%s until %s", slot_number, additional_contribution, new_end.isoformat())
        return new_end

    # ------------------------------ vacate ------------------------------

    def vacate(self, slot_number: int, expected_version: Optional[int] = None, *, db: Optional[Session] = None) -> bool:
        """Clear the occupant. With `expected_version`, only if nothing changed since it was observed."""
        self._check_number(slot_number)
        with self.locked(slot_number), session_scope(self.session_factory, db) as s:
            q = s.query(BoostSlots).filter(
                BoostSlots.slot_number == slot_number,
                BoostSlots.occupancy_id.isnot(None),
            )
            if expected_version is not None:
                q = q.filter(BoostSlots.version == expected_version)
            n = q.update({**_EMPTY, "version": BoostSlots.version + 1}, synchronize_session=False)
        if n == 1:
            log.info("slot %s vacated", slot_number)
        return n == 1

    # ------------------------------ reorder ------------------------------

    def reorder(self, now: Optional[datetime] = None) -> bool:
        """
        Re-rank occupants so slot #1 holds the longest remaining time
        (tie-break: earlier start_time). Active occupants are compacted into
        the lowest slot numbers; occupied-but-expired ones follow; empties last.
        All-or-nothing: returns False without changes if any slot moved meanwhile.
        """
        now = now or self.clock()
        with self.locked(*self.slot_numbers):
            with session_scope(self.session_factory) as s:
                rows = s.query(BoostSlots).order_by(BoostSlots.slot_number.asc()).all()
                views = [_view(r) for r in rows]

                active = [v for v in views if v.is_active(now)]
                stale = [v for v in views if v.occupied and not v.is_active(now)]
                empty = [v for v in views if not v.occupied]
                active.sort(key=lambda v: (-v.remaining_seconds(now), v.start_time, v.slot_number))
                desired = active + stale + empty

                if [v.occupancy_id for v in desired] == [v.occupancy_id for v in views]:
                    return False

                payload_by_occ = {r.occupancy_id: _payload(r) for r in rows if r.occupancy_id is not None}
                changes = [
                    (row, target)
                    for row, target in zip(rows, desired)
                    if row.occupancy_id != target.occupancy_id
                ]

                # Phase 1: clear moving rows (occupancy_id is UNIQUE, so no row may
                # receive an occupant while its old slot still holds it).
                for row, _target in changes:
                    n = (
                        s.query(BoostSlots)
                        .filter(BoostSlots.slot_number == row.slot_number, BoostSlots.version == row.version)
                        .update({**_EMPTY, "version": row.version + 1}, synchronize_session=False)
                    )
                    if n != 1:
                        s.rollback()
                        log.warning("reorder aborted: slot %s changed concurrently", row.slot_number)
                        return False
                s.flush()

                # Phase 2: write occupants into their new rank.
                for row, target in changes:
                    values = dict(_EMPTY)
                    if target.occupancy_id is not None:
                        values = payload_by_occ[target.occupancy_id]
                    s.query(BoostSlots).filter(BoostSlots.slot_number == row.slot_number).update(
                        {**values, "version": row.version + 2},
                        synchronize_session=False,
                    )

        log.info(
            "slots reordered: %s",
            [(v.slot_number, str(v.occupancy_id)[:8] if v.occupancy_id else None) for v in desired],
        )
        return True
