# BoostBackend/boost/waitlist.py
# FIFO queue of paid submissions that found no free slot.
# Order is (submitted_at, seq); entries leave only from the head (promotion)
# or by id (withdrawal). Contribution size never changes the order.

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterator, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from ..Database.db import session_scope
from ..models import BoostWaitlist
from .clock import Clock, utcnow, as_utc
from .types import Occupant, WaitlistView

log = logging.getLogger("boost")


def _view(row: BoostWaitlist) -> WaitlistView:
    return WaitlistView(
        id=row.id,
        occupant=Occupant(
            project_name=row.project_name,
            project_link=row.project_link,
            wallet_address=row.wallet_address,
            project_logo=row.project_logo,
            telegram_link=row.telegram_link,
            chart_link=row.chart_link,
        ),
        contribution=Decimal(row.contribution),
        payment_reference=row.payment_reference,
        submitted_at=as_utc(row.submitted_at),
    )


class WaitlistQueue:
    def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    def _ordered(self, s: Session):
        return s.query(BoostWaitlist).order_by(BoostWaitlist.submitted_at.asc(), BoostWaitlist.seq.asc())

    # ------------------------------ writes ------------------------------

    def push(
        self,
        occupant: Occupant,
        contribution: Decimal,
        payment_reference: str,
        *,
        submitted_at: Optional[datetime] = None,
        db: Optional[Session] = None,
    ) -> WaitlistView:
        with self.locked(), session_scope(self.session_factory, db) as s:
            row = BoostWaitlist(
                **occupant.as_columns(),
                contribution=contribution,
                payment_reference=payment_reference,
                submitted_at=submitted_at or self.clock(),
            )
            s.add(row)
            s.flush()
            view = _view(row)
        log.info("waitlisted %s ($%s, ref=%s)", occupant.project_name, contribution, payment_reference)
        return view

    def pop_front(self, db: Optional[Session] = None) -> Optional[WaitlistView]:
        """Remove and return the head. The DELETE rowcount guards against a double pop."""
        with self.locked(), session_scope(self.session_factory, db) as s:
            head = self._ordered(s).first()
            if head is None:
                return None
            view = _view(head)
            n = s.query(BoostWaitlist).filter(BoostWaitlist.id == head.id).delete(synchronize_session=False)
            if n != 1:
                return None
            return view

    def remove(self, entry_id: UUID, db: Optional[Session] = None) -> bool:
        """Explicit withdrawal."""
        with self.locked(), session_scope(self.session_factory, db) as s:
            n = s.query(BoostWaitlist).filter(BoostWaitlist.id == entry_id).delete(synchronize_session=False)
        return n == 1

    def promote_head(self, claim: Callable[[WaitlistView, Session], bool]) -> Optional[WaitlistView]:
        """
        Pop the head and hand it to `claim` inside ONE transaction.
        If `claim` returns False (or raises) the transaction rolls back and the
        entry stays at the head of the queue.
        """
        with self.locked():
            s = self.session_factory()
            try:
                head = self._ordered(s).first()
                if head is None:
                    return None
                view = _view(head)
                n = s.query(BoostWaitlist).filter(BoostWaitlist.id == head.id).delete(synchronize_session=False)
                if n != 1 or not claim(view, s):
                    s.rollback()
                    return None
                s.commit()
                return view
            except Exception:
                s.rollback()
                raise
            finally:
                s.close()

    # ------------------------------ reads ------------------------------

    def peek_all(self, db: Optional[Session] = None) -> List[WaitlistView]:
        with session_scope(self.session_factory, db) as s:
            return [_view(r) for r in self._ordered(s).all()]

    def peek_front(self, db: Optional[Session] = None) -> Optional[WaitlistView]:
        with session_scope(self.session_factory, db) as s:
            head = self._ordered(s).first()
            return _view(head) if head is not None else None

    def position_of(self, entry_id: UUID) -> Optional[int]:
        for i, e in enumerate(self.peek_all(), start=1):
            if e.id == entry_id:
                return i
        return None

    def get(self, entry_id: UUID) -> Optional[WaitlistView]:
        with session_scope(self.session_factory) as s:
            row = s.query(BoostWaitlist).filter(BoostWaitlist.id == entry_id).one_or_none()
            return _view(row) if row is not None else None

    def __len__(self) -> int:
        with session_scope(self.session_factory) as s:
            return s.query(BoostWaitlist).count()
