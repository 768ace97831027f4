# BoostBackend/boost/orchestrator.py
# Lifecycle orchestrator: the only entry point allowed to mutate boost state
# on behalf of users (the sweeper is the only background mutator).
#
# Every paid operation follows the same sequence:
#   admission gate (validate -> pay) -> journal payment -> store mutation
# The journal row is committed before the mutation, so a payment whose state
# write fails is never lost: it is marked `unreconciled` and replayed later by
# reconcile_pending() without paying again.

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Union
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..Database.changes import BoardCache, ChangeFeed
from ..Database.db import session_scope
from ..models import BoostContributions, BoostPayments
from .admission import AdmissionGate
from .clock import Clock, utcnow, as_utc
from .duration import duration_delta, duration_for, format_duration, max_contribution_for, MAX_BOOST_DURATION
from .errors import (
    BoostError,
    CapacityExceeded,
    ClaimConflict,
    NotOwner,
    PaymentError,
    PersistenceError,
    SlotNotFound,
)
from .slot_store import SlotStore
from .types import AdmissionResult, Boosted, BoostStats, Submission, SlotView, Waitlisted, WaitlistView
from .waitlist import WaitlistQueue

log = logging.getLogger("boost")
reconcile_log = logging.getLogger("reconcile")

RECONCILE_GRACE = timedelta(minutes=2)


class LifecycleOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        gate: AdmissionGate,
        store: SlotStore,
        waitlist: WaitlistQueue,
        clock: Clock = utcnow,
        feed: Optional[ChangeFeed] = None,
    ):
        self.session_factory = session_factory
        self.gate = gate
        self.store = store
        self.waitlist = waitlist
        self.clock = clock
        self._reconcile_lock = threading.Lock()
        self._board = BoardCache(self._load_board, feed) if feed is not None else None
        if gate.on_late_settlement is None:
            gate.on_late_settlement = self._record_late_settlement

    # ------------------------------ payment journal ------------------------------

    def _journal(
        self,
        paid: AdmissionResult,
        kind: str,
        *,
        payload: Optional[dict] = None,
        target_slot: Optional[int] = None,
        target_occupancy: Optional[UUID] = None,
        status: str = "settled",
        error: Optional[str] = None,
    ) -> None:
        try:
            with session_scope(self.session_factory) as s:
                s.add(BoostPayments(
                    payment_reference=paid.payment_reference,
                    wallet_address=paid.wallet_address,
                    amount_usd=paid.amount_usd,
                    chain_amount=Decimal(paid.chain_amount),
                    exchange_rate=paid.exchange_rate,
                    kind=kind,
                    target_slot=target_slot,
                    target_occupancy=target_occupancy,
                    payload=payload,
                    status=status,
                    error=error,
                    created_at=self.clock(),
                ))
        except IntegrityError as e:
            # the collaborator handed back a reference we already hold: no new money moved
            log.error("payment reference %s already journalled", paid.payment_reference)
            raise PaymentError(f"Payment reference {paid.payment_reference} was already used") from e
        except Exception as e:
            self._log_unrecorded(paid, kind, payload, e)
            raise PersistenceError(
                "Payment settled but could not be recorded",
                payment_reference=paid.payment_reference,
                wallet_address=paid.wallet_address,
                amount=paid.amount_usd,
            ) from e

    def _mark(self, s: Session, reference: str, status: str, error: Optional[str] = None) -> None:
        s.query(BoostPayments).filter(BoostPayments.payment_reference == reference).update(
            {"status": status, "error": error, "updated_at": self.clock()},
            synchronize_session=False,
        )

    def _log_unrecorded(self, paid: AdmissionResult, kind: str, payload: Optional[dict], err: Exception) -> None:
        # The rotating reconcile log is the durable record of last resort.
        reconcile_log.critical(json.dumps({
            "event": "payment_unrecorded",
            "payment_reference": paid.payment_reference,
            "wallet_address": paid.wallet_address,
            "amount_usd": str(paid.amount_usd),
            "chain_amount": paid.chain_amount,
            "kind": kind,
            "payload": payload,
            "error": repr(err),
            "ts": int(self.clock().timestamp()),
        }))

    def _fail_after_payment(self, paid: AdmissionResult, err: Exception, kind: str) -> PersistenceError:
        reconcile_log.error(json.dumps({
            "event": "payment_unreconciled",
            "payment_reference": paid.payment_reference,
            "wallet_address": paid.wallet_address,
            "amount_usd": str(paid.amount_usd),
            "kind": kind,
            "error": repr(err),
            "ts": int(self.clock().timestamp()),
        }))
        try:
            with session_scope(self.session_factory) as s:
                self._mark(s, paid.payment_reference, "unreconciled", repr(err))
        except Exception:
            reconcile_log.exception("could not mark %s unreconciled", paid.payment_reference)
        return PersistenceError(
            "Payment settled but the boost could not be saved; it is queued for reconciliation",
            payment_reference=paid.payment_reference,
            wallet_address=paid.wallet_address,
            amount=paid.amount_usd,
        )

    def _record_late_settlement(self, paid: AdmissionResult, kind: str) -> None:
        """A payment that settled after its timeout: the caller was told it failed, so it is owed back."""
        self._journal(paid, kind, status="refund_due", error="settled after payment timeout")
        reconcile_log.error(json.dumps({
            "event": "payment_refund_due",
            "payment_reference": paid.payment_reference,
            "wallet_address": paid.wallet_address,
            "amount_usd": str(paid.amount_usd),
        }))

    # ------------------------------ placement ------------------------------

    def _place(self, clean: Submission, paid: AdmissionResult) -> Union[Boosted, Waitlisted]:
        now = self.clock()
        end = now + duration_delta(paid.amount_usd)
        occupant = clean.occupant()
        ref = paid.payment_reference

        # Nobody jumps the queue: while projects are waiting, new ones wait too.
        if self.waitlist.peek_front() is None:
            for n in self.store.empty_slot_numbers():
                with self.store.locked(n), session_scope(self.session_factory) as s:
                    occupancy_id = self.store.try_claim(n, occupant, now, end, paid.amount_usd, db=s)
                    if occupancy_id is None:
                        continue  # lost the race for this slot; try the next one
                    s.add(BoostContributions(
                        slot_number=n,
                        occupancy_id=occupancy_id,
                        wallet_address=paid.wallet_address,
                        amount=paid.amount_usd,
                        payment_reference=ref,
                        origin="submission",
                        created_at=now,
                    ))
                    self._mark(s, ref, "applied")
                log.info(json.dumps({
                    "event": "project_boosted",
                    "slot": n,
                    "occupancy_id": str(occupancy_id),
                    "project": occupant.project_name,
                    "amount_usd": str(paid.amount_usd),
                    "payment_reference": ref,
                    "end_time": end.isoformat(),
                }))
                return Boosted(slot_number=n, occupancy_id=occupancy_id, payment_reference=ref, end_time=end)

        with self.waitlist.locked(), session_scope(self.session_factory) as s:
            entry = self.waitlist.push(occupant, paid.amount_usd, ref, submitted_at=now, db=s)
            s.add(BoostContributions(
                slot_number=None,
                waitlist_entry_id=entry.id,
                wallet_address=paid.wallet_address,
                amount=paid.amount_usd,
                payment_reference=ref,
                origin="waitlist",
                created_at=now,
            ))
            self._mark(s, ref, "waitlisted")
        position = self.waitlist.position_of(entry.id) or len(self.waitlist)
        log.info(json.dumps({
            "event": "project_waitlisted",
            "entry_id": str(entry.id),
            "position": position,
            "project": occupant.project_name,
            "amount_usd": str(paid.amount_usd),
            "payment_reference": ref,
        }))
        return Waitlisted(entry_id=entry.id, position=position, payment_reference=ref)

    def _apply_top_up(self, paid: AdmissionResult, occupancy_id: UUID) -> datetime:
        for _ in range(3):
            current = self.store.find_occupancy(occupancy_id)
            if current is None:
                raise SlotNotFound("The boosted project is no longer in a slot")
            n = current.slot_number
            try:
                with self.store.locked(n), session_scope(self.session_factory) as s:
                    new_end = self.store.extend(n, paid.amount_usd, occupancy_id=occupancy_id, db=s)
                    s.add(BoostContributions(
                        slot_number=n,
                        occupancy_id=occupancy_id,
                        wallet_address=paid.wallet_address,
                        amount=paid.amount_usd,
                        payment_reference=paid.payment_reference,
                        origin="top_up",
                        created_at=self.clock(),
                    ))
                    self._mark(s, paid.payment_reference, "applied")
                return new_end
            except ClaimConflict:
                continue  # re-ranked by a sweep between lookup and lock
        raise ClaimConflict("Boosted project kept moving while extending")

    # ------------------------------ operations ------------------------------

    def submit_project(self, submission: Submission) -> Union[Boosted, Waitlisted]:
        """Validate, pay, then boost into the first free slot or join the waitlist."""
        clean, paid = self.gate.admit(submission)
        self._journal(paid, "submission", payload=clean.to_payload())
        try:
            return self._place(clean, paid)
        except Exception as e:
            log.exception("placement failed after payment %s", paid.payment_reference)
            raise self._fail_after_payment(paid, e, "submission") from e

    def contribute_more(self, slot_number: int, wallet_address: str, contribution) -> datetime:
        """Top up an active slot. Capacity is checked before the payer is charged."""
        observed: dict = {}

        def capacity_check(amount: Decimal) -> None:
            observed["slot"] = self.store.check_extend(slot_number, amount)

        paid = self.gate.admit_top_up(wallet_address, contribution, capacity_check)
        target: SlotView = observed["slot"]
        self._journal(paid, "top_up", target_slot=slot_number, target_occupancy=target.occupancy_id)
        try:
            return self._apply_top_up(paid, target.occupancy_id)
        except (CapacityExceeded, SlotNotFound) as e:
            # raced with the sweeper or another top-up after payment: cannot be honoured
            self._refund_due(paid, e)
            raise self._refund_error(paid, e) from e
        except Exception as e:
            log.exception("top-up failed after payment %s", paid.payment_reference)
            raise self._fail_after_payment(paid, e, "top_up") from e

    def _refund_due(self, paid: AdmissionResult, err: Exception) -> None:
        reconcile_log.error(json.dumps({
            "event": "payment_refund_due",
            "payment_reference": paid.payment_reference,
            "wallet_address": paid.wallet_address,
            "amount_usd": str(paid.amount_usd),
            "error": str(err),
        }))
        try:
            with session_scope(self.session_factory) as s:
                self._mark(s, paid.payment_reference, "refund_due", str(err))
        except Exception:
            reconcile_log.exception("could not mark %s refund_due", paid.payment_reference)

    def _refund_error(self, paid: AdmissionResult, err: Exception) -> PersistenceError:
        return PersistenceError(
            f"Payment settled but the top-up could not be applied ({err}); it is recorded for refund",
            payment_reference=paid.payment_reference,
            wallet_address=paid.wallet_address,
            amount=paid.amount_usd,
        )

    def withdraw(self, entry_id: UUID, wallet_address: str) -> WaitlistView:
        """Remove a waitlist entry owned by `wallet_address`. The payment is marked refund_due."""
        entry = self.waitlist.get(entry_id)
        if entry is None:
            raise SlotNotFound("Waitlist entry not found")
        if entry.occupant.wallet_address != wallet_address:
            raise NotOwner("Only the submitting wallet can withdraw this entry")
        with self.waitlist.locked(), session_scope(self.session_factory) as s:
            if not self.waitlist.remove(entry_id, db=s):
                raise SlotNotFound("Waitlist entry not found")
            self._mark(s, entry.payment_reference, "refund_due", "withdrawn from waitlist")
        log.info("waitlist entry %s withdrawn by %s", entry_id, wallet_address)
        return entry

    # ------------------------------ reconciliation ------------------------------

    def reconcile_pending(self) -> dict:
        """
        Replay journalled payments whose state write never landed. Never pays again.
        `settled` rows are only touched after RECONCILE_GRACE so in-flight submissions are left alone.
        """
        result = {"applied": 0, "waitlisted": 0, "refund_due": 0, "failed": 0}
        if not self._reconcile_lock.acquire(blocking=False):
            return result
        try:
            cutoff = self.clock() - RECONCILE_GRACE
            with session_scope(self.session_factory) as s:
                rows = (
                    s.query(BoostPayments)
                    .filter(BoostPayments.status.in_(("settled", "unreconciled")))
                    .order_by(BoostPayments.created_at.asc())
                    .all()
                )
                pending = [
                    r for r in rows
                    if r.status == "unreconciled" or (as_utc(r.created_at) or cutoff) <= cutoff
                ]
            for row in pending:
                outcome = self._reconcile_one(row)
                result[outcome] += 1
        finally:
            self._reconcile_lock.release()
        if any(result.values()):
            reconcile_log.info("reconcile pass: %s", result)
        return result

    def _already_applied(self, reference: str) -> bool:
        with session_scope(self.session_factory) as s:
            return (
                s.query(BoostContributions)
                .filter(BoostContributions.payment_reference == reference)
                .first()
                is not None
            )

    def _reconcile_one(self, row: BoostPayments) -> str:
        paid = AdmissionResult(
            payment_reference=row.payment_reference,
            wallet_address=row.wallet_address,
            amount_usd=Decimal(row.amount_usd),
            chain_amount=int(row.chain_amount),
            exchange_rate=Decimal(row.exchange_rate or 0),
        )
        if self._already_applied(paid.payment_reference):
            with session_scope(self.session_factory) as s:
                self._mark(s, paid.payment_reference, "applied")
            return "applied"
        try:
            if row.kind == "submission":
                placed = self._place(Submission.from_payload(row.payload), paid)
                outcome = "applied" if isinstance(placed, Boosted) else "waitlisted"
            else:
                self._apply_top_up(paid, row.target_occupancy)
                outcome = "applied"
        except (CapacityExceeded, SlotNotFound) as e:
            self._refund_due(paid, e)
            return "refund_due"
        except Exception as e:
            reconcile_log.exception("reconcile failed for %s", paid.payment_reference)
            try:
                with session_scope(self.session_factory) as s:
                    self._mark(s, paid.payment_reference, "unreconciled", repr(e))
            except Exception:
                reconcile_log.exception("could not mark %s unreconciled", paid.payment_reference)
            return "failed"
        reconcile_log.warning("reconciled payment %s -> %s", paid.payment_reference, outcome)
        return outcome

    def pending_reconciliation(self) -> List[dict]:
        with session_scope(self.session_factory) as s:
            rows = (
                s.query(BoostPayments)
                .filter(BoostPayments.status.in_(("settled", "unreconciled", "refund_due")))
                .order_by(BoostPayments.created_at.asc())
                .all()
            )
            return [
                {
                    "payment_reference": r.payment_reference,
                    "wallet_address": r.wallet_address,
                    "amount_usd": str(r.amount_usd),
                    "kind": r.kind,
                    "status": r.status,
                    "error": r.error,
                    "created_at": as_utc(r.created_at),
                }
                for r in rows
            ]

    # ------------------------------ reads ------------------------------

    def _load_board(self) -> dict:
        with session_scope(self.session_factory) as s:
            revenue = (
                s.query(func.coalesce(func.sum(BoostContributions.amount), 0))
                .filter(BoostContributions.origin != "promotion")
                .scalar()
            )
            return {
                "slots": self.store.snapshot(db=s),
                "waitlist": self.waitlist.peek_all(db=s),
                # promotion rows restate a waitlist payment; counting them would double the revenue
                "revenue": Decimal(str(revenue or 0)).quantize(Decimal("0.01")),
            }

    def _board_now(self) -> dict:
        return self._board.get() if self._board is not None else self._load_board()

    def _stats_from(self, board: dict, now: datetime) -> BoostStats:
        active = [v for v in board["slots"] if v.is_active(now)]
        return BoostStats(
            active_slots=len(active),
            free_slots=sum(1 for v in board["slots"] if not v.occupied),
            waitlist_length=len(board["waitlist"]),
            total_revenue=board["revenue"],
            total_contributors=sum(v.contributor_count for v in active),
        )

    def stats(self, now: Optional[datetime] = None) -> BoostStats:
        return self._stats_from(self._board_now(), now or self.clock())

    def state(self, now: Optional[datetime] = None) -> dict:
        """Slots, waitlist and counters. Served from the board cache when a change feed is wired."""
        now = now or self.clock()
        board = self._board_now()
        return {
            "now": now,
            "slots": board["slots"],
            "waitlist": board["waitlist"],
            "stats": self._stats_from(board, now),
        }

    def quote(self, contribution, slot_number: Optional[int] = None) -> dict:
        """Duration and chain amount for a contribution; with a slot, how much more it can take."""
        amount = Decimal(str(contribution))
        hours, minutes = duration_for(amount)
        out = {"contribution": amount, "hours": hours, "minutes": minutes, "label": format_duration(hours, minutes)}
        try:
            units, rate = self.gate.chain_amount_for(amount)
            out.update({"chain_amount": units, "exchange_rate": rate})
        except BoostError:
            out.update({"chain_amount": None, "exchange_rate": None})
        if slot_number is not None:
            view = self.store.get(slot_number)
            used = (view.end_time - view.start_time) if view.is_active(self.clock()) else timedelta(0)
            out["max_additional_contribution"] = max_contribution_for(MAX_BOOST_DURATION - used)
        return out
