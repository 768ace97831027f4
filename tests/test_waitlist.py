"""
Tests for the FIFO waitlist queue.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from BoostBackend.boost.types import Occupant

from conftest import ALICE, BOB, T0


def occupant(name, wallet=ALICE):
    return Occupant(project_name=name, project_link=f"https://{name.lower()}.io", wallet_address=wallet)


class TestOrdering:
    def test_fifo_by_submission_time(self, waitlist):
        waitlist.push(occupant("Second"), Decimal("200"), "ref-2", submitted_at=T0 + timedelta(seconds=5))
        waitlist.push(occupant("First"), Decimal("5"), "ref-1", submitted_at=T0)
        assert [e.occupant.project_name for e in waitlist.peek_all()] == ["First", "Second"]

    def test_same_timestamp_keeps_insertion_order(self, waitlist):
        for name in ("A", "B", "C"):
            waitlist.push(occupant(name), Decimal("10"), f"ref-{name}", submitted_at=T0)
        assert [e.occupant.project_name for e in waitlist.peek_all()] == ["A", "B", "C"]

    def test_bigger_contribution_does_not_jump(self, waitlist):
        waitlist.push(occupant("Small"), Decimal("5"), "ref-s", submitted_at=T0)
        waitlist.push(occupant("Big"), Decimal("240"), "ref-b", submitted_at=T0 + timedelta(seconds=1))
        assert waitlist.peek_front().occupant.project_name == "Small"

    def test_position_and_len(self, waitlist):
        a = waitlist.push(occupant("A"), Decimal("5"), "ref-a", submitted_at=T0)
        b = waitlist.push(occupant("B"), Decimal("5"), "ref-b", submitted_at=T0)
        assert len(waitlist) == 2
        assert waitlist.position_of(a.id) == 1
        assert waitlist.position_of(b.id) == 2


class TestRemoval:
    def test_pop_front(self, waitlist):
        waitlist.push(occupant("A"), Decimal("5"), "ref-a", submitted_at=T0)
        waitlist.push(occupant("B"), Decimal("5"), "ref-b", submitted_at=T0)
        assert waitlist.pop_front().occupant.project_name == "A"
        assert waitlist.pop_front().occupant.project_name == "B"
        assert waitlist.pop_front() is None

    def test_remove_by_id(self, waitlist):
        a = waitlist.push(occupant("A"), Decimal("5"), "ref-a", submitted_at=T0)
        b = waitlist.push(occupant("B", BOB), Decimal("5"), "ref-b", submitted_at=T0)
        assert waitlist.remove(a.id)
        assert not waitlist.remove(a.id)
        assert [e.id for e in waitlist.peek_all()] == [b.id]

    def test_get(self, waitlist):
        a = waitlist.push(occupant("A"), Decimal("7.50"), "ref-a", submitted_at=T0)
        got = waitlist.get(a.id)
        assert got.contribution == Decimal("7.50")
        assert got.payment_reference == "ref-a"
        assert got.submitted_at == T0


class TestPromoteHead:
    def test_failed_claim_keeps_entry_at_head(self, waitlist):
        waitlist.push(occupant("A"), Decimal("5"), "ref-a", submitted_at=T0)
        waitlist.push(occupant("B"), Decimal("5"), "ref-b", submitted_at=T0)
        assert waitlist.promote_head(lambda e, s: False) is None
        assert [e.occupant.project_name for e in waitlist.peek_all()] == ["A", "B"]

    def test_raising_claim_keeps_entry_at_head(self, waitlist):
        waitlist.push(occupant("A"), Decimal("5"), "ref-a", submitted_at=T0)

        def boom(entry, session):
            raise RuntimeError("db down")

        with pytest.raises(RuntimeError):
            waitlist.promote_head(boom)
        assert waitlist.peek_front().occupant.project_name == "A"

    def test_successful_claim_removes_head(self, waitlist):
        waitlist.push(occupant("A"), Decimal("5"), "ref-a", submitted_at=T0)
        waitlist.push(occupant("B"), Decimal("5"), "ref-b", submitted_at=T0)
        seen = []
        promoted = waitlist.promote_head(lambda e, s: seen.append(e) or True)
        assert promoted.occupant.project_name == "A"
        assert seen == [promoted]
        assert waitlist.peek_front().occupant.project_name == "B"

    def test_empty_queue(self, waitlist):
        assert waitlist.promote_head(lambda e, s: True) is None
