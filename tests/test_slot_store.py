"""
Tests for the slot store: atomic claim, extend, vacate and reorder.
"""

import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from BoostBackend.boost.errors import CapacityExceeded, ClaimConflict, SlotNotFound
from BoostBackend.boost.slot_store import SlotStore
from BoostBackend.boost.types import Occupant

from conftest import ALICE, BOB, T0


def occupant(name="Moon", wallet=ALICE):
    return Occupant(project_name=name, project_link=f"https://{name.lower()}.io", wallet_address=wallet)


class TestBootstrap:
    def test_creates_exactly_n_slots(self, store):
        views = store.snapshot()
        assert [v.slot_number for v in views] == [1, 2, 3, 4, 5]
        assert all(not v.occupied for v in views)

    def test_is_idempotent(self, store):
        assert store.bootstrap() == 0
        assert len(store.snapshot()) == 5


class TestTryClaim:
    def test_claims_empty_slot(self, store):
        occ = store.try_claim(1, occupant(), T0, T0 + timedelta(hours=2), Decimal("10"))
        assert occ is not None
        v = store.get(1)
        assert v.occupancy_id == occ
        assert v.occupant.project_name == "Moon"
        assert v.end_time == T0 + timedelta(hours=2)
        assert v.accumulated_contribution == Decimal("10")
        assert v.contributor_count == 1

    def test_occupied_slot_returns_none(self, store):
        store.try_claim(1, occupant("A"), T0, T0 + timedelta(hours=1), Decimal("5"))
        assert store.try_claim(1, occupant("B"), T0, T0 + timedelta(hours=1), Decimal("5")) is None
        assert store.get(1).occupant.project_name == "A"

    def test_out_of_range_slot(self, store):
        with pytest.raises(SlotNotFound):
            store.try_claim(6, occupant(), T0, T0 + timedelta(hours=1), Decimal("5"))

    def test_rejects_occupancy_over_48h(self, store):
        with pytest.raises(CapacityExceeded):
            store.try_claim(1, occupant(), T0, T0 + timedelta(hours=49), Decimal("5"))

    def test_concurrent_claims_exactly_one_wins(self, store):
        barrier = threading.Barrier(10)
        results = []

        def worker(i):
            barrier.wait()
            results.append(store.try_claim(2, occupant(f"P{i}"), T0, T0 + timedelta(hours=1), Decimal("5")))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert store.get(2).occupancy_id == winners[0]

    def test_separate_stores_on_same_db_still_exclusive(self, session_factory, clock):
        # two processes modelled as two stores: only the database guard is shared
        a = SlotStore(session_factory, clock=clock)
        b = SlotStore(session_factory, clock=clock)
        a.bootstrap()
        assert a.try_claim(3, occupant("A"), T0, T0 + timedelta(hours=1), Decimal("5")) is not None
        assert b.try_claim(3, occupant("B"), T0, T0 + timedelta(hours=1), Decimal("5")) is None


class TestExtend:
    def test_pushes_end_time_and_accumulates(self, store):
        store.try_claim(1, occupant(), T0, T0 + timedelta(hours=1), Decimal("5"))
        new_end = store.extend(1, Decimal("10"))
        assert new_end == T0 + timedelta(hours=3)
        v = store.get(1)
        assert v.end_time == new_end
        assert v.accumulated_contribution == Decimal("15")
        assert v.contributor_count == 2

    def test_50h_total_is_rejected_and_end_unchanged(self, store):
        store.try_claim(2, occupant(), T0, T0 + timedelta(hours=40), Decimal("200"))
        with pytest.raises(CapacityExceeded):
            store.extend(2, Decimal("50"))
        assert store.get(2).end_time == T0 + timedelta(hours=40)

    def test_exactly_48h_is_allowed(self, store):
        store.try_claim(2, occupant(), T0, T0 + timedelta(hours=40), Decimal("200"))
        assert store.extend(2, Decimal("40")) == T0 + timedelta(hours=48)

    def test_empty_slot(self, store):
        with pytest.raises(SlotNotFound):
            store.extend(4, Decimal("5"))

    def test_expired_slot(self, store, clock):
        store.try_claim(1, occupant(), T0, T0 + timedelta(hours=1), Decimal("5"))
        clock.advance(hours=2)
        with pytest.raises(SlotNotFound):
            store.extend(1, Decimal("5"))

    def test_wrong_occupancy_is_a_conflict(self, store):
        store.try_claim(1, occupant(), T0, T0 + timedelta(hours=1), Decimal("5"))
        other = store.try_claim(2, occupant("B", BOB), T0, T0 + timedelta(hours=1), Decimal("5"))
        with pytest.raises(ClaimConflict):
            store.extend(1, Decimal("5"), occupancy_id=other)

    def test_check_extend_does_not_mutate(self, store):
        store.try_claim(1, occupant(), T0, T0 + timedelta(hours=1), Decimal("5"))
        view = store.check_extend(1, Decimal("5"))
        assert view.end_time == T0 + timedelta(hours=1)
        assert store.get(1).version == view.version


class TestVacate:
    def test_clears_occupant(self, store):
        store.try_claim(1, occupant(), T0, T0 + timedelta(hours=1), Decimal("5"))
        assert store.vacate(1)
        v = store.get(1)
        assert not v.occupied
        assert v.occupant is None
        assert v.accumulated_contribution == Decimal("0")

    def test_stale_version_is_refused(self, store):
        store.try_claim(1, occupant(), T0, T0 + timedelta(hours=1), Decimal("5"))
        seen = store.get(1).version
        store.extend(1, Decimal("5"))
        assert not store.vacate(1, expected_version=seen)
        assert store.get(1).occupied

    def test_empty_slot_is_noop(self, store):
        assert not store.vacate(3)

    def test_vacated_slot_can_be_claimed_again(self, store):
        first = store.try_claim(1, occupant("A"), T0, T0 + timedelta(hours=1), Decimal("5"))
        store.vacate(1)
        second = store.try_claim(1, occupant("B"), T0, T0 + timedelta(hours=1), Decimal("5"))
        assert second is not None and second != first


class TestReorder:
    def test_longest_remaining_first_and_compacted(self, store):
        short = store.try_claim(1, occupant("Short"), T0, T0 + timedelta(hours=1), Decimal("5"))
        long_ = store.try_claim(3, occupant("Long"), T0, T0 + timedelta(hours=5), Decimal("25"))
        mid = store.try_claim(5, occupant("Mid"), T0, T0 + timedelta(hours=3), Decimal("15"))

        assert store.reorder(T0) is True

        views = store.snapshot()
        assert [v.occupancy_id for v in views[:3]] == [long_, mid, short]
        assert [v.occupant.project_name for v in views[:3]] == ["Long", "Mid", "Short"]
        assert not views[3].occupied and not views[4].occupied
        # the occupancy travels with its data
        assert views[0].end_time == T0 + timedelta(hours=5)
        assert views[0].accumulated_contribution == Decimal("25")

    def test_tie_breaks_on_earlier_start(self, store):
        late = store.try_claim(1, occupant("Late"), T0 + timedelta(minutes=10), T0 + timedelta(hours=2), Decimal("5"))
        early = store.try_claim(2, occupant("Early"), T0, T0 + timedelta(hours=2), Decimal("5"))
        store.reorder(T0 + timedelta(minutes=20))
        assert [v.occupancy_id for v in store.snapshot()[:2]] == [early, late]

    def test_already_ordered_is_noop(self, store):
        store.try_claim(1, occupant("A"), T0, T0 + timedelta(hours=2), Decimal("10"))
        store.try_claim(2, occupant("B"), T0, T0 + timedelta(hours=1), Decimal("5"))
        version = store.get(1).version
        assert store.reorder(T0) is False
        assert store.get(1).version == version

    def test_list_active_excludes_expired(self, store, clock):
        store.try_claim(1, occupant("A"), T0, T0 + timedelta(hours=1), Decimal("5"))
        store.try_claim(2, occupant("B"), T0, T0 + timedelta(hours=3), Decimal("15"))
        clock.advance(hours=2)
        assert [v.occupant.project_name for v in store.list_active()] == ["B"]
