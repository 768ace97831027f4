"""
Tests for the admission gate: validation, USD -> chain conversion and
bounded payment settlement.
"""

import threading
import time
from decimal import Decimal

import pytest

from BoostBackend.boost.admission import AdmissionGate, is_valid_url, normalize_url
from BoostBackend.boost.errors import CapacityExceeded, PaymentError, PaymentTimeout, ValidationError

from conftest import ALICE, FakePayments, FakeRates, make_submission


@pytest.fixture
def gate(payments, rates):
    g = AdmissionGate(payments, rates, timeout_sec=0.3, chain_decimals=12)
    yield g
    g.shutdown()


class TestUrlHelpers:
    @pytest.mark.parametrize("raw,expected", [
        ("https://x.io", "https://x.io"),
        ("http://x.io/a", "http://x.io/a"),
        ("www.x.io", "https://www.x.io"),
        ("x.io", "https://www.x.io"),
        ("  x.io ", "https://www.x.io"),
        ("", None),
        (None, None),
    ])
    def test_normalize_url(self, raw, expected):
        assert normalize_url(raw) == expected

    def test_is_valid_url(self):
        assert is_valid_url("https://www.x.io")
        assert not is_valid_url("https://localhost")
        assert not is_valid_url("ftp://x.io")
        assert not is_valid_url("https://x .io")


class TestCheck:
    def test_normalizes_links_and_strips_name(self, gate):
        clean = gate.check(make_submission("  Moon  ", project_link="moon.io", telegram_link="t.me/moon"))
        assert clean.project_name == "Moon"
        assert clean.project_link == "https://www.moon.io"
        assert clean.telegram_link == "https://www.t.me/moon"
        assert clean.wallet_address == ALICE
        assert clean.contribution == Decimal("10.00")

    @pytest.mark.parametrize("field,kwargs", [
        ("contribution", {"contribution": "4.99"}),
        ("contribution", {"contribution": "240.01"}),
        ("project_name", {"name": "   "}),
        ("wallet_address", {"wallet": "not-an-address"}),
        ("wallet_address", {"wallet": ""}),
    ])
    def test_rejects_bad_input(self, gate, field, kwargs):
        with pytest.raises(ValidationError) as exc:
            gate.check(make_submission(
                kwargs.get("name", "Moon"),
                kwargs.get("contribution", "10"),
                wallet=kwargs.get("wallet", ALICE),
            ))
        assert exc.value.field == field

    def test_rejects_bad_link(self, gate):
        with pytest.raises(ValidationError) as exc:
            gate.check(make_submission("Moon", chart_link="https://bad link"))
        assert exc.value.field == "chart_link"


class TestSettlement:
    def test_chain_amount_uses_floor(self, gate, rates):
        rates.value = Decimal("3")
        units, rate = gate.chain_amount_for(Decimal("10"))
        assert rate == Decimal("3")
        assert units == 3333333333333

    def test_admit_pays_exactly_once(self, gate, payments):
        clean, paid = gate.admit(make_submission("Moon", "10"))
        assert len(payments.calls) == 1
        assert payments.calls[0] == (ALICE, 2 * 10**12)
        assert paid.payment_reference.startswith("0x")
        assert paid.amount_usd == Decimal("10.00")
        assert paid.wallet_address == ALICE

    def test_validation_failure_never_pays(self, gate, payments):
        with pytest.raises(ValidationError):
            gate.admit(make_submission("Moon", "1"))
        assert payments.calls == []

    def test_payment_failure(self, gate, payments):
        payments.fail = RuntimeError("node down")
        with pytest.raises(PaymentError):
            gate.admit(make_submission("Moon", "10"))

    def test_non_positive_rate_is_rejected(self, gate, rates, payments):
        rates.value = Decimal("0")
        with pytest.raises(ValidationError):
            gate.admit(make_submission("Moon", "10"))
        assert payments.calls == []

    def test_capacity_check_runs_before_payment(self, gate, payments):
        def reject(amount):
            raise CapacityExceeded("too long")

        with pytest.raises(CapacityExceeded):
            gate.admit_top_up(ALICE, "10", reject)
        assert payments.calls == []

    def test_timeout_then_late_settlement_hook(self, gate, payments):
        late = []
        done = threading.Event()

        def hook(result, kind):
            late.append((result, kind))
            done.set()

        gate.on_late_settlement = hook
        payments.gate = threading.Event()

        with pytest.raises(PaymentTimeout):
            gate.admit(make_submission("Moon", "10"))

        payments.gate.set()
        assert done.wait(3)
        result, kind = late[0]
        assert result.wallet_address == ALICE
        assert result.amount_usd == Decimal("10.00")
        assert kind == "submission"

    def test_queued_payment_is_cancelled_on_timeout(self, payments, rates):
        # one worker: the second payment waits behind the first and never starts
        gate = AdmissionGate(payments, rates, timeout_sec=0.2, chain_decimals=12, max_workers=1)
        late = []
        done = threading.Event()

        def hook(result, kind):
            late.append(kind)
            done.set()

        gate.on_late_settlement = hook
        payments.gate = threading.Event()
        try:
            with pytest.raises(PaymentTimeout):
                gate.admit(make_submission("Moon", "10"))
            with pytest.raises(PaymentTimeout):
                gate.admit_top_up(ALICE, "5")

            payments.gate.set()
            assert done.wait(3)
            time.sleep(0.2)
            assert len(payments.calls) == 1
            assert late == ["submission"]
        finally:
            payments.gate.set()
            gate.shutdown()

    def test_late_top_up_reports_its_kind(self, gate, payments):
        late = []
        done = threading.Event()

        def hook(result, kind):
            late.append(kind)
            done.set()

        gate.on_late_settlement = hook
        payments.gate = threading.Event()
        with pytest.raises(PaymentTimeout):
            gate.admit_top_up(ALICE, "5")
        payments.gate.set()
        assert done.wait(3)
        assert late == ["top_up"]

    @pytest.mark.parametrize("amount", ["1e30", "9" * 40])
    def test_huge_amount_is_a_validation_error(self, gate, payments, amount):
        with pytest.raises(ValidationError) as exc:
            gate.admit(make_submission("Moon", amount))
        assert exc.value.field == "contribution"
        with pytest.raises(ValidationError):
            gate.admit_top_up(ALICE, amount)
        assert payments.calls == []
