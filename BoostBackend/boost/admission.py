# BoostBackend/boost/admission.py
# Admission gate: validates a contribution and settles its payment before the
# orchestrator is allowed to touch any slot/waitlist state.
#
# Order of operations (never changes):
#   1) validate + normalize input            -> ValidationError, nothing paid
#   2) optional business pre-check (top-ups) -> CapacityExceeded, nothing paid
#   3) USD -> chain units at the cached rate
#   4) exactly one payment call, bounded     -> PaymentError / PaymentTimeout

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import replace
from decimal import Decimal, ROUND_FLOOR, InvalidOperation
from typing import Callable, Optional, Protocol, Tuple
from urllib.parse import urlparse

from .. import config
from .errors import ValidationError, PaymentError, PaymentTimeout
from .types import AdmissionResult, Submission
from ..services.payment import normalize_address

log = logging.getLogger("payment")


class PaymentCollaborator(Protocol):
    def pay(self, payer: str, amount: int) -> str: ...


class RateCollaborator(Protocol):
    def rate(self) -> Decimal: ...


LateSettlementHook = Callable[[AdmissionResult, str], None]


# ------------------------------ URL helpers ------------------------------

def normalize_url(url: Optional[str]) -> Optional[str]:
    """
    Give a user-typed link a scheme:
      'https://x.io' -> unchanged, 'www.x.io' -> 'https://www.x.io',
      'x.io' -> 'https://www.x.io'.
    """
    if url is None:
        return None
    url = url.strip()
    if not url:
        return None
    if url.startswith("https://") or url.startswith("http://"):
        return url
    if url.startswith("www."):
        return f"https://{url}"
    return f"https://www.{url}"


def is_valid_url(url: str) -> bool:
    try:
        p = urlparse(url)
    except ValueError:
        return False
    if p.scheme not in ("http", "https") or not p.netloc:
        return False
    host = p.hostname or ""
    return "." in host and " " not in url


def _money(value) -> Decimal:
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("contribution must be a number", field="contribution")
    if not d.is_finite():
        raise ValidationError("contribution must be a finite number", field="contribution")
    try:
        return d.quantize(Decimal("0.01"))
    except InvalidOperation:
        # more digits than the context precision allows
        raise ValidationError("contribution is out of range", field="contribution")


# ------------------------------ Gate ------------------------------

class AdmissionGate:
    def __init__(
        self,
        payments: PaymentCollaborator,
        rates: RateCollaborator,
        *,
        timeout_sec: float = config.PAYMENT_TIMEOUT_SEC,
        min_contribution: Decimal = config.MIN_CONTRIBUTION,
        max_contribution: Decimal = config.MAX_CONTRIBUTION,
        chain_decimals: int = config.CHAIN_DECIMALS,
        on_late_settlement: Optional[LateSettlementHook] = None,
        max_workers: int = 8,
    ):
        self.payments = payments
        self.rates = rates
        self.timeout_sec = timeout_sec
        self.min_contribution = min_contribution
        self.max_contribution = max_contribution
        self.chain_decimals = chain_decimals
        self.on_late_settlement = on_late_settlement
        # A payment still queued at its timeout is cancelled; one already running is left to finish.
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="boost-pay")

    # ---- validation ----

    def _check_wallet(self, wallet_address: str) -> str:
        if not wallet_address or not wallet_address.strip():
            raise ValidationError("wallet_address is required", field="wallet_address")
        try:
            return normalize_address(wallet_address.strip())
        except Exception:
            raise ValidationError("Invalid SS58 wallet address", field="wallet_address")

    def _check_amount(self, contribution) -> Decimal:
        amount = _money(contribution)
        if amount < self.min_contribution:
            raise ValidationError(f"Minimum contribution is ${self.min_contribution}", field="contribution")
        if amount > self.max_contribution:
            raise ValidationError(
                f"Maximum contribution is ${self.max_contribution} ({config.MAX_BOOST_HOURS} hours)",
                field="contribution",
            )
        return amount

    def check(self, submission: Submission) -> Submission:
        """Validate and normalize a submission. Never touches the payment collaborator."""
        name = (submission.project_name or "").strip()
        if not name:
            raise ValidationError("project_name is required", field="project_name")
        if not (submission.project_link or "").strip():
            raise ValidationError("project_link is required", field="project_link")

        links = {}
        for fld in ("project_link", "project_logo", "telegram_link", "chart_link"):
            url = normalize_url(getattr(submission, fld))
            if url is not None and not is_valid_url(url):
                raise ValidationError(f"{fld} is not a valid URL", field=fld)
            links[fld] = url

        return replace(
            submission,
            project_name=name,
            wallet_address=self._check_wallet(submission.wallet_address),
            contribution=self._check_amount(submission.contribution),
            **links,
        )

    # ---- conversion ----

    def chain_amount_for(self, amount_usd: Decimal) -> Tuple[int, Decimal]:
        """USD -> smallest chain units at the current rate (USD per token)."""
        rate = self.rates.rate()
        if rate is None or rate <= 0:
            raise ValidationError("Invalid exchange rate. Please try again.")
        units = (amount_usd / rate * (Decimal(10) ** self.chain_decimals)).to_integral_value(rounding=ROUND_FLOOR)
        if units <= 0:
            raise ValidationError(f"Invalid payment amount. USD: {amount_usd}, rate: {rate}")
        return int(units), rate

    # ---- settlement ----

    def _settle(self, wallet: str, amount_usd: Decimal, kind: str) -> AdmissionResult:
        chain_amount, rate = self.chain_amount_for(amount_usd)
        log.info("payment start wallet=%s usd=%s units=%s rate=%s", wallet, amount_usd, chain_amount, rate)

        future = self._executor.submit(self.payments.pay, wallet, chain_amount)
        try:
            reference = future.result(timeout=self.timeout_sec)
        except FutureTimeout:
            if future.cancel():
                log.error("payment never started within %ss wallet=%s usd=%s", self.timeout_sec, wallet, amount_usd)
            else:
                log.error("payment timed out after %ss wallet=%s usd=%s", self.timeout_sec, wallet, amount_usd)
                future.add_done_callback(
                    lambda f: self._late_settlement(f, wallet, amount_usd, chain_amount, rate, kind)
                )
            raise PaymentTimeout(f"Payment did not settle within {self.timeout_sec:g}s")
        except PaymentError:
            raise
        except Exception as e:
            log.exception("payment failed wallet=%s usd=%s", wallet, amount_usd)
            raise PaymentError(f"Payment failed: {e}") from e

        if not reference:
            raise PaymentError("Payment returned no transaction reference")

        log.info("payment settled ref=%s wallet=%s usd=%s", reference, wallet, amount_usd)
        return AdmissionResult(
            payment_reference=str(reference),
            wallet_address=wallet,
            amount_usd=amount_usd,
            chain_amount=chain_amount,
            exchange_rate=rate,
        )

    def _late_settlement(self, future, wallet, amount_usd, chain_amount, rate, kind) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        reference = future.result()
        if not reference:
            return
        result = AdmissionResult(
            payment_reference=str(reference),
            wallet_address=wallet,
            amount_usd=amount_usd,
            chain_amount=chain_amount,
            exchange_rate=rate,
        )
        log.error("late settlement after timeout ref=%s kind=%s wallet=%s usd=%s", reference, kind, wallet, amount_usd)
        if self.on_late_settlement is not None:
            try:
                self.on_late_settlement(result, kind)
            except Exception:
                log.exception("late settlement hook failed ref=%s", reference)

    def admit(self, submission: Submission) -> Tuple[Submission, AdmissionResult]:
        clean = self.check(submission)
        return clean, self._settle(clean.wallet_address, clean.contribution, "submission")

    def admit_top_up(
        self,
        wallet_address: str,
        contribution,
        capacity_check: Optional[Callable[[Decimal], None]] = None,
    ) -> AdmissionResult:
        wallet = self._check_wallet(wallet_address)
        amount = self._check_amount(contribution)
        if capacity_check is not None:
            capacity_check(amount)
        return self._settle(wallet, amount, "top_up")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
