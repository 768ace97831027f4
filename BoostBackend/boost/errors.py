# BoostBackend/boost/errors.py
# Error taxonomy of the boost engine. The router maps these onto HTTP codes.

from __future__ import annotations
from decimal import Decimal
from typing import Optional


class BoostError(Exception):
    """Base class for every error raised by the boost engine."""
    code = "boost_error"


class AdmissionError(BoostError):
    """Raised by the admission gate; nothing was mutated."""
    code = "admission_error"


class ValidationError(AdmissionError):
    """Bad input. Raised before any payment is requested."""
    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PaymentError(AdmissionError):
    """The payment collaborator failed. No state was mutated."""
    code = "payment_failed"


class PaymentTimeout(PaymentError):
    """The payment did not settle within PAYMENT_TIMEOUT_SEC."""
    code = "payment_timeout"


class CapacityExceeded(BoostError):
    """Business-rule rejection: the occupancy would exceed the 48h cap."""
    code = "capacity_exceeded"


class SlotNotFound(BoostError):
    code = "slot_not_found"


class ClaimConflict(BoostError):
    """Lost a race for a slot. Never surfaced to users; the caller falls back to the waitlist."""
    code = "claim_conflict"


class PersistenceError(BoostError):
    """
    A store write failed AFTER the payment settled. The payer has paid, so the
    error always carries enough to make them whole.
    """
    code = "persistence_error"

    def __init__(
        self,
        message: str,
        payment_reference: Optional[str] = None,
        wallet_address: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ):
        super().__init__(message)
        self.payment_reference = payment_reference
        self.wallet_address = wallet_address
        self.amount = amount


class NotOwner(BoostError):
    """The caller's wallet does not own the entry it tried to change."""
    code = "not_owner"
