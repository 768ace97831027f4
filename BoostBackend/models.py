# BoostBackend/models.py
# SQLAlchemy ORM models for the boost engine (slots, waitlist, contributions,
# payment journal) plus the wallet login nonces.

from __future__ import annotations

import uuid
from sqlalchemy import (
    Column,
    String,
    Integer,
    Numeric,
    Text,
    DateTime,
    JSON,
    Uuid,
    Enum as SAEnum,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func  # server_default / onupdate

# ------------------------------------------------------------------------------
# Base & ENUM types (names MUST match the PostgreSQL enum type names exactly)
# ------------------------------------------------------------------------------

Base = declarative_base()

contribution_origin_enum = SAEnum("submission", "top_up", "waitlist", "promotion", name="boost_contribution_origin")
payment_kind_enum        = SAEnum("submission", "top_up", name="boost_payment_kind")

# settled -> applied | waitlisted          (normal flow)
# settled -> unreconciled -> applied ...   (state write failed after payment)
# refund_due                               (payment can never be honoured)
payment_status_enum = SAEnum(
    "settled",
    "applied",
    "waitlisted",
    "unreconciled",
    "refund_due",
    name="boost_payment_status",
)

# ------------------------------------------------------------------------------
# Boost slots: exactly BOOST_SLOT_COUNT rows, created at bootstrap, never deleted.
# An empty slot has occupancy_id = NULL and all occupant columns NULL.
# ------------------------------------------------------------------------------

class BoostSlots(Base):
    __tablename__ = "boost_slots"

    id            = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slot_number   = Column(Integer, unique=True, nullable=False)   # 1..N, rank position
    occupancy_id  = Column(Uuid(as_uuid=True), unique=True)         # stable key of the current occupant
    version       = Column(Integer, nullable=False, default=0)      # CAS guard, bumped on every mutation

    project_name  = Column(String(120))
    project_logo  = Column(Text)
    project_link  = Column(Text)
    telegram_link = Column(Text)
    chart_link    = Column(Text)
    wallet_address = Column(String)

    start_time    = Column(DateTime(timezone=True))
    end_time      = Column(DateTime(timezone=True))

    accumulated_contribution = Column(Numeric(10, 2), nullable=False, default=0)
    contributor_count        = Column(Integer, nullable=False, default=0)

    created_at    = Column(DateTime(timezone=True), server_default=func.now())
    updated_at    = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<BoostSlot #{self.slot_number} occ={self.occupancy_id} v{self.version}>"


# ------------------------------------------------------------------------------
# Waitlist (FIFO by submitted_at, then seq)
# ------------------------------------------------------------------------------

class BoostWaitlist(Base):
    __tablename__ = "boost_waitlist"

    seq            = Column(Integer, primary_key=True, autoincrement=True)  # insertion order tie-break
    id             = Column(Uuid(as_uuid=True), unique=True, nullable=False, default=uuid.uuid4)

    project_name   = Column(String(120), nullable=False)
    project_logo   = Column(Text)
    project_link   = Column(Text, nullable=False)
    telegram_link  = Column(Text)
    chart_link     = Column(Text)
    wallet_address = Column(String, nullable=False)

    contribution      = Column(Numeric(10, 2), nullable=False)
    payment_reference = Column(String, unique=True, nullable=False)
    submitted_at      = Column(DateTime(timezone=True), nullable=False)


# ------------------------------------------------------------------------------
# Contributions (append-only audit)
# ------------------------------------------------------------------------------

class BoostContributions(Base):
    __tablename__ = "boost_contributions"

    id                = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slot_number       = Column(Integer)                 # NULL for waitlist-origin rows
    occupancy_id      = Column(Uuid(as_uuid=True), index=True)
    waitlist_entry_id = Column(Uuid(as_uuid=True))
    wallet_address    = Column(String, nullable=False)
    amount            = Column(Numeric(10, 2), nullable=False)
    payment_reference = Column(String, nullable=False)
    origin            = Column(contribution_origin_enum, nullable=False)
    created_at        = Column(DateTime(timezone=True), nullable=False)


# ------------------------------------------------------------------------------
# Payment journal: written right after settlement, before any slot/waitlist write
# ------------------------------------------------------------------------------

class BoostPayments(Base):
    __tablename__ = "boost_payments"

    id                = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_reference = Column(String, unique=True, nullable=False)   # on-chain extrinsic hash
    wallet_address    = Column(String, nullable=False)
    amount_usd        = Column(Numeric(10, 2), nullable=False)
    chain_amount      = Column(Numeric(38, 0), nullable=False)        # planck units actually paid
    exchange_rate     = Column(Numeric(18, 8))                        # USD per token at payment time
    kind              = Column(payment_kind_enum, nullable=False)
    target_slot       = Column(Integer)                               # top-ups only
    target_occupancy  = Column(Uuid(as_uuid=True))                    # top-ups only
    payload           = Column(JSON)                                  # submission fields, for replay
    status            = Column(payment_status_enum, nullable=False, default="settled")
    error             = Column(Text)

    created_at        = Column(DateTime(timezone=True), server_default=func.now())
    updated_at        = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# ------------------------------------------------------------------------------
# Wallet login challenges
# ------------------------------------------------------------------------------

class LoginNonces(Base):
    __tablename__ = "login_nonces"

    address     = Column(String, primary_key=True)  # PK is the address itself
    nonce       = Column(String, nullable=False)
    expires_at  = Column(DateTime(timezone=True), nullable=False)
