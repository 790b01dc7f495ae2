from __future__ import annotations
from typing import Optional

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)

from ..helpers import new_payment_ref, new_ticket_key, now_ts


Base = declarative_base()

# payment status
PENDING = "PENDING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

# ticket status
ACTIVE = "ACTIVE"
USED = "USED"
EXPIRED = "EXPIRED"
CANCELLED = "CANCELLED"
TICKET_STATUSES = (ACTIVE, USED, EXPIRED, CANCELLED)


class InvalidTransition(Exception):
    pass


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(180), nullable=False, unique=True)
    password_hash = Column(String, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_ref = Column(String(40), nullable=False, unique=True,
                         default=new_payment_ref)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"),
                     nullable=False, index=True)
    # the ticket (pool or ad-hoc) this payment bought; set on completion
    ticket_id = Column(
        Integer,
        ForeignKey("tickets.id", ondelete="SET NULL", use_alter=True,
                   name="fk_payments_ticket_id"),
        nullable=True,
    )
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    # PENDING | COMPLETED | FAILED
    status = Column(String(16), nullable=False, default=PENDING)
    transaction_id = Column(String, nullable=True)
    card_brand = Column(String(16), nullable=True)
    card_last_four = Column(String(4), nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    completed_at = Column(Float, nullable=True)
    error_message = Column(Text, nullable=True)

    def complete(self, transaction_id: str, card_brand: str,
                 card_last_four: str, ticket_id: int,
                 at: Optional[float] = None) -> None:
        if self.status != PENDING:
            raise InvalidTransition(f"{self.status} -> {COMPLETED}")
        self.status = COMPLETED
        self.transaction_id = transaction_id
        self.card_brand = card_brand
        self.card_last_four = card_last_four
        self.ticket_id = ticket_id
        self.completed_at = at if at is not None else now_ts()

    def fail(self, error_message: str, at: Optional[float] = None) -> None:
        if self.status != PENDING:
            raise InvalidTransition(f"{self.status} -> {FAILED}")
        self.status = FAILED
        self.error_message = error_message
        self.completed_at = at if at is not None else now_ts()


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_tickets_quantity"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_key = Column(String(32), nullable=False, unique=True,
                        default=new_ticket_key)
    # NULL for a pre-created inventory pool
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"),
                     nullable=True, index=True)
    # set for ad-hoc issuance only
    payment_id = Column(Integer, ForeignKey("payments.id"),
                        nullable=True, unique=True)
    event_name = Column(String, nullable=False)
    ticket_type = Column(String(64), nullable=False, default="GENERAL")
    price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    # ACTIVE | USED | EXPIRED | CANCELLED
    status = Column(String(16), nullable=False, default=ACTIVE)
    issued_at = Column(Float, nullable=False, default=now_ts)
    expires_at = Column(Float, nullable=True)

    @property
    def sold_out(self) -> bool:
        return (self.quantity or 0) <= 0

    def set_quantity(self, quantity: int) -> None:
        self.quantity = max(0, int(quantity))

    def decrement(self, amount: int = 1) -> None:
        self.set_quantity((self.quantity or 0) - amount)


class LoginAttempt(Base):
    __tablename__ = "login_attempts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"),
                     nullable=False, unique=True)
    failed_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)

    def is_locked(self, now: float) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def increment(self, now: float) -> int:
        self.failed_attempts = (self.failed_attempts or 0) + 1
        self.updated_at = now
        return self.failed_attempts

    def lock(self, duration_seconds: int, now: float) -> None:
        self.locked_until = now + duration_seconds
        self.updated_at = now

    def reset(self, now: float) -> None:
        self.failed_attempts = 0
        self.locked_until = None
        self.updated_at = now
