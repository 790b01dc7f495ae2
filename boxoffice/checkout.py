"""
Card checkout against ticket inventory.

A purchase is a two-step saga around one irreversible action, the charge:

  1. validate the request, persist a PENDING payment
  2. tokenize + charge (no DB transaction open while we talk to the gateway)
  3. one local transaction: lock the pool row, re-check and decrement the
     quantity (or issue an ad-hoc ticket), complete the payment

Anything that goes wrong after step 2 succeeded is compensated with a
refund. Refunds are never sent while the inventory row is locked, and a
refund that fails is written to the refund queue instead of being raised.
Every path that created a payment ends with it COMPLETED or FAILED.
"""
from __future__ import annotations
import re
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import (
    Any, AsyncContextManager, Callable, Dict, Optional, Union,
)

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import card as cardcheck
from .card import CardData
from .config import Settings
from .gateway import ErrorCategory, GatewayError, PaymentGateway, user_message
from .helpers import (
    new_payment_ref, new_ticket_key, now_ts, to_minor_units, to_money,
)
from .infra.timings import timeit
from .model import inventory
from .model.db import ACTIVE, PENDING, Payment, Ticket

logger = structlog.get_logger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

# outcomes
REJECTED_INPUT = "rejected_input"
CARD_ERROR = "card_error"
INSUFFICIENT_INVENTORY = "insufficient_inventory"
FINALIZATION_ERROR = "finalization_error"
SUCCESS = "success"

MSG_INSUFFICIENT = "Insufficient inventory at finalization"
MSG_FINALIZATION = "Payment could not be finalized. Your card has been refunded."
MSG_UNAVAILABLE = "Ticket is no longer available for purchase"
MSG_QUANTITY_MIN = "Quantity must be at least 1"
MSG_QUANTITY_WHOLE = "Quantity must be a whole number"

REQUIRED_CARD_FIELDS = (
    "card_number", "expiry_month", "expiry_year", "cvv",
    "first_name", "last_name",
)

_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")
_INT_RE = re.compile(r"^[+-]?\d+$")


# ----------------------------
# Purchase modes
# ----------------------------
@dataclass(frozen=True)
class AgainstPool:
    ticket_id: int


@dataclass(frozen=True)
class AdHoc:
    event_name: str
    ticket_type: str = "GENERAL"


PurchaseMode = Union[AgainstPool, AdHoc]


@dataclass
class PurchaseRequest:
    amount: Any = None
    currency: Optional[str] = None
    card_number: Any = None
    expiry_month: Any = None
    expiry_year: Any = None
    cvv: Any = None
    first_name: Any = None
    last_name: Any = None
    event_name: Optional[str] = None
    ticket_type: Optional[str] = None
    ticket_id: Any = None
    quantity: Any = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PurchaseRequest":
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    @property
    def card(self) -> CardData:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return CardData(
            number=str(self.card_number or ""),
            exp_month=str(self.expiry_month or ""),
            exp_year=str(self.expiry_year or ""),
            cvc=str(self.cvv or ""),
            name=name,
        )

    def __repr__(self) -> str:
        return (
            f"PurchaseRequest(ticket_id={self.ticket_id!r}, "
            f"quantity={self.quantity!r}, amount={self.amount!r}, "
            f"currency={self.currency!r}, card={self.card!r})"
        )


@dataclass
class PurchaseOutcome:
    outcome: str
    http_status: int
    payment_ref: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    card_brand: Optional[str] = None
    card_last_four: Optional[str] = None
    transaction_id: Optional[str] = None
    ticket_key: Optional[str] = None
    remaining_quantity: Optional[int] = None
    error_message: Optional[str] = None
    ticket: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.outcome == SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.ok,
            "outcome": self.outcome,
            "payment": {
                "id": self.payment_ref,
                "status": self.status,
                "amount": None if self.amount is None else str(self.amount),
                "currency": self.currency,
                "card_brand": self.card_brand,
                "card_last_four": self.card_last_four,
                "transaction_id": self.transaction_id,
            },
            "ticket": self.ticket,
        }
        if self.remaining_quantity is not None:
            out["available"] = self.remaining_quantity
        if self.error_message:
            out["error"] = self.error_message
        return out


class PurchaseRejected(Exception):
    def __init__(self, message: str, http_status: int = 400):
        super().__init__(message)
        self.http_status = http_status


class CardInvalid(Exception):
    pass


@dataclass
class _Resolved:
    mode: PurchaseMode
    quantity: int
    amount: Decimal
    currency: str
    description: str


def _missing_fields(req: PurchaseRequest, *extra: str) -> Optional[str]:
    for name in REQUIRED_CARD_FIELDS + extra:
        value = getattr(req, name)
        if value is None or (isinstance(value, str) and not value.strip()):
            return f"Missing required field: {name}"
    return None


def _parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise PurchaseRejected("Invalid amount")
    try:
        amount = to_money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise PurchaseRejected("Invalid amount")
    if not amount.is_finite() or amount <= 0:
        raise PurchaseRejected("Invalid amount")
    return amount


def _parse_quantity(value: Any) -> int:
    # whole numbers only: 2.9 is rejected, never rounded
    if isinstance(value, bool):
        raise PurchaseRejected(MSG_QUANTITY_WHOLE)
    if isinstance(value, float):
        if not value.is_integer():
            raise PurchaseRejected(MSG_QUANTITY_WHOLE)
        qty = int(value)
    elif isinstance(value, int):
        qty = value
    elif isinstance(value, str) and _INT_RE.match(value.strip()):
        qty = int(value.strip())
    else:
        raise PurchaseRejected(MSG_QUANTITY_WHOLE)
    if qty < 1:
        raise PurchaseRejected(MSG_QUANTITY_MIN)
    return qty


def precheck_card(req: PurchaseRequest,
                  today: Optional[date] = None) -> Optional[str]:
    """Side-effect free check used by the card pre-validation endpoint."""
    missing = _missing_fields(req)
    if missing:
        return missing
    result = cardcheck.validate(req.card, today=today)
    return None if result.valid else result.error


# ----------------------------
# The saga
# ----------------------------
class CheckoutService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        refunds=None,
        gated: Optional[Gated] = None,
        settings: Settings = Settings(),
        clock: Callable[[], float] = now_ts,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        # refund queue (model.refundqueue); None = log only
        self.refunds = refunds
        self.gated = gated or nullcontext
        self.settings = settings
        self.clock = clock
        self.today = today or date.today

    # ---- step 0: input

    async def _resolve(self, req: PurchaseRequest) -> _Resolved:
        quantity = _parse_quantity(req.quantity)

        if req.ticket_id not in (None, ""):
            try:
                ticket_id = int(req.ticket_id)
            except (TypeError, ValueError):
                raise PurchaseRejected("Ticket not found", 404)
            async with self.gated():
                async with self.session_factory() as db:
                    async with db.begin():
                        pool = await inventory.get_ticket(db, ticket_id)
                        if pool is None:
                            raise PurchaseRejected("Ticket not found", 404)
                        if pool.status != ACTIVE:
                            raise PurchaseRejected(
                                "Ticket is not available for purchase", 409
                            )
                        # the pool's price wins over whatever the client sent
                        amount = to_money(pool.price) * quantity
                        description = pool.event_name
            mode: PurchaseMode = AgainstPool(ticket_id=ticket_id)
            missing = _missing_fields(req)
        else:
            missing = _missing_fields(req, "event_name", "amount")
            if not missing:
                amount = _parse_amount(req.amount)
                description = req.event_name.strip()
                mode = AdHoc(
                    event_name=description,
                    ticket_type=(req.ticket_type or "GENERAL").strip()
                    or "GENERAL",
                )
        if missing:
            raise PurchaseRejected(missing)

        currency = (req.currency or self.settings.default_currency).strip()
        if not _CURRENCY_RE.match(currency):
            raise PurchaseRejected("Invalid currency")

        return _Resolved(
            mode=mode, quantity=quantity, amount=amount,
            currency=currency.upper(), description=description,
        )

    # ---- step 1: pending record

    async def _create_pending(self, user_id: int, r: _Resolved) -> str:
        ref = new_payment_ref()
        async with self.gated():
            async with self.session_factory() as db:
                async with db.begin():
                    db.add(Payment(
                        payment_ref=ref,
                        user_id=user_id,
                        amount=r.amount,
                        currency=r.currency,
                        status=PENDING,
                        created_at=self.clock(),
                    ))
        return ref

    @staticmethod
    async def _payment(db: AsyncSession, ref: str) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.payment_ref == ref)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await db.execute(stmt)).scalar_one()

    async def _fail(self, ref: str, message: str) -> None:
        try:
            async with self.gated():
                async with self.session_factory() as db:
                    async with db.begin():
                        p = await self._payment(db, ref)
                        p.fail(message, at=self.clock())
        except Exception:
            # the only way a payment can stay PENDING; must be reconciled
            logger.exception("payment_fail_not_persisted", payment_ref=ref,
                             error_message=message)

    async def _append_error(self, ref: str, note: str) -> None:
        try:
            async with self.gated():
                async with self.session_factory() as db:
                    async with db.begin():
                        p = await self._payment(db, ref)
                        p.error_message = f"{p.error_message or ''}{note}"
        except Exception:
            logger.exception("payment_note_not_persisted", payment_ref=ref,
                             note=note)

    # ---- step 2: money

    async def _charge(self, card: CardData, r: _Resolved) -> str:
        result = cardcheck.validate(card, today=self.today())
        if not result.valid:
            raise CardInvalid(result.error)
        async with timeit("gateway.tokenize"):
            token = await self.gateway.tokenize(card)
        async with timeit("gateway.charge"):
            return await self.gateway.charge(
                to_minor_units(r.amount), r.currency.lower(), token,
                r.description,
            )

    async def _compensate(self, ref: str, charge_id: str) -> str:
        """
        Refund `charge_id`. Returns "" on success, otherwise a note for the
        payment's error message; the refund is queued for retry then.
        """
        try:
            async with timeit("gateway.refund"):
                result = await self.gateway.refund(charge_id)
        except Exception as e:
            reason = str(e) or e.__class__.__name__
            logger.error("refund_failed", payment_ref=ref,
                         charge_id=charge_id, error=reason)
            if self.refunds is not None:
                try:
                    await self.refunds.enqueue(charge_id, ref, reason)
                except Exception:
                    logger.exception("refund_enqueue_failed",
                                     payment_ref=ref, charge_id=charge_id)
            return f"; refund failed: {reason}"
        logger.info("refund_issued", payment_ref=ref, charge_id=charge_id,
                    refund_id=result.refund_id,
                    already_refunded=result.already_refunded)
        return ""

    # ---- step 3: inventory

    async def _finalize(self, user_id: int, ref: str, r: _Resolved,
                        charge_id: str, card: CardData) -> PurchaseOutcome:
        brand = cardcheck.card_brand(card.number)
        last4 = cardcheck.last_four(card.number)
        now = self.clock()

        async with self.gated():
            async with self.session_factory() as db:
                async with db.begin():
                    if isinstance(r.mode, AgainstPool):
                        ticket = await inventory.lock_pool(
                            db, r.mode.ticket_id
                        )
                        if ticket is None:
                            raise LookupError(
                                f"ticket {r.mode.ticket_id} disappeared"
                            )
                        payment = await self._payment(db, ref)
                        available = ticket.quantity
                        # the pool may have been cancelled while charging
                        if ticket.status != ACTIVE or available < r.quantity:
                            msg = (MSG_INSUFFICIENT if ticket.status == ACTIVE
                                   else MSG_UNAVAILABLE)
                            payment.fail(msg, at=now)
                            return PurchaseOutcome(
                                INSUFFICIENT_INVENTORY, 409,
                                payment_ref=ref,
                                status=payment.status,
                                amount=r.amount, currency=r.currency,
                                remaining_quantity=available,
                                error_message=msg,
                            )
                        ticket.decrement(r.quantity)
                        http_status = 200
                    else:
                        ticket = Ticket(
                            ticket_key=new_ticket_key(),
                            user_id=user_id,
                            event_name=r.mode.event_name,
                            ticket_type=r.mode.ticket_type,
                            price=r.amount,
                            status=ACTIVE,
                            issued_at=now,
                            expires_at=now + self.settings.adhoc_ticket_ttl_days
                            * 86400,
                        )
                        ticket.set_quantity(r.quantity)
                        payment = await self._payment(db, ref)
                        ticket.payment_id = payment.id
                        db.add(ticket)
                        await db.flush()
                        http_status = 201

                    payment.complete(
                        transaction_id=charge_id, card_brand=brand,
                        card_last_four=last4, ticket_id=ticket.id, at=now,
                    )
                    ticket_info = inventory.ticket_dict(ticket)

        return PurchaseOutcome(
            SUCCESS, http_status,
            payment_ref=ref,
            status=payment.status,
            amount=r.amount, currency=r.currency,
            card_brand=brand, card_last_four=last4,
            transaction_id=charge_id,
            ticket_key=ticket_info["key"],
            remaining_quantity=ticket_info["quantity"],
            ticket=ticket_info,
        )

    # ---- entry point

    async def purchase(self, user_id: int,
                       req: PurchaseRequest) -> PurchaseOutcome:
        try:
            r = await self._resolve(req)
        except PurchaseRejected as e:
            return PurchaseOutcome(REJECTED_INPUT, e.http_status,
                                   error_message=str(e))

        ref = await self._create_pending(user_id, r)
        log = logger.bind(payment_ref=ref, user_id=user_id)
        card = req.card
        rejected = dict(payment_ref=ref, status="FAILED", amount=r.amount,
                        currency=r.currency)

        # no money has moved before _charge returns
        try:
            charge_id = await self._charge(card, r)
        except CardInvalid as e:
            await self._fail(ref, str(e))
            log.info("card_rejected_locally", error=str(e))
            return PurchaseOutcome(CARD_ERROR, 400, error_message=str(e),
                                   **rejected)
        except GatewayError as e:
            msg = e.user_message
            await self._fail(ref, msg)
            log.info("card_rejected_by_gateway", category=e.category.value,
                     code=e.code, unreachable=e.unreachable)
            if e.category == ErrorCategory.RATE_LIMITED:
                status = 429
            elif e.unreachable:
                status = 502
            else:
                status = 400
            return PurchaseOutcome(CARD_ERROR, status, error_message=msg,
                                   **rejected)
        except Exception:
            msg = user_message(ErrorCategory.PROCESSING_ERROR)
            log.exception("charge_unexpected_error")
            await self._fail(ref, msg)
            return PurchaseOutcome(CARD_ERROR, 500, error_message=msg,
                                   **rejected)

        # money moved: from here on every failure is refunded
        log = log.bind(charge_id=charge_id)
        try:
            async with timeit("db.finalize"):
                outcome = await self._finalize(user_id, ref, r, charge_id,
                                               card)
        except Exception as e:
            log.exception("finalization_failed")
            note = await self._compensate(ref, charge_id)
            await self._fail(ref, f"Finalization failed: {e}{note}")
            return PurchaseOutcome(FINALIZATION_ERROR, 500,
                                   error_message=MSG_FINALIZATION, **rejected)

        if outcome.outcome == INSUFFICIENT_INVENTORY:
            log.info("insufficient_inventory", requested=r.quantity,
                     available=outcome.remaining_quantity)
            note = await self._compensate(ref, charge_id)
            if note:
                await self._append_error(ref, note)
            return outcome

        log.info("payment_completed", amount=str(r.amount),
                 currency=r.currency, ticket_key=outcome.ticket_key)
        return outcome
