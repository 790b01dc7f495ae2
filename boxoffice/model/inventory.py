# model/inventory.py
from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_ticket_key, now_ts, to_iso, to_money
from .db import ACTIVE, TICKET_STATUSES, Ticket


# ------------------------------------------------------------------------------
# Writes (caller owns the transaction)
# ------------------------------------------------------------------------------

def new_pool(
    event_name: str,
    price: Decimal | str | float,
    quantity: int,
    ticket_type: str = "GENERAL",
    expires_at: Optional[float] = None,
    status: str = ACTIVE,
) -> Ticket:
    """
    Pre-created inventory: a ticket row nobody owns yet, sold down by
    purchases until quantity hits 0.
    """
    if status not in TICKET_STATUSES:
        raise ValueError(f"invalid ticket status: {status}")
    if int(quantity) < 0:
        raise ValueError("quantity must be >= 0")
    t = Ticket(
        ticket_key=new_ticket_key(),
        event_name=event_name,
        ticket_type=ticket_type,
        price=to_money(price),
        status=status,
        issued_at=now_ts(),
        expires_at=expires_at,
    )
    t.set_quantity(quantity)
    return t


async def lock_pool(db: AsyncSession, ticket_id: int) -> Optional[Ticket]:
    """
    SELECT ... FOR UPDATE on one ticket row, bypassing the identity map so
    the quantity is the latest committed value.
    """
    stmt = (
        select(Ticket)
        .where(Ticket.id == ticket_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def get_ticket(db: AsyncSession, ticket_id: int) -> Optional[Ticket]:
    return await db.get(Ticket, ticket_id)


async def available_pools(db: AsyncSession) -> List[Ticket]:
    rows = await db.execute(
        select(Ticket)
        .where(Ticket.status == ACTIVE, Ticket.quantity > 0)
        .order_by(Ticket.issued_at.desc(), Ticket.id.desc())
    )
    return list(rows.scalars().all())


async def tickets_of_user(db: AsyncSession, user_id: int) -> List[Ticket]:
    rows = await db.execute(
        select(Ticket)
        .where(Ticket.user_id == user_id)
        .order_by(Ticket.id.desc())
    )
    return list(rows.scalars().all())


def ticket_dict(t: Ticket) -> Dict[str, Any]:
    return {
        "id": t.id,
        "key": t.ticket_key,
        "event_name": t.event_name,
        "ticket_type": t.ticket_type,
        "price": str(to_money(t.price)),
        "quantity": t.quantity,
        "sold_out": t.sold_out,
        "status": t.status,
        "issued_at": to_iso(t.issued_at),
        "expires_at": to_iso(t.expires_at),
    }
