"""
Pytest configuration and fixtures.
"""
from datetime import date
from types import SimpleNamespace
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import select

from boxoffice.checkout import CheckoutService
from boxoffice.config import LockoutPolicy, Settings
from boxoffice.gateway import MockGateway
from boxoffice.infra.sql import make_async_engine
from boxoffice.model import inventory
from boxoffice.model.db import Base, Payment, Ticket, User
from boxoffice.model.lockout import LockoutGovernor
from boxoffice.model.refundqueue import SqlRefundQueue, create_schema
from boxoffice.model.users import new_user

TODAY = date(2026, 3, 15)
T0 = 1_773_532_800.0  # 2026-03-15T00:00:00Z

VISA = "4242424242424242"


class FakeClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def card_payload(**overrides: Any) -> dict:
    payload = {
        "card_number": VISA,
        "expiry_month": "12",
        "expiry_year": "2030",
        "cvv": "123",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "currency": "USD",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'boxoffice-test.db'}",
        session_secret="test-secret",
        admin_username="admin",
        admin_password="admin-pw",
        gateway_backend="mock",
        refundq_backend="pg",
        lockout=LockoutPolicy(threshold=10, base_seconds=300, multiplier=2),
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncGenerator[SimpleNamespace, Any]:
    """Fresh SQLite file database with all tables created."""
    engine, SessionAsync, _, gated = make_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await create_schema(conn)

    yield SimpleNamespace(engine=engine, SessionAsync=SessionAsync,
                          gated=gated)

    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway()


@pytest.fixture
def refunds(db) -> SqlRefundQueue:
    return SqlRefundQueue(session_factory=db.SessionAsync, gated=db.gated)


@pytest.fixture
def checkout(db, gateway, refunds, settings, clock) -> CheckoutService:
    return CheckoutService(
        db.SessionAsync, gateway, refunds=refunds, gated=db.gated,
        settings=settings, clock=clock, today=lambda: TODAY,
    )


@pytest.fixture
def governor(db, settings, clock) -> LockoutGovernor:
    return LockoutGovernor(db.SessionAsync, policy=settings.lockout,
                           gated=db.gated, clock=clock)


@pytest.fixture
def make_user(db):
    async def _make(username: str = "alice",
                    password: str = "correct horse") -> User:
        async with db.SessionAsync() as s:
            async with s.begin():
                # cheap hash keeps the lockout tests fast
                user = new_user(username, password, rounds=4)
                s.add(user)
        return user
    return _make


@pytest.fixture
def make_pool(db):
    async def _make(quantity: int = 5, price: str = "25.00",
                    event_name: str = "Symphony No. 9", **kw: Any) -> Ticket:
        pool = inventory.new_pool(event_name, price, quantity, **kw)
        async with db.SessionAsync() as s:
            async with s.begin():
                s.add(pool)
        return pool
    return _make


@pytest.fixture
def load(db):
    """Fetch fresh rows, bypassing whatever the caller has cached."""
    async def _payment(ref: str) -> Payment:
        async with db.SessionAsync() as s:
            return (await s.execute(
                select(Payment).where(Payment.payment_ref == ref)
            )).scalar_one()

    async def _ticket(ticket_id: int) -> Ticket:
        async with db.SessionAsync() as s:
            return await s.get(Ticket, ticket_id)

    async def _payments() -> list:
        async with db.SessionAsync() as s:
            return list((await s.execute(select(Payment))).scalars().all())

    async def _tickets_of(user_id: int) -> list:
        async with db.SessionAsync() as s:
            return list((await s.execute(
                select(Ticket).where(Ticket.user_id == user_id)
            )).scalars().all())

    return SimpleNamespace(payment=_payment, ticket=_ticket,
                           payments=_payments, tickets_of=_tickets_of)
