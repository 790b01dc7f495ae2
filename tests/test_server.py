"""
HTTP surface, driven in-process through httpx's ASGI transport.
"""
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from boxoffice.gateway import MockGateway
from boxoffice.model.users import new_user
from boxoffice.server import create_app, init_db

from .conftest import card_payload


@pytest_asyncio.fixture
async def app(settings) -> AsyncGenerator[Any, Any]:
    app = create_app(settings, gateway=MockGateway())
    # ASGITransport does not run startup handlers
    await init_db(app)
    async with app.state.SessionAsync() as s:
        async with s.begin():
            for name in ("alice", "bob"):
                s.add(new_user(name, f"pw-{name}", rounds=4))
    yield app
    await app.state.engine.dispose()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, Any]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://testserver") as ac:
        yield ac


async def login(client: httpx.AsyncClient, name: str) -> None:
    r = await client.post("/api/login",
                          json={"username": name, "password": f"pw-{name}"})
    assert r.status_code == 200, r.text


async def admin(client: httpx.AsyncClient) -> None:
    r = await client.post("/admin/login",
                          json={"username": "admin", "password": "admin-pw"})
    assert r.status_code == 200, r.text


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_and_logout(self, client) -> None:
        await login(client, "alice")
        r = await client.get("/api/tickets")
        assert r.status_code == 200
        assert r.json()["count"] == 0

        await client.post("/api/logout")
        assert (await client.get("/api/tickets")).status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_password(self, client) -> None:
        r = await client.post("/api/login",
                              json={"username": "alice", "password": "x"})
        assert r.status_code == 401
        assert r.json()["attempts_remaining"] == 9

    @pytest.mark.asyncio
    async def test_unknown_user(self, client) -> None:
        r = await client.post("/api/login",
                              json={"username": "mallory", "password": "x"})
        assert r.status_code == 401
        assert "attempts_remaining" not in r.json()

    @pytest.mark.asyncio
    async def test_missing_fields(self, client) -> None:
        r = await client.post("/api/login", json={"username": "alice"})
        assert r.status_code == 400

    @pytest.mark.asyncio
    async def test_lockout(self, client) -> None:
        for _ in range(9):
            r = await client.post("/api/login",
                                  json={"username": "alice", "password": "x"})
            assert r.status_code == 401
        r = await client.post("/api/login",
                              json={"username": "alice", "password": "x"})
        assert r.status_code == 429
        assert 290 <= r.json()["retry_after"] <= 300

        r = await client.post("/api/login", json={"username": "alice",
                                                  "password": "pw-alice"})
        assert r.status_code == 429

        r = await client.get("/api/login/lockout-info",
                             params={"username": "alice"})
        body = r.json()
        assert body["is_locked"] is True
        assert body["failed_attempts"] == 10

        await admin(client)
        r = await client.post("/api/admin/lockout/reset",
                              json={"username": "alice"})
        assert r.status_code == 200
        assert r.json()["lockout"]["is_locked"] is False
        await login(client, "alice")

    @pytest.mark.asyncio
    async def test_lockout_info_unknown_user(self, client) -> None:
        r = await client.get("/api/login/lockout-info",
                             params={"username": "mallory"})
        assert r.status_code == 200
        assert r.json() == {"is_locked": False, "failed_attempts": 0,
                            "locked_until": None, "remaining_seconds": None}


class TestPayments:
    @pytest.mark.asyncio
    async def test_requires_login(self, client) -> None:
        r = await client.post("/api/payment/process",
                              json=card_payload(event_name="Gig",
                                                amount="10.00"))
        assert r.status_code == 401

    @pytest.mark.asyncio
    async def test_adhoc_purchase_and_status(self, client) -> None:
        await login(client, "alice")
        r = await client.post(
            "/api/payment/process",
            json=card_payload(event_name="Jazz Night", amount="49.99"),
        )
        assert r.status_code == 201, r.text
        body = r.json()
        assert body["success"] is True
        assert body["payment"]["status"] == "COMPLETED"
        assert body["payment"]["card_last_four"] == "4242"
        ref = body["payment"]["id"]

        r = await client.get(f"/api/payment/status/{ref}")
        assert r.status_code == 200
        assert r.json()["payment"]["amount"] == "49.99"
        assert r.json()["ticket"]["event_name"] == "Jazz Night"

        r = await client.get("/api/tickets")
        assert r.json()["count"] == 1

        # another user may not look at it
        await client.post("/api/logout")
        await login(client, "bob")
        r = await client.get(f"/api/payment/status/{ref}")
        assert r.status_code == 403

        r = await client.get("/api/payment/status/pay_doesnotexist")
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_card_error_status(self, client) -> None:
        await login(client, "alice")
        r = await client.post(
            "/api/payment/process",
            json=card_payload(event_name="Gig", amount="10.00",
                              card_number="4000000000000002"),
        )
        assert r.status_code == 400
        body = r.json()
        assert body["success"] is False
        assert body["outcome"] == "card_error"
        assert body["payment"]["status"] == "FAILED"

    @pytest.mark.asyncio
    async def test_validate_card(self, client) -> None:
        r = await client.post("/api/payment/validate-card",
                              json=card_payload(expiry_year="2099"))
        assert r.status_code == 200
        assert r.json()["card_brand"] == "VISA"

        r = await client.post(
            "/api/payment/validate-card",
            json=card_payload(card_number="4242424242424241"),
        )
        assert r.status_code == 400
        assert r.json()["valid"] is False


class TestAdmin:
    @pytest.mark.asyncio
    async def test_requires_admin(self, client) -> None:
        await login(client, "alice")
        for method, path in (("post", "/api/admin/tickets"),
                             ("get", "/api/admin/refunds"),
                             ("post", "/api/admin/refunds/retry"),
                             ("get", "/api/admin/timings")):
            kwargs = {"json": {}} if method == "post" else {}
            r = await getattr(client, method)(path, **kwargs)
            assert r.status_code == 401, path

    @pytest.mark.asyncio
    async def test_bad_admin_password(self, client) -> None:
        r = await client.post("/admin/login",
                              json={"username": "admin", "password": "nope"})
        assert r.status_code == 401

    @pytest.mark.asyncio
    async def test_pool_lifecycle(self, client) -> None:
        await admin(client)
        r = await client.post("/api/admin/tickets", json={
            "event_name": "Symphony No. 9", "price": "25.00", "quantity": 2,
            "ticket_type": "VIP",
        })
        assert r.status_code == 201, r.text
        pool = r.json()["ticket"]
        assert pool["price"] == "25.00"

        r = await client.post("/api/admin/tickets",
                              json={"event_name": "x", "price": "abc"})
        assert r.status_code == 400

        r = await client.get("/api/payment/available-tickets")
        assert [t["id"] for t in r.json()["tickets"]] == [pool["id"]]

        await login(client, "alice")
        r = await client.post("/api/payment/process",
                              json=card_payload(ticket_id=pool["id"],
                                                quantity=2))
        assert r.status_code == 200, r.text
        assert r.json()["available"] == 0

        r = await client.post("/api/payment/process",
                              json=card_payload(ticket_id=pool["id"]))
        assert r.status_code == 409
        assert r.json()["outcome"] == "insufficient_inventory"

        r = await client.get("/api/payment/available-tickets")
        assert r.json()["count"] == 0

        r = await client.get("/api/admin/refunds")
        assert r.json()["items"] == []
        r = await client.post("/api/admin/refunds/retry")
        assert r.json() == {"retried": 0, "resolved": 0, "failed": 0}

        r = await client.get("/api/admin/timings")
        kinds = {t["kind"] for t in r.json()["items"]}
        assert "gateway.charge" in kinds

    @pytest.mark.asyncio
    async def test_pool_expiry(self, client) -> None:
        await admin(client)
        pool = {"event_name": "Gala", "price": "80.00", "quantity": 10}

        r = await client.post("/api/admin/tickets",
                              json={**pool, "expires_at": "2026-12-31T00:00:00Z"})
        assert r.status_code == 201, r.text
        assert r.json()["ticket"]["expires_at"] == "2026-12-31T00:00:00+00:00"

        r = await client.post("/api/admin/tickets",
                              json={**pool, "expires_at": 1_798_675_200})
        assert r.status_code == 201, r.text
        assert r.json()["ticket"]["expires_at"] == "2026-12-31T00:00:00+00:00"

        for bad in ("next tuesday", True, [2026]):
            r = await client.post("/api/admin/tickets",
                                  json={**pool, "expires_at": bad})
            assert r.status_code == 400, bad
