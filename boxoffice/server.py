from __future__ import annotations
from decimal import InvalidOperation
from typing import Optional

import httpx
import structlog
import redis.asyncio as redis

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware

from .auth import AccountLocked, InvalidCredentials, authenticate
from .card import card_brand
from .checkout import CheckoutService, PurchaseRequest, precheck_card
from .config import Settings
from .gateway import PaymentGateway, new_gateway
from .helpers import ct_equal, parse_ts, to_iso, to_money
from .infra import timings
from .infra.logs import setup_logging
from .infra.sql import make_async_engine
from .infra.timings import timeit
from .model import inventory, refundqueue
from .model.db import Base, Payment, Ticket
from .model.lockout import LockoutGovernor
from .model.users import find_by_username

logger = structlog.get_logger(__name__)

router = APIRouter()


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.SessionAsync() as session:
        yield session


def lockout_governor(request: Request) -> LockoutGovernor:
    st = request.app.state
    return LockoutGovernor(
        st.SessionAsync, policy=st.settings.lockout, gated=st.gated
    )


def refund_queue(request: Request) -> refundqueue.RefundQueue:
    st = request.app.state
    return refundqueue.new_queue(
        st.settings.refundq_backend,
        session_factory=st.SessionAsync,
        gated=st.gated,
        r=getattr(st, "redis", None),
    )


def checkout_service(
    request: Request,
    refunds: refundqueue.RefundQueue = Depends(refund_queue),
) -> CheckoutService:
    st = request.app.state
    return CheckoutService(
        st.SessionAsync,
        st.gateway,
        refunds=refunds,
        gated=st.gated,
        settings=st.settings,
    )


# ----------------------------
# Helpers
# ----------------------------
def current_user_id(request: Request) -> int:
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(401, detail="User not authenticated")
    return int(user_id)


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(401, detail="admin login required")


def _error(status_code: int, **content) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content=content)


# ----------------------------
# Login with lockout
# ----------------------------
@router.post("/api/login")
async def api_login(
    payload: dict,
    request: Request,
    governor: LockoutGovernor = Depends(lockout_governor),
):
    st = request.app.state
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    if not username or not password:
        raise HTTPException(400, detail="username and password are required")

    try:
        async with timeit("auth.authenticate"):
            user = await authenticate(
                st.SessionAsync, governor, username, password, gated=st.gated
            )
    except AccountLocked as e:
        return _error(
            429,
            error=str(e),
            retry_after=e.info.remaining_seconds,
            locked_until=to_iso(e.info.locked_until),
        )
    except InvalidCredentials as e:
        if e.remaining_attempts is None:
            return _error(401, error="Invalid credentials")
        return _error(401, error="Invalid credentials",
                      attempts_remaining=e.remaining_attempts)

    request.session["user_id"] = user.id
    return {"ok": True, "user_id": user.id, "username": user.username}


@router.post("/api/logout")
async def api_logout(request: Request):
    request.session.pop("user_id", None)
    return {"ok": True}


@router.get("/api/login/lockout-info")
async def api_lockout_info(
    username: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    governor: LockoutGovernor = Depends(lockout_governor),
):
    if not username:
        raise HTTPException(400, detail="username required")
    async with db.begin():
        user = await find_by_username(db, username)
    if user is None:
        return {"is_locked": False, "failed_attempts": 0,
                "locked_until": None, "remaining_seconds": None}
    info = await governor.lockout_info(user.id)
    return info.to_dict()


# ----------------------------
# API: payments
# ----------------------------
@router.post("/api/payment/process")
async def process_payment(
    payload: dict,
    request: Request,
    checkout: CheckoutService = Depends(checkout_service),
):
    user_id = current_user_id(request)
    async with timeit("checkout.purchase"):
        outcome = await checkout.purchase(
            user_id, PurchaseRequest.from_dict(payload)
        )
    return ORJSONResponse(status_code=outcome.http_status,
                          content=outcome.to_dict())


@router.get("/api/payment/status/{payment_ref}")
async def payment_status(
    payment_ref: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    user_id = current_user_id(request)
    async with db.begin():
        payment = (await db.execute(
            select(Payment).where(Payment.payment_ref == payment_ref)
        )).scalar_one_or_none()
        if payment is None:
            raise HTTPException(404, detail="Payment not found")
        if payment.user_id != user_id:
            raise HTTPException(403, detail="Unauthorized")
        ticket = None
        if payment.ticket_id is not None:
            ticket = await db.get(Ticket, payment.ticket_id)

    return {
        "payment": {
            "id": payment.payment_ref,
            "status": payment.status,
            "amount": str(to_money(payment.amount)),
            "currency": payment.currency,
            "card_brand": payment.card_brand,
            "card_last_four": payment.card_last_four,
            "transaction_id": payment.transaction_id,
            "created_at": to_iso(payment.created_at),
            "completed_at": to_iso(payment.completed_at),
            "error_message": payment.error_message,
        },
        "ticket": inventory.ticket_dict(ticket) if ticket else None,
    }


@router.post("/api/payment/validate-card")
async def validate_card(payload: dict):
    req = PurchaseRequest.from_dict(payload)
    error = precheck_card(req)
    if error:
        return _error(400, valid=False, error=error)
    return {
        "valid": True,
        "message": "Card details are valid",
        "card_brand": card_brand(str(req.card_number)),
    }


@router.get("/api/payment/available-tickets")
async def available_tickets(db: AsyncSession = Depends(get_db)):
    async with db.begin():
        pools = await inventory.available_pools(db)
        items = [inventory.ticket_dict(t) for t in pools]
    return {"success": True, "count": len(items), "tickets": items}


@router.get("/api/tickets")
async def my_tickets(request: Request, db: AsyncSession = Depends(get_db)):
    user_id = current_user_id(request)
    async with db.begin():
        tickets = await inventory.tickets_of_user(db, user_id)
        items = [inventory.ticket_dict(t) for t in tickets]
    return {"success": True, "count": len(items), "tickets": items}


# ----------------------------
# Admin
# ----------------------------
@router.post("/admin/login")
async def admin_login(payload: dict, request: Request):
    st = request.app.state
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    ok_user = ct_equal(username, st.settings.admin_username)
    ok_pass = ct_equal(password, st.settings.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username
        return {"ok": True}
    return _error(401, error="Invalid credentials.")


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.pop("admin_user", None)
    return {"ok": True}


@router.post("/api/admin/tickets", status_code=201)
async def admin_create_pool(
    payload: dict,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    require_admin(request)
    event_name = (payload.get("event_name") or "").strip()
    if not event_name:
        raise HTTPException(400, detail="event_name is required")
    try:
        price = to_money(payload.get("price"))
        quantity = int(payload.get("quantity", 0))
        pool = inventory.new_pool(
            event_name=event_name,
            price=price,
            quantity=quantity,
            ticket_type=(payload.get("ticket_type") or "GENERAL"),
            expires_at=parse_ts(payload.get("expires_at")),
            status=(payload.get("status") or "ACTIVE"),
        )
    except (InvalidOperation, TypeError, ValueError) as e:
        raise HTTPException(400, detail=f"invalid ticket pool: {e}")
    if price <= 0:
        raise HTTPException(400, detail="price must be positive")

    async with db.begin():
        db.add(pool)
    logger.info("ticket_pool_created", ticket_id=pool.id,
                event_name=event_name, quantity=pool.quantity)
    return {"success": True, "ticket": inventory.ticket_dict(pool)}


@router.post("/api/admin/lockout/reset")
async def admin_lockout_reset(
    payload: dict,
    request: Request,
    db: AsyncSession = Depends(get_db),
    governor: LockoutGovernor = Depends(lockout_governor),
):
    require_admin(request)
    async with db.begin():
        user = await find_by_username(db, payload.get("username") or "")
    if user is None:
        raise HTTPException(404, detail="user not found")
    await governor.reset(user.id)
    return {"ok": True, "lockout": (await governor.lockout_info(user.id)).to_dict()}


@router.get("/api/admin/refunds")
async def admin_refunds(
    request: Request,
    limit: int = 100,
    queue: refundqueue.RefundQueue = Depends(refund_queue),
):
    require_admin(request)
    items = await queue.pending(limit=max(1, min(limit, 500)))
    return {"items": items, "limit": limit}


@router.post("/api/admin/refunds/retry")
async def admin_refunds_retry(
    request: Request,
    limit: int = 50,
    queue: refundqueue.RefundQueue = Depends(refund_queue),
):
    require_admin(request)
    return await refundqueue.drain(queue, request.app.state.gateway,
                                   limit=max(1, min(limit, 500)))


@router.get("/api/admin/timings")
async def admin_timings(request: Request):
    require_admin(request)
    return {"items": timings.aggregates()}


# ----------------------------
# App factory, startup / shutdown
# ----------------------------
async def init_db(app: FastAPI) -> None:
    # Create SQL tables (idempotent)
    async with app.state.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if app.state.settings.refundq_backend == "pg":
            await refundqueue.create_schema(conn)


def create_app(settings: Optional[Settings] = None,
               gateway: Optional[PaymentGateway] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="BoxOffice",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.include_router(router)

    engine, SessionAsync, _, gated = make_async_engine(settings.database_url)
    app.state.settings = settings
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    app.state.gateway = gateway

    @app.on_event("startup")
    async def _say_hello():
        setup_logging(settings.log_level, settings.log_json)
        logger.info(
            "startup",
            gateway_backend=settings.gateway_backend,
            refundq_backend=settings.refundq_backend,
            lockout_threshold=settings.lockout.threshold,
        )

    @app.on_event("startup")
    async def _db_init():
        await init_db(app)

    @app.on_event("startup")
    async def _gateway_start():
        if app.state.gateway is None:
            app.state.http = httpx.AsyncClient(
                timeout=settings.gateway_timeout,
                limits=httpx.Limits(
                    max_connections=512, max_keepalive_connections=512
                ),
            )
            app.state.gateway = new_gateway(settings, http=app.state.http)

    @app.on_event("startup")
    async def _redis_start():
        if settings.refundq_backend == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("shutdown")
    async def _http_client_stop():
        if app.state.gateway is not None:
            await app.state.gateway.aclose()
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _engine_stop():
        await engine.dispose()

    return app


app = create_app()
