# model/refundqueue/__init__.py
"""
Durable queue of refunds that failed while compensating a charge.

A failed compensation refund is money taken without a ticket issued, so it
is written down here instead of only in the payment's error text, and
`drain` retries it until the gateway confirms.
"""
from typing import Optional, Callable, AsyncContextManager, Dict, Union

import redis.asyncio as redis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...gateway import GatewayError, PaymentGateway
from ._postgres import RefundQueue as SqlRefundQueue, create_schema
from ._redis import RefundQueue as RedisRefundQueue

logger = structlog.get_logger(__name__)

Gated = Callable[[], AsyncContextManager[None]]
RefundQueue = Union[SqlRefundQueue, RedisRefundQueue]


# Factory keeps server.py simple and constructor-agnostic:
def new_queue(backend: str, *,
              session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None) -> RefundQueue:
    if backend == "pg":
        if session_factory is None or gated is None:
            raise RuntimeError(
                "RefundQueue(pg) requires session_factory and gated"
            )
        return SqlRefundQueue(session_factory=session_factory, gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError("RefundQueue(redis) requires r=redis.Redis")
        return RedisRefundQueue(r=r)
    raise RuntimeError(f"unknown REFUNDQ_BACKEND: {backend!r}")


async def drain(queue: RefundQueue, gateway: PaymentGateway,
                limit: int = 50) -> Dict[str, int]:
    """Retry every open refund once. Never raises on gateway errors."""
    out = {"retried": 0, "resolved": 0, "failed": 0}
    for item in await queue.pending(limit=limit):
        charge_id = item["charge_id"]
        out["retried"] += 1
        try:
            result = await gateway.refund(charge_id)
        except GatewayError as e:
            out["failed"] += 1
            await queue.record_attempt(charge_id, str(e))
            logger.error(
                "refund_retry_failed", charge_id=charge_id,
                payment_ref=item["payment_ref"],
                attempts=item["attempts"] + 1, error=str(e),
            )
            continue
        out["resolved"] += 1
        await queue.mark_resolved(charge_id)
        logger.info(
            "refund_retry_resolved", charge_id=charge_id,
            payment_ref=item["payment_ref"],
            refund_id=result.refund_id,
            already_refunded=result.already_refunded,
        )
    return out


__all__ = ["RefundQueue", "SqlRefundQueue", "RedisRefundQueue",
           "new_queue", "drain", "create_schema"]
