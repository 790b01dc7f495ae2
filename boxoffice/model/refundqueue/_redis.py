from __future__ import annotations
from typing import Optional, Dict, Any, List
import redis.asyncio as redis

from ...helpers import now_ts


# ---- keys
def k_refund(charge_id: str) -> str: return f"refund:{charge_id}"


OPEN_INDEX = "refunds_open"


class RefundQueue:
    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def enqueue(self, charge_id: str, payment_ref: str,
                      error: Optional[str]) -> None:
        now = now_ts()
        key = k_refund(charge_id)
        pipe = self.r.pipeline(transaction=True)
        pipe.hsetnx(key, "created_at", str(now))
        pipe.hset(key, mapping={
            "charge_id": charge_id,
            "payment_ref": payment_ref,
            "last_error": error or "",
            "updated_at": str(now),
        })
        pipe.hdel(key, "resolved_at")
        pipe.hincrby(key, "attempts", 1)
        pipe.zadd(OPEN_INDEX, {charge_id: now}, nx=True)
        await pipe.execute()

    async def record_attempt(self, charge_id: str, error: str) -> None:
        key = k_refund(charge_id)
        pipe = self.r.pipeline(transaction=True)
        pipe.hincrby(key, "attempts", 1)
        pipe.hset(key, mapping={"last_error": error,
                                "updated_at": str(now_ts())})
        await pipe.execute()

    async def mark_resolved(self, charge_id: str) -> None:
        now = str(now_ts())
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_refund(charge_id),
                  mapping={"resolved_at": now, "updated_at": now})
        pipe.zrem(OPEN_INDEX, charge_id)
        await pipe.execute()

    async def get(self, charge_id: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_refund(charge_id))
        return h or None

    async def pending(self, limit: int = 100) -> List[Dict[str, Any]]:
        charge_ids = await self.r.zrange(OPEN_INDEX, 0, max(0, limit - 1))
        pipe = self.r.pipeline()
        for charge_id in charge_ids:
            pipe.hgetall(k_refund(charge_id))
        rows = await pipe.execute()

        items = []
        for charge_id, h in zip(charge_ids, rows):
            # house-keeping: index entry without a hash
            if not h:
                await self.r.zrem(OPEN_INDEX, charge_id)
                continue
            items.append({
                "charge_id": charge_id,
                "payment_ref": h.get("payment_ref", ""),
                "attempts": int(h.get("attempts", "0")),
                "last_error": h.get("last_error", ""),
                "created_at": float(h.get("created_at", "0")),
                "updated_at": float(h.get("updated_at", "0")),
            })
        return items
