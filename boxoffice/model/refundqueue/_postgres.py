from __future__ import annotations
from typing import Optional, Dict, Any, List
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession, AsyncConnection, async_sessionmaker
)
from typing import Callable, AsyncContextManager

from ...helpers import now_ts


# ------------------------------------------------------------------------------
# DDL (idempotent, valid on PostgreSQL and SQLite)
# ------------------------------------------------------------------------------
SQL_CREATE_REFUND_RETRIES = r"""
-- refunds that failed while compensating a charge
CREATE TABLE IF NOT EXISTS refund_retries (
  charge_id    TEXT PRIMARY KEY,
  payment_ref  TEXT NOT NULL,
  attempts     INTEGER NOT NULL DEFAULT 1,
  last_error   TEXT,
  created_at   DOUBLE PRECISION NOT NULL,
  updated_at   DOUBLE PRECISION NOT NULL,
  resolved_at  DOUBLE PRECISION
);
"""

SQL_CREATE_IDX_REFUND_RETRIES_OPEN = r"""
CREATE INDEX IF NOT EXISTS idx_refund_retries_open
  ON refund_retries (created_at)
  WHERE resolved_at IS NULL;
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    # get an execute handle that works for both session and connection
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_REFUND_RETRIES))
    await exec_(text(SQL_CREATE_IDX_REFUND_RETRIES_OPEN))


class RefundQueue:
    def __init__(
        self, *, session_factory: async_sessionmaker[AsyncSession],
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.session_factory = session_factory
        self.gated = gated

    async def enqueue(self, charge_id: str, payment_ref: str,
                      error: Optional[str]) -> None:
        now = now_ts()
        async with self.gated():
            async with self.session_factory() as db:
                async with db.begin():
                    await db.execute(text("""
                      INSERT INTO refund_retries(
                        charge_id, payment_ref, attempts, last_error,
                        created_at, updated_at, resolved_at
                      ) VALUES (
                        :charge_id, :payment_ref, 1, :err, :now, :now, NULL
                      )
                      ON CONFLICT (charge_id) DO UPDATE SET
                        attempts = refund_retries.attempts + 1,
                        last_error = EXCLUDED.last_error,
                        updated_at = EXCLUDED.updated_at,
                        resolved_at = NULL
                    """), {
                        "charge_id": charge_id,
                        "payment_ref": payment_ref,
                        "err": error,
                        "now": now,
                    })

    async def record_attempt(self, charge_id: str, error: str) -> None:
        async with self.gated():
            async with self.session_factory() as db:
                async with db.begin():
                    await db.execute(text("""
                      UPDATE refund_retries
                      SET attempts = attempts + 1,
                          last_error = :err,
                          updated_at = :now
                      WHERE charge_id = :charge_id
                    """), {"charge_id": charge_id, "err": error,
                           "now": now_ts()})

    async def mark_resolved(self, charge_id: str) -> None:
        async with self.gated():
            async with self.session_factory() as db:
                async with db.begin():
                    await db.execute(text("""
                      UPDATE refund_retries
                      SET resolved_at = :now, updated_at = :now
                      WHERE charge_id = :charge_id AND resolved_at IS NULL
                    """), {"charge_id": charge_id, "now": now_ts()})

    async def get(self, charge_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.session_factory() as db:
                async with db.begin():
                    row = (await db.execute(text("""
                      SELECT * FROM refund_retries WHERE charge_id = :c
                    """), {"c": charge_id})).mappings().first()
                    return dict(row) if row else None

    async def pending(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.session_factory() as db:
                async with db.begin():
                    rows = (await db.execute(text("""
                      SELECT charge_id, payment_ref, attempts, last_error,
                             created_at, updated_at
                      FROM refund_retries
                      WHERE resolved_at IS NULL
                      ORDER BY created_at ASC
                      LIMIT :lim
                    """), {"lim": int(limit)})).mappings().all()
        return [
            {
                "charge_id": r["charge_id"],
                "payment_ref": r["payment_ref"],
                "attempts": int(r["attempts"]),
                "last_error": r["last_error"] or "",
                "created_at": float(r["created_at"]),
                "updated_at": float(r["updated_at"]),
            }
            for r in rows
        ]
