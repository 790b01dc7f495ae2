# model/lockout.py
"""
Escalating account lockout.

One `login_attempts` row per user, created on the first failure. Every
mutation happens inside a transaction holding the row lock; reads never
mutate. Policy (defaults): every 10th failure locks the account, for 300s
the first time, 600s the second, 1200s the third, and so on. The counter is
only reset by a successful login or an explicit reset, so lockouts keep
escalating across lock periods.
"""
from __future__ import annotations
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, AsyncContextManager

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import LockoutPolicy
from ..helpers import now_ts, to_iso
from .db import LoginAttempt

logger = structlog.get_logger(__name__)

Gated = Callable[[], AsyncContextManager[None]]


@dataclass(frozen=True)
class LockoutInfo:
    is_locked: bool
    failed_attempts: int
    locked_until: Optional[float]
    remaining_seconds: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_locked": self.is_locked,
            "failed_attempts": self.failed_attempts,
            "locked_until": to_iso(self.locked_until),
            "remaining_seconds": self.remaining_seconds,
        }


NOT_LOCKED = LockoutInfo(False, 0, None, None)


class LockoutGovernor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: LockoutPolicy = LockoutPolicy(),
        gated: Optional[Gated] = None,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.session_factory = session_factory
        self.policy = policy
        self.gated = gated or nullcontext
        self.clock = clock

    @staticmethod
    async def _row(db: AsyncSession, user_id: int,
                   for_update: bool = False) -> Optional[LoginAttempt]:
        stmt = select(LoginAttempt).where(LoginAttempt.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        return (await db.execute(stmt)).scalar_one_or_none()

    async def record_failure(self, user_id: int) -> Optional[int]:
        """
        Count one failed attempt.

        Returns the attempts left before the next lockout, or None when this
        failure locked the account.
        """
        for attempt in range(2):
            try:
                return await self._record_failure(user_id)
            except IntegrityError:
                # lost the race creating the row; it exists now, go again
                if attempt:
                    raise
                logger.info("lockout_row_race", user_id=user_id)
        raise AssertionError("unreachable")

    async def _record_failure(self, user_id: int) -> Optional[int]:
        t = self.policy.threshold
        async with self.gated():
            async with self.session_factory() as db:
                async with db.begin():
                    now = self.clock()
                    row = await self._row(db, user_id, for_update=True)
                    if row is None:
                        row = LoginAttempt(
                            user_id=user_id, failed_attempts=0,
                            created_at=now, updated_at=now,
                        )
                        db.add(row)
                    failed = row.increment(now)
                    if failed % t == 0:
                        duration = self.policy.duration_for(failed)
                        row.lock(duration, now)
                        logger.warning(
                            "account_locked", user_id=user_id,
                            failed_attempts=failed, duration_seconds=duration,
                        )
                        return None
                    return t - failed % t

    async def _clear(self, user_id: int, event: str) -> None:
        async with self.gated():
            async with self.session_factory() as db:
                async with db.begin():
                    row = await self._row(db, user_id, for_update=True)
                    if row is None:
                        return
                    had_failures = row.failed_attempts > 0
                    row.reset(self.clock())
        if had_failures:
            logger.info(event, user_id=user_id)

    async def record_success(self, user_id: int) -> None:
        await self._clear(user_id, "lockout_cleared_on_login")

    async def reset(self, user_id: int) -> None:
        await self._clear(user_id, "lockout_reset")

    async def lockout_info(self, user_id: int) -> LockoutInfo:
        async with self.gated():
            async with self.session_factory() as db:
                async with db.begin():
                    row = await self._row(db, user_id)
                    if row is None:
                        return NOT_LOCKED
                    failed = row.failed_attempts
                    locked_until = row.locked_until

        now = self.clock()
        locked = locked_until is not None and locked_until > now
        return LockoutInfo(
            is_locked=locked,
            failed_attempts=failed,
            locked_until=locked_until,
            remaining_seconds=(
                int(max(0.0, locked_until - now)) if locked else None
            ),
        )

    async def is_locked(self, user_id: int) -> bool:
        return (await self.lockout_info(user_id)).is_locked
