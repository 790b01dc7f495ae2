from __future__ import annotations
from contextlib import nullcontext
from functools import lru_cache
from typing import Callable, AsyncContextManager, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .helpers import hash_password, verify_password
from .model.db import User
from .model.lockout import LockoutGovernor, LockoutInfo
from .model.users import find_by_username

logger = structlog.get_logger(__name__)

Gated = Callable[[], AsyncContextManager[None]]


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password("boxoffice-no-such-user")


class InvalidCredentials(Exception):
    def __init__(self, remaining_attempts: Optional[int] = None):
        super().__init__("Invalid credentials")
        self.remaining_attempts = remaining_attempts


class AccountLocked(Exception):
    def __init__(self, info: LockoutInfo):
        super().__init__(
            "Account locked due to too many failed login attempts"
        )
        self.info = info


async def authenticate(
    session_factory: async_sessionmaker[AsyncSession],
    governor: LockoutGovernor,
    username: str,
    password: str,
    gated: Optional[Gated] = None,
) -> User:
    """
    The lockout check runs before the password is looked at: a locked
    account is refused without hashing anything.
    """
    gated = gated or nullcontext
    async with gated():
        async with session_factory() as db:
            async with db.begin():
                user = await find_by_username(db, username)

    if user is None:
        # same bcrypt cost as checking a known user
        verify_password(password or "", _dummy_hash())
        raise InvalidCredentials()

    info = await governor.lockout_info(user.id)
    if info.is_locked:
        logger.info("login_refused_locked", user_id=user.id,
                    remaining_seconds=info.remaining_seconds)
        raise AccountLocked(info)

    if not verify_password(password or "", user.password_hash):
        remaining = await governor.record_failure(user.id)
        if remaining is None:
            raise AccountLocked(await governor.lockout_info(user.id))
        logger.info("login_failed", user_id=user.id,
                    attempts_remaining=remaining)
        raise InvalidCredentials(remaining)

    await governor.record_success(user.id)
    return user
