from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import BCRYPT_ROUNDS, hash_password, now_ts
from .db import User


def new_user(username: str, password: str,
             rounds: int = BCRYPT_ROUNDS) -> User:
    return User(
        username=username.strip(),
        password_hash=hash_password(password, rounds=rounds),
        created_at=now_ts(),
    )


async def find_by_username(db: AsyncSession, username: str) -> Optional[User]:
    rows = await db.execute(
        select(User).where(User.username == (username or "").strip())
    )
    return rows.scalar_one_or_none()
