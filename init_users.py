import argparse
import asyncio
import os

from boxoffice.infra.sql import make_async_engine
from boxoffice.model.db import Base
from boxoffice.model.refundqueue import create_schema
from boxoffice.model.users import find_by_username, new_user


async def create_user(database_url: str, username: str,
                      password: str) -> None:
    engine, SessionAsync, _, _ = make_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await create_schema(conn)

        async with SessionAsync() as db:
            async with db.begin():
                if await find_by_username(db, username) is not None:
                    print(f'⚠️  user {username!r} exists, skipped')
                    return
                db.add(new_user(username, password))
        print(f'✅ user {username!r} created')
    finally:
        await engine.dispose()


def main():
    ap = argparse.ArgumentParser(
        description="Create the tables and a login user"
    )
    ap.add_argument("username")
    ap.add_argument("password")
    ap.add_argument(
        "--database-url",
        default=os.getenv("DATABASE_URL", "sqlite:///./boxoffice.db"),
        help="defaults to $DATABASE_URL",
    )
    args = ap.parse_args()
    asyncio.run(create_user(args.database_url, args.username, args.password))


if __name__ == "__main__":
    main()
