#!/usr/bin/env python3
"""
Create the schema and optionally seed an admin user.

  DATABASE_URL=sqlite:///./bashitix.db python -m bashitix.init_db \
      --admin-email admin@example.com --admin-password 'Secret123'
"""
import argparse
import asyncio
import sys
from typing import Optional

from .config import Settings
from .credentials import CredentialStore
from .errors import ConflictError, ValidationError
from .infra.sql import make_async_engine
from .model.orm import Base


async def init_db(settings: Settings, admin_email: Optional[str] = None,
                  admin_password: Optional[str] = None,
                  admin_name: str = "Administrator") -> Optional[str]:
    db = make_async_engine(settings.database_url)
    try:
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print('✅ schema created')

        if not admin_email:
            return None
        store = CredentialStore(db, settings.bcrypt_rounds)
        try:
            user_id = await store.register(
                admin_email, admin_password or "", admin_name, role="admin"
            )
        except ConflictError:
            print(f'admin {admin_email} already exists')
            return None
        print(f'✅ admin {admin_email} created')
        return user_id
    finally:
        await db.dispose()


def main():
    ap = argparse.ArgumentParser(description="bashitix schema setup")
    ap.add_argument("--admin-email", default=None)
    ap.add_argument("--admin-password", default=None)
    ap.add_argument("--admin-name", default="Administrator")
    args = ap.parse_args()

    settings = Settings.from_env()
    try:
        asyncio.run(init_db(
            settings, args.admin_email, args.admin_password, args.admin_name
        ))
    except ValidationError as e:
        print(f"error: {e.message}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
