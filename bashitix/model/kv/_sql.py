from __future__ import annotations
import time
from typing import Optional, Type

from limits.aio.storage import Storage
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ...infra.sql import Database


SQL_GET = text("""
    SELECT value FROM kv_entries
    WHERE key = :k AND (expires_at IS NULL OR expires_at > :now)
""")

SQL_SET = text("""
    INSERT INTO kv_entries(key, value, expires_at)
    VALUES (:k, :v, :exp)
    ON CONFLICT (key) DO UPDATE
    SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at
""")


class KVStore:
    def __init__(self, *, db: Database, clock=time.time) -> None:
        self.db = db
        self.clock = clock

    async def get(self, key: str) -> Optional[str]:
        async with self.db.gated():
            async with self.db.session() as s:
                row = (await s.execute(
                    SQL_GET, {"k": key, "now": self.clock()}
                )).first()
        return row[0] if row else None

    async def set(self, key: str, value: str, ttl: int) -> None:
        async with self.db.gated():
            async with self.db.session() as s:
                async with s.begin():
                    await s.execute(SQL_SET, {
                        "k": key, "v": value,
                        "exp": self.clock() + max(1, int(ttl)),
                    })

    async def delete(self, key: str) -> None:
        async with self.db.gated():
            async with self.db.session() as s:
                async with s.begin():
                    await s.execute(
                        text("DELETE FROM kv_entries WHERE key = :k"),
                        {"k": key},
                    )

    async def purge_expired(self) -> int:
        async with self.db.gated():
            async with self.db.session() as s:
                async with s.begin():
                    res = await s.execute(text("""
                        DELETE FROM kv_entries
                        WHERE expires_at IS NOT NULL AND expires_at <= :now
                    """), {"now": self.clock()})
        return int(res.rowcount or 0)


# Starts a fresh window when the stored one has expired, otherwise adds to
# the counter. The upsert's row lock serializes concurrent hits on a key.
SQL_INCR_WINDOW = text("""
    INSERT INTO kv_entries(key, value, expires_at)
    VALUES (:k, :amount, :exp)
    ON CONFLICT (key) DO UPDATE SET
      value = CASE
        WHEN kv_entries.expires_at IS NOT NULL
             AND kv_entries.expires_at <= :now THEN EXCLUDED.value
        ELSE CAST(CAST(kv_entries.value AS INTEGER) + :n AS TEXT)
      END,
      expires_at = CASE
        WHEN kv_entries.expires_at IS NOT NULL
             AND kv_entries.expires_at <= :now THEN EXCLUDED.expires_at
        ELSE kv_entries.expires_at
      END
    RETURNING value
""")


class WindowStorage(Storage):
    """
    ``limits`` storage over the ``kv_entries`` table, so rate-limit windows
    are shared by every instance without Redis. Only the fixed-window
    strategy is supported.
    """

    def __init__(self, *, db: Database, clock=time.time,
                 prefix: str = "ratelimit/") -> None:
        super().__init__(wrap_exceptions=False)
        self.db = db
        self.clock = clock
        self.prefix = prefix

    @property
    def base_exceptions(self) -> Type[Exception]:
        return SQLAlchemyError

    async def incr(self, key: str, expiry: int, elastic_expiry: bool = False,
                   amount: int = 1) -> int:
        now = self.clock()
        async with self.db.gated():
            async with self.db.session() as s:
                async with s.begin():
                    row = (await s.execute(SQL_INCR_WINDOW, {
                        "k": key, "amount": str(int(amount)),
                        "n": int(amount), "now": now,
                        "exp": now + max(1, int(expiry)),
                    })).first()
        return int(row[0])

    async def get(self, key: str) -> int:
        async with self.db.gated():
            async with self.db.session() as s:
                row = (await s.execute(
                    SQL_GET, {"k": key, "now": self.clock()}
                )).first()
        return int(row[0]) if row else 0

    async def get_expiry(self, key: str) -> float:
        async with self.db.gated():
            async with self.db.session() as s:
                row = (await s.execute(text("""
                    SELECT expires_at FROM kv_entries
                    WHERE key = :k AND expires_at > :now
                """), {"k": key, "now": self.clock()})).first()
        return float(row[0]) if row else self.clock()

    async def check(self) -> bool:
        try:
            async with self.db.session() as s:
                await s.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    async def reset(self) -> Optional[int]:
        async with self.db.gated():
            async with self.db.session() as s:
                async with s.begin():
                    res = await s.execute(
                        text("DELETE FROM kv_entries WHERE key LIKE :p"),
                        {"p": self.prefix + "%"},
                    )
        return int(res.rowcount or 0)

    async def clear(self, key: str) -> None:
        async with self.db.gated():
            async with self.db.session() as s:
                async with s.begin():
                    await s.execute(
                        text("DELETE FROM kv_entries WHERE key = :k"),
                        {"k": key},
                    )
