from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional


# ----------------------------
# Config & Constants
# ----------------------------
REGISTER_LIMIT = (3, 5 * 60)     # attempts, window seconds
LOGIN_LIMIT = (5, 60)
MAX_TICKETS_PER_PURCHASE = 20
MIN_DONATION = 100               # minor units

# local-development secrets; refused outside the mock payment backend
DEV_JWT_SECRET = "dev-secret-change-me"
DEV_WEBHOOK_SECRET = "whsec_dev"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    database_url: str
    kv_backend: str = "sql"              # 'sql' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 512

    jwt_secret: str = DEV_JWT_SECRET
    token_ttl_seconds: int = 24 * 3600
    bcrypt_rounds: int = 12

    payment_backend: str = "mock"        # 'mock' | 'stripe'
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = DEV_WEBHOOK_SECRET
    stripe_api_base: str = "https://api.stripe.com"
    webhook_tolerance_seconds: int = 300
    public_base_url: str = "http://localhost:8000"
    currency: str = "usd"

    reservation_ttl_seconds: int = 15 * 60
    verify_cache_ttl: int = 24 * 3600

    resend_api_key: str = ""
    mail_from: str = "events@oklahomabashi.com"
    http_timeout_seconds: float = 5.0

    db_pool_size: Optional[int] = None
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    # header carrying the real client address when behind a proxy
    client_ip_header: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is required")
        pool_size = os.environ.get("DB_POOL_SIZE")
        gate_limit = os.environ.get("DB_GATE_LIMIT")
        return cls(
            database_url=database_url,
            kv_backend=os.environ.get("KV_BACKEND", "sql").lower(),
            redis_url=os.environ.get("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=_env_int("REDIS_MAX_CONN", 512),
            jwt_secret=os.environ.get("JWT_SECRET", DEV_JWT_SECRET),
            token_ttl_seconds=_env_int("TOKEN_TTL_SECONDS", 24 * 3600),
            bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
            payment_backend=os.environ.get("PAYMENT_BACKEND", "mock").lower(),
            stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.environ.get(
                "STRIPE_WEBHOOK_SECRET", DEV_WEBHOOK_SECRET
            ),
            stripe_api_base=os.environ.get(
                "STRIPE_API_BASE", "https://api.stripe.com"
            ),
            webhook_tolerance_seconds=_env_int("WEBHOOK_TOLERANCE_SECONDS", 300),
            public_base_url=os.environ.get(
                "PUBLIC_BASE_URL", "http://localhost:8000"
            ),
            currency=os.environ.get("CURRENCY", "usd").lower(),
            reservation_ttl_seconds=_env_int("RESERVATION_TTL_SECONDS", 15 * 60),
            verify_cache_ttl=_env_int("VERIFY_CACHE_TTL", 24 * 3600),
            resend_api_key=os.environ.get("RESEND_API_KEY", ""),
            mail_from=os.environ.get("MAIL_FROM", "events@oklahomabashi.com"),
            http_timeout_seconds=float(
                os.environ.get("HTTP_TIMEOUT_SECONDS", "5.0")
            ),
            db_pool_size=int(pool_size) if pool_size else None,
            db_max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
            db_pool_timeout=_env_int("DB_POOL_TIMEOUT", 30),
            db_gate_limit=int(gate_limit) if gate_limit else None,
            client_ip_header=os.environ.get("TRUST_CLIENT_IP_HEADER", ""),
        )
