import socket
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from bashitix.config import Settings
from bashitix.credentials import CredentialStore
from bashitix.fulfillment import FulfillmentPipeline
from bashitix.helpers import new_id, now_ts
from bashitix.infra.sql import Database, GatedAsyncSession, make_async_engine
from bashitix.mockpay import MockPay
from bashitix.model import events
from bashitix.model.kv import SqlKVStore
from bashitix.model.orm import Base, User
from bashitix.notify import Notifier
from bashitix.server import create_app
from bashitix.tokens import Claims, TokenService
from bashitix.verification import VerificationCache

# Test-only secrets
TEST_JWT_SECRET = "test-secret-key-that-is-at-least-32-characters-long"
TEST_WEBHOOK_SECRET = "whsec_test"
TEST_PASSWORD = "Passw0rdTest"


def _is_redis_available() -> bool:
    """Check if Redis is accepting connections on 127.0.0.1:6379."""
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(("127.0.0.1", 6379))
        sock.close()
        return result == 0
    except OSError:
        return False


_REDIS_AVAILABLE = _is_redis_available()


def skip_if_no_redis() -> None:
    if not _REDIS_AVAILABLE:
        pytest.skip("Redis not available on port 6379")


class RecordingNotifier(Notifier):
    """Keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, to: str, subject: str, body_html: str) -> bool:
        self.sent.append((to, subject))
        return True


# =============================================================================
# Storage
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path}/bashitix.db",
        kv_backend="sql",
        jwt_secret=TEST_JWT_SECRET,
        bcrypt_rounds=4,
        payment_backend="mock",
        stripe_webhook_secret=TEST_WEBHOOK_SECRET,
    )


@pytest_asyncio.fixture
async def db(settings) -> AsyncGenerator[Database, None]:
    database = make_async_engine(settings.database_url)
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield database
    await database.dispose()


@pytest.fixture
def kv(db):
    return SqlKVStore(db=db)


# =============================================================================
# Core components
# =============================================================================


@pytest.fixture
def mockpay(kv) -> MockPay:
    return MockPay(kv, webhook_secret=TEST_WEBHOOK_SECRET)


@pytest.fixture
def cache(kv, db) -> VerificationCache:
    return VerificationCache(kv, db)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def pipeline(db, mockpay, cache, notifier) -> FulfillmentPipeline:
    return FulfillmentPipeline(db, mockpay, cache, notifier)


@pytest.fixture
def credentials(db) -> CredentialStore:
    return CredentialStore(db, bcrypt_rounds=4)


@pytest.fixture
def token_service() -> TokenService:
    return TokenService(TEST_JWT_SECRET)


async def add_user(db: Database, role: str = "user",
                   email: str | None = None) -> str:
    """Insert a user row directly (no password hashing)."""
    user_id = new_id()
    async with db.session() as s:
        async with s.begin():
            s.add(User(
                id=user_id,
                email=email or f"{user_id[:12]}@example.com",
                password_hash="!",
                full_name="Test User",
                role=role,
                created_at=now_ts(),
            ))
    return user_id


async def add_event(db: Database, capacity: int | None = None,
                    price: int = 1000, status: str = "active") -> str:
    async with db.session() as s:
        return await events.create(
            GatedAsyncSession(session=s, gated=db.gated),
            {
                "title": "Diwali Night",
                "starts_at": now_ts() + 7 * 24 * 3600,
                "location": "Tulsa",
                "price": price,
                "capacity": capacity,
                "status": status,
            },
            created_by=None,
        )


def claims_for(user_id: str, email: str = "buyer@example.com",
               role: str = "user") -> Claims:
    now = int(now_ts())
    return Claims(sub=user_id, role=role, email=email, iat=now,
                  exp=now + 3600)


async def complete_checkout(pipeline: FulfillmentPipeline, mockpay: MockPay,
                            session_id: str, outcome: str = "completed"):
    payload, headers = await mockpay.build_event(session_id, outcome)
    return await pipeline.handle_webhook(payload, headers)


# =============================================================================
# HTTP
# =============================================================================


@pytest_asyncio.fixture
async def app(settings):
    application = create_app(settings)
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


def auth_header(app, user_id: str, role: str = "user",
                email: str = "buyer@example.com") -> dict:
    token = app.state.tokens.issue(user_id, role, email)
    return {"Authorization": f"Bearer {token}"}
