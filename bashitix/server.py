from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import (
    DEV_JWT_SECRET, LOGIN_LIMIT, MIN_DONATION, REGISTER_LIMIT, Settings,
)
from .credentials import CredentialStore, user_profile, user_public
from .errors import (
    InvalidSignature, NotFound, Forbidden, TicketingError, ValidationError,
)
from .fulfillment import FulfillmentPipeline
from .gateway import PaymentAdapter, StripeGateway
from .helpers import is_valid_email
from .infra import timings
from .infra.sql import Database, GatedAsyncSession, make_async_engine
from .infra.timings import timeit
from .mockpay import MockPay
from .model import events, ledger, tickets
from .model.kv import new_rate_storage, new_store
from .model.orm import Base
from .notify import new_notifier
from .ratelimit import RateLimiter
from .schemas import (
    DonationBody, EventCreateBody, EventUpdateBody, LoginBody, MockEmitBody,
    ProfileBody, PurchaseBody, RegisterBody,
)
from .tokens import Claims, TokenService
from .verification import VerificationCache

log = logging.getLogger(__name__)


# ----------------------------
# startup / shutdown
# ----------------------------
def _say_hello(settings: Settings) -> None:
    print('\n' * 3)
    print('=' * 50)
    K = 'Redis' if settings.kv_backend == 'redis' else 'SQL'
    P = 'Stripe' if settings.payment_backend == 'stripe' else 'MockPay'
    print('bashitix is starting up...')
    print(f'   - KV Store Backend: {K}')
    print(f'   - Payment Backend:  {P}')
    print('=' * 50)
    print('\n' * 3)


def _redis_start(settings: Settings) -> redis.Redis:
    return redis.from_url(
        settings.redis_url,
        decode_responses=True,
        max_connections=settings.redis_max_conn,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        retry_on_timeout=True,
    )


def _new_gateway(settings: Settings, kv,
                 http: httpx.AsyncClient) -> PaymentAdapter:
    if settings.payment_backend == "stripe":
        return StripeGateway(
            http,
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_base=settings.stripe_api_base,
            public_base_url=settings.public_base_url,
            currency=settings.currency,
            tolerance=settings.webhook_tolerance_seconds,
        )
    if settings.payment_backend == "mock":
        return MockPay(
            kv,
            webhook_secret=settings.stripe_webhook_secret,
            currency=settings.currency,
            tolerance=settings.webhook_tolerance_seconds,
        )
    raise RuntimeError(
        f"unknown payment backend: {settings.payment_backend!r}"
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    _say_hello(settings)

    db = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    r = _redis_start(settings) if settings.kv_backend == "redis" else None
    kv = new_store(settings.kv_backend, db=db, r=r)
    purged = await kv.purge_expired()
    if purged:
        log.info("purged %d expired kv entries", purged)

    http = httpx.AsyncClient(
        timeout=settings.http_timeout_seconds,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=64),
    )
    gateway = _new_gateway(settings, kv, http)
    notifier = new_notifier(http, settings.resend_api_key, settings.mail_from)
    cache = VerificationCache(kv, db, ttl_seconds=settings.verify_cache_ttl)

    app.state.db = db
    app.state.redis = r
    app.state.kv = kv
    app.state.http = http
    app.state.gateway = gateway
    app.state.notifier = notifier
    app.state.cache = cache
    app.state.credentials = CredentialStore(db, settings.bcrypt_rounds)
    app.state.tokens = TokenService(
        settings.jwt_secret, settings.token_ttl_seconds
    )
    app.state.limiter = RateLimiter(new_rate_storage(
        settings.kv_backend, db=db, redis_url=settings.redis_url
    ))
    app.state.pipeline = FulfillmentPipeline(
        db, gateway, cache, notifier,
        reservation_ttl_seconds=settings.reservation_ttl_seconds,
    )
    try:
        yield
    finally:
        await http.aclose()
        if r is not None:
            await r.aclose()
        await db.dispose()
        timings.log_and_reset()


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request) -> AsyncIterator[GatedAsyncSession]:
    db: Database = request.app.state.db
    async with db.session() as session:
        yield GatedAsyncSession(session=session, gated=db.gated)


def current_claims(
    request: Request, authorization: Optional[str] = Header(None),
) -> Claims:
    return request.app.state.tokens.verify_header(authorization)


def require_admin(claims: Claims = Depends(current_claims)) -> Claims:
    if not claims.is_admin:
        raise Forbidden()
    return claims


def client_ip(request: Request) -> str:
    header = request.app.state.settings.client_ip_header
    if header:
        forwarded = request.headers.get(header)
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ----------------------------
# Error bodies: {"error": <message>}
# ----------------------------
def _install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(TicketingError)
    async def _ticketing_error(request: Request, exc: TicketingError):
        return ORJSONResponse({"error": exc.message},
                              status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return ORJSONResponse({"error": str(exc.detail)},
                              status_code=exc.status_code,
                              headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            loc = ".".join(str(p) for p in errors[0].get("loc", ())
                           if p != "body")
            msg = f"Invalid field: {loc}" if loc else "Invalid request body"
        else:
            msg = "Invalid request body"
        return ORJSONResponse({"error": msg}, status_code=400)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        log.exception("unhandled error on %s %s",
                      request.method, request.url.path)
        return ORJSONResponse({"error": "Internal server error"},
                              status_code=500)


# ----------------------------
# Routes
# ----------------------------
def _install_routes(app: FastAPI) -> None:

    # ---- auth ----
    @app.post("/auth/register", status_code=201)
    async def register(body: RegisterBody, request: Request):
        limit, window = REGISTER_LIMIT
        await request.app.state.limiter.check(
            "register", client_ip(request), limit, window
        )
        store: CredentialStore = request.app.state.credentials
        user_id = await store.register(
            body.email, body.password, body.full_name
        )
        await request.app.state.notifier.welcome(
            body.email.strip().lower(), body.full_name.strip()
        )
        return {"success": True, "user_id": user_id}

    @app.post("/auth/login")
    async def login(body: LoginBody, request: Request):
        limit, window = LOGIN_LIMIT
        await request.app.state.limiter.check(
            "login", client_ip(request), limit, window
        )
        user = await request.app.state.credentials.verify(
            body.email, body.password
        )
        token = request.app.state.tokens.issue(user.id, user.role, user.email)
        return {"token": token, "user": user_public(user)}

    @app.get("/auth/profile")
    async def auth_profile(request: Request,
                           claims: Claims = Depends(current_claims)):
        user = await request.app.state.credentials.get(claims.sub)
        out = user_public(user)
        out["created_at"] = user.created_at
        return out

    # ---- user ----
    @app.get("/user/profile")
    async def get_profile(request: Request,
                          claims: Claims = Depends(current_claims)):
        return user_profile(await request.app.state.credentials.get(claims.sub))

    @app.put("/user/profile")
    async def put_profile(body: ProfileBody, request: Request,
                          claims: Claims = Depends(current_claims)):
        user = await request.app.state.credentials.update_profile(
            claims.sub, body.model_dump(exclude_none=True)
        )
        return {"success": True, "user": user_profile(user)}

    @app.get("/user/tickets")
    async def my_tickets(claims: Claims = Depends(current_claims),
                         db: GatedAsyncSession = Depends(get_db)):
        return await tickets.list_for_user(db, claims.sub)

    # ---- events ----
    @app.get("/events")
    async def list_events(db: GatedAsyncSession = Depends(get_db)):
        return await events.list_upcoming(db)

    @app.get("/events/{event_id}")
    async def get_event(event_id: str,
                        db: GatedAsyncSession = Depends(get_db)):
        out = await events.get(db, event_id)
        async with timeit("ledger.inventory"):
            out["inventory"] = await ledger.compute_inventory(db, event_id)
        return out

    # ---- tickets ----
    @app.post("/tickets/purchase")
    async def purchase(body: PurchaseBody, request: Request,
                       claims: Claims = Depends(current_claims)):
        pipeline: FulfillmentPipeline = request.app.state.pipeline
        return await pipeline.request_purchase(
            claims, body.event_id, body.quantity
        )

    @app.get("/tickets/verify/{ticket_id}")
    async def verify_ticket(ticket_id: str, request: Request):
        snap = await request.app.state.cache.get(ticket_id)
        if snap is None:
            raise NotFound("Ticket not found")
        return snap

    # ---- admin ----
    @app.put("/admin/tickets/{ticket_id}")
    async def mark_ticket_used(ticket_id: str, request: Request,
                               admin: Claims = Depends(require_admin)):
        snap = await request.app.state.cache.mark_used(ticket_id)
        log.info("ticket %s marked used by %s", ticket_id, admin.sub)
        return {"success": True,
                "message": "Ticket validated and marked as used",
                "ticket": snap}

    @app.get("/admin/events")
    async def admin_events(admin: Claims = Depends(require_admin),
                           db: GatedAsyncSession = Depends(get_db)):
        return await events.admin_list(db)

    @app.post("/admin/events", status_code=201)
    async def admin_create_event(body: EventCreateBody,
                                 admin: Claims = Depends(require_admin),
                                 db: GatedAsyncSession = Depends(get_db)):
        event_id = await events.create(db, body.model_dump(), admin.sub)
        return {"success": True, "id": event_id}

    @app.put("/admin/events/{event_id}")
    async def admin_update_event(event_id: str, body: EventUpdateBody,
                                 admin: Claims = Depends(require_admin),
                                 db: GatedAsyncSession = Depends(get_db)):
        await events.update(db, event_id, body.model_dump(exclude_none=True))
        return {"success": True}

    @app.delete("/admin/events/{event_id}")
    async def admin_archive_event(event_id: str,
                                  admin: Claims = Depends(require_admin),
                                  db: GatedAsyncSession = Depends(get_db)):
        await events.archive(db, event_id)
        return {"success": True}

    @app.get("/admin/stats")
    async def admin_stats(admin: Claims = Depends(require_admin),
                          db: GatedAsyncSession = Depends(get_db)):
        return await events.stats(db)

    # ---- payments ----
    @app.post("/donate")
    async def donate(body: DonationBody, request: Request):
        if body.amount < MIN_DONATION:
            raise ValidationError("Minimum donation is $1.00")
        if not is_valid_email(body.donor_email):
            raise ValidationError("Invalid email")
        return await request.app.state.pipeline.request_donation(
            body.amount, body.donor_email.strip().lower()
        )

    @app.post("/webhooks/payment")
    async def payment_webhook(request: Request):
        payload = await request.body()
        try:
            return await request.app.state.pipeline.handle_webhook(
                payload, request.headers
            )
        except InvalidSignature as e:
            log.warning("webhook rejected: %s", e.message)
            raise

    # ---- MockPay ----
    def _mockpay(request: Request) -> MockPay:
        gateway = request.app.state.gateway
        if not isinstance(gateway, MockPay):
            raise NotFound()
        return gateway

    @app.get("/mockpay/{session_id}")
    async def mockpay_session(session_id: str, request: Request):
        ps = await _mockpay(request).get_session(session_id)
        if not ps:
            raise NotFound("payment session not found")
        return ps

    @app.post("/mockpay/{session_id}/emit")
    async def mockpay_emit(session_id: str, body: MockEmitBody,
                           request: Request):
        mock = _mockpay(request)
        payload, headers = await mock.build_event(session_id, body.outcome)
        # delivered in-process, through the same verification as a real
        # callback
        result = await request.app.state.pipeline.handle_webhook(
            payload, headers
        )
        return {"delivered": True, "result": result}


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    app = FastAPI(
        title="bashitix",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    settings = settings or Settings.from_env()
    if settings.payment_backend != "mock" and (
        not settings.jwt_secret or settings.jwt_secret == DEV_JWT_SECRET
    ):
        raise RuntimeError("JWT_SECRET must be set outside mock payments")
    app.state.settings = settings
    _install_error_handlers(app)
    _install_routes(app)
    return app
