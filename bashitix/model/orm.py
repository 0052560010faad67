from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)


Base = declarative_base()

ROLES = ("user", "admin", "volunteer")
EVENT_STATUSES = ("draft", "active", "cancelled", "archived")


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    # bcrypt hash, salt embedded
    password_hash = Column(String, nullable=False)
    full_name = Column(String, nullable=False)
    role = Column(String, nullable=False, default="user")

    phone = Column(String, nullable=True)
    billing_address1 = Column(String, nullable=True)
    billing_address2 = Column(String, nullable=True)
    billing_city = Column(String, nullable=True)
    billing_state = Column(String, nullable=True)
    billing_zip = Column(String, nullable=True)
    billing_country = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)


class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    starts_at = Column(Float, nullable=False)  # epoch seconds
    location = Column(String, nullable=False)
    price = Column(Integer, nullable=False, default=0)  # minor units
    image_url = Column(String, nullable=False, default="")
    category = Column(String, nullable=False, default="general")
    capacity = Column(Integer, nullable=True)  # NULL = unlimited

    # draft | active | cancelled | archived
    status = Column(String, nullable=False, default="active")

    # bumped by every ledger write; the UPDATE is the per-event lock
    ledger_seq = Column(Integer, nullable=False, default=0)

    created_by = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)


class Hold(Base):
    __tablename__ = "holds"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    user_id = Column(String, nullable=False)
    qty = Column(Integer, nullable=False)
    # pending | posted | voided | refunded
    status = Column(String, nullable=False)
    expires_at = Column(Float, nullable=True)  # NULL = no timeout
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("holds_event_status_idx", "event_id", "status"),
        Index("holds_event_user_idx", "event_id", "user_id"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    # fulfillment gate: one order per completed checkout session
    checkout_session_id = Column(String, nullable=False, unique=True)
    payment_intent_id = Column(String, nullable=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    hold_id = Column(String, nullable=True)
    qty = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="usd")

    # PAID | PAID_UNFULFILLED | REFUNDED
    status = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    refunded_at = Column(Float, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True)

    # valid | used | refunded
    status = Column(String, nullable=False, default="valid")
    verification_code = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    used_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("tickets_user_event_idx", "user_id", "event_id"),
        Index("tickets_event_status_idx", "event_id", "status"),
    )


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


class KvEntry(Base):
    __tablename__ = "kv_entries"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(Float, nullable=True)
