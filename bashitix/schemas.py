"""Request bodies, one explicit model per endpoint.

Unknown fields are rejected at the boundary; types are strict where a
silent coercion would change meaning (quantity "3" is not 3).
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, StrictInt


class _Body(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegisterBody(_Body):
    email: str
    password: str
    full_name: str


class LoginBody(_Body):
    email: str
    password: str


class PurchaseBody(_Body):
    event_id: str
    quantity: StrictInt = 1


class ProfileBody(_Body):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    billing_address1: Optional[str] = None
    billing_address2: Optional[str] = None
    billing_city: Optional[str] = None
    billing_state: Optional[str] = None
    billing_zip: Optional[str] = None
    billing_country: Optional[str] = None


class EventCreateBody(_Body):
    title: str
    starts_at: float  # epoch seconds
    location: str
    description: str = ""
    price: StrictInt = 0  # minor units
    image_url: str = ""
    category: str = "general"
    capacity: Optional[StrictInt] = None
    status: str = "active"


class EventUpdateBody(_Body):
    title: Optional[str] = None
    starts_at: Optional[float] = None
    location: Optional[str] = None
    description: Optional[str] = None
    price: Optional[StrictInt] = None
    image_url: Optional[str] = None
    category: Optional[str] = None
    capacity: Optional[StrictInt] = None
    status: Optional[str] = None


class DonationBody(_Body):
    amount: StrictInt
    donor_email: str
    donor_name: Optional[str] = None
    message: Optional[str] = None


class MockEmitBody(_Body):
    outcome: str
