"""Credential store: user identity and salted password hashes.

Passwords are hashed with bcrypt (per-user random salt embedded in the
hash, fixed cost factor). bcrypt work is pushed to a thread so the event
loop keeps serving other requests.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, Optional

import bcrypt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .errors import ConflictError, NotFound, Unauthorized, ValidationError
from .helpers import (
    is_strong_password, is_valid_email, is_valid_full_name, new_id, now_ts,
)
from .infra.sql import Database
from .infra.timings import timeit
from .model.orm import ROLES, User

log = logging.getLogger(__name__)

PROFILE_FIELDS = (
    "full_name", "email", "phone",
    "billing_address1", "billing_address2", "billing_city",
    "billing_state", "billing_zip", "billing_country",
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_password(password: str, rounds: int) -> str:
    return bcrypt.hashpw(
        password.encode(), bcrypt.gensalt(rounds=rounds)
    ).decode()


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        # not a bcrypt hash
        return False


def user_public(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role,
    }


def user_profile(user: User) -> Dict[str, Any]:
    out = user_public(user)
    for f in PROFILE_FIELDS:
        out.setdefault(f, getattr(user, f))
    out["created_at"] = user.created_at
    return out


class CredentialStore:
    def __init__(self, db: Database, bcrypt_rounds: int = 12) -> None:
        self.db = db
        self.rounds = bcrypt_rounds
        # compared against when the email is unknown, so a miss costs the
        # same as a wrong password
        self._dummy_hash = hash_password(new_id(), bcrypt_rounds)

    async def register(
        self, email: str, password: str, full_name: str, role: str = "user"
    ) -> str:
        if not is_valid_email(email):
            raise ValidationError("Invalid email")
        if not is_strong_password(password):
            raise ValidationError(
                "Password must be 8+ chars with uppercase, lowercase, number"
            )
        if not is_valid_full_name(full_name):
            raise ValidationError("Name must be 2-100 characters")
        if role not in ROLES:
            raise ValidationError("Invalid role")

        email = normalize_email(email)
        async with timeit("credentials.hash"):
            password_hash = await asyncio.to_thread(
                hash_password, password, self.rounds
            )

        user_id = new_id()
        async with self.db.gated():
            async with self.db.session() as s:
                try:
                    async with s.begin():
                        existing = (await s.execute(
                            select(User.id).where(User.email == email)
                        )).first()
                        if existing is not None:
                            raise ConflictError("Email already registered")
                        s.add(User(
                            id=user_id,
                            email=email,
                            password_hash=password_hash,
                            full_name=full_name.strip(),
                            role=role,
                            created_at=now_ts(),
                        ))
                except IntegrityError:
                    # lost a race against a concurrent registration
                    raise ConflictError("Email already registered")
        log.info("registered user %s", user_id)
        return user_id

    async def verify(self, email: str, password: str) -> User:
        """Returns the user on success; raises Unauthorized otherwise."""
        if not email or not password:
            raise Unauthorized("Invalid credentials")
        user = await self.get_by_email(email)
        stored = user.password_hash if user is not None else self._dummy_hash
        async with timeit("credentials.verify"):
            ok = await asyncio.to_thread(check_password, password, stored)
        if user is None or not ok:
            raise Unauthorized("Invalid credentials")
        return user

    async def get_by_email(self, email: str) -> Optional[User]:
        async with self.db.gated():
            async with self.db.session() as s:
                return (await s.execute(
                    select(User).where(User.email == normalize_email(email))
                )).scalars().first()

    async def get(self, user_id: str) -> User:
        async with self.db.gated():
            async with self.db.session() as s:
                user = await s.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    async def update_profile(self, user_id: str, fields: Dict[str, Any]) -> User:
        updates = {
            k: v for k, v in fields.items()
            if k in PROFILE_FIELDS and v is not None
        }
        if not updates:
            raise ValidationError("No fields provided")
        if "email" in updates:
            if not is_valid_email(updates["email"]):
                raise ValidationError("Invalid email")
            updates["email"] = normalize_email(updates["email"])
        if "full_name" in updates:
            if not is_valid_full_name(updates["full_name"]):
                raise ValidationError("Invalid full name")
            updates["full_name"] = updates["full_name"].strip()

        async with self.db.gated():
            async with self.db.session() as s:
                try:
                    async with s.begin():
                        user = await s.get(User, user_id)
                        if user is None:
                            raise NotFound("User not found")
                        if "email" in updates and updates["email"] != user.email:
                            taken = (await s.execute(
                                select(User.id).where(
                                    User.email == updates["email"]
                                )
                            )).first()
                            if taken is not None:
                                raise ConflictError("Email already in use")
                        for k, v in updates.items():
                            setattr(user, k, v)
                        user.updated_at = now_ts()
                except IntegrityError:
                    raise ConflictError("Email already in use")
        return user
