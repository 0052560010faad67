"""Signed, self-contained session tokens (HS256 JWT).

verify() order matters: the signature is checked first, then the expiry,
and only then are the claims handed to callers. Every failure surfaces as
Unauthorized.
"""
from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Callable, Optional

import jwt

from .errors import Unauthorized

ALGORITHM = "HS256"


@dataclass(frozen=True)
class Claims:
    sub: str
    role: str
    email: str
    iat: int
    exp: int

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class TokenService:
    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret
        self.ttl = ttl_seconds
        self.clock = clock

    def issue(self, user_id: str, role: str, email: str = "") -> str:
        now = int(self.clock())
        payload = {
            "sub": user_id,
            "role": role,
            "email": email,
            "iat": now,
            "exp": now + self.ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def verify(self, token: Optional[str]) -> Claims:
        if not token:
            raise Unauthorized()
        try:
            # signature (and structure) only; expiry is judged against our
            # own clock below
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "exp", "iat"],
                },
            )
        except jwt.InvalidTokenError:
            raise Unauthorized()

        exp = payload.get("exp")
        if not isinstance(exp, int) or exp < int(self.clock()):
            raise Unauthorized()
        sub = payload.get("sub")
        role = payload.get("role")
        if not isinstance(sub, str) or not isinstance(role, str):
            raise Unauthorized()
        return Claims(
            sub=sub,
            role=role,
            email=str(payload.get("email", "")),
            iat=int(payload["iat"]),
            exp=exp,
        )

    def verify_header(self, authorization: Optional[str]) -> Claims:
        """Accepts the raw ``Authorization: Bearer <token>`` header value."""
        if not authorization:
            raise Unauthorized()
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer":
            raise Unauthorized()
        return self.verify(token.strip())
