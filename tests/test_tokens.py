"""Tests for session token issue and verification."""

import jwt
import pytest

from bashitix.errors import Unauthorized
from bashitix.tokens import TokenService
from tests.conftest import TEST_JWT_SECRET

T0 = 1_700_000_000


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def service(clock) -> TokenService:
    return TokenService(TEST_JWT_SECRET, ttl_seconds=86400, clock=clock)


class TestExpiry:
    def test_accepted_one_second_later(self, service, clock):
        token = service.issue("u1", "user", "u1@example.com")
        clock.now = T0 + 1
        claims = service.verify(token)
        assert claims.sub == "u1"
        assert claims.role == "user"
        assert claims.email == "u1@example.com"
        assert claims.exp == T0 + 86400

    def test_rejected_after_a_day(self, service, clock):
        token = service.issue("u1", "user")
        clock.now = T0 + 86401
        with pytest.raises(Unauthorized):
            service.verify(token)


class TestTampering:
    def test_wrong_secret(self, service):
        forged = jwt.encode(
            {"sub": "u1", "role": "admin", "iat": T0, "exp": T0 + 60},
            "some-other-secret-of-sufficient-length-000", algorithm="HS256",
        )
        with pytest.raises(Unauthorized):
            service.verify(forged)

    def test_modified_payload(self, service):
        token = service.issue("u1", "user")
        header, payload, sig = token.split(".")
        # flip one character of the payload segment
        flipped = payload[:-2] + ("A" if payload[-2] != "A" else "B") \
            + payload[-1]
        with pytest.raises(Unauthorized):
            service.verify(".".join([header, flipped, sig]))

    @pytest.mark.parametrize("token", ["", "abc", "a.b.c", None])
    def test_malformed(self, service, token):
        with pytest.raises(Unauthorized):
            service.verify(token)

    def test_missing_claims(self, service):
        token = jwt.encode({"sub": "u1"}, TEST_JWT_SECRET, algorithm="HS256")
        with pytest.raises(Unauthorized):
            service.verify(token)


class TestHeader:
    def test_bearer(self, service):
        token = service.issue("u2", "admin")
        claims = service.verify_header(f"Bearer {token}")
        assert claims.is_admin

    @pytest.mark.parametrize("value", [None, "", "Basic abc", "Bearer"])
    def test_bad_header(self, service, value):
        with pytest.raises(Unauthorized):
            service.verify_header(value)
