"""Tests for the credential store: registration, login checks, profile."""

import asyncio

import pytest
from sqlalchemy import func, select

from bashitix.credentials import check_password, hash_password
from bashitix.errors import ConflictError, Unauthorized, ValidationError
from bashitix.model.orm import User
from tests.conftest import TEST_PASSWORD


async def _user_count(db) -> int:
    async with db.session() as s:
        return int((await s.execute(
            select(func.count()).select_from(User)
        )).scalar_one())


class TestPasswordHash:
    def test_hash_is_salted(self):
        a = hash_password(TEST_PASSWORD, 4)
        b = hash_password(TEST_PASSWORD, 4)
        assert a != b
        assert TEST_PASSWORD not in a

    def test_check_password(self):
        h = hash_password(TEST_PASSWORD, 4)
        assert check_password(TEST_PASSWORD, h)
        assert not check_password("Wrong1234", h)

    def test_check_password_with_garbage_hash(self):
        assert not check_password(TEST_PASSWORD, "not-a-bcrypt-hash")


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_then_verify(self, credentials):
        user_id = await credentials.register(
            "Ada@Example.com ", TEST_PASSWORD, "Ada Lovelace"
        )
        user = await credentials.verify("ada@example.com", TEST_PASSWORD)
        assert user.id == user_id
        assert user.email == "ada@example.com"
        assert user.role == "user"

    @pytest.mark.asyncio
    async def test_duplicate_email_conflicts(self, credentials, db):
        await credentials.register("dup@example.com", TEST_PASSWORD, "First")
        with pytest.raises(ConflictError):
            await credentials.register(
                "DUP@example.com", TEST_PASSWORD, "Second"
            )
        async with db.session() as s:
            n = (await s.execute(
                select(func.count()).select_from(User)
                .where(User.email == "dup@example.com")
            )).scalar_one()
        assert n == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_yields_one_user(self, credentials,
                                                       db):
        results = await asyncio.gather(
            credentials.register("race@example.com", TEST_PASSWORD, "One"),
            credentials.register("race@example.com", TEST_PASSWORD, "Two"),
            return_exceptions=True,
        )
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        ids = [r for r in results if isinstance(r, str)]
        assert len(ids) == 1
        assert len(conflicts) == 1
        assert await _user_count(db) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,password,name", [
        ("not-an-email", TEST_PASSWORD, "Valid Name"),
        ("ok@example.com", "short1A", "Valid Name"),
        ("ok@example.com", "alllowercase1", "Valid Name"),
        ("ok@example.com", TEST_PASSWORD, "A"),
    ])
    async def test_invalid_input(self, credentials, db, email, password,
                                 name):
        with pytest.raises(ValidationError):
            await credentials.register(email, password, name)
        assert await _user_count(db) == 0


class TestVerify:
    @pytest.mark.asyncio
    async def test_wrong_password(self, credentials):
        await credentials.register("bob@example.com", TEST_PASSWORD, "Bob B")
        with pytest.raises(Unauthorized):
            await credentials.verify("bob@example.com", "Wrong12345")

    @pytest.mark.asyncio
    async def test_unknown_email(self, credentials):
        with pytest.raises(Unauthorized):
            await credentials.verify("ghost@example.com", TEST_PASSWORD)


class TestProfile:
    @pytest.mark.asyncio
    async def test_update_profile(self, credentials):
        user_id = await credentials.register(
            "carol@example.com", TEST_PASSWORD, "Carol C"
        )
        user = await credentials.update_profile(
            user_id, {"phone": "555-0100", "billing_city": "Tulsa"}
        )
        assert user.phone == "555-0100"
        assert user.billing_city == "Tulsa"

    @pytest.mark.asyncio
    async def test_update_without_fields(self, credentials):
        user_id = await credentials.register(
            "dan@example.com", TEST_PASSWORD, "Dan D"
        )
        with pytest.raises(ValidationError):
            await credentials.update_profile(user_id, {})

    @pytest.mark.asyncio
    async def test_email_taken(self, credentials):
        await credentials.register("erin@example.com", TEST_PASSWORD, "Erin")
        user_id = await credentials.register(
            "frank@example.com", TEST_PASSWORD, "Frank"
        )
        with pytest.raises(ConflictError):
            await credentials.update_profile(
                user_id, {"email": "Erin@example.com"}
            )
