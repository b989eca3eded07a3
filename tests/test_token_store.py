"""Tests for persisted API tokens."""

from datetime import timedelta

import pytest

from mindbody.localdb.tokens import ApiTokenStore
from mindbody.utils.timeutils import utcnow


@pytest.fixture
def token_store(session_factory):
    return ApiTokenStore(session_factory)


async def _issue(token_store, username, access_token, issued_at=None, expires_in=3600):
    return await token_store.create_from_response(
        username,
        {"access_token": access_token, "expires_in": expires_in, "issued_at": issued_at or utcnow()},
    )


class TestApiTokenStore:
    @pytest.mark.asyncio
    async def test_expiry_is_fixed_at_creation(self, token_store):
        issued_at = utcnow()
        token = await _issue(token_store, "owner", "t-1", issued_at=issued_at, expires_in=600)

        assert token.token_type == "Bearer"
        assert token.expires_at == issued_at + timedelta(seconds=600)

    @pytest.mark.asyncio
    async def test_most_recent_valid_token_wins(self, token_store):
        now = utcnow()
        await _issue(token_store, "owner", "older", issued_at=now - timedelta(minutes=10))
        await _issue(token_store, "owner", "newer", issued_at=now)

        assert (await token_store.find_valid_for_username("owner")).access_token == "newer"

    @pytest.mark.asyncio
    async def test_revoke_all_for_username(self, token_store):
        now = utcnow()
        await _issue(token_store, "owner", "owner-1")
        await _issue(token_store, "owner", "owner-2")
        await _issue(token_store, "owner", "owner-expired", issued_at=now - timedelta(hours=2))
        await _issue(token_store, "frontdesk", "frontdesk-1")

        assert await token_store.revoke_all_for_username("owner") == 2

        assert await token_store.find_valid_for_username("owner") is None
        assert (await token_store.find_valid_for_username("frontdesk")).access_token == "frontdesk-1"
        stats = await token_store.stats()
        assert stats["revoked"] == 2
        assert stats["expired"] == 1
        assert stats["valid"] == 1

    @pytest.mark.asyncio
    async def test_revoke_single_token(self, token_store):
        await _issue(token_store, "owner", "t-1")

        assert await token_store.revoke("t-1") == 1
        assert await token_store.revoke("t-1") == 0

    @pytest.mark.asyncio
    async def test_cleanup_keeps_recently_expired(self, token_store):
        now = utcnow()
        await _issue(token_store, "owner", "recent", issued_at=now - timedelta(days=2))
        await _issue(token_store, "owner", "ancient", issued_at=now - timedelta(days=30))

        assert await token_store.cleanup(retention_days=7) == 1
        assert (await token_store.stats())["total"] == 1

    @pytest.mark.asyncio
    async def test_expiring_soon(self, token_store):
        await _issue(token_store, "owner", "short", expires_in=600)
        await _issue(token_store, "owner", "long", expires_in=7200)

        assert (await token_store.stats())["expiring_soon"] == 1
