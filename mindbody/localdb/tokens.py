"""Persistence for issued API tokens."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..utils.logger import get_logger
from ..utils.timeutils import to_datetime, utcnow
from .models import ApiToken

logger = get_logger(__name__)


class ApiTokenStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_from_response(self, username: str, token_data: Dict[str, Any]) -> ApiToken:
        """Persist a freshly issued token; expires_at is fixed at creation."""
        issued_at = to_datetime(token_data.get("issued_at")) or utcnow()
        expires_in = int(token_data.get("expires_in") or 3600)
        token = ApiToken(
            username=username,
            access_token=token_data["access_token"],
            token_type=token_data.get("token_type") or "Bearer",
            expires_in=expires_in,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=expires_in),
            revoked=False,
        )
        async with self._session_factory() as session:
            session.add(token)
            await session.commit()
        return token

    async def find_valid_for_username(self, username: str, now: Optional[datetime] = None) -> Optional[ApiToken]:
        """Most recent non-revoked, unexpired token for the username."""
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApiToken)
                .where(
                    ApiToken.username == username,
                    ApiToken.revoked.is_(False),
                    ApiToken.expires_at > now,
                )
                .order_by(ApiToken.issued_at.desc(), ApiToken.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def revoke(self, access_token: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(ApiToken)
                .where(ApiToken.access_token == access_token, ApiToken.revoked.is_(False))
                .values(revoked=True, updated_at=utcnow())
            )
            await session.commit()
            return result.rowcount or 0

    async def revoke_all_for_username(self, username: str, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(ApiToken)
                .where(
                    ApiToken.username == username,
                    ApiToken.revoked.is_(False),
                    ApiToken.expires_at > now,
                )
                .values(revoked=True, updated_at=now)
            )
            await session.commit()
            return result.rowcount or 0

    async def cleanup(self, retention_days: int = 7, now: Optional[datetime] = None) -> int:
        """Delete revoked tokens and tokens expired before the retention cutoff."""
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ApiToken).where(or_(ApiToken.revoked.is_(True), ApiToken.expires_at < cutoff))
            )
            await session.commit()
            deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} API tokens (retention {retention_days} days)")
        return deleted

    async def stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        valid = (ApiToken.revoked.is_(False)) & (ApiToken.expires_at > now)
        async with self._session_factory() as session:
            total = (await session.execute(select(func.count(ApiToken.id)))).scalar_one()
            valid_count = (await session.execute(select(func.count(ApiToken.id)).where(valid))).scalar_one()
            expired = (
                await session.execute(select(func.count(ApiToken.id)).where(ApiToken.expires_at <= now))
            ).scalar_one()
            revoked = (
                await session.execute(select(func.count(ApiToken.id)).where(ApiToken.revoked.is_(True)))
            ).scalar_one()
            expiring_soon = (
                await session.execute(
                    select(func.count(ApiToken.id)).where(valid, ApiToken.expires_at < now + timedelta(hours=1))
                )
            ).scalar_one()
        return {
            "total": total,
            "valid": valid_count,
            "expired": expired,
            "revoked": revoked,
            "expiring_soon": expiring_soon,
        }
