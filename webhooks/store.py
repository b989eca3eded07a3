"""
Durable, deduplicated storage of inbound webhook events.

The unique constraint on the provider event id is the arbiter for concurrent
deliveries: the loser of an insert race re-reads and returns the winner's row.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mindbody.localdb.models import WebhookEvent
from mindbody.utils.logger import get_logger
from mindbody.utils.timeutils import utcnow

logger = get_logger(__name__)

CLEANUP_STATUSES = ("processed", "failed", "pending", "all")


class WebhookEventStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], max_retries: int = 3):
        self._session_factory = session_factory
        self.max_retries = max_retries

    async def insert_if_absent(
        self,
        *,
        event_type: str,
        event_data: Any,
        event_id: Optional[str] = None,
        site_id: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
        event_timestamp: Optional[datetime] = None,
        signature: Optional[str] = None,
    ) -> Tuple[WebhookEvent, bool]:
        """Store an event unless its external id is already known.

        Returns the stored row and whether this call created it.
        """
        if event_id is not None:
            existing = await self.get_by_external_id(event_id)
            if existing is not None:
                return existing, False

        event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            site_id=site_id,
            event_data=event_data,
            headers=headers,
            event_timestamp=event_timestamp,
            processed=False,
            retry_count=0,
            error=None,
            signature=signature,
        )
        async with self._session_factory() as session:
            session.add(event)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if event_id is None:
                    raise
                existing = await self.get_by_external_id(event_id)
                if existing is None:
                    raise
                logger.info(f"Concurrent delivery of event_id={event_id} resolved to id={existing.id}")
                return existing, False
        return event, True

    async def get(self, id: int) -> Optional[WebhookEvent]:
        async with self._session_factory() as session:
            return await session.get(WebhookEvent, id)

    async def get_by_external_id(self, event_id: str) -> Optional[WebhookEvent]:
        async with self._session_factory() as session:
            result = await session.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
            return result.scalar_one_or_none()

    async def mark_processed(self, id: int) -> bool:
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == id)
                .values(processed=True, processed_at=now, error=None, updated_at=now)
            )
            await session.commit()
            return bool(result.rowcount)

    async def mark_failed(self, id: int, error: str) -> Optional[WebhookEvent]:
        """Record a processing failure and return the updated row."""
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == id)
                .values(
                    processed=False,
                    error=error,
                    retry_count=WebhookEvent.retry_count + 1,
                    updated_at=utcnow(),
                )
            )
            await session.commit()
        return await self.get(id)

    async def reset_for_retry(self, id: int) -> Optional[WebhookEvent]:
        """Clear the error so the event is picked up as pending again."""
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == id, WebhookEvent.processed.is_(False))
                .values(error=None, retry_count=WebhookEvent.retry_count + 1, updated_at=utcnow())
            )
            await session.commit()
        return await self.get(id)

    async def _list(self, *criteria: Any, limit: Optional[int] = None) -> List[WebhookEvent]:
        stmt = select(WebhookEvent).where(*criteria).order_by(WebhookEvent.created_at.asc(), WebhookEvent.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def unprocessed(self, limit: Optional[int] = None) -> List[WebhookEvent]:
        return await self._list(WebhookEvent.processed.is_(False), limit=limit)

    async def processed(self, limit: Optional[int] = None) -> List[WebhookEvent]:
        return await self._list(WebhookEvent.processed.is_(True), limit=limit)

    async def failed(self, limit: Optional[int] = None) -> List[WebhookEvent]:
        return await self._list(WebhookEvent.error.is_not(None), limit=limit)

    async def pending(self, limit: Optional[int] = None) -> List[WebhookEvent]:
        """Unprocessed events that have never failed."""
        return await self._list(WebhookEvent.processed.is_(False), WebhookEvent.error.is_(None), limit=limit)

    async def retryable(self, max_retries: Optional[int] = None, limit: Optional[int] = None) -> List[WebhookEvent]:
        max_retries = self.max_retries if max_retries is None else max_retries
        return await self._list(
            WebhookEvent.processed.is_(False),
            WebhookEvent.retry_count < max_retries,
            limit=limit,
        )

    async def terminal(self, max_retries: Optional[int] = None, limit: Optional[int] = None) -> List[WebhookEvent]:
        """Events whose retry budget is spent."""
        max_retries = self.max_retries if max_retries is None else max_retries
        return await self._list(
            WebhookEvent.processed.is_(False),
            WebhookEvent.retry_count >= max_retries,
            limit=limit,
        )

    async def stats(self, max_retries: Optional[int] = None) -> Dict[str, Any]:
        max_retries = self.max_retries if max_retries is None else max_retries
        count = func.count(WebhookEvent.id)
        async with self._session_factory() as session:
            total = (await session.execute(select(count))).scalar_one()
            processed = (await session.execute(select(count).where(WebhookEvent.processed.is_(True)))).scalar_one()
            failed = (await session.execute(select(count).where(WebhookEvent.error.is_not(None)))).scalar_one()
            pending = (await session.execute(select(count).where(WebhookEvent.processed.is_(False)))).scalar_one()
            terminal = (
                await session.execute(
                    select(count).where(
                        WebhookEvent.processed.is_(False),
                        WebhookEvent.retry_count >= max_retries,
                    )
                )
            ).scalar_one()
        return {
            "total": total,
            "processed": processed,
            "failed": failed,
            "pending": pending,
            "terminal": terminal,
            "success_rate": round(processed / total * 100, 2) if total > 0 else 0,
        }

    async def failed_by_type(self) -> Dict[str, int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEvent.event_type, func.count(WebhookEvent.id))
                .where(WebhookEvent.error.is_not(None))
                .group_by(WebhookEvent.event_type)
                .order_by(func.count(WebhookEvent.id).desc())
            )
            return {event_type: count for event_type, count in result.all()}

    def _cleanup_criteria(self, status: str, cutoff: datetime) -> List[Any]:
        if status == "processed":
            return [WebhookEvent.processed.is_(True), WebhookEvent.processed_at < cutoff]
        if status == "failed":
            return [WebhookEvent.error.is_not(None), WebhookEvent.created_at < cutoff]
        if status == "pending":
            return [
                WebhookEvent.processed.is_(False),
                WebhookEvent.error.is_(None),
                WebhookEvent.created_at < cutoff,
            ]
        if status == "all":
            return [WebhookEvent.created_at < cutoff]
        raise ValueError(f"Unknown cleanup status: {status}")

    async def cleanup(
        self,
        days: int,
        status: str = "processed",
        batch_size: int = 1000,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """Delete events older than the cutoff in batches; returns the affected count.

        processed rows age by processed_at, every other status by created_at.
        """
        if days <= 0:
            raise ValueError("days must be greater than 0")
        if batch_size <= 0:
            raise ValueError("batch_size must be greater than 0")

        cutoff = (now or utcnow()) - timedelta(days=days)
        criteria = self._cleanup_criteria(status, cutoff)

        async with self._session_factory() as session:
            if dry_run:
                result = await session.execute(select(func.count(WebhookEvent.id)).where(*criteria))
                return result.scalar_one()

            deleted = 0
            while True:
                ids = (
                    await session.execute(select(WebhookEvent.id).where(*criteria).limit(batch_size))
                ).scalars().all()
                if not ids:
                    break
                result = await session.execute(delete(WebhookEvent).where(WebhookEvent.id.in_(ids)))
                await session.commit()
                deleted += result.rowcount or 0

        logger.info(f"Deleted {deleted} {status} webhook events older than {days} days")
        return deleted

    async def cleanup_processed(self, days: int = 30, now: Optional[datetime] = None) -> int:
        return await self.cleanup(days, status="processed", now=now)

    async def cleanup_failed(self, days: int = 90, now: Optional[datetime] = None) -> int:
        return await self.cleanup(days, status="failed", now=now)
