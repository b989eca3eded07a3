"""Batch jobs over stored webhook events and API tokens."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from mindbody.config import Settings
from mindbody.localdb.tokens import ApiTokenStore
from mindbody.utils.logger import get_logger

from .handler import WebhookHandler
from .store import CLEANUP_STATUSES, WebhookEventStore

logger = get_logger(__name__)


@dataclass
class ProcessPendingResult:
    found: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    timed_out: bool = False
    dry_run: bool = False
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "found": self.found,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
            "dry_run": self.dry_run,
            "events": self.events,
        }


async def process_pending(
    handler: WebhookHandler,
    limit: int = 100,
    timeout: float = 300,
    retry_failed: bool = False,
    max_retries: int = 3,
    dry_run: bool = False,
    clock: Callable[[], float] = time.monotonic,
) -> ProcessPendingResult:
    """Process stored events until the limit or the deadline is reached.

    The deadline is checked before each event; events not reached stay
    untouched for the next run.
    """
    started = clock()
    store = handler.store
    if retry_failed:
        events = await store.retryable(max_retries, limit=limit)
    else:
        events = await store.pending(limit=limit)

    result = ProcessPendingResult(found=len(events), dry_run=dry_run)
    if dry_run:
        result.events = [event.summary(max_retries) for event in events]
        return result

    for index, event in enumerate(events):
        if clock() - started >= timeout:
            result.timed_out = True
            result.skipped = len(events) - index
            logger.warning(f"Timeout reached after {timeout}s, {result.skipped} events left for the next run")
            break

        if await handler.process_event(event.id, schedule_retry=False):
            result.successful += 1
        else:
            result.failed += 1
        result.processed += 1

    logger.info(
        f"Processed {result.processed} webhook events: successful={result.successful} "
        f"failed={result.failed} skipped={result.skipped}"
    )
    return result


async def cleanup_events(
    store: WebhookEventStore,
    days: int,
    status: str = "processed",
    batch_size: int = 1000,
    dry_run: bool = False,
) -> Dict[str, Any]:
    if status not in CLEANUP_STATUSES:
        raise ValueError(f"status must be one of: {', '.join(CLEANUP_STATUSES)}")
    count = await store.cleanup(days, status=status, batch_size=batch_size, dry_run=dry_run)
    return {"status": status, "days": days, "dry_run": dry_run, "deleted": count}


async def apply_retention(
    store: WebhookEventStore,
    settings: Settings,
    batch_size: int = 1000,
    dry_run: bool = False,
) -> List[Dict[str, Any]]:
    """Run both configured retention windows: processed and failed events."""
    return [
        await cleanup_events(
            store, settings.webhook_events_retention_days, "processed", batch_size=batch_size, dry_run=dry_run
        ),
        await cleanup_events(
            store, settings.failed_webhook_events_retention_days, "failed", batch_size=batch_size, dry_run=dry_run
        ),
    ]


async def cleanup_tokens(token_store: ApiTokenStore, retention_days: int = 7) -> int:
    return await token_store.cleanup(retention_days)
