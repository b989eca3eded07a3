from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from mindbody.config import Settings
from mindbody.core.exceptions import MindbodyError
from mindbody.localdb import session as db
from webhooks import maintenance
from webhooks.handler import WebhookHandler
from webhooks.store import WebhookEventStore
from webhooks.subscriptions import SubscriptionManager


@asynccontextmanager
async def open_store(settings: Settings) -> AsyncIterator[WebhookEventStore]:
    """Event store bound to the integration DB for the duration of a command."""
    async with db.open_database(settings.db_url, settings.db_auto_create) as session_factory:
        yield WebhookEventStore(session_factory, settings.webhook_max_retry_attempts)


async def subscribe(
    settings: Settings,
    events: Optional[List[str]] = None,
    url: Optional[str] = None,
) -> Dict[str, Any]:
    """Subscribe to the given event types, or to every configured one."""
    manager = SubscriptionManager(settings)
    results = await manager.subscribe_to_all(url, events=events)
    failed = sum(1 for r in results.values() if not r.get("success"))
    return {"results": results, "succeeded": len(results) - failed, "failed": failed}


async def unsubscribe(
    settings: Settings,
    subscription_ids: Optional[List[str]] = None,
    events: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Delete subscriptions by id, by event type, or all of them."""
    manager = SubscriptionManager(settings)
    if subscription_ids:
        results: Dict[str, Dict[str, Any]] = {}
        for subscription_id in subscription_ids:
            try:
                await manager.unsubscribe(subscription_id)
                results[subscription_id] = {"success": True}
            except MindbodyError as e:
                results[subscription_id] = {"success": False, "error": str(e)}
    else:
        results = await manager.unsubscribe_from_all(events)
    failed = sum(1 for r in results.values() if not r.get("success"))
    return {"results": results, "succeeded": len(results) - failed, "failed": failed}


async def list_all(settings: Settings, status: bool = False) -> Dict[str, Any]:
    manager = SubscriptionManager(settings)
    if status:
        return {"status": await manager.subscription_status()}
    subscriptions = await manager.list(use_cache=False)
    return {"subscriptions": [s.to_dict() for s in subscriptions], "count": len(subscriptions)}


async def sync(settings: Settings, url: Optional[str] = None, dry_run: bool = False) -> Dict[str, Any]:
    manager = SubscriptionManager(settings)
    result = await manager.reconcile(webhook_url=url, dry_run=dry_run)
    data = result.to_dict()
    data["failed"] = len(result.errors)
    return data


async def process_pending(
    settings: Settings,
    limit: int = 100,
    timeout: float = 300,
    retry_failed: bool = False,
    max_retries: Optional[int] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    async with open_store(settings) as store:
        handler = WebhookHandler(settings, store)
        result = await maintenance.process_pending(
            handler,
            limit=limit,
            timeout=timeout,
            retry_failed=retry_failed,
            max_retries=max_retries if max_retries is not None else settings.webhook_max_retry_attempts,
            dry_run=dry_run,
        )
    return result.to_dict()


async def cleanup(
    settings: Settings,
    days: Optional[int] = None,
    status: Optional[str] = None,
    batch_size: int = 1000,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Apply retention; without --days/--status both configured windows run."""
    async with open_store(settings) as store:
        if days is None and status is None:
            results = await maintenance.apply_retention(store, settings, batch_size=batch_size, dry_run=dry_run)
        else:
            results = [
                await maintenance.cleanup_events(
                    store,
                    days if days is not None else settings.webhook_events_retention_days,
                    status or "processed",
                    batch_size=batch_size,
                    dry_run=dry_run,
                )
            ]
    return {"results": results, "total": sum(r["deleted"] for r in results), "dry_run": dry_run}


async def stats(settings: Settings) -> Dict[str, Any]:
    async with open_store(settings) as store:
        return await WebhookHandler(settings, store).get_stats()


async def test_endpoint(settings: Settings, url: Optional[str] = None) -> Dict[str, Any]:
    manager = SubscriptionManager(settings)
    return await manager.test_webhook_endpoint(url)
