"""
Webhook subscription management against the Mindbody Webhooks API.

plan_reconciliation is a pure diff of the desired event types against the
remote subscription list; SubscriptionManager.reconcile applies that plan.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx

from mindbody.api import subscriptions as api_subscriptions
from mindbody.api.subscriptions import Subscription
from mindbody.config import Settings
from mindbody.core.cache import CacheStore, InMemoryCache
from mindbody.core.client import MindbodyClient
from mindbody.core.exceptions import MindbodyError, WebhookError
from mindbody.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class SubscriptionPlan:
    to_add: List[str] = field(default_factory=list)
    to_remove: List[Subscription] = field(default_factory=list)
    to_update: List[Subscription] = field(default_factory=list)
    # Remote subscriptions outside the desired set that are left alone
    unmanaged: List[Subscription] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_remove or self.to_update)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "to_add": list(self.to_add),
            "to_remove": [s.to_dict() for s in self.to_remove],
            "to_update": [s.to_dict() for s in self.to_update],
            "unmanaged": [s.to_dict() for s in self.unmanaged],
        }


@dataclass
class SyncResult:
    plan: SubscriptionPlan
    webhook_url: str
    dry_run: bool = False
    added: List[Dict[str, Any]] = field(default_factory=list)
    removed: List[Dict[str, Any]] = field(default_factory=list)
    updated: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "webhook_url": self.webhook_url,
            "dry_run": self.dry_run,
            "plan": self.plan.to_dict(),
            "added": self.added,
            "removed": self.removed,
            "updated": self.updated,
            "errors": self.errors,
        }


def plan_reconciliation(
    desired: Iterable[str],
    webhook_url: str,
    subscriptions: Iterable[Subscription],
    auto_cleanup: bool = False,
) -> SubscriptionPlan:
    """Diff desired event types against remote subscriptions.

    Duplicate remote subscriptions for one event type collapse to the last
    one listed. A URL mismatch is an update; extra event types are removed
    only when auto_cleanup is on.
    """
    desired_types = list(dict.fromkeys(desired))
    desired_set = set(desired_types)
    remote = list(subscriptions)

    by_type: Dict[str, Subscription] = {}
    for subscription in remote:
        by_type[subscription.event_type] = subscription

    plan = SubscriptionPlan()
    for event_type in desired_types:
        current = by_type.get(event_type)
        if current is None:
            plan.to_add.append(event_type)
        elif current.webhook_url != webhook_url:
            plan.to_update.append(current)

    extras = [s for s in remote if s.event_type not in desired_set]
    if auto_cleanup:
        plan.to_remove.extend(extras)
    else:
        plan.unmanaged.extend(extras)
    return plan


class SubscriptionManager:
    """Creates, lists and removes webhook subscriptions."""

    def __init__(
        self,
        settings: Settings,
        cache: Optional[CacheStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not settings.webhooks_api_key:
            raise WebhookError.invalid_configuration("Webhook API key is required")
        self.settings = settings
        self.cache: CacheStore = cache if cache is not None else InMemoryCache()
        self.webhook_url = settings.webhook_url
        self._transport = transport

    @property
    def cache_key(self) -> str:
        return f"{self.settings.cache_prefix}:webhook_subscriptions"

    def _client(self) -> MindbodyClient:
        return MindbodyClient.for_webhooks_api(self.settings, transport=self._transport)

    def _resolve_url(self, webhook_url: Optional[str]) -> str:
        url = webhook_url or self.webhook_url
        if not url:
            raise WebhookError.invalid_configuration("Webhook URL is required")
        return url

    def clear_cache(self) -> None:
        self.cache.delete(self.cache_key)

    async def subscribe(self, event_type: str, webhook_url: Optional[str] = None) -> Dict[str, Any]:
        url = self._resolve_url(webhook_url)
        logger.info(f"Creating webhook subscription: event_type={event_type} url={url}")
        async with self._client() as client:
            result = await api_subscriptions.create_subscription(client, event_type, url)
        self.clear_cache()
        subscription_id = result.get("SubscriptionId") if isinstance(result, dict) else None
        logger.info(f"Webhook subscription created: event_type={event_type} id={subscription_id or 'unknown'}")
        return result if isinstance(result, dict) else {}

    async def list(self, use_cache: bool = True) -> List[Subscription]:
        if use_cache:
            cached = self.cache.get(self.cache_key)
            if cached is not None:
                return list(cached)

        logger.info("Fetching webhook subscriptions")
        async with self._client() as client:
            subscriptions = await api_subscriptions.list_subscriptions(client)
        self.cache.set(self.cache_key, subscriptions, self.settings.subscription_cache_ttl)
        return subscriptions

    async def get(self, subscription_id: str) -> Subscription:
        async with self._client() as client:
            return await api_subscriptions.get_subscription(client, subscription_id)

    async def update(self, subscription_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Updating webhook subscription {subscription_id}: {data}")
        async with self._client() as client:
            result = await api_subscriptions.update_subscription(client, subscription_id, data)
        self.clear_cache()
        return result if isinstance(result, dict) else {}

    async def unsubscribe(self, subscription_id: str) -> bool:
        logger.info(f"Deleting webhook subscription {subscription_id}")
        async with self._client() as client:
            await api_subscriptions.delete_subscription(client, subscription_id)
        self.clear_cache()
        logger.info(f"Webhook subscription {subscription_id} deleted")
        return True

    async def subscribe_to_all(
        self,
        webhook_url: Optional[str] = None,
        events: Optional[Iterable[str]] = None,
    ) -> Dict[str, Dict[str, Any]]:
        url = self._resolve_url(webhook_url)
        event_types = list(events) if events is not None else list(self.settings.webhook_events)
        logger.info(f"Subscribing to {len(event_types)} event types at {url}")

        results: Dict[str, Dict[str, Any]] = {}
        for event_type in event_types:
            try:
                result = await self.subscribe(event_type, url)
                results[event_type] = {"success": True, "subscription_id": result.get("SubscriptionId")}
            except MindbodyError as e:
                logger.error(f"Failed to subscribe to {event_type}: {e}")
                results[event_type] = {"success": False, "error": str(e)}

        succeeded = sum(1 for r in results.values() if r["success"])
        logger.info(f"Bulk subscription completed: total={len(results)} success={succeeded} failed={len(results) - succeeded}")
        return results

    async def unsubscribe_from_all(self, event_types: Optional[Iterable[str]] = None) -> Dict[str, Dict[str, Any]]:
        """Delete every subscription, or only those for the given event types."""
        wanted = set(event_types) if event_types is not None else None
        subscriptions = await self.list(use_cache=False)

        results: Dict[str, Dict[str, Any]] = {}
        for subscription in subscriptions:
            if not subscription.subscription_id:
                continue
            if wanted is not None and subscription.event_type not in wanted:
                continue
            try:
                await self.unsubscribe(subscription.subscription_id)
                results[subscription.subscription_id] = {"success": True, "event_type": subscription.event_type}
            except MindbodyError as e:
                logger.error(f"Failed to delete subscription {subscription.subscription_id}: {e}")
                results[subscription.subscription_id] = {
                    "success": False,
                    "event_type": subscription.event_type,
                    "error": str(e),
                }
        return results

    async def subscription_status(self) -> Dict[str, Dict[str, Any]]:
        """Per event type: whether it is configured and subscribed at our URL."""
        configured = list(self.settings.webhook_events)
        subscriptions = await self.list()

        status: Dict[str, Dict[str, Any]] = {}
        for event_type in configured:
            match = self._find(subscriptions, event_type, self.webhook_url)
            status[event_type] = self._status_entry(True, match)

        for subscription in subscriptions:
            if subscription.event_type not in configured:
                status[subscription.event_type] = self._status_entry(False, subscription)
        return status

    @staticmethod
    def _find(subscriptions: List[Subscription], event_type: str, webhook_url: Optional[str]) -> Optional[Subscription]:
        for subscription in subscriptions:
            if subscription.event_type == event_type and (not webhook_url or subscription.webhook_url == webhook_url):
                return subscription
        return None

    @staticmethod
    def _status_entry(configured: bool, subscription: Optional[Subscription]) -> Dict[str, Any]:
        return {
            "configured": configured,
            "subscribed": subscription is not None,
            "subscription_id": subscription.subscription_id if subscription else None,
            "is_active": subscription.is_active if subscription else False,
            "webhook_url": subscription.webhook_url if subscription else None,
        }

    async def reconcile(
        self,
        desired: Optional[Iterable[str]] = None,
        webhook_url: Optional[str] = None,
        dry_run: bool = False,
    ) -> SyncResult:
        """Bring remote subscriptions in line with the desired event types.

        Removes run first, then adds, then updates (delete and re-create).
        A failed operation is recorded in errors and the rest still run.
        """
        url = self._resolve_url(webhook_url)
        desired_types = list(desired) if desired is not None else list(self.settings.webhook_events)
        current = await self.list(use_cache=False)
        plan = plan_reconciliation(desired_types, url, current, self.settings.webhooks_auto_cleanup)
        result = SyncResult(plan=plan, webhook_url=url, dry_run=dry_run)

        if dry_run or plan.is_empty:
            logger.info(
                f"Subscription sync plan: add={len(plan.to_add)} remove={len(plan.to_remove)} "
                f"update={len(plan.to_update)} dry_run={dry_run}"
            )
            return result

        for subscription in plan.to_remove:
            try:
                await self._delete(subscription)
                result.removed.append(
                    {"event_type": subscription.event_type, "subscription_id": subscription.subscription_id}
                )
            except MindbodyError as e:
                result.errors.append(self._error_entry("unsubscribe", subscription.event_type, e, subscription))

        for event_type in plan.to_add:
            try:
                created = await self.subscribe(event_type, url)
                result.added.append({"event_type": event_type, "subscription_id": created.get("SubscriptionId")})
            except MindbodyError as e:
                result.errors.append(self._error_entry("subscribe", event_type, e))

        for subscription in plan.to_update:
            try:
                await self._delete(subscription)
                created = await self.subscribe(subscription.event_type, url)
                result.updated.append(
                    {
                        "event_type": subscription.event_type,
                        "old_subscription_id": subscription.subscription_id,
                        "subscription_id": created.get("SubscriptionId"),
                        "old_webhook_url": subscription.webhook_url,
                    }
                )
            except MindbodyError as e:
                result.errors.append(self._error_entry("update", subscription.event_type, e, subscription))

        self.clear_cache()
        logger.info(
            f"Subscription sync completed: added={len(result.added)} removed={len(result.removed)} "
            f"updated={len(result.updated)} errors={len(result.errors)}"
        )
        return result

    async def _delete(self, subscription: Subscription) -> None:
        if not subscription.subscription_id:
            raise WebhookError(f"Subscription for {subscription.event_type} has no id")
        await self.unsubscribe(subscription.subscription_id)

    @staticmethod
    def _error_entry(
        action: str,
        event_type: str,
        error: Exception,
        subscription: Optional[Subscription] = None,
    ) -> Dict[str, Any]:
        logger.error(f"Subscription {action} failed for {event_type}: {error}")
        return {
            "action": action,
            "event_type": event_type,
            "subscription_id": subscription.subscription_id if subscription else None,
            "error": str(error),
        }

    async def test_webhook_endpoint(self, webhook_url: Optional[str] = None) -> Dict[str, Any]:
        """Send a test delivery to the receiver URL.

        Any HTTP answer below 500 means the endpoint is reachable, the receiver
        is expected to reject the unsigned test payload.
        """
        url = webhook_url or self.webhook_url
        if not url:
            return {"success": False, "error": "No webhook URL configured"}

        payload = {
            "EventType": "test",
            "EventData": {"test": True},
            "EventTimestamp": datetime.now(timezone.utc).isoformat(),
            "SiteId": self.settings.site_id,
        }
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(10.0), transport=self._transport) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Webhook endpoint test failed for {url}: {e}")
            return {"success": False, "error": str(e) or e.__class__.__name__, "url": url}

        return {
            "success": response.status_code < 500,
            "status_code": response.status_code,
            "response_time": round(time.monotonic() - start, 3),
            "url": url,
        }
