"""Mindbody Webhooks API subscription client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..core.client import MindbodyClient
from ..utils.timeutils import to_datetime

# Attribute name -> provider keys, first present wins
SUBSCRIPTION_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "subscription_id": ("SubscriptionId", "Id", "subscriptionId", "id"),
    "event_type": ("EventType", "eventType"),
    "webhook_url": ("WebhookUrl", "webhookUrl", "Url"),
    "is_active": ("IsActive", "isActive", "Status", "status"),
    "created_at": ("CreatedDateTime", "CreatedAt", "createdAt"),
    "updated_at": ("UpdatedDateTime", "UpdatedAt", "updatedAt"),
}


def translate_fields(data: Dict[str, Any], aliases: Dict[str, Tuple[str, ...]] = SUBSCRIPTION_FIELD_ALIASES) -> Dict[str, Any]:
    """Map provider keys onto attribute names using an alias table."""
    result: Dict[str, Any] = {}
    for name, keys in aliases.items():
        for key in keys:
            if key in data and data[key] is not None:
                result[name] = data[key]
                break
    return result


def _to_active(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("active", "true", "1")
    return bool(value)


@dataclass
class Subscription:
    subscription_id: Optional[str]
    event_type: str
    webhook_url: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Subscription":
        fields = translate_fields(data)
        subscription_id = fields.get("subscription_id")
        return cls(
            subscription_id=str(subscription_id) if subscription_id is not None else None,
            event_type=str(fields.get("event_type") or ""),
            webhook_url=fields.get("webhook_url"),
            is_active=_to_active(fields.get("is_active", True)),
            created_at=to_datetime(fields.get("created_at")),
            updated_at=to_datetime(fields.get("updated_at")),
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "event_type": self.event_type,
            "webhook_url": self.webhook_url,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


async def list_subscriptions(client: MindbodyClient) -> List[Subscription]:
    """Retrieve all webhook subscriptions.

    Args:
        client (MindbodyClient): Client bound to the Webhooks API.

    Returns:
        List[Subscription]: Subscriptions registered for the API key.
    """
    data = await client.get("/subscriptions")
    items = data.get("Subscriptions", []) if isinstance(data, dict) else data
    return [Subscription.from_api(item) for item in items or [] if isinstance(item, dict)]


async def get_subscription(client: MindbodyClient, subscription_id: str) -> Subscription:
    """Retrieve a single subscription by ID.

    Args:
        client (MindbodyClient): Client bound to the Webhooks API.
        subscription_id (str): The ID of the subscription.

    Returns:
        Subscription: The subscription.
    """
    data = await client.get(f"/subscriptions/{subscription_id}")
    return Subscription.from_api(data if isinstance(data, dict) else {})


async def create_subscription(client: MindbodyClient, event_type: str, webhook_url: str) -> Dict[str, Any]:
    """Create a subscription for one event type.

    Args:
        client (MindbodyClient): Client bound to the Webhooks API.
        event_type (str): Event type to subscribe to.
        webhook_url (str): Public URL of the receiver.

    Returns:
        Dict[str, Any]: The provider response, including SubscriptionId.
    """
    return await client.post(
        "/subscriptions",
        json={"EventType": event_type, "WebhookUrl": webhook_url, "IsActive": True},
    )


async def update_subscription(client: MindbodyClient, subscription_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Update an existing subscription.

    Args:
        client (MindbodyClient): Client bound to the Webhooks API.
        subscription_id (str): The ID of the subscription.
        data (Dict[str, Any]): Fields to update, in provider casing.

    Returns:
        Dict[str, Any]: The updated subscription.
    """
    return await client.put(f"/subscriptions/{subscription_id}", json=data)


async def delete_subscription(client: MindbodyClient, subscription_id: str) -> Any:
    """Delete a subscription.

    Args:
        client (MindbodyClient): Client bound to the Webhooks API.
        subscription_id (str): The ID of the subscription.
    """
    return await client.delete(f"/subscriptions/{subscription_id}")
