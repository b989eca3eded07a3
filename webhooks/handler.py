"""
Webhook intake and processing.

Intake runs each request through signature, payload and event type checks
before the event is stored and dispatched. Validation failures come back as
an IntakeResult carrying an IntakeFailure, nothing is stored for them.
Processing re-checks the event type, runs registered listeners and records
the outcome, handing failed events to the retry policy.
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from mindbody.config import Settings
from mindbody.core.exceptions import WebhookValidationError
from mindbody.localdb.models import WebhookEvent
from mindbody.utils.logger import get_logger
from mindbody.utils.timeutils import to_datetime, utcnow

from .backoff import RetryPolicy
from .dispatcher import Dispatcher, build_dispatcher
from .signature import SIGNATURE_HEADERS, SignatureError, extract_signature, verify_signature
from .store import WebhookEventStore

logger = get_logger(__name__)

RELEVANT_HEADERS = (
    "content-type",
    "user-agent",
    *(name.lower() for name in SIGNATURE_HEADERS),
    "x-forwarded-for",
)

VALIDATION_FAILED = "Webhook validation failed"

Listener = Callable[[WebhookEvent], Union[Awaitable[Any], Any]]


class IntakeFailureKind(str, Enum):
    EMPTY_PAYLOAD = "empty_payload"
    INVALID_PAYLOAD = "invalid_payload"
    UNSUPPORTED_EVENT = "unsupported_event"
    SIGNATURE = "signature"


@dataclass(frozen=True)
class IntakeFailure:
    kind: IntakeFailureKind
    message: str
    status_code: int = 400
    signature_error: Optional[SignatureError] = None

    @classmethod
    def empty_payload(cls) -> "IntakeFailure":
        return cls(IntakeFailureKind.EMPTY_PAYLOAD, "Empty webhook payload")

    @classmethod
    def invalid_payload(cls, reason: str) -> "IntakeFailure":
        return cls(IntakeFailureKind.INVALID_PAYLOAD, f"Invalid webhook payload: {reason}")

    @classmethod
    def unsupported_event(cls, event_type: str) -> "IntakeFailure":
        return cls(IntakeFailureKind.UNSUPPORTED_EVENT, f"Unsupported webhook event type: {event_type}")

    @classmethod
    def signature(cls, error: SignatureError) -> "IntakeFailure":
        # Same message for every signature failure kind
        return cls(IntakeFailureKind.SIGNATURE, "Signature verification failed", signature_error=error)


@dataclass
class IntakeResult:
    event: Optional[WebhookEvent] = None
    duplicate: bool = False
    failure: Optional[IntakeFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.event is not None


class WebhookHandler:
    def __init__(
        self,
        settings: Settings,
        store: WebhookEventStore,
        dispatcher: Optional[Dispatcher] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.store.max_retries = self.retry_policy.max_attempts
        self.dispatcher: Dispatcher = dispatcher or build_dispatcher(settings, self.process_event)
        self._listeners: Dict[str, List[Listener]] = {}

    # Listener registry

    def on(self, event_type: str) -> Callable[[Listener], Listener]:
        """Register a listener for an event type, "*" matches every type."""

        def decorator(func: Listener) -> Listener:
            self.add_listener(event_type, func)
            return func

        return decorator

    def add_listener(self, event_type: str, listener: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def listeners_for(self, event_type: str) -> List[Listener]:
        return [*self._listeners.get(event_type, []), *self._listeners.get("*", [])]

    # Intake

    async def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> IntakeResult:
        """Validate, store and dispatch one inbound delivery."""
        if not raw_body or not raw_body.strip():
            return self._reject(IntakeFailure.empty_payload())
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return self._reject(IntakeFailure.invalid_payload("Malformed JSON body"))
        if not payload:
            return self._reject(IntakeFailure.empty_payload())

        signature = extract_signature(headers)
        if self.settings.verify_webhook_signature:
            error = verify_signature(raw_body, signature, self.settings.webhooks_signature_key)
            if error is not None:
                logger.warning(f"Webhook signature verification failed: {error.description}")
                return IntakeResult(failure=IntakeFailure.signature(error))

        failure = self.validate_payload(payload)
        if failure is not None:
            return self._reject(failure)

        event_type = payload["EventType"]
        if not self.is_event_type_supported(event_type):
            return self._reject(IntakeFailure.unsupported_event(event_type))

        event_id = payload.get("EventId")
        site_id = payload.get("SiteId")
        event, created = await self.store.insert_if_absent(
            event_id=str(event_id) if event_id is not None else None,
            event_type=event_type,
            site_id=str(site_id) if site_id is not None else None,
            event_data=payload["EventData"],
            headers=self.extract_headers(headers),
            event_timestamp=to_datetime(payload.get("EventTimestamp")) or utcnow(),
            signature=signature,
        )

        if not created:
            logger.info(f"Duplicate webhook delivery event_id={event.event_id} (db id={event.id}), skipping dispatch")
            return IntakeResult(event=event, duplicate=True)

        logger.info(
            f"Webhook received and stored: event_id={event.event_id} type={event.event_type} "
            f"site_id={event.site_id} db_id={event.id}"
        )
        try:
            await self.dispatcher.enqueue(event.id)
        except Exception as e:
            # Stored events are picked up later by process-pending
            logger.exception(f"Failed to dispatch webhook event id={event.id}: {e}")
        return IntakeResult(event=event)

    def validate_payload(self, payload: Any) -> Optional[IntakeFailure]:
        if not isinstance(payload, dict):
            return IntakeFailure.invalid_payload("Payload must be a JSON object")
        event_type = payload.get("EventType")
        if not isinstance(event_type, str) or not event_type.strip():
            return IntakeFailure.invalid_payload("Missing EventType")
        if payload.get("EventData") is None:
            return IntakeFailure.invalid_payload("Missing EventData")
        return None

    def is_event_type_supported(self, event_type: str) -> bool:
        return event_type in self.settings.webhook_events

    def extract_headers(self, headers: Mapping[str, str]) -> Dict[str, str]:
        lowered = {k.lower(): v for k, v in headers.items()}
        return {name: lowered[name] for name in RELEVANT_HEADERS if lowered.get(name)}

    def _reject(self, failure: IntakeFailure) -> IntakeResult:
        logger.warning(f"Webhook rejected: {failure.message}")
        return IntakeResult(failure=failure)

    # Processing

    async def process_event(self, event_id: int, schedule_retry: bool = True) -> bool:
        """Run listeners for a stored event and record the outcome."""
        event = await self.store.get(event_id)
        if event is None:
            logger.warning(f"Webhook event id={event_id} not found")
            return False
        if event.processed:
            logger.info(f"Webhook event id={event.id} already processed")
            return True

        try:
            if not self.is_event_type_supported(event.event_type):
                raise WebhookValidationError.unsupported_event(event.event_type)
            await self._run_listeners(event)
        except Exception as e:
            await self._handle_processing_error(event, e, schedule_retry)
            return False

        await self.store.mark_processed(event.id)
        logger.info(f"Webhook event processed: id={event.id} type={event.event_type}")
        return True

    async def _run_listeners(self, event: WebhookEvent) -> None:
        listeners = self.listeners_for(event.event_type)
        if not listeners:
            logger.info(
                f"Processing webhook event type={event.event_type} event_id={event.event_id} site_id={event.site_id}"
            )
            return
        for listener in listeners:
            result = listener(event)
            if inspect.isawaitable(result):
                await result

    async def _handle_processing_error(self, event: WebhookEvent, error: Exception, schedule_retry: bool) -> None:
        message = str(error) or error.__class__.__name__
        updated = await self.store.mark_failed(event.id, message)
        retry_count = updated.retry_count if updated is not None else event.retry_count + 1
        max_attempts = self.retry_policy.max_attempts

        logger.error(
            f"Failed to process webhook event id={event.id} type={event.event_type}: {message} "
            f"(retry {retry_count}/{max_attempts})"
        )

        if not self.retry_policy.can_retry(retry_count):
            logger.warning(f"Webhook event id={event.id} exhausted its retries and is marked failed")
            return
        if schedule_retry:
            self.dispatcher.schedule(event.id, self.retry_policy.delay_for(retry_count))

    async def process_pending_events(self, max_retries: Optional[int] = None, limit: int = 100) -> Dict[str, int]:
        events = await self.store.retryable(max_retries, limit=limit)
        results = {"processed": 0, "failed": 0, "skipped": 0}
        for event in events:
            if await self.process_event(event.id, schedule_retry=False):
                results["processed"] += 1
            else:
                results["failed"] += 1
        return results

    async def get_stats(self) -> Dict[str, Any]:
        stats = await self.store.stats(self.retry_policy.max_attempts)
        stats["failed_by_type"] = await self.store.failed_by_type()
        return stats
