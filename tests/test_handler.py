"""Tests for webhook intake and event processing."""

import json

import pytest

from mindbody.localdb.models import EventStatus
from webhooks.backoff import RetryPolicy
from webhooks.handler import IntakeFailureKind, WebhookHandler
from webhooks.signature import SignatureError


def _payload(event_id="evt-1", event_type="client.created", **extra):
    payload = {
        "EventId": event_id,
        "EventType": event_type,
        "SiteId": -99,
        "EventTimestamp": "2024-05-01T10:00:00Z",
        "EventData": {"clientId": "100"},
    }
    payload.update(extra)
    return payload


class RecordingDispatcher:
    def __init__(self):
        self.enqueued = []
        self.scheduled = []

    async def start(self):
        return None

    async def stop(self):
        return None

    async def enqueue(self, event_id):
        self.enqueued.append(event_id)

    async def run_now(self, event_id):
        return True

    def schedule(self, event_id, delay):
        self.scheduled.append((event_id, delay))


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def queued_handler(settings, store, dispatcher):
    return WebhookHandler(settings, store, dispatcher=dispatcher)


class TestIntake:
    @pytest.mark.asyncio
    async def test_accepts_signed_delivery(self, queued_handler, dispatcher, store, sign):
        body, headers = sign(_payload())
        headers["User-Agent"] = "Mindbody-Webhooks/1.0"

        result = await queued_handler.handle(body, headers)

        assert result.ok
        assert result.duplicate is False
        event = result.event
        assert event.event_id == "evt-1"
        assert event.site_id == "-99"
        assert event.event_data == {"clientId": "100"}
        assert event.signature == headers["X-Mindbody-Signature"]
        assert event.headers["user-agent"] == "Mindbody-Webhooks/1.0"
        assert event.event_timestamp.isoformat() == "2024-05-01T10:00:00"
        assert dispatcher.enqueued == [event.id]
        assert (await store.stats())["total"] == 1

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_not_dispatched_again(self, queued_handler, dispatcher, store, sign):
        first = await queued_handler.handle(*sign(_payload()))
        second = await queued_handler.handle(*sign(_payload(EventData={"clientId": "other"})))

        assert first.ok and second.ok
        assert second.duplicate is True
        assert second.event.id == first.event.id
        assert dispatcher.enqueued == [first.event.id]
        assert (await store.stats())["total"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"", b"   ", b"{}", b"null"])
    async def test_empty_payload(self, queued_handler, store, body):
        result = await queued_handler.handle(body, {})

        assert result.failure.kind is IntakeFailureKind.EMPTY_PAYLOAD
        assert result.failure.status_code == 400
        assert (await store.stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_malformed_json(self, queued_handler, store):
        result = await queued_handler.handle(b"{not json", {})

        assert result.failure.kind is IntakeFailureKind.INVALID_PAYLOAD
        assert (await store.stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_missing_signature(self, queued_handler, store):
        body = json.dumps(_payload()).encode()

        result = await queued_handler.handle(body, {"Content-Type": "application/json"})

        assert result.failure.kind is IntakeFailureKind.SIGNATURE
        assert result.failure.signature_error is SignatureError.MISSING_SIGNATURE
        assert result.failure.message == "Signature verification failed"
        assert (await store.stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_wrong_key(self, queued_handler, store, sign):
        result = await queued_handler.handle(*sign(_payload(), key="not-the-key"))

        assert result.failure.signature_error is SignatureError.INVALID_SIGNATURE
        assert (await store.stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_missing_signature_key(self, settings, store, dispatcher, sign):
        settings.webhooks_signature_key = None
        handler = WebhookHandler(settings, store, dispatcher=dispatcher)

        result = await handler.handle(*sign(_payload()))

        assert result.failure.signature_error is SignatureError.MISSING_SIGNATURE_KEY

    @pytest.mark.asyncio
    async def test_verification_can_be_disabled(self, settings, store, dispatcher):
        settings.verify_webhook_signature = False
        handler = WebhookHandler(settings, store, dispatcher=dispatcher)

        result = await handler.handle(json.dumps(_payload()).encode(), {})

        assert result.ok
        assert result.event.signature is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            [1, 2, 3],
            {"EventData": {"a": 1}},
            {"EventType": "", "EventData": {"a": 1}},
            {"EventType": "client.created"},
        ],
    )
    async def test_invalid_payload(self, queued_handler, store, sign, payload):
        result = await queued_handler.handle(*sign(payload))

        assert result.failure.kind is IntakeFailureKind.INVALID_PAYLOAD
        assert (await store.stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_unsupported_event_is_rejected_with_valid_signature(self, queued_handler, dispatcher, store, sign):
        result = await queued_handler.handle(*sign(_payload(event_type="totally.unknown")))

        assert result.failure.kind is IntakeFailureKind.UNSUPPORTED_EVENT
        assert result.failure.status_code == 400
        assert "totally.unknown" in result.failure.message
        assert dispatcher.enqueued == []
        assert (await store.stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_dispatch_failure_keeps_stored_event(self, queued_handler, dispatcher, store, sign):
        async def broken_enqueue(event_id):
            raise RuntimeError("queue unavailable")

        dispatcher.enqueue = broken_enqueue

        result = await queued_handler.handle(*sign(_payload()))

        assert result.ok
        assert [e.id for e in await store.pending()] == [result.event.id]


class TestProcessing:
    @pytest.mark.asyncio
    async def test_sync_dispatch_processes_inline(self, handler, store, sign):
        seen = []

        @handler.on("client.created")
        def on_client_created(event):
            seen.append(event.event_id)

        result = await handler.handle(*sign(_payload()))

        assert seen == ["evt-1"]
        stored = await store.get(result.event.id)
        assert stored.processed is True

    @pytest.mark.asyncio
    async def test_async_and_wildcard_listeners(self, handler, store, sign):
        calls = []

        async def specific(event):
            calls.append(("specific", event.event_type))

        def catch_all(event):
            calls.append(("any", event.event_type))

        handler.add_listener("client.created", specific)
        handler.add_listener("*", catch_all)

        await handler.handle(*sign(_payload()))

        assert calls == [("specific", "client.created"), ("any", "client.created")]

    @pytest.mark.asyncio
    async def test_without_listeners_event_is_processed(self, queued_handler, store, sign):
        result = await queued_handler.handle(*sign(_payload()))

        assert await queued_handler.process_event(result.event.id) is True
        assert (await store.get(result.event.id)).processed is True

    @pytest.mark.asyncio
    async def test_already_processed_is_a_no_op(self, queued_handler, store, sign):
        calls = []
        queued_handler.add_listener("*", lambda event: calls.append(event.id))
        result = await queued_handler.handle(*sign(_payload()))

        assert await queued_handler.process_event(result.event.id) is True
        assert await queued_handler.process_event(result.event.id) is True
        assert calls == [result.event.id]

    @pytest.mark.asyncio
    async def test_unknown_event_id(self, queued_handler):
        assert await queued_handler.process_event(999) is False

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(self, queued_handler, dispatcher, store, sign):
        def failing(event):
            raise RuntimeError("downstream unavailable")

        queued_handler.add_listener("client.created", failing)
        result = await queued_handler.handle(*sign(_payload()))
        event_id = result.event.id

        assert await queued_handler.process_event(event_id) is False
        assert await queued_handler.process_event(event_id) is False

        stored = await store.get(event_id)
        assert stored.retry_count == 2
        assert stored.error == "downstream unavailable"
        assert dispatcher.scheduled == [(event_id, 10), (event_id, 20)]

    @pytest.mark.asyncio
    async def test_terminal_failure_after_max_retries(self, queued_handler, dispatcher, store, sign):
        def failing(event):
            raise RuntimeError("boom")

        queued_handler.add_listener("*", failing)
        result = await queued_handler.handle(*sign(_payload()))
        event_id = result.event.id

        for _ in range(3):
            assert await queued_handler.process_event(event_id) is False

        stored = await store.get(event_id)
        assert stored.retry_count == 3
        assert stored.processed is False
        assert stored.error == "boom"
        assert stored.status(3) is EventStatus.FAILED
        assert await store.retryable() == []
        # Only the first two failures were rescheduled
        assert len(dispatcher.scheduled) == 2

    @pytest.mark.asyncio
    async def test_event_type_removed_after_intake(self, queued_handler, store, sign):
        result = await queued_handler.handle(*sign(_payload()))
        queued_handler.settings.webhook_events = ["sale.created"]

        assert await queued_handler.process_event(result.event.id) is False
        stored = await store.get(result.event.id)
        assert "Unsupported webhook event type" in stored.error

    @pytest.mark.asyncio
    async def test_custom_retry_policy_sets_store_budget(self, settings, store, dispatcher):
        WebhookHandler(settings, store, dispatcher=dispatcher, retry_policy=RetryPolicy(max_attempts=5))

        assert store.max_retries == 5

    @pytest.mark.asyncio
    async def test_process_pending_events(self, queued_handler, store, sign):
        for n in range(3):
            await queued_handler.handle(*sign(_payload(event_id=f"evt-{n}")))

        results = await queued_handler.process_pending_events(limit=2)

        assert results == {"processed": 2, "failed": 0, "skipped": 0}
        assert len(await store.unprocessed()) == 1

    @pytest.mark.asyncio
    async def test_get_stats_includes_failures_by_type(self, queued_handler, sign):
        queued_handler.add_listener("sale.created", lambda event: 1 / 0)
        result = await queued_handler.handle(*sign(_payload(event_type="sale.created")))
        await queued_handler.process_event(result.event.id)

        stats = await queued_handler.get_stats()

        assert stats["total"] == 1
        assert stats["failed"] == 1
        assert stats["failed_by_type"] == {"sale.created": 1}
