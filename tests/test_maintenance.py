"""Tests for the process-pending and retention jobs."""

from datetime import timedelta

import pytest

from mindbody.localdb.tokens import ApiTokenStore
from mindbody.utils.timeutils import utcnow
from webhooks import maintenance
from webhooks.handler import WebhookHandler


class NullDispatcher:
    async def start(self):
        return None

    async def stop(self):
        return None

    async def enqueue(self, event_id):
        return None

    async def run_now(self, event_id):
        return True

    def schedule(self, event_id, delay):
        raise AssertionError("process-pending must not schedule retries")


class StepClock:
    """Advances by a fixed step on every read."""

    def __init__(self, step):
        self.step = step
        self.now = 0.0

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def offline_handler(settings, store):
    return WebhookHandler(settings, store, dispatcher=NullDispatcher())


async def _store_events(store, count, event_type="client.created"):
    ids = []
    for n in range(count):
        event, _ = await store.insert_if_absent(event_id=f"evt-{n}", event_type=event_type, event_data={"n": n})
        ids.append(event.id)
    return ids


class TestProcessPending:
    @pytest.mark.asyncio
    async def test_processes_pending_events(self, offline_handler, store):
        await _store_events(store, 3)

        result = await maintenance.process_pending(offline_handler)

        assert result.found == 3
        assert result.successful == 3
        assert result.failed == 0
        assert result.ok
        assert len(await store.processed()) == 3

    @pytest.mark.asyncio
    async def test_failures_are_counted_without_scheduling(self, offline_handler, store):
        await _store_events(store, 2)
        offline_handler.add_listener("*", lambda event: 1 / 0)

        result = await maintenance.process_pending(offline_handler)

        assert result.failed == 2
        assert not result.ok
        assert all(e.retry_count == 1 for e in await store.unprocessed())

    @pytest.mark.asyncio
    async def test_pending_skips_previously_failed(self, offline_handler, store):
        ids = await _store_events(store, 2)
        await store.mark_failed(ids[0], "boom")

        result = await maintenance.process_pending(offline_handler)
        assert result.found == 1

        retried = await maintenance.process_pending(offline_handler, retry_failed=True, max_retries=3)
        assert retried.found == 1
        assert retried.successful == 1

    @pytest.mark.asyncio
    async def test_retry_failed_respects_max(self, offline_handler, store):
        ids = await _store_events(store, 1)
        for _ in range(3):
            await store.mark_failed(ids[0], "boom")

        result = await maintenance.process_pending(offline_handler, retry_failed=True, max_retries=3)

        assert result.found == 0

    @pytest.mark.asyncio
    async def test_deadline_leaves_rest_untouched(self, offline_handler, store):
        await _store_events(store, 5)

        # Start reads 0, then each per-event check advances by 10 seconds
        result = await maintenance.process_pending(offline_handler, timeout=25, clock=StepClock(10))

        assert result.timed_out is True
        assert result.processed == 2
        assert result.skipped == 3
        assert len(await store.pending()) == 3

    @pytest.mark.asyncio
    async def test_dry_run(self, offline_handler, store):
        await _store_events(store, 2)

        result = await maintenance.process_pending(offline_handler, dry_run=True)

        assert result.found == 2
        assert result.processed == 0
        assert [e["status"] for e in result.events] == ["pending", "pending"]
        assert len(await store.pending()) == 2

    @pytest.mark.asyncio
    async def test_limit(self, offline_handler, store):
        await _store_events(store, 4)

        result = await maintenance.process_pending(offline_handler, limit=3)

        assert result.processed == 3
        assert len(await store.pending()) == 1


class TestRetention:
    @pytest.mark.asyncio
    async def test_cleanup_events_validates_status(self, store):
        with pytest.raises(ValueError):
            await maintenance.cleanup_events(store, 30, status="archived")

    @pytest.mark.asyncio
    async def test_apply_retention_runs_both_windows(self, settings, store):
        ids = await _store_events(store, 2)
        await store.mark_processed(ids[0])
        await store.mark_failed(ids[1], "boom")

        results = await maintenance.apply_retention(store, settings, dry_run=True)

        assert [(r["status"], r["days"]) for r in results] == [("processed", 30), ("failed", 90)]
        assert all(r["deleted"] == 0 for r in results)

    @pytest.mark.asyncio
    async def test_cleanup_tokens(self, session_factory):
        token_store = ApiTokenStore(session_factory)
        now = utcnow()
        await token_store.create_from_response(
            "owner", {"access_token": "old", "expires_in": 3600, "issued_at": now - timedelta(days=10)}
        )
        await token_store.create_from_response("owner", {"access_token": "fresh", "expires_in": 3600})

        assert await maintenance.cleanup_tokens(token_store, retention_days=7) == 1
        assert (await token_store.find_valid_for_username("owner")).access_token == "fresh"
