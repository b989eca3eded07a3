"""Shared fixtures for the webhook and token tests."""

import json
import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Keep test runs from writing rotating log files
os.environ.setdefault("MINDBODY_LOG_TO_FILE", "false")

from mindbody.config import Settings  # noqa: E402
from mindbody.localdb.session import create_all, make_engine, make_session_factory  # noqa: E402
from webhooks.handler import WebhookHandler  # noqa: E402
from webhooks.signature import compute_signature  # noqa: E402
from webhooks.store import WebhookEventStore  # noqa: E402

SIGNATURE_KEY = "test-signature-key"
WEBHOOK_URL = "https://hooks.example.com/mindbody/webhooks"
EVENT_TYPES = ["client.created", "client.updated", "sale.created"]


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        api_key="test-api-key",
        site_id="-99",
        staff_username="owner",
        staff_password="secret",
        api_retry_delay=0,
        webhooks_api_key="test-webhooks-key",
        webhooks_signature_key=SIGNATURE_KEY,
        webhook_url=WEBHOOK_URL,
        webhook_events=list(EVENT_TYPES),
        queue_webhooks=False,
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'mindbody-test.db'}",
        log_to_file=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def sign():
    """Build a JSON body and matching signature headers."""

    def _sign(payload, key=SIGNATURE_KEY, header="X-Mindbody-Signature"):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json", header: compute_signature(body, key)}
        return body, headers

    return _sign


@pytest_asyncio.fixture
async def engine(settings):
    engine = make_engine(settings.db_url)
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory, settings):
    return WebhookEventStore(session_factory, settings.webhook_max_retry_attempts)


@pytest.fixture
def handler(settings, store):
    return WebhookHandler(settings, store)
