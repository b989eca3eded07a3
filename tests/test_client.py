"""Tests for the HTTP client wrapper."""

import httpx
import pytest

from mindbody.core.client import MindbodyClient
from mindbody.core.exceptions import (
    AuthenticationError,
    AuthErrorKind,
    MindbodyApiError,
    MindbodyError,
    NotFoundError,
    RateLimitError,
)


class Sequence:
    """Replays canned responses and counts requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(responses, max_retries=3, **kwargs):
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    client = MindbodyClient(
        "https://api.example.com/public/v6",
        {"Api-Key": "key"},
        max_retries=max_retries,
        retry_delay=0.5,
        transport=httpx.MockTransport(responses),
        sleep=sleep,
        **kwargs,
    )
    return client, sleeps


class TestRequest:
    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        responses = Sequence(httpx.Response(503), httpx.Response(502), httpx.Response(200, json={"ok": True}))
        client, sleeps = _client(responses)

        async with client:
            assert await client.get("/site/sites") == {"ok": True}

        assert len(responses.requests) == 3
        assert sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_server_error_after_last_attempt(self):
        responses = Sequence(*(httpx.Response(500, json={"Message": "down"}) for _ in range(3)))
        client, _ = _client(responses, max_retries=2)

        async with client:
            with pytest.raises(MindbodyApiError) as exc_info:
                await client.get("/site/sites")

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "down"
        assert exc_info.value.is_server_error()

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        responses = Sequence(httpx.Response(400, json={"Error": {"Message": "Bad request", "Code": "InvalidParameter"}}))
        client, sleeps = _client(responses)

        async with client:
            with pytest.raises(MindbodyApiError) as exc_info:
                await client.post("/sale/checkout", json={"ClientId": "1"})

        assert len(responses.requests) == 1
        assert sleeps == []
        assert exc_info.value.is_api_error("InvalidParameter")
        assert exc_info.value.is_client_error()

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self):
        responses = Sequence(httpx.ConnectError("refused"), httpx.Response(200, json=[1, 2]))
        client, _ = _client(responses)

        async with client:
            assert await client.get("/site/sites") == [1, 2]

    @pytest.mark.asyncio
    async def test_transport_error_exhausts_retries(self):
        responses = Sequence(httpx.ConnectError("refused"), httpx.ConnectError("refused"))
        client, _ = _client(responses, max_retries=1)

        async with client:
            with pytest.raises(MindbodyError, match="Network error"):
                await client.get("/site/sites")

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        client, _ = _client(Sequence())

        with pytest.raises(RuntimeError):
            await client.get("/site/sites")

    @pytest.mark.asyncio
    async def test_user_token_header(self):
        responses = Sequence(httpx.Response(204))
        client, _ = _client(responses)
        client.user_token = "user-token"

        async with client:
            assert await client.delete("/thing/1") == {}

        assert responses.requests[0].headers["Authorization"] == "user-token"
        assert responses.requests[0].headers["Api-Key"] == "key"


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_unauthorized(self):
        client, _ = _client(Sequence(httpx.Response(401, json={"Message": "Denied"})))

        async with client:
            with pytest.raises(AuthenticationError) as exc_info:
                await client.get("/client/clients")

        assert exc_info.value.kind is AuthErrorKind.INVALID_CREDENTIALS

    @pytest.mark.asyncio
    async def test_forbidden(self):
        body = {"Error": {"Message": "Staff lacks permission", "Code": "DeniedAccess"}}
        client, _ = _client(Sequence(httpx.Response(403, json=body)))

        async with client:
            with pytest.raises(AuthenticationError) as exc_info:
                await client.get("/client/clients")

        error = exc_info.value
        assert error.kind is AuthErrorKind.INSUFFICIENT_PERMISSIONS
        assert error.status_code == 403
        assert "GET /public/v6/client/clients" in error.message
        assert error.details["response_body"] == body
        assert error.is_api_error("DeniedAccess")

    @pytest.mark.asyncio
    async def test_not_found(self):
        client, _ = _client(Sequence(httpx.Response(404, text="missing")))

        async with client:
            with pytest.raises(NotFoundError):
                await client.get("/client/clients/1")

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        client, _ = _client(Sequence(httpx.Response(429, headers={"Retry-After": "30"})))

        async with client:
            with pytest.raises(RateLimitError) as exc_info:
                await client.get("/client/clients")

        assert exc_info.value.retry_after == 30
        assert exc_info.value.is_rate_limit_error()


class TestFactories:
    def test_public_api_headers(self, settings):
        client = MindbodyClient.for_public_api(settings)

        assert client.headers["Api-Key"] == "test-api-key"
        assert client.headers["SiteId"] == "-99"
        assert client.base_url == settings.api_base_url

    def test_webhooks_api_headers(self, settings):
        client = MindbodyClient.for_webhooks_api(settings)

        assert client.headers["Api-Key"] == "test-webhooks-key"
        assert "SiteId" not in client.headers

    @pytest.mark.asyncio
    async def test_authenticate_requires_token_manager(self, settings):
        client = MindbodyClient.for_public_api(settings)

        with pytest.raises(MindbodyError):
            await client.authenticate("owner", "secret")
