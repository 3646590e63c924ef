"""
Tests for the REST transport using httpx.MockTransport.
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from discordflow.errors import (
    DiscordAuthError,
    DiscordConnectionError,
    DiscordNotFoundError,
    DiscordRateLimitError,
    DiscordRequestError,
    DiscordServerError,
)
from discordflow.rate_limiter import RateLimiter
from discordflow.rest import RestClient, error_message

API_URL = "https://discord.test/api/v10"


def make_rest(handler, max_retries=2):
    return RestClient(
        token="secret",
        api_url=API_URL,
        limiter=RateLimiter(),
        max_retries=max_retries,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def no_sleep():
    with patch("discordflow.rest.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


class TestRequest:

    @pytest.mark.asyncio
    async def test_auth_header_and_json_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "1", "content": "hello"})

        rest = make_rest(handler)
        data = await rest.request("POST", "/channels/42/messages", json={"content": "hello"})
        await rest.aclose()

        assert data == {"id": "1", "content": "hello"}
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == f"{API_URL}/channels/42/messages"
        assert request.headers["Authorization"] == "Bot secret"
        assert request.headers["User-Agent"].startswith("DiscordBot")
        assert json.loads(request.content) == {"content": "hello"}

    @pytest.mark.asyncio
    async def test_query_params(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        rest = make_rest(handler)
        await rest.request("GET", "/channels/42/messages", params={"limit": 5})
        await rest.aclose()

        assert seen[0].url.params["limit"] == "5"

    @pytest.mark.asyncio
    async def test_empty_body_returns_none(self):
        rest = make_rest(lambda request: httpx.Response(204))
        assert await rest.request("PATCH", "/guilds/1/members/2", json={"roles": []}) is None
        await rest.aclose()

    @pytest.mark.asyncio
    async def test_rate_limit_headers_update_bucket(self):
        limiter = RateLimiter()

        def handler(request):
            return httpx.Response(200, json={}, headers={
                "X-RateLimit-Limit": "5",
                "X-RateLimit-Remaining": "4",
                "X-RateLimit-Reset-After": "1.0",
            })

        rest = RestClient("secret", API_URL, limiter, transport=httpx.MockTransport(handler))
        await rest.request("GET", "/channels/42")
        await rest.aclose()

        bucket = limiter.bucket("GET /channels/42")
        assert bucket.limit == 5
        assert bucket.remaining == 4


class TestErrors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (401, DiscordAuthError),
        (403, DiscordAuthError),
        (404, DiscordNotFoundError),
        (400, DiscordRequestError),
    ])
    async def test_status_mapping(self, status, error):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(status, json={"message": "nope", "code": 0})

        rest = make_rest(handler)
        with pytest.raises(error) as exc_info:
            await rest.request("GET", "/channels/42")
        await rest.aclose()

        assert exc_info.value.status_code == status
        assert "nope" in str(exc_info.value)
        # 4xx is never retried
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_identifier_array_error_text(self):
        rest = make_rest(lambda request: httpx.Response(400, json={"channel_id": ["Not a snowflake."]}))

        with pytest.raises(DiscordRequestError, match="Not a snowflake."):
            await rest.request("POST", "/channels/abc/messages", json={"content": "x"})
        await rest.aclose()

    def test_error_message_extraction(self):
        assert error_message({"message": "Unknown Channel", "code": 10003}) == "Unknown Channel"
        assert error_message({"content": ["Must be 2000 or fewer in length."]}) == "Must be 2000 or fewer in length."
        assert error_message({"code": 0}) == ""
        assert error_message(None) == ""

    @pytest.mark.asyncio
    async def test_server_error_retried(self, no_sleep):
        responses = [httpx.Response(502, text="bad gateway"), httpx.Response(200, json={"id": "42"})]
        rest = make_rest(lambda request: responses.pop(0))

        data = await rest.request("GET", "/channels/42")
        await rest.aclose()

        assert data == {"id": "42"}
        no_sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_server_error_surfaces_after_retries(self, no_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="oops")

        rest = make_rest(handler, max_retries=2)
        with pytest.raises(DiscordServerError):
            await rest.request("GET", "/channels/42")
        await rest.aclose()

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_rate_limited_request_retried(self):
        responses = [
            httpx.Response(429, json={"message": "You are being rate limited.", "retry_after": 0.01, "global": False}),
            httpx.Response(200, json={"id": "42"}),
        ]
        limiter = RateLimiter()
        rest = RestClient("secret", API_URL, limiter, transport=httpx.MockTransport(lambda r: responses.pop(0)))

        data = await rest.request("GET", "/channels/42")
        await rest.aclose()

        assert data == {"id": "42"}

    @pytest.mark.asyncio
    async def test_rate_limit_error_after_retries(self):
        body = {"message": "You are being rate limited.", "retry_after": 0.0, "global": False}
        rest = make_rest(lambda request: httpx.Response(429, json=body), max_retries=0)

        with pytest.raises(DiscordRateLimitError) as exc_info:
            await rest.request("GET", "/channels/42")
        await rest.aclose()

        assert exc_info.value.retry_after == 0.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("is_global", [False, True])
    async def test_final_rate_limit_still_blocks_route(self, is_global):
        body = {"message": "You are being rate limited.", "retry_after": 5.0, "global": is_global}
        limiter = RateLimiter(clock=lambda: 100.0)
        rest = RestClient(
            "secret", API_URL, limiter, max_retries=0,
            transport=httpx.MockTransport(lambda request: httpx.Response(429, json=body)),
        )

        with pytest.raises(DiscordRateLimitError):
            await rest.request("GET", "/channels/42")
        await rest.aclose()

        with pytest.raises(DiscordRateLimitError) as exc_info:
            await limiter.acquire("GET /channels/42", wait=False)
        assert exc_info.value.retry_after == 5.0

    @pytest.mark.asyncio
    async def test_transport_error(self, no_sleep):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        rest = make_rest(handler, max_retries=1)
        with pytest.raises(DiscordConnectionError):
            await rest.request("GET", "/channels/42")
        await rest.aclose()

        assert no_sleep.await_count == 1
