"""Authenticated, rate-limited REST transport for the Discord HTTP API."""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from .errors import (
    DiscordAuthError,
    DiscordConnectionError,
    DiscordError,
    DiscordNotFoundError,
    DiscordRateLimitError,
    DiscordRequestError,
    DiscordServerError,
)
from .rate_limiter import RateLimiter, route_key

logger = logging.getLogger("discordflow.rest")


def error_message(body: Any) -> str:
    """Human-readable text from an error body.

    Discord returns either {"message": "..."} or a map of field names to
    lists of strings, e.g. {"channel_id": ["Unknown channel"]}.
    """
    if not isinstance(body, dict):
        return ""
    if body.get("message"):
        return str(body["message"])
    for value in body.values():
        if isinstance(value, list) and value and isinstance(value[0], str):
            return value[0]
    return ""


class RestClient:
    """Thin httpx wrapper: auth headers, route rate limits, retries, error mapping."""

    def __init__(
        self,
        token: str,
        api_url: str,
        limiter: RateLimiter,
        timeout: float = 15.0,
        max_retries: int = 3,
        user_agent: str = "DiscordBot (discordflow, 0.1.0)",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            token: Bot token, sent as "Authorization: Bot <token>".
            api_url: REST base URL (e.g. "https://discord.com/api/v10").
            limiter: Shared RateLimiter.
            timeout: Per-request timeout in seconds.
            max_retries: Retries for 429, 5xx and transport errors.
            user_agent: User-Agent header value.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self._api_url = api_url.rstrip("/")
        self._limiter = limiter
        self._timeout = timeout
        self._max_retries = max_retries
        self._transport = transport
        self._headers = {
            "Authorization": f"Bot {token}",
            "User-Agent": user_agent,
        }
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=self._headers,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make an authenticated, rate-limited REST request.

        Args:
            method: HTTP method
            path: API path without base URL (e.g. "/channels/123")
            json: JSON body
            params: Query parameters

        Returns:
            Parsed JSON response (None for empty bodies).

        Raises:
            DiscordError subclass based on status code, DiscordConnectionError
            on transport failure.
        """
        route = route_key(method, path)
        url = f"{self._api_url}{path}"
        max_attempts = self._max_retries + 1

        for attempt in range(1, max_attempts + 1):
            await self._limiter.acquire(route)

            try:
                response = await self._http().request(method, url, json=json, params=params)
            except httpx.HTTPError as e:
                if attempt < max_attempts:
                    delay = self._backoff_delay(attempt)
                    logger.warning(f"HTTP error on {method} {path} (attempt {attempt}): {e}, retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue
                raise DiscordConnectionError(f"HTTP error on {method} {path}: {e}") from e

            self._limiter.update(route, response.headers)

            if response.status_code == 429:
                # Recorded even on the last attempt so later calls wait it out
                retry_after, is_global = self._retry_after(response)
                self._limiter.backoff(route, retry_after, is_global)
                if attempt < max_attempts:
                    logger.warning(f"429 on {method} {path} (attempt {attempt}), retrying after {retry_after:.2f}s")
                    continue

            if response.status_code >= 500 and attempt < max_attempts:
                delay = self._backoff_delay(attempt)
                logger.warning(f"{response.status_code} on {method} {path} (attempt {attempt}), retrying")
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                self._raise_for_status(response, method, path)

            return response.json() if response.content else None

        raise DiscordConnectionError(f"Request failed after {max_attempts} attempts")

    @staticmethod
    def _backoff_delay(attempt: int) -> float:
        return min(0.5 * (2 ** (attempt - 1)), 8.0)

    @staticmethod
    def _retry_after(response: httpx.Response) -> Tuple[float, bool]:
        body = _json_or_none(response)
        retry_after = None
        is_global = False
        if isinstance(body, dict):
            retry_after = body.get("retry_after")
            is_global = bool(body.get("global", False))
        if retry_after is None:
            retry_after = response.headers.get("retry-after", 1.0)
        is_global = is_global or response.headers.get("x-ratelimit-global", "").lower() == "true"
        try:
            return float(retry_after), is_global
        except (TypeError, ValueError):
            return 1.0, is_global

    def _raise_for_status(self, response: httpx.Response, method: str, path: str) -> None:
        """Map HTTP status codes to DiscordError subtypes."""
        code = response.status_code
        body = response.text[:500]
        detail = error_message(_json_or_none(response)) or body
        msg = f"{method} {path} -> {code}: {detail}"

        if code == 401 or code == 403:
            raise DiscordAuthError(msg, status_code=code, response_body=body)
        elif code == 404:
            raise DiscordNotFoundError(msg, status_code=code, response_body=body)
        elif code == 429:
            retry_after, _ = self._retry_after(response)
            raise DiscordRateLimitError(msg, retry_after=retry_after, status_code=code, response_body=body)
        elif 400 <= code < 500:
            raise DiscordRequestError(msg, status_code=code, response_body=body)
        elif code >= 500:
            raise DiscordServerError(msg, status_code=code, response_body=body)
        else:
            raise DiscordError(msg, status_code=code, response_body=body)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
