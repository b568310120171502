"""Authenticated async HTTP transport with adaptive pacing and retries."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

BITBUCKET_API_BASE_URL = "https://api.bitbucket.org"
USER_AGENT = "bitbucket-review-tools/0.1.0"
DEFAULT_TIMEOUT_SECONDS = 30.0
INITIAL_PACING_DELAY_SECONDS = 0.1
MIN_PACING_DELAY_SECONDS = 0.1
MAX_PACING_DELAY_SECONDS = 10.0
PACING_DECREMENT_SECONDS = 0.05
MAX_SERVER_ERROR_RETRIES = 3


class BitbucketApiError(RuntimeError):
    """Raised when a Bitbucket API request fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        endpoint: str,
        upstream_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint
        self.upstream_message = upstream_message or message


class BitbucketRateLimitError(BitbucketApiError):
    """Raised when rate limiting persists after the single 429 retry."""


async def _sleep_for_pacing(seconds: float) -> None:
    """Pacing pause before each request (wrapped for deterministic tests)."""
    await asyncio.sleep(seconds)


async def _sleep_for_retry(seconds: float) -> None:
    """Sleep helper for retry delays (wrapped for deterministic tests)."""
    await asyncio.sleep(seconds)


def _parse_retry_after_seconds(response: httpx.Response) -> float | None:
    """Parse Retry-After header as seconds if present and valid."""
    retry_after = response.headers.get("Retry-After")
    if retry_after is None:
        return None
    try:
        parsed_value = float(retry_after)
    except ValueError:
        return None
    if parsed_value < 0:
        return None
    return parsed_value


def _upstream_error_message(response: httpx.Response) -> str | None:
    """Pull the error message out of a Bitbucket error envelope."""
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return text or None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return None


def _raise_http_error(response: httpx.Response, endpoint: str) -> None:
    """Raise a typed error for a non-success Bitbucket API response."""
    upstream_message = _upstream_error_message(response)
    message = f"Bitbucket API request failed with status {response.status_code} for '{endpoint}'."
    if response.status_code == 429:
        raise BitbucketRateLimitError(
            message,
            status_code=response.status_code,
            endpoint=endpoint,
            upstream_message=upstream_message,
        )
    raise BitbucketApiError(
        message,
        status_code=response.status_code,
        endpoint=endpoint,
        upstream_message=upstream_message,
    )


class BitbucketTransport:
    """Wraps one AsyncClient; pacing state is shared by every call through it."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        initial_delay_seconds: float = INITIAL_PACING_DELAY_SECONDS,
        min_delay_seconds: float = MIN_PACING_DELAY_SECONDS,
        max_delay_seconds: float = MAX_PACING_DELAY_SECONDS,
        max_server_error_retries: int = MAX_SERVER_ERROR_RETRIES,
    ) -> None:
        self._client = client
        self._pacing_delay = initial_delay_seconds
        self._min_delay = min_delay_seconds
        self._max_delay = max_delay_seconds
        self._max_server_error_retries = max_server_error_retries

    @property
    def pacing_delay(self) -> float:
        return self._pacing_delay

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        accept: str | None = None,
    ) -> httpx.Response:
        """Send one request, pacing it and retrying on 429 and 5xx."""
        headers = {"Accept": accept} if accept else None
        rate_limit_retried = False
        server_error_retries = 0
        # A retry has already waited out its own delay.
        just_retried = False

        while True:
            if self._pacing_delay > 0 and not just_retried:
                await _sleep_for_pacing(self._pacing_delay)

            response = await self._client.request(
                method, endpoint, params=params, json=json, headers=headers
            )
            status_code = response.status_code
            just_retried = False

            if status_code < 400:
                self._pacing_delay = max(self._min_delay, self._pacing_delay - PACING_DECREMENT_SECONDS)
                return response

            if status_code == 429 and not rate_limit_retried:
                retry_after = _parse_retry_after_seconds(response)
                requested = retry_after if retry_after is not None else self._pacing_delay * 2
                self._pacing_delay = min(requested, self._max_delay)
                rate_limit_retried = True
                logger.warning(
                    "Rate limited on %s %s; retrying once in %.2fs",
                    method,
                    endpoint,
                    self._pacing_delay,
                )
                await _sleep_for_retry(self._pacing_delay)
                just_retried = True
                continue

            if status_code >= 500 and server_error_retries < self._max_server_error_retries:
                delay_seconds = float(2**server_error_retries)
                server_error_retries += 1
                logger.warning(
                    "Server error %d on %s %s; retry %d/%d in %.0fs",
                    status_code,
                    method,
                    endpoint,
                    server_error_retries,
                    self._max_server_error_retries,
                    delay_seconds,
                )
                await _sleep_for_retry(delay_seconds)
                just_retried = True
                continue

            _raise_http_error(response, endpoint)

    async def get_json(self, endpoint: str, *, params: dict[str, Any] | None = None) -> Any:
        """GET an endpoint and decode its JSON body."""
        response = await self.request("GET", endpoint, params=params, accept="application/json")
        return response.json()

    async def get_text(self, endpoint: str, *, params: dict[str, Any] | None = None) -> str:
        """GET an endpoint that returns plain text (diffs, raw file content)."""
        response = await self.request("GET", endpoint, params=params, accept="text/plain")
        return response.text

    async def post_json(self, endpoint: str, payload: dict[str, Any]) -> Any:
        """POST a JSON payload and decode the JSON response."""
        response = await self.request("POST", endpoint, json=payload, accept="application/json")
        return response.json()
