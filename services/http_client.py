from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, TypeVar
from urllib.parse import quote

import httpx

from services.errors import DecodeError, RateLimitError, RemoteError, TransportError, truncate

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

TOO_MANY_REQUESTS = 429


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff with full jitter for rate-limited requests."""

    initial_delay: float = 1.0
    max_delay: float = 32.0
    multiplier: float = 2.0
    max_elapsed: float = 300.0

    def delay(self, attempt: int) -> float:
        ceiling = min(self.max_delay, self.initial_delay * self.multiplier**attempt)
        return random.uniform(0, ceiling)


def _parse_remote_error(status: int, text: str) -> RemoteError:
    try:
        payload = json.loads(text)
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        # Gmail API errors: {"error": {"code": 404, "message": ..., "status": "NOT_FOUND"}}
        if isinstance(error, dict) and "message" in error:
            return RemoteError(status, str(error["message"]), code=error.get("status"), body=text)
        # OAuth token endpoint errors: {"error": "invalid_grant", "error_description": ...}
        if isinstance(error, str):
            return RemoteError(status, str(payload.get("error_description", error)), code=error, body=text)

    return RemoteError(status, truncate(text) or "(empty body)", body=truncate(text))


class ApiClient:
    """Sends one logical request, retrying only while the server rate-limits us."""

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._base_url = base_url.rstrip("/")
        self._http = http_client
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep

    def with_base_url(self, base_url: str) -> "ApiClient":
        return ApiClient(base_url, self._http, self._retry, self._sleep)

    def url_for(self, path: Sequence[str]) -> str:
        if not path:
            return self._base_url
        return self._base_url + "/" + "/".join(quote(segment, safe="") for segment in path)

    async def request(
        self,
        path: Sequence[str],
        *,
        decode: Callable[[Any], T],
        method: str = "GET",
        query: Optional[Mapping[str, str]] = None,
        form: Optional[Mapping[str, str]] = None,
        bearer: Optional[str] = None,
    ) -> T:
        url = self.url_for(path)
        headers: Dict[str, str] = {}
        if bearer is not None:
            headers["Authorization"] = f"Bearer {bearer}"

        response = await self._send_with_retry(method, url, headers, query, form)
        text = response.text
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise DecodeError(f"response from {url} is not JSON", payload=text) from exc
        try:
            return decode(payload)
        except (AttributeError, DecodeError, KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"unexpected payload from {url}: {exc!r}", payload=text) from exc

    async def _send_with_retry(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        query: Optional[Mapping[str, str]],
        form: Optional[Mapping[str, str]],
    ) -> httpx.Response:
        started = time.monotonic()
        attempt = 0
        waited = 0.0
        while True:
            request = self._http.build_request(method, url, params=query, data=form, headers=headers)
            LOGGER.debug(
                "executing request method=%s url=%s headers=%s",
                request.method,
                request.url,
                _redacted(request.headers),
            )
            try:
                response = await self._http.send(request)
            except httpx.TransportError as exc:
                raise TransportError(f"{method} {url} failed: {exc!r}") from exc

            if response.status_code != TOO_MANY_REQUESTS:
                break

            delay = self._retry.delay(attempt)
            # Requested sleeps count toward the budget even if the clock has not moved.
            elapsed = max(time.monotonic() - started, waited)
            if elapsed + delay > self._retry.max_elapsed:
                LOGGER.warning("Rate limit persisted for %.1fs on %s, giving up", elapsed, url)
                limited = _parse_remote_error(response.status_code, response.text)
                raise RateLimitError(
                    limited.status,
                    limited.message,
                    code=limited.code,
                    body=limited.body,
                )
            LOGGER.info("Rate limited on %s, retrying in %.2fs (attempt %s)", url, delay, attempt + 1)
            await self._sleep(delay)
            waited += delay
            attempt += 1

        if not response.is_success:
            raise _parse_remote_error(response.status_code, response.text)
        return response


def _redacted(headers: httpx.Headers) -> Dict[str, str]:
    shown = dict(headers)
    if "authorization" in shown:
        shown["authorization"] = "Bearer <redacted>"
    return shown
