# buildingsync/adapters/clients/http_resilience.py
from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ...config import settings

log = logging.getLogger(__name__)

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class FeedAuthError(RuntimeError):
    """401/403 from the feed. Not retried; aborts the run."""


def _retry_after_seconds(resp: httpx.Response) -> float:
    raw = resp.headers.get("Retry-After")
    try:
        wait = float(raw) if raw is not None else 60.0
    except ValueError:
        wait = 60.0
    return max(0.0, min(wait, float(settings.HTTP_RETRY_AFTER_CAP_S)))


def _backoff_seconds(attempt: int) -> float:
    return float(settings.HTTP_BACKOFF_BASE_S) * (2**attempt)


async def _send(
    client: httpx.AsyncClient | None,
    method: str,
    url: str,
    headers: dict[str, str] | None,
    params: dict[str, Any] | None,
) -> httpx.Response:
    if client is not None:
        return await client.request(method, url, headers=headers, params=params)
    timeout = httpx.Timeout(float(settings.HTTP_TIMEOUT_S))
    async with httpx.AsyncClient(timeout=timeout) as c:
        return await c.request(method, url, headers=headers, params=params)


async def resilient_request(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    client: httpx.AsyncClient | None = None,
    max_retries: int | None = None,
    context: str = "",
) -> httpx.Response:
    """
    Send one request with retries.

      - 401/403        -> FeedAuthError immediately
      - 429            -> wait Retry-After (capped), retry
      - 5xx            -> exponential backoff, retry
      - other 4xx      -> HTTPStatusError immediately
      - timeout/network -> exponential backoff, retry
    """
    retries = int(settings.HTTP_MAX_RETRIES if max_retries is None else max_retries)

    last_exc: Exception | None = None
    for attempt in range(retries + 1):
        wait = _backoff_seconds(attempt)
        try:
            resp = await _send(client, method, url, headers, params)

            if resp.status_code in (401, 403):
                raise FeedAuthError(f"auth_failure: HTTP {resp.status_code} {context}".strip())

            if resp.status_code in _RETRYABLE_STATUS:
                if resp.status_code == 429:
                    wait = _retry_after_seconds(resp)
                raise httpx.HTTPStatusError(
                    f"retryable_status {resp.status_code}", request=resp.request, response=resp
                )

            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            if e.response.status_code not in _RETRYABLE_STATUS:
                raise
            last_exc = e
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            last_exc = e

        if attempt >= retries:
            break
        log.warning("retrying %s (attempt %s/%s): %s", context or url, attempt + 1, retries, last_exc)
        await asyncio.sleep(wait)

    assert last_exc is not None
    raise last_exc
