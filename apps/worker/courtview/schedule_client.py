"""
Court view page client.

DESIGN PRINCIPLES:
1. Every request has a timeout (30s default).
2. Retries with exponential backoff on 5xx, timeouts and network errors
   (1s, 2s, 4s ...), bounded by max_attempts.
3. Never retry on 4xx. 429 is surfaced as RateLimitedError.
4. All methods are async.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from courtview.errors import RateLimitedError, UpstreamFetchError

logger = logging.getLogger(__name__)


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class ScheduleClient:
    """Async fetcher for the court view HTML page."""

    def __init__(
        self,
        url: str,
        timeout: float = 30,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base_seconds
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": "Mozilla/5.0"},
            follow_redirects=True,
            transport=transport,
        )

    async def fetch(self) -> str:
        """
        GET the court view page and return its HTML.

        Raises RateLimitedError on 429, UpstreamFetchError on any other 4xx
        or once the attempt budget is exhausted.
        """
        last_exc: UpstreamFetchError | None = None

        for attempt in range(self._max_attempts):
            start = time.monotonic()
            try:
                resp = await self._client.get(self._url)
            except httpx.TimeoutException:
                last_exc = UpstreamFetchError("Court view request timed out")
            except httpx.HTTPError as exc:
                last_exc = UpstreamFetchError(f"Court view request failed: {exc}")
            else:
                elapsed_ms = int((time.monotonic() - start) * 1000)

                if resp.status_code == 429:
                    logger.warning("Court view returned 429 after %dms", elapsed_ms)
                    raise RateLimitedError(
                        "Court view returned 429", retry_after=_retry_after(resp)
                    )

                if 400 <= resp.status_code < 500:
                    raise UpstreamFetchError(
                        f"Court view returned {resp.status_code}",
                        status_code=resp.status_code,
                    )

                if resp.status_code >= 500:
                    last_exc = UpstreamFetchError(
                        f"Court view returned {resp.status_code}",
                        status_code=resp.status_code,
                    )
                else:
                    logger.debug(
                        "Fetched court view (%d bytes) in %dms",
                        len(resp.content), elapsed_ms,
                    )
                    return resp.text

            logger.warning(
                "Court view fetch attempt %d/%d failed: %s",
                attempt + 1, self._max_attempts, last_exc,
            )
            if attempt < self._max_attempts - 1:
                await asyncio.sleep(self._backoff_base * 2 ** attempt)

        raise UpstreamFetchError(
            f"Court view fetch failed after {self._max_attempts} attempts: {last_exc}",
            status_code=last_exc.status_code if last_exc else None,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
